import json
from datetime import datetime, timezone

import pytest
import requests

from conftest import make_subscription
from models import PushSubscription
from utils.errors import ConfigurationError
from utils.notifications import NotificationService, snooze_command_request
from utils.schedule_utils import device_now


def endpoints(user):
    return sorted(s.endpoint for s in PushSubscription.query.filter_by(user_id=user.id))


def test_gone_endpoint_is_pruned_and_others_delivered(user, push_calls):
    for name in ('a', 'b', 'c'):
        make_subscription(user, f'https://push.example/{name}')
    push_calls.failures['https://push.example/b'] = 410

    result = NotificationService.notify_user(user.id, 'Title', 'Body', {'k': 'v'})

    assert result.as_counts() == {'sent': 2, 'total': 3}
    assert result.removed == 1
    assert endpoints(user) == ['https://push.example/a', 'https://push.example/c']
    assert len(push_calls) == 3


def test_not_found_endpoint_is_also_gone(user, push_calls):
    make_subscription(user, 'https://push.example/a')
    push_calls.failures['https://push.example/a'] = 404

    result = NotificationService.notify_user(user.id, 'Title', 'Body')

    assert (result.sent, result.total, result.removed) == (0, 1, 1)
    assert endpoints(user) == []


def test_transient_failures_keep_subscription(user, push_calls):
    make_subscription(user, 'https://push.example/a')
    make_subscription(user, 'https://push.example/b')
    make_subscription(user, 'https://push.example/c')
    push_calls.failures['https://push.example/a'] = 503
    push_calls.failures['https://push.example/b'] = requests.Timeout('timed out')

    result = NotificationService.notify_user(user.id, 'Title', 'Body')

    assert result.as_counts() == {'sent': 1, 'total': 3}
    assert result.removed == 0
    assert len(endpoints(user)) == 3


def test_unexpected_sender_error_is_isolated(user, push_calls):
    make_subscription(user, 'https://push.example/a')
    make_subscription(user, 'https://push.example/b')
    push_calls.failures['https://push.example/a'] = RuntimeError('bad key material')

    result = NotificationService.notify_user(user.id, 'Title', 'Body')

    assert result.as_counts() == {'sent': 1, 'total': 2}
    assert len(endpoints(user)) == 2


def test_only_the_users_own_subscriptions_are_used(user, other_user, push_calls):
    make_subscription(user, 'https://push.example/mine')
    make_subscription(other_user, 'https://push.example/theirs')

    NotificationService.notify_user(user.id, 'Title', 'Body')

    assert [c['endpoint'] for c in push_calls] == ['https://push.example/mine']


def test_no_subscriptions(user, push_calls):
    assert NotificationService.notify_user(user.id, 'Title', 'Body').as_counts() == {'sent': 0, 'total': 0}
    assert push_calls == []


def test_missing_vapid_keys(app, user, push_calls):
    make_subscription(user, 'https://push.example/a')
    app.config['VAPID_PRIVATE_KEY'] = ''

    with pytest.raises(ConfigurationError) as exc:
        NotificationService.notify_user(user.id, 'Title', 'Body')

    assert exc.value.error == 'missing_vapid_keys'
    assert push_calls == []


def test_send_options_come_from_config(app, user, push_calls):
    make_subscription(user, 'https://push.example/a')

    NotificationService.notify_user(user.id, 'Title', 'Body')

    call = push_calls[0]
    assert call['timeout'] == app.config['PUSH_TIMEOUT_SECONDS']
    assert call['ttl'] == app.config['PUSH_TTL_SECONDS']
    assert call['claims'] == {'sub': app.config['VAPID_CLAIM_EMAIL']}


def test_alarm_payload_wire_format(device, compartment, push_calls):
    make_subscription(device.owner, 'https://push.example/a')
    scheduled_at = datetime(2025, 11, 3, 14, 0, tzinfo=timezone.utc)
    local_time = device_now(device.timezone, scheduled_at)

    result = NotificationService.send_dose_alarm(device, compartment, scheduled_at, local_time)

    assert result.sent == 1
    payload = json.loads(push_calls[0]['data'])
    assert payload['title'] == 'Time for your medication'
    assert payload['body'] == 'Compartment 1 - 08:00 (compartment 1)'
    assert payload['icon'] == '/icon-192.png'
    assert payload['badge'] == '/badge-72.png'
    assert payload['data'] == {
        'route': '/dashboard',
        'deviceId': device.id,
        'compartmentId': compartment.id,
        'scheduledAt': '2025-11-03T14:00:00+00:00',
        'action': 'open_app',
    }
    assert payload == NotificationService.build_alarm_payload(device, compartment, scheduled_at, local_time)


def test_alarm_title_override(device, compartment, push_calls):
    make_subscription(device.owner, 'https://push.example/a')
    scheduled_at = datetime(2025, 11, 3, 14, 0, tzinfo=timezone.utc)

    NotificationService.send_dose_alarm(device, compartment, scheduled_at,
                                        device_now(device.timezone, scheduled_at), title='Vitamin D')

    assert json.loads(push_calls[0]['data'])['title'] == 'Vitamin D'


def test_snooze_action_translates_to_command_request(app):
    data = {'route': '/dashboard', 'deviceId': 7, 'compartmentId': 3,
            'scheduledAt': '2025-11-03T14:00:00+00:00', 'action': 'open_app'}

    assert snooze_command_request(data) == {
        'deviceId': 7,
        'type': 'snooze',
        'payload': {'minutes': 5},
    }


def test_snooze_minutes_default_comes_from_config(app):
    app.config['SNOOZE_DEFAULT_MINUTES'] = 15

    assert snooze_command_request({'deviceId': 7})['payload'] == {'minutes': 15}
    assert snooze_command_request({'deviceId': 7}, minutes=2)['payload'] == {'minutes': 2}
