"""
Shared fixtures: a fresh in-memory application per test plus factories for
users, devices, schedules and push subscriptions
"""
from datetime import time

import pytest

from app import create_app
from models import db, Compartment, Device, PushSubscription, Schedule, User
from utils.auth import create_access_token
from utils.credentials import hash_secret, legacy_digest

DEVICE_SECRET = 'device-secret-123'


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username='alice', password='password123'):
    user = User(username=username, email=f'{username}@example.com')
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user


def make_device(owner, serial='PM-0001', secret=DEVICE_SECRET, legacy=False,
                timezone='America/Mexico_City', compartments=3):
    device = Device(
        name=f'Dispenser {serial}',
        serial=serial,
        secret_hash=legacy_digest(secret) if legacy else hash_secret(secret),
        user_id=owner.id,
        timezone=timezone
    )
    db.session.add(device)
    db.session.flush()
    for idx in range(1, compartments + 1):
        db.session.add(Compartment(device_id=device.id, idx=idx, title=f'Compartment {idx}'))
    db.session.commit()
    return device


def make_schedule(compartment, at=time(8, 0), days=0b1111111, window=10):
    schedule = Schedule(compartment_id=compartment.id, time_of_day=at,
                        days_of_week=days, window_minutes=window)
    db.session.add(schedule)
    db.session.commit()
    return schedule


def make_subscription(user, endpoint):
    subscription = PushSubscription(user_id=user.id, endpoint=endpoint,
                                    p256dh='p256dh-key', auth='auth-key')
    db.session.add(subscription)
    db.session.commit()
    return subscription


@pytest.fixture
def user(app):
    return make_user()


@pytest.fixture
def other_user(app):
    return make_user('bob')


@pytest.fixture
def device(user):
    return make_device(user)


@pytest.fixture
def compartment(device):
    return device.compartments.filter_by(idx=1).first()


@pytest.fixture
def device_headers(device):
    return {'X-Device-Serial': device.serial, 'X-Device-Secret': DEVICE_SECRET}


@pytest.fixture
def user_token(user):
    return create_access_token(user)


@pytest.fixture
def auth_headers(user_token):
    return {'Authorization': f'Bearer {user_token}'}


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def push_calls(monkeypatch):
    """
    Replace the web push sender; endpoints listed in ``push_calls.failures``
    fail with the mapped status code (or raise the mapped exception)
    """
    from pywebpush import WebPushException
    import utils.notifications as notifications

    class Recorder(list):
        failures = {}

    calls = Recorder()
    calls.failures = {}

    def fake_webpush(subscription_info, data, vapid_private_key, vapid_claims, timeout, ttl):
        calls.append({'endpoint': subscription_info['endpoint'], 'data': data,
                      'claims': vapid_claims, 'timeout': timeout, 'ttl': ttl})
        failure = calls.failures.get(subscription_info['endpoint'])
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            raise WebPushException(f'Push failed: {failure}', response=FakeResponse(failure))

    monkeypatch.setattr(notifications, 'webpush', fake_webpush)
    return calls
