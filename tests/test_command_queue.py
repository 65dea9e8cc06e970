from datetime import datetime, timedelta

import pytest
from sqlalchemy import event, update

from conftest import make_device
from models import db, CommandStatus, DeviceCommand
from utils.command_queue import CommandQueue
from utils.errors import NotFound, StateConflict, ValidationFailure


def test_poll_hands_command_out_exactly_once(device):
    command = CommandQueue.create(device.id, 'snooze', {'minutes': 5})

    first = CommandQueue.poll(device.id)
    second = CommandQueue.poll(device.id)

    assert [c.id for c in first] == [command.id]
    assert first[0].status == CommandStatus.ACK.value
    assert first[0].acknowledged_at is not None
    assert second == []


def test_poll_skips_command_claimed_by_concurrent_poll(device):
    taken_id = CommandQueue.create(device.id, 'snooze', {'minutes': 5}).id
    free_id = CommandQueue.create(device.id, 'reboot').id
    session = db.session()
    claimed = []

    def claim_first_candidate(orm_execute_state):
        # Another poller wins the race between our SELECT and our UPDATE
        if orm_execute_state.is_update and not claimed:
            claimed.append(taken_id)
            orm_execute_state.session.execute(
                update(DeviceCommand)
                .where(DeviceCommand.id == taken_id)
                .values(status=CommandStatus.ACK.value)
                .execution_options(synchronize_session=False)
            )

    event.listen(session, 'do_orm_execute', claim_first_candidate)
    try:
        polled = CommandQueue.poll(device.id)
    finally:
        event.remove(session, 'do_orm_execute', claim_first_candidate)

    assert claimed == [taken_id]
    assert [c.id for c in polled] == [free_id]
    assert db.session.get(DeviceCommand, taken_id).status == 'ack'
    assert CommandQueue.poll(device.id) == []


def test_poll_orders_oldest_first_and_is_scoped_to_device(device, user):
    other = make_device(user, serial='PM-0002')
    newer = CommandQueue.create(device.id, 'reboot')
    older = CommandQueue.create(device.id, 'apply_config')
    CommandQueue.create(other.id, 'reboot')

    older.created_at = datetime(2025, 1, 1, 8, 0)
    newer.created_at = datetime(2025, 1, 1, 9, 0)
    db.session.commit()

    polled = CommandQueue.poll(device.id)
    assert [c.id for c in polled] == [older.id, newer.id]


def test_poll_since_filter(device):
    old = CommandQueue.create(device.id, 'reboot')
    recent = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    old.created_at = datetime(2025, 1, 1, 8, 0)
    recent.created_at = datetime(2025, 1, 1, 10, 0)
    db.session.commit()

    polled = CommandQueue.poll(device.id, since=datetime(2025, 1, 1, 9, 0))

    assert [c.id for c in polled] == [recent.id]
    # The older command was not handed out and stays pending
    assert db.session.get(DeviceCommand, old.id).status == 'pending'


def test_create_does_not_deduplicate(device):
    a = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    b = CommandQueue.create(device.id, 'snooze', {'minutes': 5})

    assert a.id != b.id
    assert len(CommandQueue.poll(device.id)) == 2


def test_create_rejects_unknown_kind(device):
    with pytest.raises(ValidationFailure):
        CommandQueue.create(device.id, 'self_destruct')


def test_ack_completes_delivered_command(device):
    command = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    CommandQueue.poll(device.id)

    done = CommandQueue.acknowledge(device.id, command.id, 'done')

    assert done.status == 'done'
    assert done.completed_at is not None
    assert done.is_completed


def test_ack_error_merges_detail_into_payload(device):
    command = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    CommandQueue.poll(device.id)

    failed = CommandQueue.acknowledge(device.id, command.id, 'error', 'servo jammed')

    assert failed.status == 'error'
    assert failed.payload == {'minutes': 5, 'detail': 'servo jammed'}


def test_ack_of_pending_command_is_state_conflict(device):
    command = CommandQueue.create(device.id, 'reboot')

    with pytest.raises(StateConflict):
        CommandQueue.acknowledge(device.id, command.id, 'done')

    assert db.session.get(DeviceCommand, command.id).status == 'pending'


def test_replayed_ack_is_state_conflict(device):
    command = CommandQueue.create(device.id, 'reboot')
    CommandQueue.poll(device.id)
    CommandQueue.acknowledge(device.id, command.id, 'done')

    with pytest.raises(StateConflict):
        CommandQueue.acknowledge(device.id, command.id, 'error', 'late report')

    assert db.session.get(DeviceCommand, command.id).status == 'done'


def test_ack_for_another_devices_command_is_not_found(device, user):
    other = make_device(user, serial='PM-0002')
    command = CommandQueue.create(other.id, 'reboot')
    CommandQueue.poll(other.id)

    with pytest.raises(NotFound):
        CommandQueue.acknowledge(device.id, command.id, 'done')
    with pytest.raises(NotFound):
        CommandQueue.acknowledge(device.id, 9999, 'done')


def test_ack_rejects_non_outcome_status(device):
    command = CommandQueue.create(device.id, 'reboot')
    CommandQueue.poll(device.id)

    for status in ('ack', 'expired', 'pending', 'completed'):
        with pytest.raises(ValidationFailure):
            CommandQueue.acknowledge(device.id, command.id, status)


def test_expire_single_command(device):
    command = CommandQueue.create(device.id, 'reboot')

    assert CommandQueue.expire(command.id).status == 'expired'
    with pytest.raises(StateConflict):
        CommandQueue.expire(command.id)
    with pytest.raises(NotFound):
        CommandQueue.expire(9999)


def test_expired_command_cannot_be_polled_or_acked(device):
    command = CommandQueue.create(device.id, 'reboot')
    CommandQueue.poll(device.id)
    CommandQueue.expire(command.id)

    assert CommandQueue.poll(device.id) == []
    with pytest.raises(StateConflict):
        CommandQueue.acknowledge(device.id, command.id, 'done')


def test_expire_stale_only_touches_old_open_commands(device):
    now = datetime(2025, 1, 2, 12, 0)
    stale_pending = CommandQueue.create(device.id, 'reboot')
    stale_acked = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    stale_done = CommandQueue.create(device.id, 'apply_config')
    fresh = CommandQueue.create(device.id, 'reboot')

    CommandQueue.poll(device.id)
    stale_pending.status = 'pending'
    db.session.commit()
    CommandQueue.acknowledge(device.id, stale_done.id, 'done')

    for command in (stale_pending, stale_acked, stale_done):
        command.created_at = now - timedelta(hours=30)
    fresh.created_at = now - timedelta(hours=1)
    db.session.commit()

    expired = CommandQueue.expire_stale(timedelta(hours=24), now=now)

    assert expired == 2
    statuses = {c.id: db.session.get(DeviceCommand, c.id).status
                for c in (stale_pending, stale_acked, stale_done, fresh)}
    assert statuses == {
        stale_pending.id: 'expired',
        stale_acked.id: 'expired',
        stale_done.id: 'done',
        fresh.id: 'ack',
    }


def test_history_newest_first(device):
    first = CommandQueue.create(device.id, 'reboot')
    second = CommandQueue.create(device.id, 'snooze', {'minutes': 5})
    first.created_at = datetime(2025, 1, 1, 8, 0)
    second.created_at = datetime(2025, 1, 1, 9, 0)
    db.session.commit()

    assert [c.id for c in CommandQueue.history(device.id)] == [second.id, first.id]
    assert len(CommandQueue.history(device.id, limit=1)) == 1
