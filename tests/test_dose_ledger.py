from datetime import datetime, timedelta

import pytest

from conftest import make_device, make_schedule
from models import db, DoseEvent
from utils.dose_ledger import DoseLedger, adherence_percent
from utils.errors import NotFound, ValidationFailure

START = datetime(2025, 1, 1)
END = datetime(2025, 1, 8)


def record_many(device, compartment, status, count, day=2):
    for i in range(count):
        DoseLedger.record(device.id, compartment.id, datetime(2025, 1, day, 8, i), status)


def test_adherence_excludes_skipped(device, compartment):
    record_many(device, compartment, 'taken', 3)
    record_many(device, compartment, 'late', 1)
    record_many(device, compartment, 'missed', 1)
    record_many(device, compartment, 'skipped', 5)

    summary = DoseLedger.adherence(device.id, START, END)

    assert summary['adherence'] == 60
    assert summary['due'] == 5
    assert summary['counts'] == {'taken': 3, 'late': 1, 'missed': 1, 'skipped': 5}


def test_skip_heavy_window_does_not_move_percentage(device, compartment):
    record_many(device, compartment, 'taken', 3)
    record_many(device, compartment, 'missed', 1)
    before = DoseLedger.adherence(device.id, START, END)['adherence']

    record_many(device, compartment, 'skipped', 20, day=3)

    assert DoseLedger.adherence(device.id, START, END)['adherence'] == before == 75


def test_only_skipped_events_yield_zero(device, compartment):
    record_many(device, compartment, 'skipped', 4)
    assert DoseLedger.adherence(device.id, START, END)['adherence'] == 0


def test_window_is_half_open(device, compartment):
    DoseLedger.record(device.id, compartment.id, START, 'taken')
    DoseLedger.record(device.id, compartment.id, END, 'missed')

    counts = DoseLedger.status_counts(device.id, START, END)
    assert counts['taken'] == 1
    assert counts['missed'] == 0


def test_adherence_is_per_device(device, compartment, user):
    other = make_device(user, serial='PM-0002')
    other_compartment = other.compartments.first()
    record_many(device, compartment, 'taken', 1)
    record_many(other, other_compartment, 'missed', 3)

    assert DoseLedger.adherence(device.id, START, END)['adherence'] == 100


def test_half_up_rounding():
    assert adherence_percent(3, 1, 1) == 60
    assert adherence_percent(2, 1, 0) == 67
    assert adherence_percent(1, 7, 0) == 13   # 12.5 rounds up
    assert adherence_percent(0, 0, 0) == 0
    assert adherence_percent(5, 0, 0) == 100


def test_record_stores_all_fields(device, compartment):
    schedule = make_schedule(compartment)
    actual = datetime(2025, 1, 2, 8, 3)

    event = DoseLedger.record(
        device.id, compartment.id, datetime(2025, 1, 2, 8, 0), 'late',
        actual_at=actual, delta_weight_g=-0.45, source='manual',
        notes='taken after breakfast', schedule_id=schedule.id
    )

    stored = db.session.get(DoseEvent, event.id)
    assert stored.status == 'late'
    assert stored.source == 'manual'
    assert stored.actual_at == actual
    assert stored.delta_weight_g == pytest.approx(-0.45)
    assert stored.schedule_id == schedule.id


def test_record_status_is_not_checked_against_weight(device, compartment):
    event = DoseLedger.record(device.id, compartment.id, datetime(2025, 1, 2, 8, 0), 'taken',
                              delta_weight_g=0.0)
    assert event.status == 'taken'


def test_record_rejects_invalid_enums(device, compartment):
    with pytest.raises(ValidationFailure):
        DoseLedger.record(device.id, compartment.id, START, 'forgotten')
    with pytest.raises(ValidationFailure):
        DoseLedger.record(device.id, compartment.id, START, 'taken', source='robot')


def test_record_rejects_foreign_compartment_and_schedule(device, compartment, user):
    other = make_device(user, serial='PM-0002')
    foreign = other.compartments.first()

    with pytest.raises(NotFound):
        DoseLedger.record(device.id, foreign.id, START, 'taken')

    foreign_schedule = make_schedule(foreign)
    with pytest.raises(NotFound):
        DoseLedger.record(device.id, compartment.id, START, 'taken', schedule_id=foreign_schedule.id)


def test_no_update_or_delete_path():
    assert not any(hasattr(DoseLedger, name) for name in ('update', 'delete', 'remove'))


def test_adherence_window_metadata(device):
    summary = DoseLedger.adherence(device.id, START, START + timedelta(days=7))
    assert summary['start'] == '2025-01-01T00:00:00'
    assert summary['end'] == '2025-01-08T00:00:00'
