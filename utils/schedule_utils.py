"""
Schedule Utilities
Day-of-week mask handling, dosing window matching and occurrence calculation.
Everything here is pure: callers pass the current time in.
"""
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models import Schedule


# Mask bit for each ISO weekday (Monday=1 ... Sunday=7).
# Mask layout: bit 0 = Monday, bit 1 = Tuesday, ..., bit 6 = Sunday.
ISO_WEEKDAY_TO_BIT: Dict[int, int] = {
    1: 0,  # Monday
    2: 1,  # Tuesday
    3: 2,  # Wednesday
    4: 3,  # Thursday
    5: 4,  # Friday
    6: 5,  # Saturday
    7: 6,  # Sunday
}

DAY_NAMES = ['Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat', 'Sun']
ALL_DAYS_MASK = 0b1111111

_SECONDS_PER_DAY = 24 * 60 * 60


def weekday_bit(day: date) -> int:
    """Mask bit position for the weekday of ``day``"""
    return ISO_WEEKDAY_TO_BIT[day.isoweekday()]


def mask_includes(days_mask: int, day: date) -> bool:
    """True if the weekday of ``day`` is set in ``days_mask``"""
    return (days_mask >> weekday_bit(day)) & 1 == 1


def mask_from_days(day_names: List[str]) -> int:
    """Build a mask from day abbreviations ('Mon', 'Tue', ...)"""
    mask = 0
    for name in day_names:
        mask |= 1 << DAY_NAMES.index(name[:3].title())
    return mask


def describe_mask(days_mask: int) -> str:
    """Human-readable description of a days mask"""
    if days_mask & ALL_DAYS_MASK == ALL_DAYS_MASK:
        return 'Every day'
    if days_mask == 0b0011111:
        return 'Weekdays'
    if days_mask == 0b1100000:
        return 'Weekends'
    return ', '.join(name for bit, name in enumerate(DAY_NAMES) if days_mask >> bit & 1)


def device_now(tz_name: str, now_utc: Optional[datetime] = None) -> datetime:
    """
    Convert a UTC instant to the device's local wall clock

    Args:
        tz_name: IANA timezone name stored on the device
        now_utc: Aware or naive-UTC instant (defaults to the current time)

    Returns:
        Timezone-aware local datetime
    """
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"timezone '{tz_name}' is not a valid IANA timezone")

    if now_utc is None:
        now_utc = datetime.now(ZoneInfo('UTC'))
    elif now_utc.tzinfo is None:
        now_utc = now_utc.replace(tzinfo=ZoneInfo('UTC'))
    return now_utc.astimezone(tz)


def _seconds_into_day(t: time) -> float:
    return t.hour * 3600 + t.minute * 60 + t.second + t.microsecond / 1_000_000


def window_bounds(schedule: Schedule) -> tuple:
    """
    Window of a schedule as seconds since local midnight

    The window never wraps past midnight: it is clipped at 24:00.
    """
    start = schedule.time_of_day.hour * 3600 + schedule.time_of_day.minute * 60
    end = min(start + schedule.window_minutes * 60, _SECONDS_PER_DAY)
    return start, end


def is_scheduled_today(schedule: Schedule, now_local: datetime) -> bool:
    """True iff the day bit for ``now_local``'s date is set; time of day is ignored"""
    return mask_includes(schedule.days_of_week, now_local.date())


def is_due(schedule: Schedule, now_local: datetime) -> bool:
    """
    Check if a dose is currently due

    Due means the day bit is set for today and ``now_local`` falls within
    [time_of_day, time_of_day + window_minutes).
    """
    if not is_scheduled_today(schedule, now_local):
        return False
    start, end = window_bounds(schedule)
    return start <= _seconds_into_day(now_local.time()) < end


def compute_occurrence(schedule: Schedule, now_local: datetime) -> datetime:
    """
    Occurrence relevant at ``now_local``

    Returns the occurrence whose window is currently open, otherwise the next
    future occurrence. The result carries the tzinfo of ``now_local``.
    """
    today = now_local.date()
    for offset in range(8):
        day = today + timedelta(days=offset)
        if not mask_includes(schedule.days_of_week, day):
            continue
        occurrence = datetime.combine(day, schedule.time_of_day, tzinfo=now_local.tzinfo)
        if offset == 0 and is_due(schedule, now_local):
            return occurrence
        if occurrence > now_local:
            return occurrence

    # A nonzero mask always has an occurrence within a week
    raise ValueError(f'Schedule {schedule.id} has an empty days mask')


def upcoming_today(schedules: List[Schedule], now_local: datetime, limit: int = 6) -> List[Dict[str, Any]]:
    """
    Doses still ahead (or currently due) today, earliest first

    Args:
        schedules: Schedules of one device
        now_local: Current device-local time
        limit: Maximum number of entries

    Returns:
        List of dicts ready for JSON serialization
    """
    entries = []
    for schedule in schedules:
        if not is_scheduled_today(schedule, now_local):
            continue
        compartment = schedule.compartment
        if compartment is not None and not compartment.active:
            continue

        due_now = is_due(schedule, now_local)
        occurrence = datetime.combine(now_local.date(), schedule.time_of_day, tzinfo=now_local.tzinfo)
        if occurrence < now_local and not due_now:
            continue

        entries.append({
            'scheduleId': schedule.id,
            'compartmentId': schedule.compartment_id,
            'compartmentIdx': compartment.idx if compartment is not None else None,
            'title': compartment.title if compartment is not None else None,
            'time': schedule.time_of_day.strftime('%H:%M'),
            'scheduledAt': occurrence.isoformat(),
            'dueNow': due_now,
        })

    entries.sort(key=lambda e: e['time'])
    return entries[:limit]
