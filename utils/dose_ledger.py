"""
Dose Ledger
Append-only record of dose outcomes and the adherence metric derived from it
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func

from models import db, Compartment, DoseEvent, DoseSource, DoseStatus, Schedule
from utils.errors import NotFound, ValidationFailure

logger = logging.getLogger(__name__)

# Statuses counted by adherence; skipped doses are excluded on both sides
_DUE_STATUSES = (DoseStatus.TAKEN.value, DoseStatus.LATE.value, DoseStatus.MISSED.value)


def adherence_percent(taken: int, late: int, missed: int) -> int:
    """round(100 * taken / (taken + late + missed)), half-up, 0 when nothing was due"""
    due = taken + late + missed
    if due == 0:
        return 0
    return int(math.floor(100 * taken / due + 0.5))


class DoseLedger:
    """Records dose events; there is deliberately no update or delete path"""

    @staticmethod
    def record(
        device_id: int,
        compartment_id: Optional[int],
        scheduled_at: datetime,
        status: str,
        actual_at: Optional[datetime] = None,
        delta_weight_g: Optional[float] = None,
        source: str = DoseSource.AUTO.value,
        notes: Optional[str] = None,
        schedule_id: Optional[int] = None
    ) -> DoseEvent:
        """
        Append a dose outcome

        The status is taken as asserted by the device; it is not checked
        against the weight delta.

        Args:
            device_id: Reporting device
            compartment_id: Compartment the dose came from (must belong to the device)
            scheduled_at: Intended dose time (naive UTC)
            status: taken, late, missed or skipped
            actual_at: When the dose was confirmed
            delta_weight_g: Scale delta in grams
            source: auto or manual
            notes: Free text
            schedule_id: Schedule the occurrence belongs to

        Returns:
            The created DoseEvent
        """
        try:
            status = DoseStatus(status).value
            source = DoseSource(source).value
        except ValueError as e:
            raise ValidationFailure(str(e))

        if compartment_id is not None:
            compartment = Compartment.query.filter_by(id=compartment_id, device_id=device_id).first()
            if not compartment:
                raise NotFound(f'Compartment {compartment_id} not found')

        if schedule_id is not None:
            schedule = db.session.get(Schedule, schedule_id)
            if not schedule or schedule.compartment_id != compartment_id:
                raise NotFound(f'Schedule {schedule_id} not found')

        event = DoseEvent(
            device_id=device_id,
            compartment_id=compartment_id,
            schedule_id=schedule_id,
            scheduled_at=scheduled_at,
            status=status,
            actual_at=actual_at,
            delta_weight_g=delta_weight_g,
            source=source,
            notes=notes,
        )
        db.session.add(event)
        db.session.commit()

        logger.info(f'Dose event created: {event.id} ({status}) for device {device_id}')
        return event

    @staticmethod
    def status_counts(device_id: int, start: datetime, end: datetime) -> Dict[str, int]:
        """Events per status with scheduled_at in [start, end)"""
        rows = db.session.query(DoseEvent.status, func.count(DoseEvent.id)).filter(
            DoseEvent.device_id == device_id,
            DoseEvent.scheduled_at >= start,
            DoseEvent.scheduled_at < end
        ).group_by(DoseEvent.status).all()

        counts = {s.value: 0 for s in DoseStatus}
        for status, count in rows:
            counts[status] = count
        return counts

    @staticmethod
    def adherence(device_id: int, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Adherence over a time window

        Returns:
            Dict with per-status counts, the due total and the percentage
        """
        counts = DoseLedger.status_counts(device_id, start, end)
        percent = adherence_percent(
            counts[DoseStatus.TAKEN.value],
            counts[DoseStatus.LATE.value],
            counts[DoseStatus.MISSED.value]
        )
        return {
            'counts': counts,
            'due': sum(counts[s] for s in _DUE_STATUSES),
            'adherence': percent,
            'start': start.isoformat(),
            'end': end.isoformat(),
        }
