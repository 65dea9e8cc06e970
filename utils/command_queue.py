"""
Device Command Queue
Per-device mailbox of commands with a strict lifecycle:

    pending -> ack            (poll hands the command out)
    ack -> done | error       (device reports the outcome)
    pending | ack -> expired  (housekeeping)

done, error and expired are terminal.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import update

from models import db, DeviceCommand, CommandStatus, CommandType, utcnow
from utils.errors import NotFound, StateConflict, ValidationFailure

logger = logging.getLogger(__name__)

_EXPIRABLE = (CommandStatus.PENDING.value, CommandStatus.ACK.value)
_DEVICE_OUTCOMES = (CommandStatus.DONE, CommandStatus.ERROR)


class CommandQueue:
    """Service for creating, handing out and closing device commands"""

    @staticmethod
    def create(device_id: int, kind: str, payload: Optional[Any] = None) -> DeviceCommand:
        """
        Enqueue a command for a device

        No deduplication: the same logical command created twice produces two
        independent queue entries and the device executes both.

        Args:
            device_id: Target device
            kind: CommandType value
            payload: Opaque JSON payload

        Returns:
            The created DeviceCommand
        """
        try:
            command_type = CommandType(kind)
        except ValueError:
            raise ValidationFailure(f'Unknown command type: {kind}')

        command = DeviceCommand(
            device_id=device_id,
            command_type=command_type.value,
            payload=payload,
            status=CommandStatus.PENDING.value,
        )
        db.session.add(command)
        db.session.commit()

        logger.info(f'Command created: {command.id} ({command.command_type}) for device {device_id}')
        return command

    @staticmethod
    def poll(device_id: int, since: Optional[datetime] = None) -> List[DeviceCommand]:
        """
        Hand out every pending command of a device, oldest first

        Each candidate is claimed with a conditional update on its pending
        status, so a command is returned by at most one poll even when the
        same device polls concurrently.

        Args:
            device_id: Polling device
            since: Only consider commands created after this naive-UTC instant

        Returns:
            Commands transitioned to ack by this call
        """
        query = DeviceCommand.query.filter_by(
            device_id=device_id,
            status=CommandStatus.PENDING.value
        )
        if since is not None:
            query = query.filter(DeviceCommand.created_at > since)

        candidates = query.order_by(DeviceCommand.created_at, DeviceCommand.id).all()
        if not candidates:
            return []

        now = utcnow()
        claimed_ids = []
        for command in candidates:
            result = db.session.execute(
                update(DeviceCommand)
                .where(
                    DeviceCommand.id == command.id,
                    DeviceCommand.status == CommandStatus.PENDING.value
                )
                .values(
                    status=CommandStatus.ACK.value,
                    acknowledged_at=now,
                    updated_at=now
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed_ids.append(command.id)
        db.session.commit()

        if not claimed_ids:
            return []

        claimed = DeviceCommand.query.filter(
            DeviceCommand.id.in_(claimed_ids)
        ).order_by(DeviceCommand.created_at, DeviceCommand.id).all()

        logger.info(f'Commands polled: {len(claimed)} for device {device_id}')
        return claimed

    @staticmethod
    def acknowledge(device_id: int, command_id: int, status: str,
                    detail: Optional[str] = None) -> DeviceCommand:
        """
        Close out a delivered command with the device's reported outcome

        Args:
            device_id: Reporting device
            command_id: Command being closed
            status: 'done' or 'error'
            detail: Optional free-text detail merged into the payload

        Returns:
            The updated DeviceCommand

        Raises:
            ValidationFailure: status is not a device outcome
            NotFound: no such command for this device
            StateConflict: command exists but is not currently in ack
        """
        try:
            outcome = CommandStatus(status)
        except ValueError:
            outcome = None
        if outcome not in _DEVICE_OUTCOMES:
            raise ValidationFailure(f'Invalid status. Must be "done" or "error", got "{status}"')

        command = DeviceCommand.query.filter_by(id=command_id, device_id=device_id).first()
        if not command:
            raise NotFound(f'Command {command_id} not found')

        payload = command.payload
        if detail:
            payload = dict(payload) if isinstance(payload, dict) else {}
            payload['detail'] = detail

        now = utcnow()
        result = db.session.execute(
            update(DeviceCommand)
            .where(
                DeviceCommand.id == command_id,
                DeviceCommand.device_id == device_id,
                DeviceCommand.status == CommandStatus.ACK.value
            )
            .values(
                status=outcome.value,
                payload=payload,
                completed_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            db.session.refresh(command)
            logger.warning(
                f'Rejected {outcome.value} report for command {command_id} '
                f'of device {device_id}: current status is {command.status}'
            )
            raise StateConflict(
                f'Command {command_id} is {command.status}, expected ack'
            )

        db.session.commit()
        db.session.refresh(command)

        logger.info(f'Command {command_id} acknowledged as {outcome.value}')
        return command

    @staticmethod
    def expire(command_id: int) -> DeviceCommand:
        """
        Move a single pending or delivered command to expired

        Raises:
            NotFound: no such command
            StateConflict: command already terminal
        """
        command = db.session.get(DeviceCommand, command_id)
        if not command:
            raise NotFound(f'Command {command_id} not found')

        now = utcnow()
        result = db.session.execute(
            update(DeviceCommand)
            .where(
                DeviceCommand.id == command_id,
                DeviceCommand.status.in_(_EXPIRABLE)
            )
            .values(status=CommandStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            db.session.refresh(command)
            raise StateConflict(f'Command {command_id} is {command.status} and cannot expire')

        db.session.commit()
        db.session.refresh(command)
        return command

    @staticmethod
    def expire_stale(older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Expire every pending or delivered command created before the horizon

        Args:
            older_than: Retention horizon
            now: Reference instant (naive UTC, defaults to the current time)

        Returns:
            Number of commands expired
        """
        cutoff = (now or utcnow()) - older_than
        result = db.session.execute(
            update(DeviceCommand)
            .where(
                DeviceCommand.status.in_(_EXPIRABLE),
                DeviceCommand.created_at < cutoff
            )
            .values(status=CommandStatus.EXPIRED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()

        if result.rowcount:
            logger.info(f'Expired {result.rowcount} stale commands created before {cutoff.isoformat()}')
        return result.rowcount

    @staticmethod
    def history(device_id: int, limit: int = 50) -> List[DeviceCommand]:
        """Most recent commands of a device, newest first"""
        return DeviceCommand.query.filter_by(device_id=device_id).order_by(
            DeviceCommand.created_at.desc(),
            DeviceCommand.id.desc()
        ).limit(limit).all()
