"""
API Routes Blueprint
Device-authenticated endpoints: alarms, command polling and acknowledgement,
dose and weight reporting, configuration fetch
"""
import logging
from datetime import datetime
from flask import Blueprint, request, jsonify, current_app, g

from models import db, Compartment, Device, Schedule, WeightReading
from schemas import (
    AlarmStartRequest, CommandAckRequest, DoseEventRequest, WeightsBulkRequest,
    parse_request, to_naive_utc
)
from utils.auth import (
    authenticate_device, get_owned_device, require_device_auth, user_from_token,
    SERIAL_HEADER, SECRET_HEADER
)
from utils.command_queue import CommandQueue
from utils.dose_ledger import DoseLedger
from utils.errors import DispatchError, NotFound, ValidationFailure
from utils.notifications import NotificationService
from utils.schedule_utils import device_now

api_bp = Blueprint('api', __name__)

# Setup API logger
api_logger = logging.getLogger('api')

# Compartments the ESP32 firmware can address
MAX_DEVICE_COMPARTMENT_IDX = 3


def _internal_error(action, e):
    db.session.rollback()
    current_app.logger.error(f'Error {action}: {e}')
    return jsonify({'error': 'Internal server error'}), 500


def _parse_since(value):
    """Parse the optional ?since= poll filter into naive UTC"""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationFailure(f'Invalid since timestamp: {value}')
    return to_naive_utc(parsed)


# ============================================================================
# ALARMS
# ============================================================================

@api_bp.route('/alarm/start', methods=['POST'])
@require_device_auth
def alarm_start():
    """
    Device signals that a dose alarm started; notify the owner

    Request JSON:
    {
        "serial": "PM-0001",
        "secret": "...",
        "compartmentId": 1,
        "scheduledAt": "2025-11-03T14:00:00Z",
        "scheduleId": 4,
        "title": "optional override"
    }

    Response JSON:
    {
        "success": true,
        "notificationsSent": 2,
        "total": 3
    }
    """
    try:
        data = parse_request(AlarmStartRequest, request.get_json(silent=True))
        device = g.device

        compartment = Compartment.query.filter_by(
            id=data.compartment_id,
            device_id=device.id
        ).first()
        if not compartment:
            raise NotFound(f'Compartment {data.compartment_id} not found')

        if data.schedule_id is not None:
            schedule = Schedule.query.filter_by(
                id=data.schedule_id,
                compartment_id=compartment.id
            ).first()
            if not schedule:
                raise NotFound(f'Schedule {data.schedule_id} not found')

        local_time = device_now(device.timezone, data.scheduled_at)
        result = NotificationService.send_dose_alarm(
            device, compartment, data.scheduled_at, local_time, data.title
        )

        current_app.logger.info(
            f'Alarm started for device {device.serial} compartment {compartment.idx}: '
            f'{result.sent}/{result.total} notifications sent'
        )
        return jsonify({
            'success': True,
            'notificationsSent': result.sent,
            'total': result.total
        }), 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('starting alarm', e)


# ============================================================================
# REMOTE COMMANDS
# ============================================================================

@api_bp.route('/commands/poll', methods=['GET'])
@require_device_auth
def poll_commands():
    """
    Hand out pending commands for the device (pending -> ack)

    Headers: X-Device-Serial, X-Device-Secret
    Query: ?since=<ISO timestamp>

    Response JSON:
    {
        "commands": [
            {"id": 1, "type": "snooze", "payload": {"minutes": 5}, "status": "ack", ...}
        ],
        "count": 1
    }
    """
    try:
        since = _parse_since(request.args.get('since'))
        commands = CommandQueue.poll(g.device.id, since)

        return jsonify({
            'commands': [cmd.to_dict() for cmd in commands],
            'count': len(commands)
        }), 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('polling commands', e)


@api_bp.route('/commands/ack', methods=['POST'])
@require_device_auth
def acknowledge_command():
    """
    Report the execution outcome of a delivered command

    Request JSON:
    {
        "serial": "PM-0001",
        "secret": "...",
        "commandId": 1,
        "status": "done",      # or "error"
        "detail": "optional text"
    }
    """
    try:
        data = parse_request(CommandAckRequest, request.get_json(silent=True))
        command = CommandQueue.acknowledge(g.device.id, data.command_id, data.status, data.detail)

        return jsonify({
            'success': True,
            'command': command.to_dict()
        }), 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('acknowledging command', e)


# ============================================================================
# DOSE AND WEIGHT REPORTING
# ============================================================================

@api_bp.route('/events/dose', methods=['POST'])
@require_device_auth
def report_dose():
    """
    Append a dose outcome to the ledger

    Request JSON:
    {
        "compartmentId": 1,
        "scheduleId": 4,
        "scheduledAt": "2025-11-03T14:00:00Z",
        "status": "taken",
        "actualAt": "2025-11-03T14:02:11Z",
        "deltaWeightG": -0.42,
        "source": "auto",
        "notes": "optional"
    }
    """
    try:
        data = parse_request(DoseEventRequest, request.get_json(silent=True))

        event = DoseLedger.record(
            device_id=g.device.id,
            compartment_id=data.compartment_id,
            scheduled_at=to_naive_utc(data.scheduled_at),
            status=data.status,
            actual_at=to_naive_utc(data.actual_at),
            delta_weight_g=data.delta_weight_g,
            source=data.source,
            notes=data.notes,
            schedule_id=data.schedule_id
        )

        return jsonify({
            'success': True,
            'event': event.to_dict()
        }), 201

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('recording dose event', e)


@api_bp.route('/weights/bulk', methods=['POST'])
@require_device_auth
def report_weights():
    """
    Store a batch of scale readings

    Request JSON:
    {
        "readings": [
            {"measuredAt": "2025-11-03T14:00:00Z", "weightG": 12.5, "raw": {...}}
        ]
    }
    """
    try:
        data = parse_request(WeightsBulkRequest, request.get_json(silent=True))
        device = g.device

        rows = [
            WeightReading(
                device_id=device.id,
                measured_at=to_naive_utc(reading.measured_at),
                weight_g=reading.weight_g,
                raw=reading.raw
            )
            for reading in data.readings
        ]
        db.session.add_all(rows)
        db.session.commit()

        current_app.logger.info(f'Stored {len(rows)} weight readings for device {device.serial}')
        return jsonify({'inserted': len(rows)}), 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('storing weight readings', e)


# ============================================================================
# DEVICE CONFIGURATION
# ============================================================================

def _config_device():
    """Resolve the device either from a user token (?deviceId=) or from device credentials"""
    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        g.user = user_from_token(auth_header.split(' ', 1)[1].strip())
        device_id = request.args.get('deviceId', type=int)
        if device_id is None:
            raise ValidationFailure('deviceId query parameter is required')
        return get_owned_device(device_id)

    return authenticate_device(
        request.headers.get(SERIAL_HEADER),
        request.headers.get(SECRET_HEADER)
    )


@api_bp.route('/devices/config', methods=['GET'])
def device_config():
    """
    Get compartments and schedules for a device

    Auth: X-Device-Serial / X-Device-Secret headers, or a user bearer token
    with ?deviceId=<id>

    Response JSON:
    {
        "deviceId": 1,
        "timezone": "America/Mexico_City",
        "compartments": [{..., "schedules": [...]}]
    }
    """
    try:
        device: Device = _config_device()

        compartments = device.compartments.filter(
            Compartment.idx <= MAX_DEVICE_COMPARTMENT_IDX
        ).all()

        compartment_list = []
        for compartment in compartments:
            entry = compartment.to_dict()
            entry['schedules'] = [s.to_dict() for s in compartment.schedules]
            compartment_list.append(entry)

        return jsonify({
            'deviceId': device.id,
            'timezone': device.timezone,
            'compartments': compartment_list
        }), 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('fetching device config', e)


# Setup API logger file handler
def setup_api_logger(app):
    """Setup API-specific file logger"""
    handler = logging.FileHandler(app.config['API_LOG_FILE'])
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    api_logger.addHandler(handler)
    api_logger.setLevel(logging.INFO)
