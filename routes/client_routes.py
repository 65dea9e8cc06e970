"""
Client Routes
User-token endpoints used by the web/mobile client: sign-in, device
provisioning, commands, push subscriptions, dashboards and health
"""
from datetime import timedelta
from flask import Blueprint, request, jsonify, current_app, g
from sqlalchemy.exc import IntegrityError

from models import db, Compartment, Device, PushSubscription, Schedule, User, utcnow
from schemas import (
    CommandCreateRequest, DeviceRegisterRequest, PushSubscribeRequest,
    PushUnsubscribeRequest, SelfTestRequest, TokenRequest, parse_request
)
from utils.auth import create_access_token, get_owned_device, optional_user, require_user_token
from utils.command_queue import CommandQueue
from utils.credentials import hash_secret
from utils.dose_ledger import DoseLedger
from utils.errors import AuthenticationFailure, DispatchError, ValidationFailure
from utils.notifications import NotificationService
from utils.schedule_utils import device_now, upcoming_today

client_bp = Blueprint('client', __name__)

# Actuator angle per compartment slot on the three-slot carousel
DEFAULT_SERVO_ANGLES = (0, 90, 180)
MAX_ADHERENCE_DAYS = 365


def _internal_error(action, e):
    db.session.rollback()
    current_app.logger.error(f'Error {action}: {e}')
    return jsonify({'error': 'Internal server error'}), 500


# ============================================================================
# AUTHENTICATION
# ============================================================================

@client_bp.route('/auth/token', methods=['POST'])
def issue_token():
    """
    Exchange username and password for a bearer token

    Request JSON:
    {
        "username": "admin",
        "password": "..."
    }

    Response JSON:
    {
        "accessToken": "...",
        "tokenType": "bearer",
        "expiresIn": 3600
    }
    """
    data = parse_request(TokenRequest, request.get_json(silent=True))

    user = User.query.filter_by(username=data.username).first()
    if not user or not user.is_active or not user.check_password(data.password):
        current_app.logger.warning(f'Failed sign-in for {data.username} from {request.remote_addr}')
        raise AuthenticationFailure('Invalid username or password', error='invalid_credentials')

    expires = current_app.config['JWT_ACCESS_TOKEN_EXPIRES']
    return jsonify({
        'accessToken': create_access_token(user, expires),
        'tokenType': 'bearer',
        'expiresIn': int(expires.total_seconds())
    }), 200


# ============================================================================
# DEVICE PROVISIONING
# ============================================================================

@client_bp.route('/devices', methods=['GET'])
@require_user_token
def list_devices():
    """Devices owned by the current user"""
    devices = g.user.devices.order_by(Device.created_at).all()
    return jsonify({'devices': [d.to_dict() for d in devices]}), 200


@client_bp.route('/devices/register', methods=['POST'])
@require_user_token
def register_device():
    """
    Register a new device or re-provision one the user already owns

    Re-provisioning replaces the stored secret hash, always under the
    current hash scheme.

    Request JSON:
    {
        "serial": "PM-0001",
        "secret": "device-secret",
        "name": "Kitchen dispenser",
        "timezone": "America/Mexico_City"
    }

    Response JSON:
    {
        "deviceId": 1,
        "reprovisioned": false
    }
    """
    try:
        data = parse_request(DeviceRegisterRequest, request.get_json(silent=True))
        user = g.user

        device = Device.query.filter_by(serial=data.serial).first()

        if device:
            if device.user_id != user.id:
                raise ValidationFailure('Serial is already registered to another account')

            device.secret_hash = hash_secret(data.secret)
            device.name = data.name
            if data.timezone:
                device.timezone = data.timezone
            db.session.commit()

            current_app.logger.info(f'Device re-provisioned: {device.serial}')
            return jsonify({'deviceId': device.id, 'reprovisioned': True}), 200

        device = Device(
            name=data.name,
            serial=data.serial,
            secret_hash=hash_secret(data.secret),
            user_id=user.id,
            timezone=data.timezone or current_app.config['DEFAULT_DEVICE_TIMEZONE']
        )
        db.session.add(device)
        db.session.flush()

        for i in range(current_app.config['DEFAULT_COMPARTMENT_COUNT']):
            db.session.add(Compartment(
                device_id=device.id,
                idx=i + 1,
                title=f'Compartment {i + 1}',
                active=True,
                servo_angle_deg=DEFAULT_SERVO_ANGLES[i] if i < len(DEFAULT_SERVO_ANGLES) else None
            ))
        db.session.commit()

        current_app.logger.info(f'New device registered: {device.serial}')
        return jsonify({'deviceId': device.id, 'reprovisioned': False}), 201

    except IntegrityError as e:
        db.session.rollback()
        current_app.logger.warning(f'Device registration conflict: {e}')
        raise ValidationFailure('Serial is already registered')
    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('registering device', e)


# ============================================================================
# REMOTE COMMANDS
# ============================================================================

@client_bp.route('/commands', methods=['POST'])
@require_user_token
def create_command():
    """
    Queue a command for a device the user owns

    Request JSON:
    {
        "deviceId": 1,
        "type": "snooze",
        "payload": {"minutes": 5}
    }

    Response JSON:
    {
        "commandId": 12
    }
    """
    try:
        data = parse_request(CommandCreateRequest, request.get_json(silent=True))
        device = get_owned_device(data.device_id)

        command = CommandQueue.create(device.id, data.kind, data.payload)

        return jsonify({
            'commandId': command.id,
            'command': command.to_dict()
        }), 201

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('creating command', e)


@client_bp.route('/devices/<int:device_id>/commands', methods=['GET'])
@require_user_token
def command_history(device_id):
    """Recent commands for a device, newest first"""
    device = get_owned_device(device_id)
    limit = max(1, min(request.args.get('limit', 50, type=int), 200))

    commands = CommandQueue.history(device.id, limit)
    return jsonify({
        'commands': [cmd.to_dict() for cmd in commands],
        'count': len(commands)
    }), 200


# ============================================================================
# PUSH SUBSCRIPTIONS
# ============================================================================

@client_bp.route('/push/vapid-public-key', methods=['GET'])
def vapid_public_key():
    """Application server key the client subscribes with"""
    return jsonify({'publicKey': current_app.config.get('VAPID_PUBLIC_KEY') or None}), 200


@client_bp.route('/push/subscribe', methods=['POST'])
@require_user_token
def subscribe():
    """
    Register (or refresh) a push endpoint for the current user

    Request JSON:
    {
        "endpoint": "https://push.example/...",
        "keys": {"p256dh": "...", "auth": "..."},
        "deviceInfo": {"userAgent": "..."}
    }
    """
    try:
        data = parse_request(PushSubscribeRequest, request.get_json(silent=True))
        user = g.user

        subscription = PushSubscription.query.filter_by(endpoint=data.endpoint).first()
        created = subscription is None
        if created:
            subscription = PushSubscription(endpoint=data.endpoint)
            db.session.add(subscription)

        subscription.user_id = user.id
        subscription.p256dh = data.keys.p256dh
        subscription.auth = data.keys.auth
        subscription.device_info = data.device_info
        subscription.last_seen = utcnow()
        db.session.commit()

        current_app.logger.info(f'Push subscription {subscription.id} saved for user {user.id}')
        return jsonify({
            'success': True,
            'subscriptionId': subscription.id
        }), 201 if created else 200

    except DispatchError:
        raise
    except Exception as e:
        return _internal_error('saving push subscription', e)


@client_bp.route('/push/subscribe', methods=['DELETE'])
@require_user_token
def unsubscribe():
    """Remove one of the current user's push endpoints"""
    data = parse_request(PushUnsubscribeRequest, request.get_json(silent=True))

    removed = PushSubscription.query.filter_by(
        user_id=g.user.id,
        endpoint=data.endpoint
    ).delete(synchronize_session=False)
    db.session.commit()

    return jsonify({'removed': removed}), 200


@client_bp.route('/push/self-test', methods=['POST'])
@require_user_token
def push_self_test():
    """
    Send a test notification to every endpoint of the current user

    Response JSON:
    {
        "sent": 1,
        "total": 2,
        "removed": 1
    }
    """
    data = parse_request(SelfTestRequest, request.get_json(silent=True) or {})

    result = NotificationService.notify_user(
        g.user.id,
        data.title or 'Test notification',
        data.body or 'Push notifications are working',
        {'route': '/notifications', 'action': 'self_test'}
    )
    return jsonify(result._asdict()), 200


# ============================================================================
# DASHBOARD
# ============================================================================

@client_bp.route('/devices/<int:device_id>/upcoming', methods=['GET'])
@require_user_token
def upcoming_doses(device_id):
    """
    Doses still ahead today in the device's timezone

    Response JSON:
    {
        "deviceId": 1,
        "timezone": "America/Mexico_City",
        "now": "2025-11-03T08:05:00-06:00",
        "upcoming": [{"scheduleId": 4, "time": "08:00", "dueNow": true, ...}]
    }
    """
    device = get_owned_device(device_id)
    now_local = device_now(device.timezone)

    schedules = Schedule.query.join(Compartment).filter(
        Compartment.device_id == device.id
    ).all()

    return jsonify({
        'deviceId': device.id,
        'timezone': device.timezone,
        'now': now_local.isoformat(),
        'upcoming': upcoming_today(schedules, now_local)
    }), 200


@client_bp.route('/devices/<int:device_id>/adherence', methods=['GET'])
@require_user_token
def adherence(device_id):
    """Adherence over the trailing ?days= window (default 7)"""
    device = get_owned_device(device_id)

    days = request.args.get('days', 7, type=int)
    if days is None or not 1 <= days <= MAX_ADHERENCE_DAYS:
        raise ValidationFailure(f'days must be between 1 and {MAX_ADHERENCE_DAYS}')

    end = utcnow()
    start = end - timedelta(days=days)
    summary = DoseLedger.adherence(device.id, start, end)
    summary['deviceId'] = device.id
    summary['days'] = days
    return jsonify(summary), 200


# ============================================================================
# HEALTH CHECK
# ============================================================================

@client_bp.route('/health', methods=['GET'])
def health_check():
    """
    Health check; a valid bearer token adds push and device diagnostics

    Response JSON:
    {
        "ok": true,
        "timestamp": "2025-11-03T10:00:00"
    }
    """
    body = {
        'ok': True,
        'timestamp': utcnow().isoformat()
    }

    user = optional_user()
    if user:
        body.update({
            'hasVapidPublic': bool(current_app.config.get('VAPID_PUBLIC_KEY')),
            'hasVapidPrivate': bool(current_app.config.get('VAPID_PRIVATE_KEY')),
            'pushSubsCount': user.push_subscriptions.count(),
            'devicesCount': user.devices.count()
        })

    return jsonify(body), 200
