"""
Dispenser Hub Database Models
SQLAlchemy ORM models for devices, compartments, schedules, commands,
dose events and push subscriptions
"""
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash, check_password_hash
import enum

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp used for every stored datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CommandType(enum.Enum):
    """Kinds of work a device can be asked to perform"""
    SNOOZE = 'snooze'
    APPLY_CONFIG = 'apply_config'
    REBOOT = 'reboot'


class CommandStatus(enum.Enum):
    """Command lifecycle states"""
    PENDING = 'pending'    # Created, waiting for the device to poll
    ACK = 'ack'            # Handed out by a poll (delivery acknowledgement)
    DONE = 'done'          # Device reported successful execution
    ERROR = 'error'        # Device reported failed execution
    EXPIRED = 'expired'    # Never completed within the retention horizon

    @property
    def is_terminal(self):
        return self in (CommandStatus.DONE, CommandStatus.ERROR, CommandStatus.EXPIRED)


class DoseStatus(enum.Enum):
    """Outcome of one scheduled dose"""
    TAKEN = 'taken'
    LATE = 'late'
    MISSED = 'missed'
    SKIPPED = 'skipped'


class DoseSource(enum.Enum):
    """Who asserted the dose outcome"""
    AUTO = 'auto'
    MANUAL = 'manual'


class User(db.Model):
    """Account that owns devices and push endpoints"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    is_active = db.Column(db.Boolean, default=True)  # type: ignore

    # Relationships
    devices = db.relationship('Device', backref='owner', lazy='dynamic')
    push_subscriptions = db.relationship('PushSubscription', backref='user', lazy='dynamic',
                                         cascade='all, delete-orphan')

    def set_password(self, password):
        """Hash and set password"""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against hash"""
        return check_password_hash(self.password_hash, password)

    def __repr__(self):
        return f'<User {self.username}>'


class Device(db.Model):
    """Pill dispenser unit"""
    __tablename__ = 'devices'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    serial = db.Column(db.String(50), unique=True, nullable=False, index=True)
    secret_hash = db.Column(db.String(255), nullable=False)  # Scheme-tagged, see utils.credentials
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    timezone = db.Column(db.String(64), nullable=False, default='America/Mexico_City')
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=True)

    # Relationships
    compartments = db.relationship('Compartment', backref='device', lazy='dynamic',
                                   order_by='Compartment.idx')
    commands = db.relationship('DeviceCommand', backref='device', lazy='dynamic')
    dose_events = db.relationship('DoseEvent', backref='device', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'serial': self.serial,
            'timezone': self.timezone,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'lastSeen': self.last_seen.isoformat() if self.last_seen else None,
        }

    def __repr__(self):
        return f'<Device {self.name} ({self.serial})>'


class Compartment(db.Model):
    """One physically addressable pill slot"""
    __tablename__ = 'compartments'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False)
    idx = db.Column(db.Integer, nullable=False)  # 1..N, the ESP32 addresses 1..3
    title = db.Column(db.String(100), nullable=False, default='')
    active = db.Column(db.Boolean, default=True, nullable=False)
    expected_pill_weight_g = db.Column(db.Float, nullable=True)
    servo_angle_deg = db.Column(db.Integer, nullable=True)

    # Relationships
    schedules = db.relationship('Schedule', backref='compartment', lazy='dynamic',
                                cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('device_id', 'idx', name='unique_device_compartment_idx'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'idx': self.idx,
            'title': self.title,
            'active': self.active,
            'expectedPillWeightG': self.expected_pill_weight_g,
            'servoAngleDeg': self.servo_angle_deg,
        }

    def __repr__(self):
        return f'<Compartment {self.idx} of Device:{self.device_id}>'


class Schedule(db.Model):
    """Recurring dosing rule attached to a compartment"""
    __tablename__ = 'schedules'

    id = db.Column(db.Integer, primary_key=True)
    compartment_id = db.Column(db.Integer, db.ForeignKey('compartments.id', ondelete='CASCADE'),
                               nullable=False)
    time_of_day = db.Column(db.Time, nullable=False)  # Local to the device timezone
    days_of_week = db.Column(db.Integer, nullable=False, default=127)  # bit 0 = Monday ... bit 6 = Sunday
    window_minutes = db.Column(db.Integer, nullable=False, default=10)
    enable_led = db.Column(db.Boolean, default=True, nullable=False)
    enable_buzzer = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint('days_of_week BETWEEN 1 AND 127', name='check_days_of_week_mask'),
    )

    @validates('days_of_week')
    def validate_days_of_week(self, key, value):
        if not 0 < value <= 0b1111111:
            raise ValueError(f'days_of_week must be a nonzero 7-bit mask, got {value}')
        return value

    @validates('window_minutes')
    def validate_window_minutes(self, key, value):
        if not 0 < value <= 24 * 60:
            raise ValueError(f'window_minutes out of range: {value}')
        return value

    def to_dict(self):
        return {
            'id': self.id,
            'compartmentId': self.compartment_id,
            'timeOfDay': self.time_of_day.strftime('%H:%M'),
            'daysOfWeek': self.days_of_week,
            'windowMinutes': self.window_minutes,
            'enableLed': self.enable_led,
            'enableBuzzer': self.enable_buzzer,
        }

    def __repr__(self):
        return f'<Schedule {self.time_of_day} mask={self.days_of_week:07b}>'


class DeviceCommand(db.Model):
    """Unit of work queued for a device; never deleted"""
    __tablename__ = 'device_commands'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id'), nullable=False, index=True)
    command_type = db.Column(db.String(50), nullable=False)  # snooze, apply_config, reboot
    payload = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), default=CommandStatus.PENDING.value, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    acknowledged_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_pending(self):
        """Check if command is pending"""
        return self.status == CommandStatus.PENDING.value

    @property
    def is_completed(self):
        """Check if command reached a terminal state"""
        return CommandStatus(self.status).is_terminal

    def to_dict(self):
        return {
            'id': self.id,
            'deviceId': self.device_id,
            'type': self.command_type,
            'payload': self.payload,
            'status': self.status,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<DeviceCommand {self.command_type} for Device:{self.device_id} - {self.status}>'


class DoseEvent(db.Model):
    """Recorded outcome of one scheduled dose (append-only)"""
    __tablename__ = 'dose_events'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id'), nullable=False, index=True)
    compartment_id = db.Column(db.Integer, db.ForeignKey('compartments.id'), nullable=True)
    schedule_id = db.Column(db.Integer, db.ForeignKey('schedules.id', ondelete='SET NULL'), nullable=True)
    scheduled_at = db.Column(db.DateTime, nullable=False, index=True)
    actual_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False)
    delta_weight_g = db.Column(db.Float, nullable=True)
    source = db.Column(db.String(20), default=DoseSource.AUTO.value, nullable=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Relationships
    compartment = db.relationship('Compartment')

    def to_dict(self):
        return {
            'id': self.id,
            'deviceId': self.device_id,
            'compartmentId': self.compartment_id,
            'scheduleId': self.schedule_id,
            'scheduledAt': self.scheduled_at.isoformat(),
            'actualAt': self.actual_at.isoformat() if self.actual_at else None,
            'status': self.status,
            'deltaWeightG': self.delta_weight_g,
            'source': self.source,
            'notes': self.notes,
        }

    def __repr__(self):
        return f'<DoseEvent Device:{self.device_id} {self.status} at {self.scheduled_at}>'


class WeightReading(db.Model):
    """Raw scale reading reported by a device"""
    __tablename__ = 'weight_readings'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id'), nullable=False, index=True)
    measured_at = db.Column(db.DateTime, nullable=False, index=True)
    weight_g = db.Column(db.Float, nullable=False)
    raw = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f'<WeightReading Device:{self.device_id} {self.weight_g}g>'


class PushSubscription(db.Model):
    """Web Push endpoint registered by a user's browser or app"""
    __tablename__ = 'push_subscriptions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    endpoint = db.Column(db.Text, unique=True, nullable=False)
    p256dh = db.Column(db.String(255), nullable=False)
    auth = db.Column(db.String(255), nullable=False)
    device_info = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=True)

    def subscription_info(self):
        """Shape expected by the web push sender"""
        return {
            'endpoint': self.endpoint,
            'keys': {
                'p256dh': self.p256dh,
                'auth': self.auth,
            },
        }

    def __repr__(self):
        return f'<PushSubscription {self.id} User:{self.user_id}>'


class ApiLog(db.Model):
    """Device API request log"""
    __tablename__ = 'api_logs'

    id = db.Column(db.Integer, primary_key=True)
    timestamp = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='SET NULL'), nullable=True)
    endpoint = db.Column(db.String(255), nullable=False)
    method = db.Column(db.String(10), nullable=False)
    ip_address = db.Column(db.String(45), nullable=True)
    status_code = db.Column(db.Integer, nullable=False)
    response_time = db.Column(db.Float, nullable=True)  # Response time in milliseconds

    def __repr__(self):
        return f'<ApiLog {self.method} {self.endpoint} - {self.status_code}>'
