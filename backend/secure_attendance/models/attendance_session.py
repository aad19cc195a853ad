"""Attendance session with geofence, security policy and rotating QR token."""
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
import secrets

from secure_attendance import db
from secure_attendance.models.base import BaseModel
from secure_attendance.utils.errors import ValidationError
from secure_attendance.utils.helpers import isoformat


class SessionState(Enum):
    """Session lifecycle states."""
    SCHEDULED = 'SCHEDULED'
    ACTIVE = 'ACTIVE'
    ENDED = 'ENDED'
    CANCELLED = 'CANCELLED'


TERMINAL_STATES = (SessionState.ENDED, SessionState.CANCELLED)


@dataclass(frozen=True)
class Geofence:
    """Circular boundary a scan's reported location must fall within."""

    latitude: float
    longitude: float
    radius_meters: float

    @classmethod
    def from_dict(cls, data: Any, min_radius: float = 1.0, max_radius: float = 50000.0) -> 'Geofence':
        if not isinstance(data, dict):
            raise ValidationError("geofence must be an object")
        try:
            latitude = float(data['latitude'])
            longitude = float(data['longitude'])
            radius = float(data['radius_meters'])
        except KeyError as e:
            raise ValidationError(f"geofence.{e.args[0]} is required")
        except (TypeError, ValueError):
            raise ValidationError("geofence values must be numeric")

        if not -90.0 <= latitude <= 90.0:
            raise ValidationError("geofence.latitude must be between -90 and 90")
        if not -180.0 <= longitude <= 180.0:
            raise ValidationError("geofence.longitude must be between -180 and 180")
        if not min_radius <= radius <= max_radius:
            raise ValidationError(
                f"geofence.radius_meters must be between {min_radius:g} and {max_radius:g}"
            )
        return cls(latitude=latitude, longitude=longitude, radius_meters=radius)


@dataclass(frozen=True)
class SecurityConfig:
    """Fixed per-session security policy, validated at creation time."""

    location_required: bool = True
    photo_required: bool = False
    device_check_required: bool = True
    fraud_detection_enabled: bool = True
    max_attempts: int = 3
    grace_period_seconds: int = 600

    MAX_ATTEMPTS_LIMIT = 20
    MAX_GRACE_PERIOD_SECONDS = 4 * 3600

    @classmethod
    def from_dict(cls, data: Optional[Dict], **defaults) -> 'SecurityConfig':
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValidationError(f"Unknown security_config field(s): {', '.join(unknown)}")

        values = {name: defaults[name] for name in known if name in defaults}
        values.update(data)

        for name in ('location_required', 'photo_required',
                     'device_check_required', 'fraud_detection_enabled'):
            if name in values and not isinstance(values[name], bool):
                raise ValidationError(f"security_config.{name} must be a boolean")

        for name, upper in (('max_attempts', cls.MAX_ATTEMPTS_LIMIT),
                            ('grace_period_seconds', cls.MAX_GRACE_PERIOD_SECONDS)):
            if name not in values:
                continue
            value = values[name]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"security_config.{name} must be an integer")
            lower = 1 if name == 'max_attempts' else 0
            if not lower <= value <= upper:
                raise ValidationError(f"security_config.{name} must be between {lower} and {upper}")

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AttendanceSession(BaseModel):
    """One class meeting window in which students prove presence."""

    __tablename__ = 'attendance_sessions'

    session_key = db.Column(db.String(64), unique=True, nullable=False, index=True,
                            default=lambda: secrets.token_urlsafe(16))
    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False, index=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    title = db.Column(db.String(255), nullable=True)

    # Geofence
    center_latitude = db.Column(db.Float, nullable=False)
    center_longitude = db.Column(db.Float, nullable=False)
    radius_meters = db.Column(db.Float, nullable=False)

    # Window
    open_time = db.Column(db.DateTime, nullable=False)
    close_time = db.Column(db.DateTime, nullable=False)

    # Security configuration
    location_required = db.Column(db.Boolean, nullable=False, default=True)
    photo_required = db.Column(db.Boolean, nullable=False, default=False)
    device_check_required = db.Column(db.Boolean, nullable=False, default=True)
    fraud_detection_enabled = db.Column(db.Boolean, nullable=False, default=True)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    grace_period_seconds = db.Column(db.Integer, nullable=False, default=600)

    # Lifecycle
    state = db.Column(db.Enum(SessionState), nullable=False, default=SessionState.SCHEDULED, index=True)
    activated_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    # Rotating token; readers compare versions, never wall-clock order
    token_version = db.Column(db.Integer, nullable=False, default=0)
    current_token = db.Column(db.String(512), nullable=True)
    token_issued_at = db.Column(db.DateTime, nullable=True)

    course = db.relationship('Course', backref=db.backref('sessions', lazy='dynamic'))
    owner = db.relationship('User')

    @property
    def geofence(self) -> Geofence:
        return Geofence(self.center_latitude, self.center_longitude, self.radius_meters)

    @property
    def security_config(self) -> SecurityConfig:
        return SecurityConfig(
            location_required=self.location_required,
            photo_required=self.photo_required,
            device_check_required=self.device_check_required,
            fraud_detection_enabled=self.fraud_detection_enabled,
            max_attempts=self.max_attempts,
            grace_period_seconds=self.grace_period_seconds
        )

    def apply_security_config(self, config: SecurityConfig) -> None:
        for key, value in config.to_dict().items():
            setattr(self, key, value)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(seconds=self.grace_period_seconds)

    @property
    def present_deadline(self) -> datetime:
        """Scans received before this instant are PRESENT, later ones LATE."""
        return self.open_time + self.grace_period

    @property
    def admission_deadline(self) -> datetime:
        """Last instant at which a scan is admitted at all."""
        return self.close_time + self.grace_period

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = {
            'session_id': self.session_key,
            'course_id': self.course_id,
            'owner_id': self.owner_id,
            'title': self.title,
            'state': self.state.value,
            'geofence': {
                'latitude': self.center_latitude,
                'longitude': self.center_longitude,
                'radius_meters': self.radius_meters
            },
            'open_time': isoformat(self.open_time),
            'close_time': isoformat(self.close_time),
            'security_config': self.security_config.to_dict(),
            'token_version': self.token_version,
            'activated_at': isoformat(self.activated_at),
            'ended_at': isoformat(self.ended_at),
            'cancelled_at': isoformat(self.cancelled_at)
        }
        if include_token:
            data['token'] = self.current_token
            data['token_issued_at'] = isoformat(self.token_issued_at)
        return data

    def __repr__(self):
        return f'<AttendanceSession {self.session_key} {self.state.value}>'
