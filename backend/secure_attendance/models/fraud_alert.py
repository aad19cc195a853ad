"""Fraud alerts raised for the instructor-facing security view."""
from enum import Enum

from secure_attendance import db
from secure_attendance.models.attendance import RiskLevel
from secure_attendance.models.base import BaseModel
from secure_attendance.utils.helpers import isoformat


class AlertType(Enum):
    """Fraud alert categories."""
    DEVICE_SHARING = 'DEVICE_SHARING'
    RAPID_ATTEMPTS = 'RAPID_ATTEMPTS'
    LOCATION_SPOOFING = 'LOCATION_SPOOFING'
    TIME_MANIPULATION = 'TIME_MANIPULATION'
    PHOTO_REUSE = 'PHOTO_REUSE'
    MULTIPLE_DEVICES = 'MULTIPLE_DEVICES'
    SUSPICIOUS_PATTERN = 'SUSPICIOUS_PATTERN'


class FraudAlert(BaseModel):
    """Fraud alert model."""

    __tablename__ = 'fraud_alerts'

    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey('attendance_sessions.id'), nullable=False, index=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey('scan_attempts.id'), nullable=True)
    alert_type = db.Column(db.Enum(AlertType), nullable=False)
    severity = db.Column(db.Enum(RiskLevel), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    details = db.Column(db.JSON, nullable=True)

    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolution = db.Column(db.Text, nullable=True)

    session = db.relationship('AttendanceSession', backref=db.backref('fraud_alerts', lazy='dynamic'))

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'session_id': self.session.session_key if self.session else None,
            'attempt_id': self.attempt_id,
            'alert_type': self.alert_type.value,
            'severity': self.severity.value,
            'description': self.description,
            'details': self.details,
            'is_resolved': self.is_resolved,
            'resolved_by': self.resolved_by,
            'resolved_at': isoformat(self.resolved_at),
            'resolution': self.resolution,
            'created_at': isoformat(self.created_at)
        }

    def __repr__(self):
        return f'<FraudAlert {self.alert_type.value} {self.severity.value}>'
