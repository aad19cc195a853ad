"""Append-only log of every scan attempt and the decision it received."""
from sqlalchemy import event

from secure_attendance import db
from secure_attendance.models.attendance import AttendanceStatus, ReasonCode, RiskLevel
from secure_attendance.models.base import BaseModel
from secure_attendance.utils.helpers import isoformat


class ScanAttempt(BaseModel):
    """One verification request as received, plus its outcome."""

    __tablename__ = 'scan_attempts'

    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    # Null when the presented session key did not resolve
    session_id = db.Column(db.Integer, db.ForeignKey('attendance_sessions.id'), nullable=True, index=True)
    session_key = db.Column(db.String(64), nullable=False)

    # Request
    presented_token = db.Column(db.String(512), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    accuracy_meters = db.Column(db.Float, nullable=True)
    device_fingerprint = db.Column(db.String(128), nullable=True, index=True)
    photo_hash = db.Column(db.String(128), nullable=True)
    client_timestamp = db.Column(db.DateTime, nullable=True)
    received_at = db.Column(db.DateTime, nullable=False, index=True)

    # Outcome
    accepted = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.Enum(AttendanceStatus), nullable=True)
    reason_code = db.Column(db.Enum(ReasonCode), nullable=False)
    risk_score = db.Column(db.Integer, nullable=True)
    risk_level = db.Column(db.Enum(RiskLevel), nullable=True)
    flagged_for_review = db.Column(db.Boolean, nullable=False, default=False)
    distance_meters = db.Column(db.Float, nullable=True)
    device_shared = db.Column(db.Boolean, nullable=False, default=False)
    device_changed = db.Column(db.Boolean, nullable=False, default=False)
    signals = db.Column(db.JSON, nullable=True)

    session = db.relationship('AttendanceSession', backref=db.backref('attempts', lazy='dynamic'))

    def to_dict(self):
        """Convert to dictionary (instructor view)."""
        return {
            'id': self.id,
            'student_id': self.student_id,
            'session_id': self.session_key,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'accuracy_meters': self.accuracy_meters,
            'device_fingerprint': self.device_fingerprint,
            'client_timestamp': isoformat(self.client_timestamp),
            'received_at': isoformat(self.received_at),
            'accepted': self.accepted,
            'status': self.status.value if self.status else None,
            'reason_code': self.reason_code.value,
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value if self.risk_level else None,
            'flagged_for_review': self.flagged_for_review,
            'distance_meters': self.distance_meters,
            'device_shared': self.device_shared,
            'device_changed': self.device_changed,
            'signals': self.signals
        }

    def __repr__(self):
        return f'<ScanAttempt {self.student_id}@{self.session_key} {self.reason_code.value}>'


@event.listens_for(ScanAttempt, 'before_update')
def _refuse_attempt_updates(mapper, connection, target):
    raise ValueError("ScanAttempt rows are append-only")
