"""Attendance record: the durable outcome per (student, session) pair."""
from enum import Enum

from secure_attendance import db
from secure_attendance.models.base import BaseModel
from secure_attendance.utils.helpers import isoformat


class AttendanceStatus(Enum):
    """Attendance status enumeration."""
    PRESENT = 'PRESENT'
    LATE = 'LATE'
    REJECTED = 'REJECTED'


SUCCESS_STATUSES = (AttendanceStatus.PRESENT, AttendanceStatus.LATE)


class RiskLevel(Enum):
    """Four-tier fraud risk classification."""
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'
    CRITICAL = 'CRITICAL'


class ReasonCode(Enum):
    """Outcome codes rendered by the student-facing client."""
    ACCEPTED = 'Accepted'
    SESSION_NOT_FOUND = 'SessionNotFound'
    SESSION_NOT_ACTIVE = 'SessionNotActive'
    TOKEN_EXPIRED = 'TokenExpired'
    TOO_EARLY = 'TooEarly'
    OUTSIDE_TIME_WINDOW = 'OutsideTimeWindow'
    OUTSIDE_GEOFENCE = 'OutsideGeofence'
    POOR_LOCATION_ACCURACY = 'PoorLocationAccuracy'
    LOCATION_REQUIRED = 'LocationRequired'
    PHOTO_REQUIRED = 'PhotoRequired'
    NOT_ENROLLED = 'NotEnrolled'
    ALREADY_RECORDED = 'AlreadyRecorded'
    MAX_ATTEMPTS_EXCEEDED = 'MaxAttemptsExceeded'
    FRAUD_REJECTED = 'FraudRejected'


LOCATION_VIOLATIONS = (
    ReasonCode.OUTSIDE_GEOFENCE,
    ReasonCode.POOR_LOCATION_ACCURACY,
    ReasonCode.LOCATION_REQUIRED,
)
TIME_VIOLATIONS = (ReasonCode.TOO_EARLY, ReasonCode.OUTSIDE_TIME_WINDOW)


class AttendanceRecord(BaseModel):
    """Attendance record model.

    The (student_id, session_id) unique constraint is what keeps a pair to a
    single PRESENT/LATE outcome even if two writers race past the lock.
    """

    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'session_id', name='uq_attendance_student_session'),
    )

    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey('attendance_sessions.id'), nullable=False, index=True)
    status = db.Column(db.Enum(AttendanceStatus), nullable=False, default=AttendanceStatus.REJECTED)
    reason_code = db.Column(db.Enum(ReasonCode), nullable=False)
    risk_score = db.Column(db.Integer, nullable=False, default=0)
    risk_level = db.Column(db.Enum(RiskLevel), nullable=False, default=RiskLevel.LOW)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    flagged_for_review = db.Column(db.Boolean, nullable=False, default=False)
    marked_at = db.Column(db.DateTime, nullable=True)

    session = db.relationship('AttendanceSession', backref=db.backref('records', lazy='dynamic'))
    student = db.relationship('User')

    def is_successful(self) -> bool:
        return self.status in SUCCESS_STATUSES

    def to_dict(self):
        """Convert to dictionary (instructor view)."""
        return {
            'id': self.id,
            'student_id': self.student_id,
            'session_id': self.session.session_key if self.session else None,
            'status': self.status.value,
            'reason_code': self.reason_code.value,
            'risk_score': self.risk_score,
            'risk_level': self.risk_level.value,
            'attempt_count': self.attempt_count,
            'flagged_for_review': self.flagged_for_review,
            'marked_at': isoformat(self.marked_at)
        }

    def __repr__(self):
        return f'<AttendanceRecord {self.student_id}-{self.session_id} {self.status.value}>'
