"""Observed device signatures per student."""
from secure_attendance import db
from secure_attendance.models.base import BaseModel
from secure_attendance.utils.helpers import isoformat


class DeviceFingerprint(BaseModel):
    """A device signature seen for one student."""

    __tablename__ = 'device_fingerprints'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'fingerprint', name='uq_device_student_fingerprint'),
    )

    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    fingerprint = db.Column(db.String(128), nullable=False, index=True)
    first_seen = db.Column(db.DateTime, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=False, index=True)
    seen_count = db.Column(db.Integer, nullable=False, default=1)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'fingerprint': self.fingerprint,
            'first_seen': isoformat(self.first_seen),
            'last_seen': isoformat(self.last_seen),
            'seen_count': self.seen_count,
            'is_active': self.is_active
        }

    def __repr__(self):
        return f'<DeviceFingerprint {self.student_id} {self.fingerprint[:12]}>'
