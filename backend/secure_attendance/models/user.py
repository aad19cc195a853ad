"""User model mirroring the identity collaborator's accounts."""
from enum import Enum

from secure_attendance import db
from secure_attendance.models.base import BaseModel


class UserRole(Enum):
    """User roles enumeration."""
    STUDENT = 'student'
    TEACHER = 'teacher'
    ADMIN = 'admin'


class User(BaseModel):
    """Authenticated principal; credentials live with the identity service."""

    __tablename__ = 'users'

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    student_number = db.Column(db.String(50), unique=True, nullable=True, index=True)
    role = db.Column(db.Enum(UserRole), nullable=False, default=UserRole.STUDENT)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f'<User {self.email}>'
