"""Course and enrollment models (course/enrollment collaborator)."""
from secure_attendance import db
from secure_attendance.models.base import BaseModel


class Course(BaseModel):
    """Course taught by one instructor."""

    __tablename__ = 'courses'

    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    instructor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    instructor = db.relationship('User', backref=db.backref('courses', lazy='dynamic'))
    enrollments = db.relationship('Enrollment', backref='course', lazy='dynamic')

    def __repr__(self):
        return f'<Course {self.code}>'


class Enrollment(BaseModel):
    """A student's membership in a course."""

    __tablename__ = 'enrollments'
    __table_args__ = (
        db.UniqueConstraint('course_id', 'student_id', name='uq_enrollment_course_student'),
    )

    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self):
        return f'<Enrollment {self.student_id}-{self.course_id}>'
