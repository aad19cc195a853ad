"""Course/enrollment lookups used by the verifier."""
from secure_attendance.models.course import Course, Enrollment


class EnrollmentDirectory:
    """Answers whether a student belongs to a session's course."""

    @staticmethod
    def is_enrolled(student_id: int, course_id: int) -> bool:
        return Enrollment.query.join(Course).filter(
            Enrollment.student_id == student_id,
            Enrollment.course_id == course_id,
            Enrollment.is_active.is_(True),
            Course.is_active.is_(True)
        ).first() is not None
