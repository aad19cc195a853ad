"""Shared fixtures for the attendance engine tests."""
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from secure_attendance import create_app, db
from secure_attendance.models.attendance_session import Geofence, SecurityConfig
from secure_attendance.models.course import Course, Enrollment
from secure_attendance.models.user import User, UserRole
from secure_attendance.services import get_engine
from secure_attendance.services.geo_service import ReportedLocation
from secure_attendance.services.scan_verifier import ScanRequest

# Cairo lecture hall used throughout
CAIRO = (30.0444, 31.2357)
BASE_TIME = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def app():
    """Create test app."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def engine(app):
    return get_engine()


@pytest.fixture
def teacher(app):
    return User(email='teacher@example.com', name='Dr. Teacher', role=UserRole.TEACHER).save()


@pytest.fixture
def student(app):
    return User(email='student.a@example.com', name='Student A',
                student_number='S-1001', role=UserRole.STUDENT).save()


@pytest.fixture
def other_student(app):
    return User(email='student.b@example.com', name='Student B',
                student_number='S-1002', role=UserRole.STUDENT).save()


@pytest.fixture
def outsider(app):
    """A student who is not enrolled in the course."""
    return User(email='outsider@example.com', name='Outsider',
                student_number='S-9999', role=UserRole.STUDENT).save()


@pytest.fixture
def course(app, teacher, student, other_student):
    course = Course(code='CS101', title='Intro to Computing', instructor_id=teacher.id).save()
    Enrollment(course_id=course.id, student_id=student.id).save()
    Enrollment(course_id=course.id, student_id=other_student.id).save()
    return course


@pytest.fixture
def make_session(engine, teacher, course):
    """Factory for sessions at the Cairo geofence, active from BASE_TIME."""

    def _make(activate=True, radius=500.0, open_time=BASE_TIME,
              duration=timedelta(hours=1), **security):
        session = engine.sessions.open(
            owner_id=teacher.id,
            course_id=course.id,
            geofence=Geofence(CAIRO[0], CAIRO[1], radius),
            security_config=SecurityConfig(**security),
            open_time=open_time,
            close_time=open_time + duration,
            title='Lecture 1'
        )
        if activate:
            session = engine.sessions.get(session.session_key, open_time)
        return session

    return _make


@pytest.fixture
def scan():
    """Build a ScanRequest that passes every check unless overridden."""

    def _scan(student, session, token=None, at=BASE_TIME + timedelta(minutes=1),
              location=ReportedLocation(CAIRO[0], CAIRO[1], 10.0), **kwargs):
        return ScanRequest(
            student_id=student.id,
            session_key=session.session_key,
            token=session.current_token if token is None else token,
            location=location,
            received_at=at,
            **kwargs
        )

    return _scan


@pytest.fixture
def auth_headers(app):
    """Bearer headers for a user, as the identity service would issue them."""

    def _headers(user):
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}

    return _headers
