"""Instructor endpoints: session lifecycle and rotating QR tokens."""
from flask import Blueprint, current_app, g, request
from flask_jwt_extended import jwt_required

from secure_attendance import limiter
from secure_attendance.models.attendance_session import Geofence, SecurityConfig
from secure_attendance.models.course import Course
from secure_attendance.services import get_engine
from secure_attendance.services.qr_service import QRTokenService
from secure_attendance.utils.decorators import require_owner, teacher_required
from secure_attendance.utils.errors import ValidationError
from secure_attendance.utils.helpers import isoformat, success_response
from secure_attendance.utils.validators import Validator

sessions_bp = Blueprint('sessions', __name__)


@sessions_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Session service is running')


@sessions_bp.route('', methods=['POST'])
@jwt_required()
@teacher_required
def create_session():
    """Schedule a new attendance session for one of the teacher's courses."""
    data = Validator.require(request.get_json(silent=True),
                             ['course_id', 'geofence', 'open_time', 'close_time'])
    config = current_app.config

    try:
        course_id = int(data['course_id'])
    except (TypeError, ValueError):
        raise ValidationError("course_id must be an integer")

    course = Course.get_by_id(course_id)
    if course is None:
        raise ValidationError(f"Course {course_id} not found")
    require_owner(course.instructor_id)

    geofence = Geofence.from_dict(
        data['geofence'],
        min_radius=config['MIN_GEOFENCE_RADIUS_METERS'],
        max_radius=config['MAX_GEOFENCE_RADIUS_METERS']
    )
    security_config = SecurityConfig.from_dict(
        data.get('security_config'),
        max_attempts=config['DEFAULT_MAX_ATTEMPTS'],
        grace_period_seconds=config['DEFAULT_GRACE_PERIOD_SECONDS']
    )

    title = data.get('title')
    if title is not None and (not isinstance(title, str) or len(title) > 255):
        raise ValidationError("title must be a string of at most 255 characters")

    session = get_engine().sessions.open(
        owner_id=g.current_user.id,
        course_id=course.id,
        geofence=geofence,
        security_config=security_config,
        open_time=Validator.timestamp(data['open_time'], 'open_time'),
        close_time=Validator.timestamp(data['close_time'], 'close_time'),
        title=title
    )

    return success_response(
        data=session.to_dict(),
        message="Session scheduled successfully",
        status_code=201
    )


@sessions_bp.route('/<session_key>', methods=['GET'])
@jwt_required()
@teacher_required
def get_session(session_key):
    """Session details (no token)."""
    session = get_engine().sessions.get(session_key)
    require_owner(session.owner_id)
    return success_response(data=session.to_dict())


@sessions_bp.route('/<session_key>/token', methods=['POST'])
@jwt_required()
@teacher_required
@limiter.limit("120 per minute")
def issue_token(session_key):
    """Rotate the session token; the previous token stops validating at once."""
    store = get_engine().sessions
    require_owner(store.get(session_key).owner_id)

    token = store.rotate_token(session_key)
    return success_response(
        data=_token_payload(store.get(session_key), token),
        message="Token rotated"
    )


@sessions_bp.route('/<session_key>/token', methods=['GET'])
@jwt_required()
@teacher_required
def current_token(session_key):
    """Current token for projection, with its QR image."""
    store = get_engine().sessions
    session = store.get(session_key)
    require_owner(session.owner_id)

    token = store.current_token(session_key)
    return success_response(data=_token_payload(session, token))


@sessions_bp.route('/<session_key>/activate', methods=['POST'])
@jwt_required()
@teacher_required
def activate_session(session_key):
    store = get_engine().sessions
    require_owner(store.get(session_key).owner_id)

    session = store.activate(session_key)
    return success_response(data=session.to_dict(), message="Session activated")


@sessions_bp.route('/<session_key>/close', methods=['POST'])
@jwt_required()
@teacher_required
def close_session(session_key):
    store = get_engine().sessions
    require_owner(store.get(session_key).owner_id)

    session = store.close(session_key)
    return success_response(data=session.to_dict(), message="Session closed")


@sessions_bp.route('/<session_key>/cancel', methods=['POST'])
@jwt_required()
@teacher_required
def cancel_session(session_key):
    store = get_engine().sessions
    require_owner(store.get(session_key).owner_id)

    session = store.cancel(session_key)
    return success_response(data=session.to_dict(), message="Session cancelled")


@sessions_bp.route('/<session_key>/status', methods=['GET'])
@jwt_required()
@teacher_required
def session_status(session_key):
    """State and record counts."""
    store = get_engine().sessions
    require_owner(store.get(session_key).owner_id)
    return success_response(data=store.status(session_key))


# =================== HELPER FUNCTIONS ===================

def _token_payload(session, token):
    return {
        'session_id': session.session_key,
        'token': token,
        'token_version': session.token_version,
        'issued_at': isoformat(session.token_issued_at),
        'rotation_seconds': current_app.config['TOKEN_ROTATION_SECONDS'],
        'qr_image': QRTokenService.render_qr(token)
    }
