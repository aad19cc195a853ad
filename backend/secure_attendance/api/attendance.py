"""Attendance API: student scan submission and instructor record views."""
from flask import Blueprint, current_app, g, request
from flask_jwt_extended import jwt_required

from secure_attendance import limiter
from secure_attendance.models.attendance import AttendanceRecord, AttendanceStatus
from secure_attendance.models.scan_attempt import ScanAttempt
from secure_attendance.services import get_engine
from secure_attendance.services.scan_verifier import ScanRequest
from secure_attendance.utils.decorators import require_owner, student_required, teacher_required
from secure_attendance.utils.errors import ValidationError
from secure_attendance.utils.helpers import decision_response, success_response, utcnow

attendance_bp = Blueprint('attendance', __name__)


def _scan_rate_limit():
    return current_app.config['SCAN_RATE_LIMIT']


@attendance_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Attendance service is running')


@attendance_bp.route('/scan', methods=['POST'])
@jwt_required()
@student_required
@limiter.limit(_scan_rate_limit)
def submit_scan():
    """Verify a QR scan and record attendance.

    The response carries only the status, reason code and risk level; the
    fraud evidence stays on the instructor side.
    """
    # Receipt time is taken before any parsing or locking
    received_at = utcnow()
    scan = ScanRequest.from_payload(g.current_user.id, request.get_json(silent=True), received_at)

    decision = get_engine().verifier.verify(scan)
    return decision_response(decision)


@attendance_bp.route('/sessions/<session_key>/records', methods=['GET'])
@jwt_required()
@teacher_required
def session_records(session_key):
    """Attendance records for a session (instructor view)."""
    session = get_engine().sessions.get(session_key)
    require_owner(session.owner_id)

    query = AttendanceRecord.query.filter_by(session_id=session.id)
    status = request.args.get('status')
    if status:
        try:
            query = query.filter(AttendanceRecord.status == AttendanceStatus(status.upper()))
        except ValueError:
            raise ValidationError(f"Unknown status: {status}")
    if request.args.get('flagged', '').lower() == 'true':
        query = query.filter(AttendanceRecord.flagged_for_review.is_(True))

    records = query.order_by(AttendanceRecord.student_id).all()
    return success_response(data={
        'session_id': session.session_key,
        'records': [record.to_dict() for record in records],
        'total': len(records)
    })


@attendance_bp.route('/sessions/<session_key>/attempts', methods=['GET'])
@jwt_required()
@teacher_required
def session_attempts(session_key):
    """Scan attempts with their fraud signals (instructor view)."""
    session = get_engine().sessions.get(session_key)
    require_owner(session.owner_id)

    page = max(1, request.args.get('page', 1, type=int))
    per_page = min(
        max(1, request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)),
        current_app.config['MAX_PAGE_SIZE']
    )

    query = ScanAttempt.query.filter_by(session_id=session.id)
    student_id = request.args.get('student_id', type=int)
    if student_id:
        query = query.filter_by(student_id=student_id)

    pagination = query.order_by(ScanAttempt.received_at.desc(), ScanAttempt.id.desc()) \
        .paginate(page=page, per_page=per_page, error_out=False)

    return success_response(data={
        'session_id': session.session_key,
        'attempts': [attempt.to_dict() for attempt in pagination.items],
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    })
