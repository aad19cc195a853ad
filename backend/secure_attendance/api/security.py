"""Security API: fraud metrics, alerts and exports for instructors."""
import io

from flask import Blueprint, current_app, g, request, send_file
from flask_jwt_extended import jwt_required
import pandas as pd

from secure_attendance import db
from secure_attendance.models.attendance_session import AttendanceSession
from secure_attendance.models.course import Course
from secure_attendance.models.fraud_alert import AlertType, FraudAlert
from secure_attendance.models.user import UserRole
from secure_attendance.services import get_engine
from secure_attendance.utils.decorators import require_owner, teacher_required
from secure_attendance.utils.errors import ValidationError
from secure_attendance.utils.helpers import error_response, success_response, utcnow

security_bp = Blueprint('security', __name__)


@security_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Security service is running')


@security_bp.route('/sessions/<session_key>/metrics', methods=['GET'])
@jwt_required()
@teacher_required
def session_metrics(session_key):
    """Security metrics for one session."""
    engine = get_engine()
    session = engine.sessions.get(session_key)
    require_owner(session.owner_id)

    metrics = engine.analytics.summarize([session.session_key])
    return success_response(data={
        'session_id': session.session_key,
        'metrics': metrics.to_dict()
    })


@security_bp.route('/courses/<int:course_id>/metrics', methods=['GET'])
@jwt_required()
@teacher_required
def course_metrics(course_id):
    """Security metrics across every session of a course."""
    course = Course.get_by_id(course_id)
    if course is None:
        return error_response("Course not found", 404)
    require_owner(course.instructor_id)

    metrics = get_engine().analytics.summarize_course(course.id)
    return success_response(data={
        'course_id': course.id,
        'course_code': course.code,
        'sessions': course.sessions.count(),
        'metrics': metrics.to_dict()
    })


@security_bp.route('/alerts', methods=['GET'])
@jwt_required()
@teacher_required
def list_alerts():
    """Fraud alerts on the teacher's sessions, newest first."""
    query = FraudAlert.query.join(AttendanceSession, FraudAlert.session_id == AttendanceSession.id)
    if g.current_user.role != UserRole.ADMIN:
        query = query.filter(AttendanceSession.owner_id == g.current_user.id)

    session_key = request.args.get('session_id')
    if session_key:
        query = query.filter(AttendanceSession.session_key == session_key)

    resolved = request.args.get('resolved')
    if resolved is not None:
        query = query.filter(FraudAlert.is_resolved.is_(resolved.lower() == 'true'))

    alert_type = request.args.get('type')
    if alert_type:
        try:
            query = query.filter(FraudAlert.alert_type == AlertType(alert_type.upper()))
        except ValueError:
            raise ValidationError(f"Unknown alert type: {alert_type}")

    page = max(1, request.args.get('page', 1, type=int))
    per_page = min(
        max(1, request.args.get('per_page', current_app.config['DEFAULT_PAGE_SIZE'], type=int)),
        current_app.config['MAX_PAGE_SIZE']
    )
    pagination = query.order_by(FraudAlert.created_at.desc(), FraudAlert.id.desc()) \
        .paginate(page=page, per_page=per_page, error_out=False)

    return success_response(data={
        'alerts': [alert.to_dict() for alert in pagination.items],
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': pagination.total,
            'pages': pagination.pages
        }
    })


@security_bp.route('/alerts/<int:alert_id>/resolve', methods=['POST'])
@jwt_required()
@teacher_required
def resolve_alert(alert_id):
    """Mark an alert as reviewed."""
    alert = FraudAlert.get_by_id(alert_id)
    if alert is None:
        return error_response("Alert not found", 404)
    require_owner(alert.session.owner_id)

    if alert.is_resolved:
        return error_response("Alert is already resolved", 409)

    data = request.get_json(silent=True) or {}
    resolution = data.get('resolution')
    if resolution is not None and not isinstance(resolution, str):
        raise ValidationError("resolution must be a string")

    alert.is_resolved = True
    alert.resolved_by = g.current_user.id
    alert.resolved_at = utcnow()
    alert.resolution = resolution
    db.session.commit()

    current_app.logger.info("Fraud alert %s resolved by user %s", alert.id, g.current_user.id)
    return success_response(data=alert.to_dict(), message="Alert resolved")


@security_bp.route('/sessions/<session_key>/export', methods=['GET'])
@jwt_required()
@teacher_required
def export_session(session_key):
    """Download a session's scan attempts as CSV or Excel."""
    engine = get_engine()
    session = engine.sessions.get(session_key)
    require_owner(session.owner_id)

    export_format = request.args.get('format', 'csv').lower()
    if export_format not in ('csv', 'xlsx'):
        raise ValidationError("format must be csv or xlsx")

    attempts_df = engine.analytics.export_frame([session.session_key])
    filename = f"security_{session.session_key}_{utcnow().strftime('%Y%m%d')}"

    if export_format == 'csv':
        output = io.StringIO()
        attempts_df.to_csv(output, index=False, encoding='utf-8-sig')
        output.seek(0)

        return output.getvalue(), 200, {
            'Content-Type': 'text/csv; charset=utf-8',
            'Content-Disposition': f'attachment; filename={filename}.csv'
        }

    excel_buffer = io.BytesIO()
    try:
        with pd.ExcelWriter(excel_buffer, engine='openpyxl') as writer:
            engine.analytics.summary_frame([session.session_key]) \
                .to_excel(writer, sheet_name='Summary', index=False)
            attempts_df.to_excel(writer, sheet_name='Attempts', index=False)
    except (ValueError, OSError) as e:
        current_app.logger.error("Excel export failed for session %s: %s", session_key, e)
        return error_response("Error exporting Excel", 500)
    excel_buffer.seek(0)

    return send_file(
        excel_buffer,
        as_attachment=True,
        download_name=f"{filename}.xlsx",
        mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
    )
