"""Custom decorators for authorization."""
from functools import wraps

from flask import g
from flask_jwt_extended import get_jwt_identity

from secure_attendance import db
from secure_attendance.models.user import User, UserRole
from secure_attendance.utils.errors import AccessDenied
from secure_attendance.utils.helpers import error_response


def _load_current_user():
    identity = get_jwt_identity()
    try:
        user_id = int(identity)
    except (TypeError, ValueError):
        return None
    return db.session.get(User, user_id)


def _role_required(allowed_roles, message):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = _load_current_user()

            if not user:
                return error_response("User not found", 404)

            if not user.is_active:
                return error_response("Account disabled", 403)

            if user.role not in allowed_roles:
                return error_response(message, 403)

            g.current_user = user
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def teacher_required(f):
    """Decorator to require teacher role or higher."""
    return _role_required(
        (UserRole.TEACHER, UserRole.ADMIN), "Teacher access required"
    )(f)


def student_required(f):
    """Decorator to require student role."""
    return _role_required((UserRole.STUDENT,), "Student access required")(f)


def require_owner(owner_id: int, user=None) -> None:
    """Raise ``AccessDenied`` unless the current user owns the resource or is an admin."""
    user = user or g.current_user
    if user.role != UserRole.ADMIN and user.id != owner_id:
        raise AccessDenied("You can only manage your own sessions")
