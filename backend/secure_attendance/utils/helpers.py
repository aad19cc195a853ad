"""Helper functions for the application."""
from datetime import datetime, timezone
from typing import Any, Optional

from flask import jsonify


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the database columns store time."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch milliseconds into naive UTC datetimes."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        dt = datetime.fromisoformat(text)

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    return jsonify({
        'error': True,
        'message': str(error),
        'status_code': status_code
    }), status_code


def success_response(data: Any = None, message: str = "Success", status_code: int = 200):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code


def error_response(message: str, status_code: int = 400, data: Any = None):
    """Return consistent error response."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code


# HTTP status for each rejection reason; anything unlisted is a 400
DECISION_STATUS_CODES = {
    'SessionNotFound': 404,
    'NotEnrolled': 403,
    'AlreadyRecorded': 409,
    'MaxAttemptsExceeded': 429,
}


def decision_response(decision):
    """Render a scan ``Decision`` for the student-facing client."""
    payload = decision.to_public_dict()
    if decision.accepted:
        return success_response(data=payload, message=decision.reason_code.value)

    status_code = DECISION_STATUS_CODES.get(decision.reason_code.value, 400)
    return error_response(decision.reason_code.value, status_code, data=payload)
