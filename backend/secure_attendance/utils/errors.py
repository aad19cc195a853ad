"""Exception hierarchy for the attendance engine.

Business outcomes of a scan are never raised; they travel as ``Decision``
values. The classes here cover administrative misuse (bad state changes,
unknown sessions, invalid input) and genuine faults.
"""


class AttendanceError(Exception):
    """Base class for engine errors."""

    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(AttendanceError):
    """Invalid input data."""

    def __init__(self, message: str = None, errors: list = None):
        super().__init__(message)
        self.errors = errors or []


class SessionNotFound(AttendanceError):
    """Attendance session not found."""

    status_code = 404


class SessionNotActive(AttendanceError):
    """Attendance session is not active."""

    status_code = 409


class InvalidStateTransition(AttendanceError):
    """Session state transition not allowed."""

    status_code = 409


class SystemUnavailable(AttendanceError):
    """Attendance storage is temporarily unavailable."""

    status_code = 503


class InternalConsistencyError(AttendanceError):
    """Stored attendance data violates an invariant."""

    status_code = 500


class AccessDenied(AttendanceError):
    """You do not have access to this resource."""

    status_code = 403
