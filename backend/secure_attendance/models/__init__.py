"""Models package with all models."""
from .base import BaseModel
from .user import User, UserRole
from .course import Course, Enrollment
from .attendance_session import AttendanceSession, SessionState, Geofence, SecurityConfig
from .attendance import AttendanceRecord, AttendanceStatus, RiskLevel, ReasonCode
from .scan_attempt import ScanAttempt
from .device_fingerprint import DeviceFingerprint
from .fraud_alert import FraudAlert, AlertType

__all__ = [
    'BaseModel', 'User', 'UserRole', 'Course', 'Enrollment',
    'AttendanceSession', 'SessionState', 'Geofence', 'SecurityConfig',
    'AttendanceRecord', 'AttendanceStatus', 'RiskLevel', 'ReasonCode',
    'ScanAttempt', 'DeviceFingerprint', 'FraudAlert', 'AlertType'
]
