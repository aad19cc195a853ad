"""Service layer: the verification engine and its collaborators."""
from dataclasses import dataclass

from flask import current_app

from secure_attendance.services.device_registry import DeviceFingerprintRegistry
from secure_attendance.services.enrollment_directory import EnrollmentDirectory
from secure_attendance.services.fraud_scorer import FraudScorer
from secure_attendance.services.geo_service import GeoValidator
from secure_attendance.services.notification_service import NotificationService
from secure_attendance.services.qr_service import QRTokenService
from secure_attendance.services.scan_verifier import ScanVerifier
from secure_attendance.services.security_analytics import SecurityAnalyticsAggregator
from secure_attendance.services.session_store import SessionStore
from secure_attendance.utils.locks import build_lock_manager

EXTENSION_KEY = 'secure_attendance'


@dataclass
class AttendanceEngine:
    """Wired set of engine components for one Flask app."""

    sessions: SessionStore
    verifier: ScanVerifier
    analytics: SecurityAnalyticsAggregator
    devices: DeviceFingerprintRegistry
    scorer: FraudScorer
    notifier: NotificationService


def build_engine(config) -> AttendanceEngine:
    """Assemble the engine from a Flask config mapping."""
    locks = build_lock_manager(config)
    tokens = QRTokenService(config['QR_TOKEN_SECRET'])

    sessions = SessionStore(
        tokens,
        locks=locks,
        rotation_seconds=config.get('TOKEN_ROTATION_SECONDS', 30),
        max_session_hours=config.get('MAX_SESSION_HOURS', 12)
    )
    devices = DeviceFingerprintRegistry(locks=locks)
    scorer = FraudScorer.with_weights(config.get('FRAUD_WEIGHTS'), config.get('FRAUD_THRESHOLDS'))
    notifier = NotificationService.from_config(config)

    verifier = ScanVerifier(
        sessions,
        GeoValidator(config.get('GEO_ACCURACY_THRESHOLD_METERS', 50.0)),
        devices,
        scorer,
        enrollment=EnrollmentDirectory(),
        notifier=notifier,
        locks=locks,
        rapid_window_seconds=config.get('RAPID_ATTEMPT_WINDOW_SECONDS', 60),
        fraud_history_days=config.get('FRAUD_HISTORY_DAYS', 30)
    )

    return AttendanceEngine(
        sessions=sessions,
        verifier=verifier,
        analytics=SecurityAnalyticsAggregator(),
        devices=devices,
        scorer=scorer,
        notifier=notifier
    )


def init_engine(app) -> AttendanceEngine:
    engine = build_engine(app.config)
    app.extensions[EXTENSION_KEY] = engine
    return engine


def get_engine() -> AttendanceEngine:
    """Engine bound to the current app."""
    engine = current_app.extensions.get(EXTENSION_KEY)
    if engine is None:
        engine = init_engine(current_app)
    return engine
