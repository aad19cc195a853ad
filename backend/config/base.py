"""Base configuration shared by every environment."""
import os
from datetime import timedelta


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # JWT Configuration (identity is issued upstream, we only verify it)
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or 'jwt-secret-key-change-in-production'
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=2)
    JWT_ALGORITHM = 'HS256'

    # CORS
    CORS_ORIGINS = ["http://localhost:*", "http://127.0.0.1:*"]

    # Rate Limiting
    RATELIMIT_STORAGE_URI = os.environ.get('REDIS_URL') or 'memory://'
    RATELIMIT_DEFAULT = "200 per day, 50 per hour"
    SCAN_RATE_LIMIT = "30 per minute"

    # Redis (notifications and distributed scan locks)
    REDIS_URL = os.environ.get('REDIS_URL') or None
    NOTIFICATION_CHANNEL = 'attendance:outcomes'
    NOTIFICATION_TIMEOUT_SECONDS = 2.0

    # QR tokens
    QR_TOKEN_SECRET = os.environ.get('QR_TOKEN_SECRET') or 'qr-token-secret-change-in-production'
    TOKEN_ROTATION_SECONDS = 30

    # Session defaults
    DEFAULT_GRACE_PERIOD_SECONDS = 600  # 10 minutes
    DEFAULT_MAX_ATTEMPTS = 3
    MAX_SESSION_HOURS = 12

    # Geofencing
    GEO_ACCURACY_THRESHOLD_METERS = 50.0
    MIN_GEOFENCE_RADIUS_METERS = 5.0
    MAX_GEOFENCE_RADIUS_METERS = 5000.0

    # Fraud scoring (None means the scorer's built-in policy)
    FRAUD_WEIGHTS = None
    FRAUD_THRESHOLDS = None
    RAPID_ATTEMPT_WINDOW_SECONDS = 60
    FRAUD_HISTORY_DAYS = 30

    # Per-(student, session) scan serialization: 'local' or 'redis'
    SCAN_LOCK_BACKEND = 'local'
    SCAN_LOCK_TIMEOUT_SECONDS = 10

    # Pagination
    DEFAULT_PAGE_SIZE = 20
    MAX_PAGE_SIZE = 100

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = 'logs/app.log'
