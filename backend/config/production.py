"""Production configuration."""
import os
from datetime import timedelta

from .base import Config


class ProductionConfig(Config):
    """Production configuration class."""

    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv('SECRET_KEY')  # Must be set in production

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL')

    # JWT Configuration
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=1)

    # Redis (required in production)
    REDIS_URL = os.getenv('REDIS_URL')
    RATELIMIT_STORAGE_URI = os.getenv('REDIS_URL')
    RATELIMIT_DEFAULT = "100 per day, 20 per hour"

    # Security Settings
    QR_TOKEN_SECRET = os.getenv('QR_TOKEN_SECRET')
    TOKEN_ROTATION_SECONDS = 20
    GEO_ACCURACY_THRESHOLD_METERS = 35.0

    # Several gunicorn workers share one Redis lock namespace
    SCAN_LOCK_BACKEND = 'redis'

    # Enhanced security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Logging
    LOG_LEVEL = 'INFO'
    LOG_FILE = '/app/logs/app.log'
