"""Development configuration."""
import os

from .base import Config


class DevelopmentConfig(Config):
    """Development configuration class."""

    DEBUG = True
    TESTING = False

    # Database
    SQLALCHEMY_DATABASE_URI = os.getenv('DEV_DATABASE_URL') or 'sqlite:///secure_attendance_dev.db'
    SQLALCHEMY_ECHO = False

    # Relaxed token rotation while demoing on a projector
    TOKEN_ROTATION_SECONDS = 60

    # Logging
    LOG_LEVEL = 'DEBUG'
