"""Secure Attendance - Application Factory."""
import logging
import os

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_jwt_extended import JWTManager
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(key_func=get_remote_address)


def create_app(config_name: str = None, test_config: dict = None) -> Flask:
    """Application factory pattern."""
    app = Flask(__name__)

    # Load configuration
    from config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    if test_config:
        app.config.update(test_config)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)

    # Configure CORS
    CORS(app, origins=app.config.get('CORS_ORIGINS', ["*"]))

    # Setup logging
    setup_logging(app)

    # Register blueprints
    register_blueprints(app)

    # Register error handlers
    register_error_handlers(app)

    # Setup database
    setup_database(app)

    # Wire the verification engine
    from secure_attendance.services import init_engine
    init_engine(app)

    # Add CLI commands
    register_commands(app)

    # Add health check
    @app.route('/health')
    def health_check():
        return jsonify({
            'status': 'healthy',
            'service': 'Secure Attendance',
            'version': '1.0.0'
        })

    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""
    from secure_attendance.api.sessions import sessions_bp
    from secure_attendance.api.attendance import attendance_bp
    from secure_attendance.api.security import security_bp

    # Instructor
    app.register_blueprint(sessions_bp, url_prefix='/api/sessions')
    app.register_blueprint(security_bp, url_prefix='/api/security')

    # Student
    app.register_blueprint(attendance_bp, url_prefix='/api/attendance')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from werkzeug.exceptions import HTTPException
    from secure_attendance.utils.errors import (
        AttendanceError, InternalConsistencyError, ValidationError
    )
    from secure_attendance.utils.helpers import error_response, handle_error

    @app.errorhandler(AttendanceError)
    def attendance_error(error):
        if isinstance(error, InternalConsistencyError):
            db.session.rollback()
            app.logger.critical("Consistency violation: %s", error.message)
        data = {'errors': error.errors} if isinstance(error, ValidationError) and error.errors else None
        return error_response(error.message, error.status_code, data=data)

    @app.errorhandler(400)
    def bad_request(error):
        return handle_error(error, 400)

    @app.errorhandler(401)
    def unauthorized(error):
        return handle_error(error, 401)

    @app.errorhandler(403)
    def forbidden(error):
        return handle_error(error, 403)

    @app.errorhandler(404)
    def not_found(error):
        return handle_error(error, 404)

    @app.errorhandler(429)
    def rate_limited(error):
        return handle_error(error, 429)

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return handle_error(error, 500)

    @app.errorhandler(HTTPException)
    def handle_exception(e):
        return handle_error(e, e.code)

    # JWT error handlers
    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': True,
            'message': 'Token has expired',
            'status_code': 401
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Invalid token',
            'status_code': 401
        }), 401

    @jwt.unauthorized_loader
    def missing_token_callback(error):
        return jsonify({
            'error': True,
            'message': 'Authorization token required',
            'status_code': 401
        }), 401


def setup_logging(app: Flask) -> None:
    """Setup application logging."""
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.getLogger('secure_attendance').setLevel(level)

    if not app.debug and not app.testing:
        log_file = app.config.get('LOG_FILE', 'logs/app.log')
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
        ))
        file_handler.setLevel(level)
        app.logger.addHandler(file_handler)
        # Service modules log under the package logger
        logging.getLogger('secure_attendance').addHandler(file_handler)

        app.logger.setLevel(level)
        app.logger.info('Secure Attendance startup')


def setup_database(app: Flask) -> None:
    """Register models with SQLAlchemy metadata."""
    with app.app_context():
        # Import all models
        from secure_attendance.models import (  # noqa: F401
            User, Course, Enrollment, AttendanceSession,
            AttendanceRecord, ScanAttempt, DeviceFingerprint, FraudAlert
        )


def register_commands(app: Flask) -> None:
    """Register CLI commands."""
    import click

    @app.cli.command('init-db')
    @click.option('--drop', is_flag=True, help='Drop existing tables')
    def init_db(drop):
        """Initialize the database."""
        if drop:
            db.drop_all()
            click.echo('Dropped all tables.')

        db.create_all()
        click.echo('Created all tables.')

    @app.cli.command('rotate-tokens')
    def rotate_tokens():
        """Sync session states and rotate tokens that are due."""
        from secure_attendance.services import get_engine

        rotated = get_engine().sessions.rotate_due_tokens()
        click.echo(f'Rotated {rotated} session token(s).')

    @app.cli.command('sync-sessions')
    def sync_sessions():
        """Apply clock-driven state transitions to open sessions."""
        from secure_attendance.models.attendance_session import AttendanceSession, SessionState
        from secure_attendance.services import get_engine

        store = get_engine().sessions
        pending = AttendanceSession.query.filter(
            AttendanceSession.state.in_([SessionState.SCHEDULED, SessionState.ACTIVE])
        ).all()

        changed = 0
        for session in pending:
            before = session.state
            after = store.get(session.session_key).state
            if after != before:
                changed += 1
                click.echo(f'{session.session_key}: {before.value} -> {after.value}')
        click.echo(f'{changed} session(s) changed state.')
