"""Attendance session lifecycle and rotating token ownership."""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from secure_attendance import db
from secure_attendance.models.attendance import AttendanceRecord, AttendanceStatus
from secure_attendance.models.attendance_session import (
    AttendanceSession, Geofence, SecurityConfig, SessionState
)
from secure_attendance.models.course import Course
from secure_attendance.models.scan_attempt import ScanAttempt
from secure_attendance.services.qr_service import QRTokenService
from secure_attendance.utils.errors import (
    InvalidStateTransition, SessionNotActive, SessionNotFound, SystemUnavailable, ValidationError
)
from secure_attendance.utils.helpers import utcnow
from secure_attendance.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class SessionStore:
    """Owns session state transitions and the versioned current token.

    State machine::

        SCHEDULED -> ACTIVE -> ENDED
             \\          \\
              +----------+--> CANCELLED

    Token rotation is single-writer per session; every rotation bumps
    ``token_version`` and replaces ``current_token`` with no overlap.
    """

    def __init__(self, token_service: QRTokenService, locks=None,
                 rotation_seconds: int = 30, max_session_hours: int = 12):
        self.token_service = token_service
        self.locks = locks or KeyedLock()
        self.rotation_seconds = rotation_seconds
        self.max_session_hours = max_session_hours

    # =================== LOOKUP ===================

    @staticmethod
    def find(session_key: str, for_update: bool = False) -> Optional[AttendanceSession]:
        query = AttendanceSession.query.filter_by(session_key=session_key)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    def get(self, session_key: str, now: datetime = None) -> AttendanceSession:
        """Return the session after applying any time-driven transition."""
        now = now or utcnow()
        session = self.find(session_key)
        if session is None:
            raise SessionNotFound(f"Session {session_key} not found")

        if self.transition_due(session, now):
            with self.locks.hold(('session', session_key)):
                session = self._locked(session_key)
                if self.sync_state(session, now):
                    self._commit()
        return session

    # =================== LIFECYCLE ===================

    def open(self, owner_id: int, course_id: int, geofence: Geofence,
             security_config: SecurityConfig, open_time: datetime,
             close_time: datetime, title: str = None) -> AttendanceSession:
        """Create a session in SCHEDULED state."""
        if close_time <= open_time:
            raise ValidationError("close_time must be after open_time")
        if close_time - open_time > timedelta(hours=self.max_session_hours):
            raise ValidationError(f"Sessions cannot last longer than {self.max_session_hours} hours")

        course = db.session.get(Course, course_id)
        if course is None or not course.is_active:
            raise ValidationError(f"Course {course_id} not found")

        session = AttendanceSession(
            course_id=course_id,
            owner_id=owner_id,
            title=title,
            center_latitude=geofence.latitude,
            center_longitude=geofence.longitude,
            radius_meters=geofence.radius_meters,
            open_time=open_time,
            close_time=close_time,
            state=SessionState.SCHEDULED,
            token_version=0
        )
        session.apply_security_config(security_config)

        db.session.add(session)
        self._commit()

        logger.info("Session %s scheduled for course %s (%s - %s)",
                    session.session_key, course_id, open_time.isoformat(), close_time.isoformat())
        return session

    @staticmethod
    def transition_due(session: AttendanceSession, now: datetime) -> bool:
        if session.state == SessionState.SCHEDULED:
            return now >= session.open_time
        if session.state == SessionState.ACTIVE:
            return now > session.admission_deadline
        return False

    def sync_state(self, session: AttendanceSession, now: datetime) -> bool:
        """Apply clock-driven transitions; returns True if anything changed.

        A session turns ACTIVE once ``open_time`` is reached and ENDED once
        the admission window (``close_time`` plus grace) is over.
        """
        changed = False

        if session.state == SessionState.SCHEDULED and now >= session.open_time:
            self._activate(session, now)
            changed = True

        if session.state == SessionState.ACTIVE and now > session.admission_deadline:
            self._end(session, now)
            changed = True

        return changed

    def activate(self, session_key: str, now: datetime = None) -> AttendanceSession:
        """Explicitly start a SCHEDULED session ahead of its open time."""
        now = now or utcnow()
        with self.locks.hold(('session', session_key)):
            session = self._locked(session_key)
            self.sync_state(session, now)
            if session.state != SessionState.SCHEDULED:
                raise InvalidStateTransition(
                    f"Cannot activate a session in state {session.state.value}"
                )
            self._activate(session, now)
            self._commit()
        return session

    def close(self, session_key: str, now: datetime = None) -> AttendanceSession:
        """End an ACTIVE session. Persisted records are left untouched."""
        now = now or utcnow()
        with self.locks.hold(('session', session_key)):
            session = self._locked(session_key)
            self.sync_state(session, now)
            if session.state != SessionState.ACTIVE:
                raise InvalidStateTransition(
                    f"Cannot close a session in state {session.state.value}"
                )
            self._end(session, now)
            self._commit()
        return session

    def cancel(self, session_key: str, now: datetime = None) -> AttendanceSession:
        """Cancel a SCHEDULED or ACTIVE session (terminal)."""
        now = now or utcnow()
        with self.locks.hold(('session', session_key)):
            session = self._locked(session_key)
            if session.is_terminal():
                raise InvalidStateTransition(
                    f"Cannot cancel a session in state {session.state.value}"
                )
            session.state = SessionState.CANCELLED
            session.cancelled_at = now
            session.current_token = None
            self._commit()

        logger.info("Session %s cancelled", session_key)
        return session

    # =================== TOKENS ===================

    def rotate_token(self, session_key: str, now: datetime = None) -> str:
        """Replace the session's token; the previous one stops validating immediately."""
        now = now or utcnow()
        with self.locks.hold(('session', session_key)):
            session = self._locked(session_key)
            self.sync_state(session, now)
            if session.state != SessionState.ACTIVE:
                # Persist a clock-driven transition even though we refuse to rotate
                self._commit()
                raise SessionNotActive(f"Session {session_key} is {session.state.value}")
            self._mint(session, now)
            self._commit()
            token = session.current_token

        logger.debug("Session %s rotated to token version %s", session_key, session.token_version)
        return token

    def current_token(self, session_key: str, now: datetime = None) -> str:
        session = self.get(session_key, now)
        if session.state != SessionState.ACTIVE or not session.current_token:
            raise SessionNotActive(f"Session {session_key} is {session.state.value}")
        return session.current_token

    def rotate_due_tokens(self, now: datetime = None) -> int:
        """Periodic entry point: sync states and rotate tokens older than the rotation period."""
        now = now or utcnow()
        rotated = 0
        horizon = now - timedelta(seconds=self.rotation_seconds)

        candidates = AttendanceSession.query.filter(
            AttendanceSession.state.in_([SessionState.SCHEDULED, SessionState.ACTIVE])
        ).all()

        for session in candidates:
            key = session.session_key
            with self.locks.hold(('session', key)):
                locked = self._locked(key)
                became_active = (locked.state == SessionState.SCHEDULED)
                self.sync_state(locked, now)
                became_active = became_active and locked.state == SessionState.ACTIVE

                due = (locked.state == SessionState.ACTIVE and not became_active and
                       (locked.token_issued_at is None or locked.token_issued_at <= horizon))
                if due:
                    self._mint(locked, now)
                if due or became_active:
                    rotated += 1
                self._commit()

        if rotated:
            logger.info("Rotated %d session token(s)", rotated)
        return rotated

    # =================== STATUS ===================

    def status(self, session_key: str, now: datetime = None) -> Dict:
        """State plus record/attempt counts for one session."""
        session = self.get(session_key, now)

        status_counts = dict(
            db.session.query(AttendanceRecord.status, func.count(AttendanceRecord.id))
            .filter(AttendanceRecord.session_id == session.id)
            .group_by(AttendanceRecord.status)
            .all()
        )
        total_attempts = ScanAttempt.query.filter_by(session_id=session.id).count()
        flagged = AttendanceRecord.query.filter_by(
            session_id=session.id, flagged_for_review=True
        ).count()

        return {
            'session_id': session.session_key,
            'state': session.state.value,
            'token_version': session.token_version,
            'counts': {
                'present': status_counts.get(AttendanceStatus.PRESENT, 0),
                'late': status_counts.get(AttendanceStatus.LATE, 0),
                'rejected': status_counts.get(AttendanceStatus.REJECTED, 0),
                'flagged_for_review': flagged,
                'total_attempts': total_attempts
            }
        }

    # =================== INTERNALS ===================

    def _locked(self, session_key: str) -> AttendanceSession:
        session = self.find(session_key, for_update=True)
        if session is None:
            raise SessionNotFound(f"Session {session_key} not found")
        return session

    def _activate(self, session: AttendanceSession, now: datetime) -> None:
        session.state = SessionState.ACTIVE
        session.activated_at = now
        self._mint(session, now)
        logger.info("Session %s is now ACTIVE", session.session_key)

    def _end(self, session: AttendanceSession, now: datetime) -> None:
        session.state = SessionState.ENDED
        session.ended_at = now
        session.current_token = None
        logger.info("Session %s ENDED", session.session_key)

    def _mint(self, session: AttendanceSession, now: datetime) -> None:
        session.token_version = (session.token_version or 0) + 1
        session.current_token = self.token_service.mint(
            session.session_key, session.token_version, now
        )
        session.token_issued_at = now

    @staticmethod
    def _commit() -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Session store commit failed: %s", e)
            raise SystemUnavailable("Session storage unavailable")
