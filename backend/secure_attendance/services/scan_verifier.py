"""Scan verification: the accept/reject decision for one attendance attempt."""
import logging
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from secure_attendance import db
from secure_attendance.models.attendance import (
    AttendanceRecord, AttendanceStatus, ReasonCode, RiskLevel, SUCCESS_STATUSES
)
from secure_attendance.models.attendance_session import AttendanceSession, SessionState
from secure_attendance.models.fraud_alert import FraudAlert
from secure_attendance.models.scan_attempt import ScanAttempt
from secure_attendance.services.device_registry import DeviceFingerprintRegistry, RegistrationResult
from secure_attendance.services.enrollment_directory import EnrollmentDirectory
from secure_attendance.services.fraud_scorer import FraudScorer, FraudSignals, RiskScore
from secure_attendance.services.geo_service import GeoResult, GeoValidator, ReportedLocation
from secure_attendance.services.session_store import SessionStore
from secure_attendance.utils.errors import (
    InternalConsistencyError, SessionNotFound, SystemUnavailable, ValidationError
)
from secure_attendance.utils.helpers import utcnow
from secure_attendance.utils.locks import KeyedLock
from secure_attendance.utils.validators import Validator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanRequest:
    """One attendance attempt exactly as the student submitted it."""

    student_id: int
    session_key: str
    token: Optional[str]
    location: Optional[ReportedLocation] = None
    device_fingerprint: Optional[str] = None
    photo_hash: Optional[str] = None
    client_timestamp: Optional[datetime] = None
    received_at: Optional[datetime] = None
    automated_client: bool = False
    virtual_machine: bool = False

    MAX_PHOTO_HASH_LENGTH = 128

    @classmethod
    def from_payload(cls, student_id: int, data: Any,
                     received_at: datetime = None) -> 'ScanRequest':
        """Build a request from the scan endpoint's JSON body."""
        data = Validator.require(data, ['session_id', 'token'])

        session_key = data['session_id']
        token = data['token']
        if not isinstance(session_key, str) or not isinstance(token, str):
            raise ValidationError("session_id and token must be strings")

        location = Validator.location(data.get('location'))
        raw_fingerprint = data.get('device_fingerprint')
        fingerprint = None
        if raw_fingerprint is not None:
            fingerprint = DeviceFingerprintRegistry.normalize(raw_fingerprint)
        traits = DeviceFingerprintRegistry.inspect_signals(raw_fingerprint)

        photo_hash = data.get('photo_hash')
        if photo_hash is not None:
            if not isinstance(photo_hash, str) or not photo_hash.strip():
                raise ValidationError("photo_hash must be a non-empty string")
            if len(photo_hash) > cls.MAX_PHOTO_HASH_LENGTH:
                raise ValidationError("photo_hash is too long")
            photo_hash = photo_hash.strip()

        client_timestamp = None
        if data.get('client_timestamp') is not None:
            client_timestamp = Validator.timestamp(data['client_timestamp'], 'client_timestamp')

        return cls(
            student_id=student_id,
            session_key=session_key.strip(),
            token=token.strip(),
            location=ReportedLocation(**location) if location else None,
            device_fingerprint=fingerprint,
            photo_hash=photo_hash,
            client_timestamp=client_timestamp,
            received_at=received_at or utcnow(),
            automated_client=traits.automated,
            virtual_machine=traits.virtual_machine
        )


@dataclass(frozen=True)
class Decision:
    """Verdict for one scan attempt.

    ``signals`` carries the fraud and geofence evidence; it is part of the
    instructor view only and never goes back to the student.
    """

    accepted: bool
    reason_code: ReasonCode
    session_key: str
    status: Optional[AttendanceStatus] = None
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    flagged_for_review: bool = False
    attempt_count: int = 0
    signals: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def reject(cls, reason_code: ReasonCode, session_key: str, **kwargs) -> 'Decision':
        return cls(accepted=False, reason_code=reason_code, session_key=session_key,
                   status=AttendanceStatus.REJECTED, **kwargs)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_key,
            'accepted': self.accepted,
            'status': self.status.value if self.status else None,
            'reason_code': self.reason_code.value,
            'risk_level': self.risk_level.value
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_public_dict()
        data.update({
            'risk_score': self.risk_score,
            'flagged_for_review': self.flagged_for_review,
            'attempt_count': self.attempt_count,
            'signals': self.signals
        })
        return data


@dataclass
class _Evaluation:
    """Working state collected while one attempt moves through the checks."""

    session: AttendanceSession
    record: Optional[AttendanceRecord]
    token_version: int
    geo: GeoResult = field(default_factory=GeoResult.not_evaluated)
    registration: Optional[RegistrationResult] = None
    fraud_signals: Optional[FraudSignals] = None
    score: Optional[RiskScore] = None

    def signals(self) -> Dict[str, Any]:
        data = {'geo': self.geo.to_dict() if self.geo.evaluated else None}
        if self.registration is not None:
            data['device'] = self.registration.to_dict()
        if self.fraud_signals is not None:
            data['fraud'] = self.fraud_signals.to_dict()
        if self.score is not None:
            data['score'] = self.score.to_dict()
        return data


class ScanVerifier:
    """Orchestrates the checks behind ``verify`` and owns the record write.

    Every attempt for one (student, session) pair runs inside a keyed lock,
    and the ``attendance_records`` unique constraint backs it up, so a pair
    never ends with two PRESENT/LATE outcomes.

    Lock order: scan lock, then session lock, then device locks.
    """

    RECENT_ACCURACY_SAMPLES = 5

    def __init__(self, sessions: SessionStore, geo: GeoValidator,
                 devices: DeviceFingerprintRegistry, scorer: FraudScorer,
                 enrollment: EnrollmentDirectory = None, notifier=None, locks=None,
                 rapid_window_seconds: int = 60, fraud_history_days: int = 30):
        self.sessions = sessions
        self.geo = geo
        self.devices = devices
        self.scorer = scorer
        self.enrollment = enrollment or EnrollmentDirectory()
        self.notifier = notifier
        self.locks = locks or KeyedLock()
        self.rapid_window = timedelta(seconds=rapid_window_seconds)
        self.fraud_history = timedelta(days=fraud_history_days)

    def verify(self, request: ScanRequest) -> Decision:
        """Evaluate one attempt and persist its outcome.

        Business rejections come back as ``Decision`` values; only storage
        faults (``SystemUnavailable``) and broken invariants
        (``InternalConsistencyError``) raise.
        """
        if request.received_at is None:
            request = replace(request, received_at=utcnow())

        with self.locks.hold(('scan', request.student_id, request.session_key)):
            decision = self._verify_locked(request)

        self._notify(request.student_id, decision)
        return decision

    # =================== PIPELINE ===================

    def _verify_locked(self, request: ScanRequest) -> Decision:
        now = request.received_at
        key = request.session_key

        # 1. Session
        try:
            session = self.sessions.get(key, now)
        except SessionNotFound:
            decision = Decision.reject(ReasonCode.SESSION_NOT_FOUND, key)
            self._log_attempt(request, None, decision)
            self._commit()
            return decision

        record = self._record_for(request.student_id, session.id)
        evaluation = _Evaluation(session=session, record=record,
                                 token_version=session.token_version)

        if session.state != SessionState.ACTIVE:
            if session.state == SessionState.ENDED and now > session.admission_deadline:
                return self._reject_uncounted(request, evaluation, ReasonCode.OUTSIDE_TIME_WINDOW)
            return self._reject_uncounted(request, evaluation, ReasonCode.SESSION_NOT_ACTIVE)

        # 2. Token
        if not self._token_current(request.token, session):
            return self._reject_uncounted(request, evaluation, ReasonCode.TOKEN_EXPIRED)

        # 3. Enrollment
        if not self.enrollment.is_enrolled(request.student_id, session.course_id):
            return self._reject_uncounted(request, evaluation, ReasonCode.NOT_ENROLLED)

        # 4. Time window
        if now < session.open_time:
            return self._reject_uncounted(request, evaluation, ReasonCode.TOO_EARLY)
        if now > session.admission_deadline:
            return self._reject_uncounted(request, evaluation, ReasonCode.OUTSIDE_TIME_WINDOW)

        # 5. Duplicate
        self._check_consistency(request.student_id, session)
        if record is not None and record.is_successful():
            return self._already_recorded(request, evaluation)

        # 6. Attempt limit, before any signal is looked at
        config = session.security_config
        prior_attempts = record.attempt_count if record is not None else 0
        if prior_attempts >= config.max_attempts:
            return self._reject_counted(request, evaluation, ReasonCode.MAX_ATTEMPTS_EXCEEDED)

        # 7. Photo
        if config.photo_required and not request.photo_hash:
            return self._reject_counted(request, evaluation, ReasonCode.PHOTO_REQUIRED)

        # 8. Location
        if config.location_required:
            if request.location is None:
                return self._reject_counted(request, evaluation, ReasonCode.LOCATION_REQUIRED)
            evaluation.geo = self.geo.validate(session.geofence, request.location)
            if not evaluation.geo.within_radius:
                return self._reject_counted(request, evaluation, ReasonCode.OUTSIDE_GEOFENCE)
            if not evaluation.geo.accuracy_ok:
                return self._reject_counted(request, evaluation, ReasonCode.POOR_LOCATION_ACCURACY)

        # 9. Device
        if config.device_check_required and request.device_fingerprint:
            evaluation.registration = self.devices.register(
                request.student_id, request.device_fingerprint,
                window_start=session.open_time, now=now
            )

        # 10. Fraud
        flagged = False
        if config.fraud_detection_enabled:
            evaluation.fraud_signals = self._collect_signals(request, evaluation)
            evaluation.score = self.scorer.score(evaluation.fraud_signals)
            if evaluation.score.level == RiskLevel.CRITICAL:
                logger.error("Rejected scan by student %s for session %s: critical fraud risk %s",
                             request.student_id, key, evaluation.score.value)
                return self._reject_counted(request, evaluation, ReasonCode.FRAUD_REJECTED)
            if evaluation.score.level == RiskLevel.HIGH:
                flagged = True
                logger.warning("Scan by student %s for session %s flagged for review (risk %s)",
                               request.student_id, key, evaluation.score.value)

        # 11. Fail closed if the session moved on while we were checking.
        # Close and rotation wait on this lock, so the scan takes effect at the
        # revalidation and is committed before either can run.
        with self.locks.hold(('session', key)):
            reason = self._revalidate(evaluation, now)
            if reason is not None:
                return self._reject_uncounted(request, evaluation, reason)

            # 12. Status
            status = AttendanceStatus.PRESENT if now < session.present_deadline else AttendanceStatus.LATE
            return self._accept(request, evaluation, status, flagged)

    # =================== CHECKS ===================

    def _token_current(self, token: Optional[str], session: AttendanceSession) -> bool:
        if not token or not session.current_token:
            return False
        if not secrets.compare_digest(token, session.current_token):
            return False
        payload = self.sessions.token_service.decode(token)
        return (payload is not None and
                payload.get('sid') == session.session_key and
                payload.get('ver') == session.token_version)

    @staticmethod
    def _record_for(student_id: int, session_id: int) -> Optional[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(
            student_id=student_id, session_id=session_id
        ).first()

    @staticmethod
    def _check_consistency(student_id: int, session: AttendanceSession) -> None:
        successful = AttendanceRecord.query.filter(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.status.in_(SUCCESS_STATUSES)
        ).count()
        if successful > 1:
            logger.critical("Student %s holds %d successful records for session %s",
                            student_id, successful, session.session_key)
            raise InternalConsistencyError(
                f"Multiple attendance records for student {student_id} in session {session.session_key}"
            )

    def _revalidate(self, evaluation: _Evaluation, now: datetime) -> Optional[ReasonCode]:
        session = evaluation.session
        try:
            db.session.refresh(session)
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Could not re-read session %s: %s", session.session_key, e)
            raise SystemUnavailable("Session storage unavailable")

        if session.state != SessionState.ACTIVE or now > session.admission_deadline:
            return ReasonCode.SESSION_NOT_ACTIVE
        if session.token_version != evaluation.token_version:
            return ReasonCode.TOKEN_EXPIRED
        return None

    def _collect_signals(self, request: ScanRequest, evaluation: _Evaluation) -> FraudSignals:
        session = evaluation.session
        now = request.received_at
        registration = evaluation.registration

        recent_attempts = ScanAttempt.query.filter(
            ScanAttempt.student_id == request.student_id,
            ScanAttempt.session_id == session.id,
            ScanAttempt.received_at >= now - self.rapid_window,
            ScanAttempt.received_at <= now
        ).count()

        prior_accuracy = ScanAttempt.query.filter(
            ScanAttempt.student_id == request.student_id,
            ScanAttempt.session_id == session.id,
            ScanAttempt.accuracy_meters.isnot(None)
        ).order_by(ScanAttempt.received_at.desc(), ScanAttempt.id.desc()) \
            .with_entities(ScanAttempt.accuracy_meters) \
            .limit(self.RECENT_ACCURACY_SAMPLES).all()

        prior_flags = ScanAttempt.query.filter(
            ScanAttempt.student_id == request.student_id,
            ScanAttempt.session_id != session.id,
            ScanAttempt.received_at >= now - self.fraud_history,
            db.or_(ScanAttempt.flagged_for_review.is_(True),
                   ScanAttempt.risk_level.in_([RiskLevel.HIGH, RiskLevel.CRITICAL]))
        ).count()

        photo_reused = False
        if request.photo_hash:
            photo_reused = ScanAttempt.query.filter(
                ScanAttempt.session_id == session.id,
                ScanAttempt.photo_hash == request.photo_hash,
                ScanAttempt.student_id != request.student_id
            ).first() is not None

        clock_skew = None
        if request.client_timestamp is not None:
            clock_skew = (request.client_timestamp - now).total_seconds()

        return FraudSignals(
            device_shared=bool(registration and registration.is_shared_with_other),
            device_changed=bool(registration and registration.device_changed),
            recent_attempts=recent_attempts,
            accuracy_meters=request.location.accuracy if request.location else None,
            prior_accuracy_meters=tuple(row[0] for row in prior_accuracy),
            distance_meters=evaluation.geo.distance_meters,
            radius_meters=session.radius_meters if evaluation.geo.evaluated else None,
            prior_fraud_flags=prior_flags,
            clock_skew_seconds=clock_skew,
            photo_reused=photo_reused,
            device_change_count=registration.device_change_count if registration else 0,
            automated_client=request.automated_client,
            virtual_machine=request.virtual_machine
        )

    # =================== OUTCOMES ===================

    def _reject_uncounted(self, request: ScanRequest, evaluation: _Evaluation,
                          reason: ReasonCode) -> Decision:
        """Rejections decided before the duplicate check leave the counter alone."""
        record = evaluation.record
        decision = Decision.reject(
            reason, request.session_key,
            attempt_count=record.attempt_count if record is not None else 0,
            signals=evaluation.signals()
        )
        self._log_attempt(request, evaluation, decision)
        self._commit()
        logger.info("Scan by student %s for session %s rejected: %s",
                    request.student_id, request.session_key, reason.value)
        return decision

    def _already_recorded(self, request: ScanRequest, evaluation: _Evaluation) -> Decision:
        record = evaluation.record
        record.attempt_count += 1
        decision = Decision(
            accepted=False,
            reason_code=ReasonCode.ALREADY_RECORDED,
            session_key=request.session_key,
            status=record.status,
            risk_score=record.risk_score,
            risk_level=record.risk_level,
            flagged_for_review=record.flagged_for_review,
            attempt_count=record.attempt_count,
            signals=evaluation.signals()
        )
        self._log_attempt(request, evaluation, decision)
        self._commit()
        logger.info("Student %s already recorded for session %s (attempt %d)",
                    request.student_id, request.session_key, record.attempt_count)
        return decision

    def _reject_counted(self, request: ScanRequest, evaluation: _Evaluation,
                        reason: ReasonCode) -> Decision:
        score = evaluation.score
        decision = Decision.reject(
            reason, request.session_key,
            risk_score=score.value if score else 0,
            risk_level=score.level if score else RiskLevel.LOW,
            signals=evaluation.signals()
        )
        return self._persist(request, evaluation, decision)

    def _accept(self, request: ScanRequest, evaluation: _Evaluation,
                status: AttendanceStatus, flagged: bool) -> Decision:
        score = evaluation.score
        decision = Decision(
            accepted=True,
            reason_code=ReasonCode.ACCEPTED,
            session_key=request.session_key,
            status=status,
            risk_score=score.value if score else 0,
            risk_level=score.level if score else RiskLevel.LOW,
            flagged_for_review=flagged,
            signals=evaluation.signals()
        )
        decision = self._persist(request, evaluation, decision)
        if decision.accepted:
            logger.info("Student %s marked %s for session %s",
                        request.student_id, status.value, request.session_key)
        return decision

    def _persist(self, request: ScanRequest, evaluation: _Evaluation,
                 decision: Decision) -> Decision:
        """Write the counted outcome: attempt row, record upsert and alerts."""
        record = evaluation.record
        if record is None:
            record = AttendanceRecord(
                student_id=request.student_id,
                session_id=evaluation.session.id,
                attempt_count=0
            )
            db.session.add(record)

        decision = self._apply(record, decision, request.received_at)

        try:
            attempt = self._log_attempt(request, evaluation, decision)
            self._raise_alerts(request, evaluation, attempt)
            db.session.commit()
            return decision
        except IntegrityError:
            # A writer outside our lock created the record first
            db.session.rollback()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to persist scan for student %s: %s", request.student_id, e)
            raise SystemUnavailable("Attendance storage unavailable")

        existing = self._record_for(request.student_id, evaluation.session.id)
        if existing is None:
            raise SystemUnavailable("Attendance record conflict could not be resolved")
        evaluation.record = existing
        if existing.is_successful():
            return self._already_recorded(request, evaluation)

        decision = self._apply(existing, decision, request.received_at)
        try:
            attempt = self._log_attempt(request, evaluation, decision)
            self._raise_alerts(request, evaluation, attempt)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to persist scan for student %s: %s", request.student_id, e)
            raise SystemUnavailable("Attendance storage unavailable")
        return decision

    @staticmethod
    def _apply(record: AttendanceRecord, decision: Decision, received_at: datetime) -> Decision:
        record.attempt_count = (record.attempt_count or 0) + 1
        record.status = decision.status
        record.reason_code = decision.reason_code
        record.risk_score = decision.risk_score
        record.risk_level = decision.risk_level
        record.flagged_for_review = decision.flagged_for_review
        if decision.accepted:
            record.marked_at = received_at
        return replace(decision, attempt_count=record.attempt_count)

    @staticmethod
    def _log_attempt(request: ScanRequest, evaluation: Optional[_Evaluation],
                     decision: Decision) -> ScanAttempt:
        location = request.location
        registration = evaluation.registration if evaluation else None
        geo = evaluation.geo if evaluation else GeoResult.not_evaluated()

        attempt = ScanAttempt(
            student_id=request.student_id,
            session_id=evaluation.session.id if evaluation else None,
            session_key=request.session_key[:64],
            presented_token=(request.token or '')[:512] or None,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            accuracy_meters=location.accuracy if location else None,
            device_fingerprint=request.device_fingerprint,
            photo_hash=request.photo_hash,
            client_timestamp=request.client_timestamp,
            received_at=request.received_at,
            accepted=decision.accepted,
            status=decision.status,
            reason_code=decision.reason_code,
            risk_score=decision.risk_score if evaluation and evaluation.score else None,
            risk_level=decision.risk_level if evaluation and evaluation.score else None,
            flagged_for_review=decision.flagged_for_review and decision.accepted,
            distance_meters=geo.distance_meters,
            device_shared=bool(registration and registration.is_shared_with_other),
            device_changed=bool(registration and registration.device_changed),
            signals=decision.signals or None
        )
        db.session.add(attempt)
        return attempt

    def _raise_alerts(self, request: ScanRequest, evaluation: _Evaluation,
                      attempt: ScanAttempt) -> List[FraudAlert]:
        if evaluation.score is None or evaluation.fraud_signals is None:
            return []

        descriptors = self.scorer.alerts_for(evaluation.score, evaluation.fraud_signals)
        if not descriptors:
            return []

        db.session.flush()
        alerts = []
        for descriptor in descriptors:
            alert = FraudAlert(
                student_id=request.student_id,
                session_id=evaluation.session.id,
                attempt_id=attempt.id,
                alert_type=descriptor.alert_type,
                severity=descriptor.severity,
                description=descriptor.description[:255],
                details=descriptor.details or None
            )
            db.session.add(alert)
            alerts.append(alert)
        return alerts

    # =================== PLUMBING ===================

    @staticmethod
    def _commit() -> None:
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to persist scan attempt: %s", e)
            raise SystemUnavailable("Attendance storage unavailable")

    def _notify(self, student_id: int, decision: Decision) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(student_id, decision.to_public_dict())
        except Exception as e:
            logger.warning("Notification for student %s failed: %s", student_id, e)
