"""Tests for scan verification decisions."""
import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import BASE_TIME, CAIRO
from secure_attendance import create_app, db
from secure_attendance.models.attendance import (
    AttendanceRecord, AttendanceStatus, ReasonCode, RiskLevel
)
from secure_attendance.models.attendance_session import Geofence, SecurityConfig
from secure_attendance.models.course import Course, Enrollment
from secure_attendance.models.fraud_alert import AlertType, FraudAlert
from secure_attendance.models.scan_attempt import ScanAttempt
from secure_attendance.models.user import User, UserRole
from secure_attendance.services import get_engine
from secure_attendance.services.geo_service import ReportedLocation
from secure_attendance.services.scan_verifier import ScanRequest
from secure_attendance.utils.errors import (
    InternalConsistencyError, SystemUnavailable, ValidationError
)

FAR_AWAY = ReportedLocation(30.0534, 31.2357, 10.0)  # ~1 km north
BLURRY = ReportedLocation(CAIRO[0], CAIRO[1], 120.0)


def at(seconds):
    return BASE_TIME + timedelta(seconds=seconds)


def test_scan_at_geofence_center_is_present(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, device_fingerprint='fp-phone-0001'))

    assert decision.accepted
    assert decision.reason_code == ReasonCode.ACCEPTED
    assert decision.status == AttendanceStatus.PRESENT
    assert decision.risk_level == RiskLevel.LOW
    assert decision.attempt_count == 1
    assert decision.signals['geo']['within_radius'] is True

    record = AttendanceRecord.query.filter_by(student_id=student.id).one()
    assert record.status == AttendanceStatus.PRESENT
    assert record.marked_at == at(60)


def test_scan_after_grace_is_late(engine, make_session, scan, student):
    session = make_session(grace_period_seconds=600)
    decision = engine.verifier.verify(scan(student, session, at=at(15 * 60)))
    assert decision.accepted
    assert decision.status == AttendanceStatus.LATE


def test_present_deadline_is_exclusive(engine, make_session, scan, student, other_student):
    session = make_session(grace_period_seconds=600)
    before = engine.verifier.verify(scan(student, session, at=at(599)))
    on_boundary = engine.verifier.verify(scan(other_student, session, at=at(600)))
    assert before.status == AttendanceStatus.PRESENT
    assert on_boundary.status == AttendanceStatus.LATE


def test_duplicate_scan_is_idempotent(engine, make_session, scan, student):
    session = make_session()
    first = engine.verifier.verify(scan(student, session))
    second = engine.verifier.verify(scan(student, session, at=at(120)))
    third = engine.verifier.verify(scan(student, session, at=at(180)))

    assert first.accepted
    assert not second.accepted
    assert second.reason_code == ReasonCode.ALREADY_RECORDED
    assert second.status == AttendanceStatus.PRESENT
    assert third.attempt_count == 3

    record = AttendanceRecord.query.filter_by(student_id=student.id).one()
    assert record.status == AttendanceStatus.PRESENT
    assert record.attempt_count == 3
    assert record.marked_at == at(60)
    assert ScanAttempt.query.filter_by(student_id=student.id).count() == 3


def test_unknown_session(engine, app, student):
    decision = engine.verifier.verify(ScanRequest(
        student_id=student.id, session_key='missing', token='x', received_at=BASE_TIME
    ))
    assert decision.reason_code == ReasonCode.SESSION_NOT_FOUND
    attempt = ScanAttempt.query.one()
    assert attempt.session_id is None
    assert attempt.session_key == 'missing'


def test_scheduled_session_is_not_active(engine, make_session, scan, student):
    session = make_session(activate=False)
    decision = engine.verifier.verify(scan(student, session, token='anything', at=at(-300)))
    assert decision.reason_code == ReasonCode.SESSION_NOT_ACTIVE


def test_closed_session_is_not_active(engine, make_session, scan, student):
    session = make_session()
    token = session.current_token
    engine.sessions.close(session.session_key, at(120))

    decision = engine.verifier.verify(scan(student, session, token=token, at=at(180)))
    assert decision.reason_code == ReasonCode.SESSION_NOT_ACTIVE
    assert AttendanceRecord.query.count() == 0


def test_explicitly_activated_session_rejects_early_scans(engine, make_session, scan, student):
    session = make_session(activate=False)
    session = engine.sessions.activate(session.session_key, at(-600))

    decision = engine.verifier.verify(scan(student, session, at=at(-300)))
    assert decision.reason_code == ReasonCode.TOO_EARLY


def test_scan_after_admission_window(engine, make_session, scan, student):
    session = make_session(grace_period_seconds=600)
    token = session.current_token
    decision = engine.verifier.verify(scan(student, session, token=token, at=at(3600 + 601)))
    assert decision.reason_code == ReasonCode.OUTSIDE_TIME_WINDOW


def test_rotated_token_is_rejected(engine, make_session, scan, student):
    session = make_session()
    stale = session.current_token
    fresh = engine.sessions.rotate_token(session.session_key, at(30))

    rejected = engine.verifier.verify(scan(student, session, token=stale, at=at(31)))
    assert rejected.reason_code == ReasonCode.TOKEN_EXPIRED

    accepted = engine.verifier.verify(scan(student, session, token=fresh, at=at(32)))
    assert accepted.accepted
    # Token rejections happen before counting
    assert accepted.attempt_count == 1


def test_forged_token_is_rejected(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, token=session.current_token + 'x'))
    assert decision.reason_code == ReasonCode.TOKEN_EXPIRED


def test_not_enrolled(engine, make_session, scan, outsider):
    session = make_session()
    decision = engine.verifier.verify(scan(outsider, session))
    assert decision.reason_code == ReasonCode.NOT_ENROLLED


def test_outside_geofence(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, location=FAR_AWAY))

    assert decision.reason_code == ReasonCode.OUTSIDE_GEOFENCE
    assert decision.status == AttendanceStatus.REJECTED
    assert decision.attempt_count == 1
    assert decision.signals['geo']['distance_meters'] == pytest.approx(1000.8, abs=1)

    record = AttendanceRecord.query.filter_by(student_id=student.id).one()
    assert record.status == AttendanceStatus.REJECTED
    assert record.reason_code == ReasonCode.OUTSIDE_GEOFENCE


def test_poor_accuracy(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, location=BLURRY))
    assert decision.reason_code == ReasonCode.POOR_LOCATION_ACCURACY


def test_missing_location(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, location=None))
    assert decision.reason_code == ReasonCode.LOCATION_REQUIRED


def test_location_not_required(engine, make_session, scan, student):
    session = make_session(location_required=False)
    decision = engine.verifier.verify(scan(student, session, location=FAR_AWAY))
    assert decision.accepted
    assert decision.signals['geo'] is None


def test_photo_required(engine, make_session, scan, student):
    session = make_session(photo_required=True)
    assert engine.verifier.verify(scan(student, session)).reason_code == ReasonCode.PHOTO_REQUIRED

    decision = engine.verifier.verify(scan(student, session, at=at(90), photo_hash='a' * 64))
    assert decision.accepted


def test_rejected_attempt_can_be_followed_by_success(engine, make_session, scan, student):
    session = make_session()
    engine.verifier.verify(scan(student, session, location=FAR_AWAY))
    decision = engine.verifier.verify(scan(student, session, at=at(120)))

    assert decision.accepted
    assert decision.attempt_count == 2
    record = AttendanceRecord.query.filter_by(student_id=student.id).one()
    assert record.status == AttendanceStatus.PRESENT


def test_max_attempts_regardless_of_valid_signals(engine, make_session, scan, student):
    session = make_session(max_attempts=3)
    for i in range(3):
        decision = engine.verifier.verify(scan(student, session, at=at(60 * (i + 1)), location=FAR_AWAY))
        assert decision.reason_code == ReasonCode.OUTSIDE_GEOFENCE

    fourth = engine.verifier.verify(scan(student, session, at=at(240)))
    assert fourth.reason_code == ReasonCode.MAX_ATTEMPTS_EXCEEDED
    assert fourth.attempt_count == 4
    assert AttendanceRecord.query.filter_by(student_id=student.id).one().status == AttendanceStatus.REJECTED


def test_shared_device_raises_risk_for_second_student(engine, make_session, scan, student, other_student):
    session = make_session()
    first = engine.verifier.verify(scan(student, session, at=at(60), device_fingerprint='fp-shared-0001'))
    second = engine.verifier.verify(scan(other_student, session, at=at(90), device_fingerprint='fp-shared-0001'))

    assert first.accepted and second.accepted
    assert first.risk_level == RiskLevel.LOW
    assert second.risk_level == RiskLevel.MEDIUM
    assert second.risk_score == 45
    assert second.signals['device']['shared_with'] == [student.id]

    alert = FraudAlert.query.one()
    assert alert.alert_type == AlertType.DEVICE_SHARING
    assert alert.student_id == other_student.id


def test_high_risk_is_accepted_but_flagged(engine, make_session, scan, student, other_student):
    session = make_session(max_attempts=5)
    engine.verifier.verify(scan(student, session, at=at(30), device_fingerprint='fp-shared-0001'))
    for seconds in (60, 70, 80):
        engine.verifier.verify(scan(other_student, session, at=at(seconds), location=BLURRY))

    decision = engine.verifier.verify(scan(other_student, session, at=at(90), device_fingerprint='fp-shared-0001'))

    assert decision.accepted
    assert decision.risk_score == 65
    assert decision.risk_level == RiskLevel.HIGH
    assert decision.flagged_for_review
    record = AttendanceRecord.query.filter_by(student_id=other_student.id).one()
    assert record.flagged_for_review
    types = {alert.alert_type for alert in FraudAlert.query.filter_by(student_id=other_student.id)}
    assert types == {AlertType.DEVICE_SHARING, AlertType.RAPID_ATTEMPTS, AlertType.SUSPICIOUS_PATTERN}


def test_critical_risk_is_rejected(engine, make_session, scan, student, other_student):
    session = make_session(max_attempts=5)
    engine.verifier.verify(scan(student, session, at=at(30), device_fingerprint='fp-shared-0001',
                                photo_hash='b' * 64))
    for seconds in (60, 70, 80):
        engine.verifier.verify(scan(other_student, session, at=at(seconds), location=BLURRY))

    decision = engine.verifier.verify(scan(other_student, session, at=at(90),
                                           device_fingerprint='fp-shared-0001', photo_hash='b' * 64))

    assert not decision.accepted
    assert decision.reason_code == ReasonCode.FRAUD_REJECTED
    assert decision.risk_level == RiskLevel.CRITICAL
    assert decision.risk_score == 80
    assert AttendanceRecord.query.filter_by(student_id=other_student.id).one().status == AttendanceStatus.REJECTED


def test_fraud_detection_disabled(engine, make_session, scan, student, other_student):
    session = make_session(fraud_detection_enabled=False)
    engine.verifier.verify(scan(student, session, device_fingerprint='fp-shared-0001'))
    decision = engine.verifier.verify(scan(other_student, session, at=at(90), device_fingerprint='fp-shared-0001'))

    assert decision.accepted
    assert decision.risk_score == 0
    assert decision.signals['device']['is_shared_with_other'] is True
    assert FraudAlert.query.count() == 0


def test_rotation_during_verification_fails_closed(engine, make_session, scan, student, monkeypatch):
    session = make_session()
    key = session.session_key
    original_score = engine.verifier.scorer.score

    def score_then_rotate(signals):
        engine.sessions.rotate_token(key, at(61))
        return original_score(signals)

    monkeypatch.setattr(engine.verifier.scorer, 'score', score_then_rotate)
    decision = engine.verifier.verify(scan(student, session))

    assert decision.reason_code == ReasonCode.TOKEN_EXPIRED
    assert AttendanceRecord.query.count() == 0


def test_notification_failure_does_not_change_decision(engine, make_session, scan, student):
    class BrokenNotifier:
        def notify(self, student_id, outcome):
            raise RuntimeError("mail server down")

    engine.verifier.notifier = BrokenNotifier()
    session = make_session()
    assert engine.verifier.verify(scan(student, session)).accepted


def test_public_view_hides_signals(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session))

    public = decision.to_public_dict()
    assert set(public) == {'session_id', 'accepted', 'status', 'reason_code', 'risk_level'}
    assert 'signals' in decision.to_dict()


def test_attempts_are_append_only(engine, make_session, scan, student):
    session = make_session()
    engine.verifier.verify(scan(student, session))
    attempt = ScanAttempt.query.one()

    attempt.accepted = False
    with pytest.raises(ValueError):
        db.session.commit()
    db.session.rollback()


def test_request_from_payload_validation(app, student):
    request = ScanRequest.from_payload(student.id, {
        'session_id': 'abc',
        'token': 'tok',
        'location': {'latitude': CAIRO[0], 'longitude': CAIRO[1], 'accuracy': 12},
        'device_fingerprint': {'userAgent': 'Mozilla/5.0', 'platform': 'Linux'},
        'client_timestamp': '2026-03-02T09:01:00Z'
    }, received_at=BASE_TIME)

    assert request.location.accuracy == 12.0
    assert len(request.device_fingerprint) == 64
    assert request.client_timestamp == at(60)

    with pytest.raises(ValidationError):
        ScanRequest.from_payload(student.id, {'session_id': 'abc'})
    with pytest.raises(ValidationError):
        ScanRequest.from_payload(student.id, {'session_id': 'abc', 'token': 't',
                                              'location': {'latitude': 95, 'longitude': 0}})


def test_concurrent_scans_record_exactly_once(tmp_path):
    app = create_app('testing', test_config={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.db'}"
    })

    with app.app_context():
        db.create_all()
        teacher = User(email='t@example.com', name='T', role=UserRole.TEACHER).save()
        student = User(email='s@example.com', name='S', role=UserRole.STUDENT).save()
        course = Course(code='PHY1', title='Physics', instructor_id=teacher.id).save()
        Enrollment(course_id=course.id, student_id=student.id).save()

        engine = get_engine()
        session = engine.sessions.open(
            teacher.id, course.id, Geofence(CAIRO[0], CAIRO[1], 500.0),
            SecurityConfig(max_attempts=20), BASE_TIME, BASE_TIME + timedelta(hours=1)
        )
        session = engine.sessions.get(session.session_key, BASE_TIME)
        request = ScanRequest(
            student_id=student.id,
            session_key=session.session_key,
            token=session.current_token,
            location=ReportedLocation(CAIRO[0], CAIRO[1], 10.0),
            device_fingerprint='fp-phone-0001',
            received_at=at(60)
        )
        student_id, session_id = student.id, session.id

    decisions = []
    errors = []
    barrier = threading.Barrier(8)

    def worker():
        with app.app_context():
            try:
                barrier.wait()
                decisions.append(get_engine().verifier.verify(request))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert sum(1 for d in decisions if d.accepted) == 1
    assert sum(1 for d in decisions if d.reason_code == ReasonCode.ALREADY_RECORDED) == 7

    with app.app_context():
        records = AttendanceRecord.query.filter_by(student_id=student_id, session_id=session_id).all()
        assert len(records) == 1
        assert records[0].attempt_count == 8
        db.session.remove()
        db.drop_all()


def test_payload_signals_mark_automated_clients(app, student):
    request = ScanRequest.from_payload(student.id, {
        'session_id': 'abc',
        'token': 'tok',
        'device_fingerprint': {'userAgent': 'python-requests bot (VMware)', 'platform': 'Linux'}
    }, received_at=BASE_TIME)
    assert request.automated_client
    assert request.virtual_machine

    plain = ScanRequest.from_payload(student.id, {
        'session_id': 'abc', 'token': 'tok', 'device_fingerprint': 'fp-phone-0001'
    }, received_at=BASE_TIME)
    assert not plain.automated_client
    assert not plain.virtual_machine


def test_automated_client_is_scored_and_alerted(engine, make_session, scan, student):
    session = make_session()
    decision = engine.verifier.verify(scan(student, session, automated_client=True))

    assert decision.accepted
    assert decision.risk_score == 30
    assert decision.signals['fraud']['automated_client'] is True
    alert = FraudAlert.query.one()
    assert alert.alert_type == AlertType.SUSPICIOUS_PATTERN
    assert alert.severity == RiskLevel.MEDIUM


def test_many_devices_are_scored(engine, make_session, scan, student):
    session = make_session()
    for index in range(3):
        engine.devices.register(student.id, f'fp-old-device-{index}', BASE_TIME, BASE_TIME)

    decision = engine.verifier.verify(scan(student, session, device_fingerprint='fp-phone-0001'))

    assert decision.accepted
    assert decision.signals['device']['device_change_count'] == 3
    assert decision.signals['score']['contributions']['device_count'] == 10.0
    assert decision.signals['score']['contributions']['device_changed'] == 10.0
    assert decision.risk_score == 20
    assert {alert.alert_type for alert in FraudAlert.query} == {AlertType.MULTIPLE_DEVICES}


def _failing_commit():
    raise OperationalError("COMMIT", {}, Exception("disk gone"))


def test_storage_failure_is_never_reported_as_accepted(engine, make_session, scan, student, monkeypatch):
    session = make_session()
    monkeypatch.setattr(db.session, 'commit', _failing_commit)

    with pytest.raises(SystemUnavailable):
        engine.verifier.verify(scan(student, session))

    monkeypatch.undo()
    assert AttendanceRecord.query.count() == 0
    assert ScanAttempt.query.count() == 0

    # Nothing was half-written and the pair is not locked out
    decision = engine.verifier.verify(scan(student, session, at=at(70)))
    assert decision.accepted
    assert decision.attempt_count == 1


class _TwoSuccessfulRows:
    """Query stand-in for a store that already holds a duplicated PRESENT pair."""

    def filter_by(self, **kwargs):
        return self

    def filter(self, *criteria):
        return self

    def first(self):
        return None

    def count(self):
        return 2


def test_duplicate_successful_records_raise(engine, make_session, scan, student, monkeypatch, caplog):
    session = make_session()
    monkeypatch.setattr(AttendanceRecord, 'query', _TwoSuccessfulRows())

    with pytest.raises(InternalConsistencyError):
        engine.verifier.verify(scan(student, session))

    assert any(record.levelname == 'CRITICAL' for record in caplog.records)


def test_conflicting_insert_reports_already_recorded(engine, make_session, scan, student, monkeypatch):
    session = make_session()
    assert engine.verifier.verify(scan(student, session)).accepted

    # The next lookup misses the row, as a writer outside the scan lock would
    real_record_for = engine.verifier._record_for
    lookups = []

    def record_for(student_id, session_id):
        lookups.append(student_id)
        if len(lookups) == 1:
            return None
        return real_record_for(student_id, session_id)

    monkeypatch.setattr(engine.verifier, '_record_for', record_for)
    decision = engine.verifier.verify(scan(student, session, at=at(90)))

    assert not decision.accepted
    assert decision.reason_code == ReasonCode.ALREADY_RECORDED
    assert decision.status == AttendanceStatus.PRESENT
    assert len(lookups) == 2

    record = AttendanceRecord.query.one()
    assert record.status == AttendanceStatus.PRESENT
    assert record.attempt_count == 2
    assert decision.attempt_count == 2
    assert [a.reason_code for a in ScanAttempt.query.order_by(ScanAttempt.id)] == [
        ReasonCode.ACCEPTED, ReasonCode.ALREADY_RECORDED
    ]


def test_session_changes_wait_for_the_record_write(engine, make_session, scan, student, monkeypatch):
    session = make_session()
    key = session.session_key
    real_accept = engine.verifier._accept
    events = []
    closers = []

    def competing_close():
        with engine.verifier.locks.hold(('session', key)):
            events.append('session-locked')

    def accept(*args, **kwargs):
        closer = threading.Thread(target=competing_close)
        closers.append(closer)
        closer.start()
        closer.join(timeout=0.2)
        decision = real_accept(*args, **kwargs)
        events.append('recorded')
        return decision

    monkeypatch.setattr(engine.verifier, '_accept', accept)
    decision = engine.verifier.verify(scan(student, session))
    closers[0].join(timeout=5)

    assert decision.accepted
    assert events == ['recorded', 'session-locked']
