"""Tests for security metrics and exports."""
from datetime import timedelta

import pytest

from conftest import BASE_TIME
from secure_attendance.services.geo_service import ReportedLocation


@pytest.fixture
def populated(engine, make_session, scan, student, other_student):
    """One accepted, one outside the geofence, one stale token, one shared device."""
    session = make_session()
    engine.verifier.verify(scan(student, session, device_fingerprint='fp-shared-0001'))
    engine.verifier.verify(scan(other_student, session, at=BASE_TIME + timedelta(seconds=70),
                                location=ReportedLocation(30.0534, 31.2357, 10.0)))
    engine.verifier.verify(scan(other_student, session, at=BASE_TIME + timedelta(seconds=80),
                                token='stale'))
    engine.verifier.verify(scan(other_student, session, at=BASE_TIME + timedelta(seconds=90),
                                device_fingerprint='fp-shared-0001'))
    return session


def test_empty_input_gives_zero_metrics(engine, app):
    metrics = engine.analytics.summarize([])
    assert metrics.total_attempts == 0
    assert metrics.success_rate == 0.0
    assert metrics.fraud_rate == 0.0

    assert engine.analytics.summarize(['unknown-session']).total_attempts == 0


def test_session_metrics(engine, populated):
    metrics = engine.analytics.summarize([populated.session_key])

    assert metrics.total_attempts == 4
    assert metrics.accepted == 2
    assert metrics.rejected == 2
    assert metrics.success_rate == 0.5
    assert metrics.fraud_rate == 0.0
    assert metrics.violations == {'device': 1, 'location': 1, 'time': 0, 'token': 1}
    assert metrics.reasons == {'Accepted': 2, 'OutsideGeofence': 1, 'TokenExpired': 1}
    assert metrics.alert_types == {'DEVICE_SHARING': 1}
    assert metrics.unique_students == 2


def test_metrics_are_recomputed_not_cached(engine, populated, scan, student):
    before = engine.analytics.summarize([populated.session_key])
    engine.verifier.verify(scan(student, populated, at=BASE_TIME + timedelta(seconds=120)))
    after = engine.analytics.summarize([populated.session_key])
    assert after.total_attempts == before.total_attempts + 1
    assert after.reasons['AlreadyRecorded'] == 1


def test_course_metrics_span_sessions(engine, populated, make_session, scan, student, course):
    second = make_session(open_time=BASE_TIME + timedelta(days=7))
    engine.verifier.verify(scan(student, second, at=BASE_TIME + timedelta(days=7, seconds=30)))

    metrics = engine.analytics.summarize_course(course.id)
    assert metrics.total_attempts == 5
    assert metrics.accepted == 3
    assert engine.analytics.summarize_course(9999).total_attempts == 0


def test_export_frame(engine, populated):
    frame = engine.analytics.export_frame([populated.session_key])

    assert list(frame.columns) == engine.analytics.ATTEMPT_COLUMNS
    assert len(frame) == 4
    assert list(frame['reason_code']) == ['Accepted', 'OutsideGeofence', 'TokenExpired', 'Accepted']
    assert frame['device_shared'].sum() == 1


def test_export_frame_for_unknown_session_is_empty(engine, app):
    frame = engine.analytics.export_frame(['nope'])
    assert frame.empty
    assert list(frame.columns) == engine.analytics.ATTEMPT_COLUMNS


def test_summary_frame_flattens_groups(engine, populated):
    frame = engine.analytics.summary_frame([populated.session_key])
    assert len(frame) == 1
    assert frame.loc[0, 'violations.location'] == 1
    assert frame.loc[0, 'reasons.TokenExpired'] == 1
