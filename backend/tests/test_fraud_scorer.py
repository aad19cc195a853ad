"""Tests for the weighted fraud scorer."""
import pytest

from secure_attendance.models.attendance import RiskLevel
from secure_attendance.models.fraud_alert import AlertType
from secure_attendance.services.fraud_scorer import FraudScorer, FraudSignals


@pytest.fixture
def scorer():
    return FraudScorer()


def test_clean_attempt_scores_zero(scorer):
    score = scorer.score(FraudSignals())
    assert score.value == 0
    assert score.level == RiskLevel.LOW
    assert score.factors == []


def test_shared_device_alone_is_medium(scorer):
    score = scorer.score(FraudSignals(device_shared=True))
    assert score.value == 45
    assert score.level == RiskLevel.MEDIUM
    assert score.factors == ['device_shared']


def test_shared_device_with_rapid_attempts_is_high(scorer):
    score = scorer.score(FraudSignals(device_shared=True, recent_attempts=3))
    assert score.value == 65
    assert score.level == RiskLevel.HIGH


def test_fraud_history_pushes_to_critical(scorer):
    score = scorer.score(FraudSignals(device_shared=True, recent_attempts=3, prior_fraud_flags=3))
    assert score.value == 85
    assert score.level == RiskLevel.CRITICAL


def test_continuous_signals_and_half_up_rounding(scorer):
    signals = FraudSignals(
        distance_meters=250.0, radius_meters=500.0,       # 15 * 0.5 = 7.5
        accuracy_meters=35.0, prior_accuracy_meters=(10.0, 10.0)  # 10 * 0.5 = 5
    )
    score = scorer.score(signals)
    assert score.contributions['geofence_distance'] == 7.5
    assert score.contributions['accuracy_degradation'] == 5.0
    assert score.value == 13
    assert score.level == RiskLevel.LOW


def test_improving_accuracy_is_not_penalized(scorer):
    score = scorer.score(FraudSignals(accuracy_meters=5.0, prior_accuracy_meters=(40.0,)))
    assert score.contributions['accuracy_degradation'] == 0


def test_partial_rapid_attempts_and_clock_skew(scorer):
    score = scorer.score(FraudSignals(recent_attempts=1, clock_skew_seconds=-150.0))
    assert score.contributions['rapid_attempts'] == pytest.approx(6.67)
    assert score.contributions['clock_skew'] == 5.0
    assert score.value == 12


def test_score_is_capped_at_100(scorer):
    signals = FraudSignals(
        device_shared=True, device_changed=True, recent_attempts=10,
        accuracy_meters=200.0, prior_accuracy_meters=(5.0,),
        distance_meters=500.0, radius_meters=500.0, prior_fraud_flags=5,
        clock_skew_seconds=3600.0, photo_reused=True
    )
    score = scorer.score(signals)
    assert score.value == 100
    assert score.level == RiskLevel.CRITICAL


def test_scoring_is_deterministic(scorer):
    signals = FraudSignals(device_shared=True, recent_attempts=2, distance_meters=120.0,
                           radius_meters=500.0, clock_skew_seconds=42.0)
    results = {scorer.score(signals).value for _ in range(20)}
    assert len(results) == 1


@pytest.mark.parametrize('value, level', [
    (0, RiskLevel.LOW),
    (39, RiskLevel.LOW),
    (40, RiskLevel.MEDIUM),
    (59, RiskLevel.MEDIUM),
    (60, RiskLevel.HIGH),
    (79, RiskLevel.HIGH),
    (80, RiskLevel.CRITICAL),
    (100, RiskLevel.CRITICAL),
])
def test_level_thresholds(scorer, value, level):
    assert scorer.classify(value) == level


def test_weights_can_be_overridden():
    scorer = FraudScorer.with_weights({'device_shared': 80})
    score = scorer.score(FraudSignals(device_shared=True))
    assert score.value == 80
    assert score.level == RiskLevel.CRITICAL


def test_thresholds_can_be_overridden():
    scorer = FraudScorer.with_weights(thresholds={'MEDIUM': 30, 'HIGH': 45, 'CRITICAL': 90})
    assert scorer.score(FraudSignals(device_shared=True)).level == RiskLevel.HIGH


def test_invalid_policy_is_rejected():
    with pytest.raises(ValueError):
        FraudScorer.with_weights({'telepathy': 10})
    with pytest.raises(ValueError):
        FraudScorer.with_weights({'device_shared': -1})
    with pytest.raises(ValueError):
        FraudScorer(thresholds={'MEDIUM': 70, 'HIGH': 60})


def test_alerts_for_shared_device_under_pressure(scorer):
    signals = FraudSignals(device_shared=True, recent_attempts=3)
    alerts = scorer.alerts_for(scorer.score(signals), signals)
    types = [alert.alert_type for alert in alerts]

    assert types == [AlertType.DEVICE_SHARING, AlertType.RAPID_ATTEMPTS, AlertType.SUSPICIOUS_PATTERN]
    assert alerts[0].severity == RiskLevel.HIGH
    assert alerts[-1].details['score'] == 65


def test_alerts_for_time_and_photo(scorer):
    signals = FraudSignals(clock_skew_seconds=900.0, photo_reused=True)
    alerts = scorer.alerts_for(scorer.score(signals), signals)
    assert {alert.alert_type for alert in alerts} == {AlertType.TIME_MANIPULATION, AlertType.PHOTO_REUSE}


def test_no_alerts_for_clean_attempt(scorer):
    signals = FraudSignals()
    assert scorer.alerts_for(scorer.score(signals), signals) == []


@pytest.mark.parametrize('changes, points, value', [
    (1, 3.33, 3),
    (2, 6.67, 7),
    (3, 10.0, 10),
    (6, 10.0, 10),
])
def test_device_count_saturates_at_four_devices(scorer, changes, points, value):
    score = scorer.score(FraudSignals(device_change_count=changes))
    assert score.contributions['device_count'] == points
    assert score.value == value


def test_automated_and_virtual_clients(scorer):
    assert scorer.score(FraudSignals(automated_client=True)).value == 30
    assert scorer.score(FraudSignals(virtual_machine=True)).value == 20

    both = scorer.score(FraudSignals(automated_client=True, virtual_machine=True))
    assert both.value == 50
    assert both.level == RiskLevel.MEDIUM

    shared_bot = scorer.score(FraudSignals(device_shared=True, automated_client=True))
    assert shared_bot.value == 75
    assert shared_bot.level == RiskLevel.HIGH

    everything = scorer.score(FraudSignals(device_shared=True, automated_client=True,
                                           virtual_machine=True))
    assert everything.value == 95
    assert everything.level == RiskLevel.CRITICAL


def test_alerts_for_device_hopping_bot(scorer):
    signals = FraudSignals(device_change_count=3, automated_client=True)
    score = scorer.score(signals)
    alerts = scorer.alerts_for(score, signals)

    assert score.value == 40
    assert [alert.alert_type for alert in alerts] == [
        AlertType.MULTIPLE_DEVICES, AlertType.SUSPICIOUS_PATTERN
    ]
    assert alerts[1].severity == RiskLevel.MEDIUM
    assert alerts[1].details == {'automated_client': True, 'virtual_machine': False}
