"""Weighted, deterministic fraud-risk scoring for scan attempts."""
import math
from collections import namedtuple
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from secure_attendance.models.attendance import RiskLevel
from secure_attendance.models.fraud_alert import AlertType


@dataclass(frozen=True)
class FraudSignals:
    """Everything the scorer knows about one attempt and its history."""

    device_shared: bool = False
    device_changed: bool = False
    recent_attempts: int = 0
    accuracy_meters: Optional[float] = None
    prior_accuracy_meters: Tuple[float, ...] = ()
    distance_meters: Optional[float] = None
    radius_meters: Optional[float] = None
    prior_fraud_flags: int = 0
    clock_skew_seconds: Optional[float] = None
    photo_reused: bool = False
    device_change_count: int = 0
    automated_client: bool = False
    virtual_machine: bool = False

    def to_dict(self) -> Dict:
        return {
            'device_shared': self.device_shared,
            'device_changed': self.device_changed,
            'recent_attempts': self.recent_attempts,
            'accuracy_meters': self.accuracy_meters,
            'prior_accuracy_meters': list(self.prior_accuracy_meters),
            'distance_meters': self.distance_meters,
            'radius_meters': self.radius_meters,
            'prior_fraud_flags': self.prior_fraud_flags,
            'clock_skew_seconds': self.clock_skew_seconds,
            'photo_reused': self.photo_reused,
            'device_change_count': self.device_change_count,
            'automated_client': self.automated_client,
            'virtual_machine': self.virtual_machine
        }


@dataclass(frozen=True)
class RiskScore:
    """Scorer output: 0-100 value, its level and per-signal points."""

    value: int
    level: RiskLevel
    contributions: Dict[str, float] = field(default_factory=dict)

    @property
    def factors(self) -> List[str]:
        return [name for name, points in self.contributions.items() if points > 0]

    def to_dict(self) -> Dict:
        return {
            'value': self.value,
            'level': self.level.value,
            'contributions': dict(self.contributions),
            'factors': self.factors
        }


@dataclass(frozen=True)
class AlertDescriptor:
    alert_type: AlertType
    severity: RiskLevel
    description: str
    details: Dict = field(default_factory=dict)


SignalRule = namedtuple('SignalRule', ['signal', 'weight', 'extractor'])


# =================== EXTRACTORS ===================
# Each returns an intensity; the scorer clamps it into [0, 1].

RAPID_ATTEMPTS_SATURATION = 3
ACCURACY_DEGRADATION_SATURATION_METERS = 50.0
FRAUD_HISTORY_SATURATION = 3
CLOCK_SKEW_SATURATION_SECONDS = 300.0
# Devices beyond the first; saturates at four known devices
DEVICE_COUNT_SATURATION = 3


def _device_shared(signals: FraudSignals) -> float:
    return 1.0 if signals.device_shared else 0.0


def _rapid_attempts(signals: FraudSignals) -> float:
    return signals.recent_attempts / RAPID_ATTEMPTS_SATURATION


def _accuracy_degradation(signals: FraudSignals) -> float:
    if signals.accuracy_meters is None or not signals.prior_accuracy_meters:
        return 0.0
    baseline = sum(signals.prior_accuracy_meters) / len(signals.prior_accuracy_meters)
    return (signals.accuracy_meters - baseline) / ACCURACY_DEGRADATION_SATURATION_METERS


def _geofence_distance(signals: FraudSignals) -> float:
    if signals.distance_meters is None or not signals.radius_meters:
        return 0.0
    return signals.distance_meters / signals.radius_meters


def _fraud_history(signals: FraudSignals) -> float:
    return signals.prior_fraud_flags / FRAUD_HISTORY_SATURATION


def _device_changed(signals: FraudSignals) -> float:
    return 1.0 if signals.device_changed else 0.0


def _clock_skew(signals: FraudSignals) -> float:
    if signals.clock_skew_seconds is None:
        return 0.0
    return abs(signals.clock_skew_seconds) / CLOCK_SKEW_SATURATION_SECONDS


def _photo_reused(signals: FraudSignals) -> float:
    return 1.0 if signals.photo_reused else 0.0


def _device_count(signals: FraudSignals) -> float:
    return signals.device_change_count / DEVICE_COUNT_SATURATION


def _automated_client(signals: FraudSignals) -> float:
    return 1.0 if signals.automated_client else 0.0


def _virtual_machine(signals: FraudSignals) -> float:
    return 1.0 if signals.virtual_machine else 0.0


DEFAULT_RULES: Tuple[SignalRule, ...] = (
    SignalRule('device_shared', 45, _device_shared),
    SignalRule('rapid_attempts', 20, _rapid_attempts),
    SignalRule('accuracy_degradation', 10, _accuracy_degradation),
    SignalRule('geofence_distance', 15, _geofence_distance),
    SignalRule('fraud_history', 20, _fraud_history),
    SignalRule('device_changed', 10, _device_changed),
    SignalRule('clock_skew', 10, _clock_skew),
    SignalRule('photo_reused', 15, _photo_reused),
    SignalRule('device_count', 10, _device_count),
    SignalRule('automated_client', 30, _automated_client),
    SignalRule('virtual_machine', 20, _virtual_machine),
)

DEFAULT_THRESHOLDS: Dict[str, int] = {
    'MEDIUM': 40,
    'HIGH': 60,
    'CRITICAL': 80,
}


class FraudScorer:
    """Sums weighted signal intensities and classifies the result.

    Pure and deterministic: identical signals always give the identical
    score, so the policy can be tested without the verifier around it.
    """

    MAX_SCORE = 100

    def __init__(self, rules: Tuple[SignalRule, ...] = DEFAULT_RULES,
                 thresholds: Optional[Mapping[str, int]] = None):
        self.rules = tuple(rules)
        self.thresholds = dict(DEFAULT_THRESHOLDS)
        if thresholds:
            unknown = set(thresholds) - set(DEFAULT_THRESHOLDS)
            if unknown:
                raise ValueError(f"Unknown risk thresholds: {sorted(unknown)}")
            self.thresholds.update(thresholds)
        if not (0 < self.thresholds['MEDIUM'] < self.thresholds['HIGH']
                < self.thresholds['CRITICAL'] <= self.MAX_SCORE):
            raise ValueError("Risk thresholds must increase: 0 < MEDIUM < HIGH < CRITICAL <= 100")

    @classmethod
    def with_weights(cls, weights: Optional[Mapping[str, float]] = None,
                     thresholds: Optional[Mapping[str, int]] = None) -> 'FraudScorer':
        """Build a scorer from the default rules with some weights overridden."""
        weights = dict(weights or {})
        known = {rule.signal for rule in DEFAULT_RULES}
        unknown = set(weights) - known
        if unknown:
            raise ValueError(f"Unknown fraud signals: {sorted(unknown)}")
        if any(weight < 0 for weight in weights.values()):
            raise ValueError("Fraud signal weights cannot be negative")

        rules = tuple(
            rule._replace(weight=weights.get(rule.signal, rule.weight))
            for rule in DEFAULT_RULES
        )
        return cls(rules=rules, thresholds=thresholds)

    def classify(self, value: int) -> RiskLevel:
        if value >= self.thresholds['CRITICAL']:
            return RiskLevel.CRITICAL
        if value >= self.thresholds['HIGH']:
            return RiskLevel.HIGH
        if value >= self.thresholds['MEDIUM']:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def score(self, signals: FraudSignals) -> RiskScore:
        contributions = {}
        for rule in self.rules:
            intensity = min(1.0, max(0.0, float(rule.extractor(signals))))
            contributions[rule.signal] = round(rule.weight * intensity, 2)

        total = sum(contributions.values())
        # Half-up rounding; Python's round() would send 62.5 to 62
        value = min(self.MAX_SCORE, int(math.floor(total + 0.5)))
        return RiskScore(value=value, level=self.classify(value), contributions=contributions)

    def alerts_for(self, score: RiskScore, signals: FraudSignals) -> List[AlertDescriptor]:
        """Alerts worth surfacing to the instructor for this attempt."""
        alerts = []
        elevated = score.level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        points = score.contributions

        if signals.device_shared:
            alerts.append(AlertDescriptor(
                AlertType.DEVICE_SHARING,
                score.level if elevated else RiskLevel.MEDIUM,
                'Device fingerprint is active for another student in this session',
                {'points': points.get('device_shared', 0)}
            ))

        if points.get('rapid_attempts', 0) >= self._weight('rapid_attempts') > 0:
            alerts.append(AlertDescriptor(
                AlertType.RAPID_ATTEMPTS,
                RiskLevel.MEDIUM,
                'Repeated scan attempts in a short interval',
                {'recent_attempts': signals.recent_attempts}
            ))

        location_points = points.get('geofence_distance', 0) + points.get('accuracy_degradation', 0)
        location_weight = self._weight('geofence_distance') + self._weight('accuracy_degradation')
        if location_weight and location_points >= 0.75 * location_weight:
            alerts.append(AlertDescriptor(
                AlertType.LOCATION_SPOOFING,
                RiskLevel.MEDIUM,
                'Location at the geofence edge with degrading accuracy',
                {'distance_meters': signals.distance_meters,
                 'accuracy_meters': signals.accuracy_meters}
            ))

        if points.get('clock_skew', 0) >= self._weight('clock_skew') > 0:
            alerts.append(AlertDescriptor(
                AlertType.TIME_MANIPULATION,
                RiskLevel.MEDIUM,
                'Client clock differs from server time',
                {'clock_skew_seconds': signals.clock_skew_seconds}
            ))

        if signals.photo_reused:
            alerts.append(AlertDescriptor(
                AlertType.PHOTO_REUSE,
                RiskLevel.HIGH,
                'Photo already submitted by another student in this session'
            ))

        if points.get('device_count', 0) >= self._weight('device_count') > 0:
            alerts.append(AlertDescriptor(
                AlertType.MULTIPLE_DEVICES,
                RiskLevel.MEDIUM,
                'Student has scanned from an unusual number of devices',
                {'device_change_count': signals.device_change_count}
            ))

        if elevated:
            alerts.append(AlertDescriptor(
                AlertType.SUSPICIOUS_PATTERN,
                score.level,
                f'{score.level.value.title()} fraud risk detected (score {score.value})',
                {'score': score.value, 'factors': score.factors}
            ))
        elif signals.automated_client or signals.virtual_machine:
            alerts.append(AlertDescriptor(
                AlertType.SUSPICIOUS_PATTERN,
                RiskLevel.MEDIUM,
                'Scan submitted from an automated or virtualized client',
                {'automated_client': signals.automated_client,
                 'virtual_machine': signals.virtual_machine}
            ))

        return alerts

    def _weight(self, signal: str) -> float:
        for rule in self.rules:
            if rule.signal == signal:
                return rule.weight
        return 0
