"""Security statistics derived from stored scan attempts and records."""
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List

import pandas as pd

from secure_attendance import db
from secure_attendance.models.attendance import (
    AttendanceRecord, LOCATION_VIOLATIONS, ReasonCode, RiskLevel, TIME_VIOLATIONS
)
from secure_attendance.models.attendance_session import AttendanceSession
from secure_attendance.models.fraud_alert import FraudAlert
from secure_attendance.models.scan_attempt import ScanAttempt


@dataclass
class SecurityMetrics:
    """Aggregate view over one or more sessions. Never stored."""

    total_attempts: int = 0
    accepted: int = 0
    rejected: int = 0
    success_rate: float = 0.0
    fraud_rate: float = 0.0
    flagged_for_review: int = 0
    average_risk_score: float = 0.0
    violations: Dict[str, int] = field(default_factory=lambda: {
        'device': 0, 'location': 0, 'time': 0, 'token': 0
    })
    reasons: Dict[str, int] = field(default_factory=dict)
    alert_types: Dict[str, int] = field(default_factory=dict)
    device_changes: int = 0
    unique_students: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


class SecurityAnalyticsAggregator:
    """Recomputes metrics from scratch on every call; holds no state."""

    ATTEMPT_COLUMNS = [
        'session_id', 'student_id', 'received_at', 'accepted', 'status',
        'reason_code', 'risk_score', 'risk_level', 'flagged_for_review',
        'distance_meters', 'accuracy_meters', 'device_shared', 'device_changed'
    ]

    @staticmethod
    def resolve(session_keys: Iterable[str]) -> List[AttendanceSession]:
        keys = list(dict.fromkeys(session_keys))
        if not keys:
            return []
        return AttendanceSession.query.filter(AttendanceSession.session_key.in_(keys)).all()

    def summarize(self, session_keys: Iterable[str]) -> SecurityMetrics:
        """Metrics over the given sessions; unknown keys contribute nothing."""
        sessions = self.resolve(session_keys)
        return self._summarize_ids([s.id for s in sessions])

    def summarize_course(self, course_id: int) -> SecurityMetrics:
        ids = [row[0] for row in db.session.query(AttendanceSession.id)
               .filter(AttendanceSession.course_id == course_id).all()]
        return self._summarize_ids(ids)

    def _summarize_ids(self, session_ids: List[int]) -> SecurityMetrics:
        metrics = SecurityMetrics()
        if not session_ids:
            return metrics

        attempts = ScanAttempt.query.filter(ScanAttempt.session_id.in_(session_ids)).all()
        total = len(attempts)
        metrics.total_attempts = total

        reasons = Counter()
        risk_scores = []
        high_risk = 0
        for attempt in attempts:
            reason = attempt.reason_code
            reasons[reason.value] += 1

            if attempt.accepted:
                metrics.accepted += 1
            else:
                metrics.rejected += 1

            if attempt.risk_score is not None:
                risk_scores.append(attempt.risk_score)
            if attempt.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
                high_risk += 1

            if attempt.device_shared:
                metrics.violations['device'] += 1
            if attempt.device_changed:
                metrics.device_changes += 1
            if reason in LOCATION_VIOLATIONS:
                metrics.violations['location'] += 1
            elif reason in TIME_VIOLATIONS:
                metrics.violations['time'] += 1
            elif reason == ReasonCode.TOKEN_EXPIRED:
                metrics.violations['token'] += 1

        if total:
            metrics.success_rate = round(metrics.accepted / total, 4)
            metrics.fraud_rate = round(high_risk / total, 4)
        if risk_scores:
            metrics.average_risk_score = round(sum(risk_scores) / len(risk_scores), 2)

        metrics.reasons = dict(sorted(reasons.items()))
        metrics.unique_students = len({attempt.student_id for attempt in attempts})
        metrics.flagged_for_review = AttendanceRecord.query.filter(
            AttendanceRecord.session_id.in_(session_ids),
            AttendanceRecord.flagged_for_review.is_(True)
        ).count()

        alert_counts = db.session.query(FraudAlert.alert_type, db.func.count(FraudAlert.id)) \
            .filter(FraudAlert.session_id.in_(session_ids)) \
            .group_by(FraudAlert.alert_type).all()
        metrics.alert_types = {alert_type.value: count for alert_type, count in alert_counts}

        return metrics

    # =================== EXPORT ===================

    def export_frame(self, session_keys: Iterable[str]) -> pd.DataFrame:
        """One row per scan attempt, oldest first."""
        sessions = {s.id: s.session_key for s in self.resolve(session_keys)}
        if not sessions:
            return pd.DataFrame(columns=self.ATTEMPT_COLUMNS)

        attempts = ScanAttempt.query.filter(ScanAttempt.session_id.in_(list(sessions))) \
            .order_by(ScanAttempt.received_at, ScanAttempt.id).all()

        data = []
        for attempt in attempts:
            data.append({
                'session_id': sessions[attempt.session_id],
                'student_id': attempt.student_id,
                'received_at': attempt.received_at,
                'accepted': attempt.accepted,
                'status': attempt.status.value if attempt.status else '',
                'reason_code': attempt.reason_code.value,
                'risk_score': attempt.risk_score,
                'risk_level': attempt.risk_level.value if attempt.risk_level else '',
                'flagged_for_review': attempt.flagged_for_review,
                'distance_meters': round(attempt.distance_meters, 1)
                if attempt.distance_meters is not None else None,
                'accuracy_meters': attempt.accuracy_meters,
                'device_shared': attempt.device_shared,
                'device_changed': attempt.device_changed
            })

        return pd.DataFrame(data, columns=self.ATTEMPT_COLUMNS)

    def summary_frame(self, session_keys: Iterable[str]) -> pd.DataFrame:
        """Flattened metrics, one row, for the export's summary sheet."""
        metrics = self.summarize(session_keys).to_dict()
        row = {key: value for key, value in metrics.items()
               if not isinstance(value, dict)}
        for group in ('violations', 'reasons', 'alert_types'):
            for key, value in metrics[group].items():
                row[f'{group}.{key}'] = value
        return pd.DataFrame([row])
