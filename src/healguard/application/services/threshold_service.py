# src/healguard/application/services/threshold_service.py
"""
ThresholdService - per-owner metric thresholds with cooldown and auto-adjustment.

`should_trigger` is pure. `evaluate` records the observation and, for every breached
threshold, performs a conditional UPDATE on `last_triggered_at` so that only one of
several concurrent evaluators fires the alert.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Any, Dict

from sqlalchemy.orm import Session

from healguard.domain.entities import ThresholdType, AlertLevel, ActorType, utcnow
from healguard.domain.errors import ValidationError, NotFoundError, InvalidTransitionError
from healguard.application.engine.baseline import mean, stddev
from healguard.infrastructure.db.models import Threshold, MetricObservation, AlertRecord
from healguard.infrastructure.db.repository import ThresholdRepository
from healguard.infrastructure.monitoring.metrics import THRESHOLD_ALERTS
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)

AUTO_ADJUST_LOOKBACK = timedelta(days=7)
ALERT_SEVERITY = {
    AlertLevel.CRITICAL: "critical",
    AlertLevel.WARNING: "high",
    AlertLevel.INFO: "low",
}


class ThresholdService:
    def __init__(self, audit_service: Any, notifier: Any = None, repo_class: type = ThresholdRepository):
        self.audit = audit_service
        self.notifier = notifier
        self.repo_class = repo_class

    # --- pure rule ---
    @staticmethod
    def in_cooldown(threshold: Threshold, now: datetime) -> bool:
        if threshold.last_triggered_at is None:
            return False
        cooldown = timedelta(minutes=threshold.cooldown_minutes if threshold.cooldown_minutes is not None else 60)
        return now - threshold.last_triggered_at < cooldown

    @classmethod
    def should_trigger(cls, threshold: Threshold, observed_value: float,
                       previous_value: Optional[float] = None, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if threshold.enabled is False:
            return False
        if cls.in_cooldown(threshold, now):
            return False

        kind = threshold.threshold_type
        limit = threshold.threshold_value
        if kind == ThresholdType.ABOVE:
            return observed_value > limit
        if kind == ThresholdType.BELOW:
            return observed_value < limit
        if kind == ThresholdType.EQUALS:
            return observed_value == limit
        if kind == ThresholdType.CHANGE_PERCENTAGE:
            if previous_value is None or previous_value <= 0:
                return False
            return abs(observed_value - previous_value) / previous_value * 100.0 > limit
        return False

    # --- commands ---
    def create_threshold(self, db_session: Session, owner_id: str, metric_name: str, threshold_value: float,
                         threshold_type: str, alert_level: str = "warning", cooldown_minutes: int = 60,
                         auto_adjusted: bool = False, adjustment_factor: float = 2.0,
                         alert_channels: Optional[List[str]] = None, enabled: bool = True,
                         actor: str = "system") -> Threshold:
        try:
            kind = ThresholdType(threshold_type)
            level = AlertLevel(alert_level)
        except ValueError as e:
            raise ValidationError(str(e))
        if not metric_name:
            raise ValidationError("metric_name is required")
        if cooldown_minutes < 0:
            raise ValidationError("cooldown_minutes must be >= 0")
        if adjustment_factor <= 0:
            raise ValidationError("adjustment_factor must be positive")

        repo = self.repo_class(db_session)
        if repo.find_by_identity(owner_id, metric_name, kind):
            raise ValidationError(f"A '{kind.value}' threshold for '{metric_name}' already exists")

        threshold = repo.add(Threshold(
            owner_id=owner_id,
            metric_name=metric_name,
            threshold_value=float(threshold_value),
            threshold_type=kind,
            alert_level=level,
            cooldown_minutes=cooldown_minutes,
            enabled=enabled,
            auto_adjusted=auto_adjusted,
            adjustment_factor=adjustment_factor,
            alert_channels=alert_channels,
            trigger_count=0,
        ))
        self.audit.record(
            db_session, owner_id, "threshold_created", "threshold",
            f"Threshold {metric_name} {kind.value} {threshold_value} created",
            triggered_by=actor, actor_type=ActorType.USER,
            subject_type="threshold", subject_id=threshold.id,
        )
        db_session.commit()
        return threshold

    def list_thresholds(self, db_session: Session, owner_id: str) -> List[Threshold]:
        return self.repo_class(db_session).list_for_owner(owner_id)

    def set_threshold_value(self, db_session: Session, owner_id: str, threshold_id: int, value: float,
                            actor: str = "system") -> Threshold:
        repo = self.repo_class(db_session)
        threshold = repo.find_by_id(owner_id, threshold_id)
        if not threshold:
            raise NotFoundError(f"Threshold #{threshold_id} not found")
        old = threshold.threshold_value
        threshold.threshold_value = float(value)
        self.audit.record(
            db_session, owner_id, "threshold_adjusted", "threshold",
            f"Threshold {threshold.metric_name} changed {old} -> {value}",
            triggered_by=actor, subject_type="threshold", subject_id=threshold.id,
            metadata={"previous_value": old, "new_value": float(value)},
        )
        db_session.commit()
        return threshold

    async def evaluate(self, db_session: Session, owner_id: str, metric_name: str, observed_value: float,
                       now: Optional[datetime] = None, component: Optional[Tuple[str, str]] = None) -> List[AlertRecord]:
        now = now or utcnow()
        repo = self.repo_class(db_session)

        previous = repo.previous_observation(owner_id, metric_name, before=now)
        previous_value = previous.value if previous else None
        repo.add_observation(MetricObservation(
            owner_id=owner_id,
            metric_name=metric_name,
            value=float(observed_value),
            component_type=component[0] if component else None,
            component_name=component[1] if component else None,
            observed_at=now,
        ))

        alerts: List[AlertRecord] = []
        for threshold in repo.list_for_metric(owner_id, metric_name):
            if not self.should_trigger(threshold, observed_value, previous_value, now):
                continue
            seen = threshold.last_triggered_at
            if not repo.claim_trigger(threshold.id, seen, now):
                log.info(f"Threshold #{threshold.id} already triggered by a concurrent evaluation; skipping.")
                continue
            repo.refresh(threshold)
            alerts.append(self._fire(db_session, repo, threshold, observed_value, now, component))

        db_session.commit()
        return alerts

    def _fire(self, db_session: Session, repo: ThresholdRepository, threshold: Threshold, observed_value: float,
              now: datetime, component: Optional[Tuple[str, str]]) -> AlertRecord:
        where = f" on {component[0]}/{component[1]}" if component else ""
        message = (
            f"{threshold.metric_name}={observed_value:g}{where} breached "
            f"{threshold.threshold_type.value} {threshold.threshold_value:g}"
        )
        alert = repo.add_alert(AlertRecord(
            owner_id=threshold.owner_id,
            threshold_id=threshold.id,
            metric_name=threshold.metric_name,
            observed_value=float(observed_value),
            threshold_value=threshold.threshold_value,
            alert_level=threshold.alert_level,
            message=message,
            triggered_at=now,
        ))
        self.audit.record(
            db_session, threshold.owner_id, "threshold_triggered", "threshold", message,
            decision_impact=threshold.alert_level.value,
            subject_type="threshold", subject_id=threshold.id,
            metadata={"alert_id": alert.id, "trigger_count": threshold.trigger_count},
        )
        THRESHOLD_ALERTS.labels(alert_level=threshold.alert_level.value).inc()
        log.info(f"Threshold #{threshold.id} triggered: {message}")

        if self.notifier is not None:
            severity = ALERT_SEVERITY[threshold.alert_level]
            channels = threshold.alert_channels or [None]
            for channel in channels:
                self.notifier.fire_and_forget(Notification(
                    subject=f"Threshold alert: {threshold.metric_name}",
                    body=message,
                    severity=severity,
                    channel=channel,
                ))
        return alert

    async def auto_adjust(self, db_session: Session, owner_id: Optional[str] = None,
                          now: Optional[datetime] = None) -> List[Threshold]:
        """Recomputes `auto_adjusted` above/below thresholds from the last 7 days of observations."""
        now = now or utcnow()
        repo = self.repo_class(db_session)
        adjusted: List[Threshold] = []
        for threshold in repo.list_auto_adjusted(owner_id):
            if threshold.threshold_type not in (ThresholdType.ABOVE, ThresholdType.BELOW):
                continue
            values = repo.observation_values(threshold.owner_id, threshold.metric_name, since=now - AUTO_ADJUST_LOOKBACK)
            if not values:
                continue
            mu, sigma = mean(values), stddev(values)
            k = threshold.adjustment_factor
            new_value = mu + k * sigma if threshold.threshold_type == ThresholdType.ABOVE else mu - k * sigma
            if new_value == threshold.threshold_value:
                continue
            old_value = threshold.threshold_value
            threshold.threshold_value = new_value
            self.audit.record(
                db_session, threshold.owner_id, "threshold_auto_adjusted", "threshold",
                f"{threshold.metric_name} {threshold.threshold_type.value} threshold "
                f"{old_value:g} -> {new_value:g} (mean={mu:g}, std={sigma:g}, k={k:g}, n={len(values)})",
                actor_type=ActorType.AUTOMATION, subject_type="threshold", subject_id=threshold.id,
                metadata={"previous_value": old_value, "new_value": new_value, "samples": len(values)},
            )
            adjusted.append(threshold)
        db_session.commit()
        if adjusted:
            log.info(f"Auto-adjusted {len(adjusted)} threshold(s).")
        return adjusted

    def acknowledge_alert(self, db_session: Session, owner_id: str, alert_id: int, actor: str) -> AlertRecord:
        repo = self.repo_class(db_session)
        alert = repo.find_alert(owner_id, alert_id)
        if not alert:
            raise NotFoundError(f"Alert #{alert_id} not found")
        if alert.acknowledged:
            raise InvalidTransitionError(f"Alert #{alert_id} is already acknowledged")
        alert.acknowledged = True
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = actor
        self.audit.record(
            db_session, owner_id, "alert_acknowledged", "threshold",
            f"Alert #{alert_id} acknowledged by {actor}",
            triggered_by=actor, actor_type=ActorType.USER, subject_type="alert", subject_id=alert_id,
        )
        db_session.commit()
        return alert
