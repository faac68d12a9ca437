# src/healguard/application/services/anomaly_service.py
"""
AnomalyService - detects anomalies in closed health windows and behavioral signals.

Detection rules compare a window with the baseline built from the same component's
earlier windows in the lookback. Every candidate carries a deterministic dedup key, so
re-analysing a window never creates a second signal. After each batch, clustering
escalates every anomaly of a rolling window to critical once enough distinct event
types co-occur.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from itertools import groupby
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import (
    AnomalyType, AnomalyStatus, AnomalyCandidate, Severity, ActorType, ensure_transition, utcnow
)
from healguard.domain.errors import NotFoundError, ValidationError
from healguard.domain.value_objects import SeverityPolicy
from healguard.application.engine.baseline import build_profile, series, deviation_percentage
from healguard.infrastructure.cache import stats_prefix
from healguard.infrastructure.db.models import AnomalySignal, HealthWindow
from healguard.infrastructure.db.repository import AnomalyRepository, HealthRepository
from healguard.infrastructure.monitoring.metrics import ANOMALIES_CREATED
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)

# Rule tiers.
LATENCY_CRITICAL_MS = 5000.0
LATENCY_HIGH_MS = 3000.0
LATENCY_DEVIATION_TRIGGER = 100.0
LATENCY_CRITICAL_DEVIATION = 300.0
LATENCY_HIGH_DEVIATION = 200.0

ERROR_RATE_DEVIATION_TRIGGER = 100.0
ERROR_RATE_CRITICAL_PCT = 20.0
ERROR_RATE_HIGH_PCT = 10.0
ERROR_RATE_CRITICAL_DEVIATION = 500.0
ERROR_RATE_HIGH_DEVIATION = 300.0
ERROR_RATE_FROM_ZERO_DEVIATION = 1000.0
# deviation-only triggers ignore error rates below this (a single error after a clean baseline)
ERROR_RATE_DEVIATION_FLOOR_PCT = 1.0

RESOURCE_HIGH_PCT = 90.0
RESOURCE_CRITICAL_PCT = 95.0
RESOURCE_CONFIDENCE = 90.0
RESOURCE_METRICS = ("cpu_usage", "memory_usage")

MIN_PROFILE_POINTS = 5


@dataclass
class DetectionReport:
    anomalies: List[AnomalySignal] = field(default_factory=list)
    created: int = 0
    remediated: List[int] = field(default_factory=list)
    failed_components: List[str] = field(default_factory=list)

    @property
    def critical_anomalies(self) -> int:
        return sum(1 for a in self.anomalies if a.severity == Severity.CRITICAL)

    @property
    def high_anomalies(self) -> int:
        return sum(1 for a in self.anomalies if a.severity == Severity.HIGH)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "anomalies_detected": len(self.anomalies),
            "new_anomalies": self.created,
            "anomaly_ids": [a.id for a in self.anomalies],
            "critical_anomalies": self.critical_anomalies,
            "high_anomalies": self.high_anomalies,
            "remediation_action_ids": list(self.remediated),
            "failed_components": list(self.failed_components),
        }


def window_dedup_key(anomaly_type: AnomalyType, component_type: str, component_name: str,
                     window_start: datetime, suffix: Optional[str] = None) -> str:
    key = f"{anomaly_type.value}:{component_type}/{component_name}:{window_start.isoformat()}"
    return f"{key}:{suffix}" if suffix else key


class AnomalyService:
    def __init__(self, audit_service: Any, notifier: Any = None, cache: Any = None,
                 severity_policy: Optional[SeverityPolicy] = None):
        self.audit = audit_service
        self.notifier = notifier
        self.cache = cache
        self.policy = severity_policy or SeverityPolicy.from_settings(settings)
        # wired in boot; self-healing is optional
        self.recovery_service = None

    # ------------------------------------------------------------------
    # Rules (pure)
    # ------------------------------------------------------------------
    def candidates_for_window(self, window: HealthWindow, history: List[HealthWindow]) -> List[AnomalyCandidate]:
        out: List[AnomalyCandidate] = []
        comp_type, comp_name = window.component_type, window.component_name
        detected_at = window.window_end

        # latency spike
        baseline_latency = _mean_or_none(series(history, "latency_p95_ms"))
        latency = window.latency_p95_ms
        dev = deviation_percentage(latency, baseline_latency) if baseline_latency else None
        if (dev is not None and dev > LATENCY_DEVIATION_TRIGGER) or latency > settings.LATENCY_SPIKE_MS:
            if latency > LATENCY_CRITICAL_MS or (dev is not None and dev > LATENCY_CRITICAL_DEVIATION):
                severity = Severity.CRITICAL
            elif latency > LATENCY_HIGH_MS or (dev is not None and dev > LATENCY_HIGH_DEVIATION):
                severity = Severity.HIGH
            else:
                severity = Severity.MODERATE
            out.append(AnomalyCandidate(
                anomaly_type=AnomalyType.LATENCY_SPIKE,
                event_type=AnomalyType.LATENCY_SPIKE.value,
                severity=severity,
                confidence_score=min(95.0, 70.0 + max(dev or 0.0, 0.0) / 10.0),
                source_component_type=comp_type,
                source_component_name=comp_name,
                baseline_value=baseline_latency,
                observed_value=latency,
                deviation_percentage=dev,
                detection_method="latency_threshold" if dev is None else "baseline_deviation",
                dedup_key=window_dedup_key(AnomalyType.LATENCY_SPIKE, comp_type, comp_name, window.window_start),
                detected_at=detected_at,
                metadata={"window_start": window.window_start.isoformat(), "metric": "latency_p95_ms"},
            ))

        # error-rate increase (rates in percent)
        baseline_errors = _mean_or_none(series(history, "error_rate"))
        rate_pct = window.error_rate * 100.0
        dev = None
        if baseline_errors is not None:
            if baseline_errors == 0:
                dev = ERROR_RATE_FROM_ZERO_DEVIATION if rate_pct > 0 else 0.0
            else:
                dev = (window.error_rate - baseline_errors) / baseline_errors * 100.0
        deviation_trigger = dev is not None and dev > ERROR_RATE_DEVIATION_TRIGGER and rate_pct >= ERROR_RATE_DEVIATION_FLOOR_PCT
        if deviation_trigger or rate_pct > settings.ERROR_RATE_SPIKE_PCT:
            if rate_pct > ERROR_RATE_CRITICAL_PCT or (deviation_trigger and dev > ERROR_RATE_CRITICAL_DEVIATION):
                severity = Severity.CRITICAL
            elif rate_pct > ERROR_RATE_HIGH_PCT or (deviation_trigger and dev > ERROR_RATE_HIGH_DEVIATION):
                severity = Severity.HIGH
            else:
                severity = Severity.MODERATE
            out.append(AnomalyCandidate(
                anomaly_type=AnomalyType.ERROR_RATE_INCREASE,
                event_type=AnomalyType.ERROR_RATE_INCREASE.value,
                severity=severity,
                confidence_score=min(95.0, 75.0 + max(dev or 0.0, 0.0) / 20.0),
                source_component_type=comp_type,
                source_component_name=comp_name,
                baseline_value=baseline_errors * 100.0 if baseline_errors is not None else None,
                observed_value=rate_pct,
                deviation_percentage=dev,
                detection_method="error_rate_threshold" if not deviation_trigger else "baseline_deviation",
                dedup_key=window_dedup_key(AnomalyType.ERROR_RATE_INCREASE, comp_type, comp_name, window.window_start),
                detected_at=detected_at,
                metadata={"window_start": window.window_start.isoformat(), "error_count": window.error_count},
            ))

        # resource exhaustion
        metrics = window.metrics_avg or {}
        limits = {"cpu_usage": settings.CPU_EXHAUSTION_PCT, "memory_usage": settings.MEMORY_EXHAUSTION_PCT}
        for metric in RESOURCE_METRICS:
            value = metrics.get(metric)
            if value is None or value <= limits[metric]:
                continue
            if value > RESOURCE_CRITICAL_PCT:
                severity = Severity.CRITICAL
            elif value > RESOURCE_HIGH_PCT:
                severity = Severity.HIGH
            else:
                severity = Severity.MODERATE
            out.append(AnomalyCandidate(
                anomaly_type=AnomalyType.RESOURCE_EXHAUSTION,
                event_type=AnomalyType.RESOURCE_EXHAUSTION.value,
                severity=severity,
                confidence_score=RESOURCE_CONFIDENCE,
                source_component_type=comp_type,
                source_component_name=comp_name,
                baseline_value=limits[metric],
                observed_value=float(value),
                deviation_percentage=deviation_percentage(float(value), limits[metric]),
                detection_method="resource_threshold",
                dedup_key=window_dedup_key(AnomalyType.RESOURCE_EXHAUSTION, comp_type, comp_name,
                                           window.window_start, metric),
                detected_at=detected_at,
                metadata={"window_start": window.window_start.isoformat(), "metric": metric},
            ))

        # custom metric deviation against the baseline profile
        history_metrics = [h.metrics_avg or {} for h in history]
        for metric, value in sorted(metrics.items()):
            if metric in RESOURCE_METRICS or value is None:
                continue
            profile = build_profile(series(history_metrics, metric))
            if profile is None or profile.sample_count < MIN_PROFILE_POINTS:
                continue
            z = profile.z_score(float(value))
            if z is None or abs(z) <= settings.BASELINE_SIGMA:
                continue
            relative = (float(value) - profile.mean) / abs(profile.mean) if profile.mean else None
            out.append(AnomalyCandidate(
                anomaly_type=AnomalyType.METRIC_DEVIATION,
                event_type=f"{metric}_deviation",
                severity=self.policy.classify(deviation=relative) if relative is not None else Severity.MODERATE,
                confidence_score=min(95.0, 50.0 + 10.0 * abs(z)),
                source_component_type=comp_type,
                source_component_name=comp_name,
                baseline_value=profile.mean,
                observed_value=float(value),
                deviation_percentage=relative * 100.0 if relative is not None else None,
                detection_method="z_score",
                dedup_key=window_dedup_key(AnomalyType.METRIC_DEVIATION, comp_type, comp_name,
                                           window.window_start, metric),
                detected_at=detected_at,
                metadata={"window_start": window.window_start.isoformat(), "metric": metric,
                          "z_score": round(z, 3), "baseline": profile.to_dict()},
            ))
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _create(self, db_session: Session, owner_id: str, candidate: AnomalyCandidate) -> Optional[AnomalySignal]:
        repo = AnomalyRepository(db_session)
        if repo.exists(owner_id, candidate.dedup_key):
            log.debug(f"Anomaly '{candidate.dedup_key}' already recorded; skipping.")
            return None
        try:
            # savepoint: a conflict discards this row only, not the rest of the batch
            with db_session.begin_nested():
                anomaly = repo.add(AnomalySignal(
                    owner_id=owner_id,
                    anomaly_type=candidate.anomaly_type,
                    event_type=candidate.event_type,
                    severity=candidate.severity,
                    computed_severity=candidate.severity,
                    confidence_score=round(candidate.confidence_score, 2),
                    source_component_type=candidate.source_component_type,
                    source_component_name=candidate.source_component_name,
                    baseline_value=candidate.baseline_value,
                    observed_value=candidate.observed_value,
                    deviation_percentage=candidate.deviation_percentage,
                    status=AnomalyStatus.DETECTED,
                    detection_method=candidate.detection_method,
                    dedup_key=candidate.dedup_key,
                    metadata_=candidate.metadata,
                    detected_at=candidate.detected_at,
                ))
        except IntegrityError:
            # a concurrent worker inserted the same key first
            log.info(f"Anomaly '{candidate.dedup_key}' inserted concurrently; skipping.")
            return None

        self.audit.record(
            db_session, owner_id, "anomaly_detected", "anomaly",
            f"{candidate.anomaly_type.value} ({candidate.severity.value}) on "
            f"{candidate.source_component_type}/{candidate.source_component_name}: observed "
            f"{candidate.observed_value:g}, baseline {candidate.baseline_value}",
            decision_impact=candidate.severity.value,
            anomaly_detected=True,
            actor_type=ActorType.AUTOMATION,
            subject_type="anomaly", subject_id=anomaly.id,
            new_state=AnomalyStatus.DETECTED.value,
            metadata={"dedup_key": candidate.dedup_key, "confidence": anomaly.confidence_score},
        )
        ANOMALIES_CREATED.labels(severity=candidate.severity.value).inc()
        if self.notifier is not None and candidate.severity in (Severity.HIGH, Severity.CRITICAL):
            self.notifier.fire_and_forget(Notification(
                subject=f"{candidate.severity.value.upper()} anomaly: {candidate.anomaly_type.value}",
                body=f"{candidate.source_component_type}/{candidate.source_component_name} "
                     f"observed={candidate.observed_value:g} baseline={candidate.baseline_value}",
                severity=candidate.severity.value,
            ))
        return anomaly

    def _history(self, db_session: Session, window: HealthWindow) -> List[HealthWindow]:
        since = window.window_start - timedelta(minutes=settings.ANOMALY_LOOKBACK_MINUTES)
        return HealthRepository(db_session).windows_since(
            window.owner_id, since, until=window.window_start,
            component_type=window.component_type, component_name=window.component_name,
        )

    async def analyze_window(self, db_session: Session, window: HealthWindow,
                             now: Optional[datetime] = None) -> List[AnomalySignal]:
        """Runs every rule on one closed window; returns the newly created signals."""
        candidates = self.candidates_for_window(window, self._history(db_session, window))
        created = [a for a in (self._create(db_session, window.owner_id, c) for c in candidates) if a is not None]
        if created:
            self.apply_clustering(db_session, window.owner_id, created)
            db_session.commit()
            await self._invalidate(window.owner_id)
        return created

    async def record_signal(self, db_session: Session, owner_id: str, event_type: str,
                            source_component_type: str, source_component_name: str,
                            stability_variance: Optional[float] = None,
                            instability_probability: Optional[float] = None,
                            reinforcement_rate: Optional[float] = None,
                            signal_id: Optional[str] = None,
                            now: Optional[datetime] = None) -> Optional[AnomalySignal]:
        """Behavioral signal (variance / probability / rate). Returns None for a duplicate."""
        if stability_variance is None and instability_probability is None and reinforcement_rate is None:
            raise ValidationError("At least one of stability_variance, instability_probability, reinforcement_rate is required")
        if not event_type:
            raise ValidationError("event_type is required")
        now = now or utcnow()
        severity = self.policy.classify(
            deviation=stability_variance, probability=instability_probability, rate_per_hour=reinforcement_rate
        )
        if signal_id:
            key_suffix = signal_id
        else:
            bucket = int(now.timestamp()) // settings.HEALTH_WINDOW_SECONDS * settings.HEALTH_WINDOW_SECONDS
            key_suffix = str(bucket)
        observed = next(v for v in (stability_variance, instability_probability, reinforcement_rate) if v is not None)
        candidate = AnomalyCandidate(
            anomaly_type=AnomalyType.BEHAVIORAL_SIGNAL,
            event_type=event_type,
            severity=severity,
            confidence_score=min(100.0, max(0.0, (instability_probability * 100.0) if instability_probability is not None else 70.0)),
            source_component_type=source_component_type,
            source_component_name=source_component_name,
            baseline_value=None,
            observed_value=float(observed),
            deviation_percentage=stability_variance * 100.0 if stability_variance is not None else None,
            detection_method="behavioral_signal",
            dedup_key=f"{AnomalyType.BEHAVIORAL_SIGNAL.value}:{source_component_type}/{source_component_name}:{event_type}:{key_suffix}",
            detected_at=now,
            metadata={
                "stability_variance": stability_variance,
                "instability_probability": instability_probability,
                "reinforcement_rate": reinforcement_rate,
            },
        )
        anomaly = self._create(db_session, owner_id, candidate)
        if anomaly is not None:
            self.apply_clustering(db_session, owner_id, [anomaly])
            db_session.commit()
            await self._invalidate(owner_id)
        return anomaly

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------
    def apply_clustering(self, db_session: Session, owner_id: str, new_anomalies: List[AnomalySignal]) -> List[AnomalySignal]:
        """
        Escalates to critical every anomaly inside any rolling cluster window (touching the
        new anomalies) that spans at least CLUSTER_MIN_TYPES distinct event types.
        """
        if not new_anomalies:
            return []
        span = timedelta(minutes=settings.CLUSTER_WINDOW_MINUTES)
        start = min(a.detected_at for a in new_anomalies) - span
        end = max(a.detected_at for a in new_anomalies) + span
        rows = AnomalyRepository(db_session).list_since(owner_id, start, end)

        to_escalate: Dict[int, AnomalySignal] = {}
        j = 0
        for i in range(len(rows)):
            if j < i:
                j = i
            while j + 1 < len(rows) and rows[j + 1].detected_at - rows[i].detected_at <= span:
                j += 1
            members = rows[i:j + 1]
            if len({m.event_type for m in members}) >= settings.CLUSTER_MIN_TYPES:
                for m in members:
                    to_escalate[m.id] = m

        escalated = []
        for anomaly in to_escalate.values():
            if anomaly.severity == Severity.CRITICAL:
                continue
            previous = anomaly.severity
            anomaly.severity = Severity.CRITICAL
            escalated.append(anomaly)
            self.audit.record(
                db_session, owner_id, "anomaly_cluster_escalated", "anomaly",
                f"Anomaly #{anomaly.id} ({anomaly.event_type}) escalated {previous.value} -> critical "
                f"by correlated cluster",
                decision_impact="critical", anomaly_detected=True, actor_type=ActorType.AUTOMATION,
                subject_type="anomaly", subject_id=anomaly.id,
                previous_state=previous.value, new_state=Severity.CRITICAL.value,
            )
        if escalated:
            log.warning(f"Cluster escalation for owner {owner_id}: {len(escalated)} anomalies raised to critical")
            if self.notifier is not None:
                self.notifier.fire_and_forget(Notification(
                    subject="Correlated anomaly cluster",
                    body=f"{len(to_escalate)} anomalies across "
                         f"{len({a.event_type for a in to_escalate.values()})} event types escalated to critical",
                    severity="critical",
                ))
        return escalated

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    async def detect(self, db_session: Session, owner_id: str, time_window_minutes: int = 15,
                     auto_analyze: bool = False, now: Optional[datetime] = None) -> DetectionReport:
        if time_window_minutes <= 0:
            raise ValidationError("time_window_minutes must be positive")
        now = now or utcnow()
        since = now - timedelta(minutes=time_window_minutes)
        report = DetectionReport()

        windows = HealthRepository(db_session).windows_since(owner_id, since, until=now)
        # grouped up front: a rollback below expires the rows
        components = [(key, list(group)) for key, group in
                      groupby(windows, key=lambda w: (w.component_type, w.component_name))]
        for (comp_type, comp_name), group in components:
            try:
                for window in group:
                    report.created += len(await self.analyze_window(db_session, window, now))
            except Exception as e:
                log.error(f"Anomaly sweep failed for {comp_type}/{comp_name}: {e}", exc_info=True)
                db_session.rollback()
                report.failed_components.append(f"{comp_type}/{comp_name}")

        report.anomalies = AnomalyRepository(db_session).list_since(owner_id, since, now)

        if auto_analyze and self.recovery_service is not None:
            for anomaly in report.anomalies:
                if anomaly.severity not in (Severity.HIGH, Severity.CRITICAL):
                    continue
                if anomaly.status != AnomalyStatus.DETECTED or anomaly.triggered_recovery_action_id:
                    continue
                try:
                    action = await self.recovery_service.self_heal(db_session, anomaly)
                    report.remediated.append(action.id)
                except Exception as e:
                    log.error(f"Self-healing failed for anomaly #{anomaly.id}: {e}", exc_info=True)
        return report

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------
    async def _transition(self, db_session: Session, owner_id: str, anomaly_id: int, target: AnomalyStatus,
                          actor: str, actor_type: ActorType = ActorType.USER) -> AnomalySignal:
        anomaly = AnomalyRepository(db_session).find_by_id(owner_id, anomaly_id)
        if not anomaly:
            raise NotFoundError(f"Anomaly #{anomaly_id} not found")
        previous = anomaly.status
        ensure_transition(previous, target)
        anomaly.status = target
        anomaly.status_changed_at = utcnow()
        anomaly.status_changed_by = actor
        self.audit.record(
            db_session, owner_id, f"anomaly_{target.value}", "anomaly",
            f"Anomaly #{anomaly_id} {previous.value} -> {target.value} by {actor}",
            triggered_by=actor, actor_type=actor_type, anomaly_detected=True,
            subject_type="anomaly", subject_id=anomaly_id,
            previous_state=previous.value, new_state=target.value,
        )
        db_session.commit()
        await self._invalidate(owner_id)
        return anomaly

    async def acknowledge(self, db_session: Session, owner_id: str, anomaly_id: int, actor: str) -> AnomalySignal:
        return await self._transition(db_session, owner_id, anomaly_id, AnomalyStatus.ACKNOWLEDGED, actor)

    async def resolve(self, db_session: Session, owner_id: str, anomaly_id: int, actor: str) -> AnomalySignal:
        return await self._transition(db_session, owner_id, anomaly_id, AnomalyStatus.RESOLVED, actor)

    async def mark_false_positive(self, db_session: Session, owner_id: str, anomaly_id: int, actor: str) -> AnomalySignal:
        return await self._transition(db_session, owner_id, anomaly_id, AnomalyStatus.FALSE_POSITIVE, actor)

    async def _invalidate(self, owner_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_prefix(stats_prefix(owner_id))


def _mean_or_none(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None
