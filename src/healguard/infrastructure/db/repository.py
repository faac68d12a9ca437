#--- START OF FILE: src/healguard/infrastructure/db/repository.py ---
# File: src/healguard/infrastructure/db/repository.py
"""
Repositories: one class per aggregate, each bound to a Session.

Every query is scoped by `owner_id`. State-machine claims are conditional UPDATEs
(compare-and-swap): the caller learns from the affected row count whether it won.
"""

import logging
from datetime import datetime
from typing import List, Optional, Any, Dict, Iterable, Sequence

from sqlalchemy.orm import Session
from sqlalchemy import and_, or_, func, select, update, delete

from healguard.domain.entities import (
    QueueStatus, RecoveryStatus, ApprovalStatus, AnomalyStatus, utcnow
)
from .models import (
    Operator,
    HealthSampleRecord, HealthWindow,
    Threshold, MetricObservation, AlertRecord,
    AnomalySignal,
    DecisionEvent, DecisionFactor,
    RecommendationQueueItem,
    RecoveryAction,
    AuditLogEntry,
    SelfTestResult,
)

logger = logging.getLogger(__name__)


# ==========================================================
# OPERATOR REPOSITORY
# ==========================================================
class OperatorRepository:
    def __init__(self, session: Session):
        self.session = session

    def find_by_email(self, email: str) -> Optional[Operator]:
        return self.session.query(Operator).filter(Operator.email == email.lower()).first()

    def add(self, email: str, hashed_password: str, roles: Iterable[str]) -> Operator:
        operator = Operator(email=email.lower(), hashed_password=hashed_password, roles=list(roles))
        self.session.add(operator)
        self.session.flush()
        return operator


# ==========================================================
# HEALTH REPOSITORY
# ==========================================================
class HealthRepository:
    """Staged samples and closed windows. Windows have no update verb."""

    def __init__(self, session: Session):
        self.session = session

    def staged_sample_exists(self, owner_id: str, component_type: str, component_name: str, sample_id: str) -> bool:
        stmt = select(HealthSampleRecord.id).where(
            HealthSampleRecord.owner_id == owner_id,
            HealthSampleRecord.component_type == component_type,
            HealthSampleRecord.component_name == component_name,
            HealthSampleRecord.sample_id == sample_id,
        )
        return self.session.execute(stmt).first() is not None

    def stage_sample(self, record: HealthSampleRecord) -> None:
        self.session.add(record)

    def staged_samples_before(self, cutoff: datetime, owner_id: Optional[str] = None) -> List[HealthSampleRecord]:
        """Staged samples whose windows are closed, in (component, timestamp) order."""
        q = self.session.query(HealthSampleRecord).filter(HealthSampleRecord.timestamp < cutoff)
        if owner_id is not None:
            q = q.filter(HealthSampleRecord.owner_id == owner_id)
        return q.order_by(
            HealthSampleRecord.owner_id,
            HealthSampleRecord.component_type,
            HealthSampleRecord.component_name,
            HealthSampleRecord.timestamp,
        ).all()

    def delete_staged(self, ids: Sequence[int]) -> None:
        if ids:
            self.session.execute(
                delete(HealthSampleRecord).where(HealthSampleRecord.id.in_(list(ids))),
                execution_options={"synchronize_session": False},
            )

    def find_window(self, owner_id: str, component_type: str, component_name: str, window_start: datetime) -> Optional[HealthWindow]:
        return self.session.query(HealthWindow).filter(
            HealthWindow.owner_id == owner_id,
            HealthWindow.component_type == component_type,
            HealthWindow.component_name == component_name,
            HealthWindow.window_start == window_start,
        ).first()

    def add_window(self, window: HealthWindow) -> HealthWindow:
        self.session.add(window)
        self.session.flush()
        return window

    def windows_since(self, owner_id: str, since: datetime, until: Optional[datetime] = None,
                      component_type: Optional[str] = None, component_name: Optional[str] = None) -> List[HealthWindow]:
        q = self.session.query(HealthWindow).filter(
            HealthWindow.owner_id == owner_id,
            HealthWindow.window_start >= since,
        )
        if until is not None:
            q = q.filter(HealthWindow.window_start < until)
        if component_type is not None:
            q = q.filter(HealthWindow.component_type == component_type)
        if component_name is not None:
            q = q.filter(HealthWindow.component_name == component_name)
        return q.order_by(HealthWindow.component_type, HealthWindow.component_name, HealthWindow.window_start).all()

    def latest_window(self, owner_id: str, component_type: str, component_name: str,
                      before: Optional[datetime] = None) -> Optional[HealthWindow]:
        q = self.session.query(HealthWindow).filter(
            HealthWindow.owner_id == owner_id,
            HealthWindow.component_type == component_type,
            HealthWindow.component_name == component_name,
        )
        if before is not None:
            q = q.filter(HealthWindow.window_start < before)
        return q.order_by(HealthWindow.window_start.desc()).first()

    def owners_with_windows_since(self, since: datetime) -> List[str]:
        rows = self.session.execute(
            select(HealthWindow.owner_id).where(HealthWindow.window_start >= since).distinct()
        ).all()
        return [r[0] for r in rows]


# ==========================================================
# THRESHOLD REPOSITORY
# ==========================================================
class ThresholdRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, threshold: Threshold) -> Threshold:
        self.session.add(threshold)
        self.session.flush()
        return threshold

    def find_by_id(self, owner_id: str, threshold_id: int) -> Optional[Threshold]:
        return self.session.query(Threshold).filter(
            Threshold.owner_id == owner_id, Threshold.id == threshold_id
        ).first()

    def find_by_identity(self, owner_id: str, metric_name: str, threshold_type) -> Optional[Threshold]:
        return self.session.query(Threshold).filter(
            Threshold.owner_id == owner_id,
            Threshold.metric_name == metric_name,
            Threshold.threshold_type == threshold_type,
        ).first()

    def list_for_owner(self, owner_id: str) -> List[Threshold]:
        return self.session.query(Threshold).filter(Threshold.owner_id == owner_id).order_by(Threshold.id).all()

    def list_for_metric(self, owner_id: str, metric_name: str) -> List[Threshold]:
        return self.session.query(Threshold).filter(
            Threshold.owner_id == owner_id,
            Threshold.metric_name == metric_name,
            Threshold.enabled.is_(True),
        ).order_by(Threshold.id).all()

    def list_auto_adjusted(self, owner_id: Optional[str] = None) -> List[Threshold]:
        q = self.session.query(Threshold).filter(Threshold.auto_adjusted.is_(True), Threshold.enabled.is_(True))
        if owner_id is not None:
            q = q.filter(Threshold.owner_id == owner_id)
        return q.order_by(Threshold.id).all()

    def claim_trigger(self, threshold_id: int, seen_last_triggered_at: Optional[datetime], now: datetime) -> bool:
        """
        Single-writer-wins cooldown claim: only succeeds if nobody else has triggered
        the threshold since this caller read it.
        """
        if seen_last_triggered_at is None:
            guard = Threshold.last_triggered_at.is_(None)
        else:
            guard = Threshold.last_triggered_at == seen_last_triggered_at
        result = self.session.execute(
            update(Threshold)
            .where(Threshold.id == threshold_id, guard)
            .values(last_triggered_at=now, trigger_count=Threshold.trigger_count + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def refresh(self, threshold: Threshold) -> Threshold:
        self.session.refresh(threshold)
        return threshold

    # --- observations ---
    def add_observation(self, observation: MetricObservation) -> None:
        self.session.add(observation)
        self.session.flush()

    def previous_observation(self, owner_id: str, metric_name: str, before: datetime,
                             exclude_id: Optional[int] = None) -> Optional[MetricObservation]:
        q = self.session.query(MetricObservation).filter(
            MetricObservation.owner_id == owner_id,
            MetricObservation.metric_name == metric_name,
            MetricObservation.observed_at <= before,
        )
        if exclude_id is not None:
            q = q.filter(MetricObservation.id != exclude_id)
        return q.order_by(MetricObservation.observed_at.desc(), MetricObservation.id.desc()).first()

    def observation_values(self, owner_id: str, metric_name: str, since: datetime) -> List[float]:
        rows = self.session.execute(
            select(MetricObservation.value).where(
                MetricObservation.owner_id == owner_id,
                MetricObservation.metric_name == metric_name,
                MetricObservation.observed_at >= since,
            ).order_by(MetricObservation.observed_at)
        ).all()
        return [float(r[0]) for r in rows]

    # --- alerts ---
    def add_alert(self, alert: AlertRecord) -> AlertRecord:
        self.session.add(alert)
        self.session.flush()
        return alert

    def find_alert(self, owner_id: str, alert_id: int) -> Optional[AlertRecord]:
        return self.session.query(AlertRecord).filter(
            AlertRecord.owner_id == owner_id, AlertRecord.id == alert_id
        ).first()


# ==========================================================
# ANOMALY REPOSITORY
# ==========================================================
class AnomalyRepository:
    def __init__(self, session: Session):
        self.session = session

    def exists(self, owner_id: str, dedup_key: str) -> bool:
        stmt = select(AnomalySignal.id).where(
            AnomalySignal.owner_id == owner_id, AnomalySignal.dedup_key == dedup_key
        )
        return self.session.execute(stmt).first() is not None

    def add(self, anomaly: AnomalySignal) -> AnomalySignal:
        self.session.add(anomaly)
        self.session.flush()
        return anomaly

    def find_by_id(self, owner_id: str, anomaly_id: int) -> Optional[AnomalySignal]:
        return self.session.query(AnomalySignal).filter(
            AnomalySignal.owner_id == owner_id, AnomalySignal.id == anomaly_id
        ).first()

    def list_since(self, owner_id: str, since: datetime, until: Optional[datetime] = None) -> List[AnomalySignal]:
        q = self.session.query(AnomalySignal).filter(
            AnomalySignal.owner_id == owner_id,
            AnomalySignal.detected_at >= since,
        )
        if until is not None:
            q = q.filter(AnomalySignal.detected_at <= until)
        return q.order_by(AnomalySignal.detected_at, AnomalySignal.id).all()


# ==========================================================
# DECISION REPOSITORY
# ==========================================================
class DecisionRepository:
    """Decision events are immutable except for their approval fields and final status."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, event: DecisionEvent, factors: List[DecisionFactor]) -> DecisionEvent:
        event.factors = factors
        self.session.add(event)
        self.session.flush()
        return event

    def find_by_id(self, owner_id: str, event_id: int) -> Optional[DecisionEvent]:
        return self.session.query(DecisionEvent).filter(
            DecisionEvent.owner_id == owner_id, DecisionEvent.id == event_id
        ).first()


# ==========================================================
# RECOMMENDATION QUEUE REPOSITORY
# ==========================================================
class RecommendationRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, item: RecommendationQueueItem) -> RecommendationQueueItem:
        self.session.add(item)
        self.session.flush()
        return item

    def find_by_id(self, owner_id: str, item_id: int) -> Optional[RecommendationQueueItem]:
        return self.session.query(RecommendationQueueItem).filter(
            RecommendationQueueItem.owner_id == owner_id, RecommendationQueueItem.id == item_id
        ).first()

    def find_by_decision(self, owner_id: str, decision_event_id: int) -> Optional[RecommendationQueueItem]:
        return self.session.query(RecommendationQueueItem).filter(
            RecommendationQueueItem.owner_id == owner_id,
            RecommendationQueueItem.decision_event_id == decision_event_id,
        ).first()

    def claim(self, item_id: int) -> bool:
        """queued -> in_progress, only for approved items."""
        result = self.session.execute(
            update(RecommendationQueueItem)
            .where(
                RecommendationQueueItem.id == item_id,
                RecommendationQueueItem.execution_status == QueueStatus.QUEUED,
                RecommendationQueueItem.approval_status.in_([ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED]),
            )
            .values(
                execution_status=QueueStatus.IN_PROGRESS,
                execution_attempts=RecommendationQueueItem.execution_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def reload(self, item_id: int) -> Optional[RecommendationQueueItem]:
        return self.session.get(RecommendationQueueItem, item_id, populate_existing=True)

    def due_scheduled(self, now: datetime, owner_id: Optional[str] = None) -> List[RecommendationQueueItem]:
        q = self.session.query(RecommendationQueueItem).filter(
            RecommendationQueueItem.execution_status == QueueStatus.QUEUED,
            RecommendationQueueItem.scheduled_for.isnot(None),
            RecommendationQueueItem.scheduled_for <= now,
        )
        if owner_id is not None:
            q = q.filter(RecommendationQueueItem.owner_id == owner_id)
        return q.order_by(RecommendationQueueItem.priority.desc(), RecommendationQueueItem.scheduled_for).all()


# ==========================================================
# RECOVERY ACTION REPOSITORY
# ==========================================================
class RecoveryRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, action: RecoveryAction) -> RecoveryAction:
        self.session.add(action)
        self.session.flush()
        return action

    def find_by_id(self, owner_id: str, action_id: int) -> Optional[RecoveryAction]:
        return self.session.query(RecoveryAction).filter(
            RecoveryAction.owner_id == owner_id, RecoveryAction.id == action_id
        ).first()

    def reload(self, action_id: int) -> Optional[RecoveryAction]:
        return self.session.get(RecoveryAction, action_id, populate_existing=True)

    def awaiting_effectiveness(self, owner_id: str, component_type: str, component_name: str,
                               window_start: datetime) -> List[RecoveryAction]:
        """Completed actions on the component with no post-action capture, finished by `window_start`."""
        rows = self.session.query(RecoveryAction).filter(
            RecoveryAction.owner_id == owner_id,
            RecoveryAction.target_component_type == component_type,
            RecoveryAction.target_component_name == component_name,
            RecoveryAction.execution_status == RecoveryStatus.COMPLETED,
            RecoveryAction.dry_run.is_(False),
            RecoveryAction.recovery_effectiveness_score.is_(None),
            RecoveryAction.completed_at <= window_start,
        ).order_by(RecoveryAction.completed_at.asc()).all()
        # JSON columns may hold a JSON null rather than SQL NULL
        return [a for a in rows if not a.post_action_metrics]

    def claim(self, action_id: int, now: datetime) -> bool:
        """
        Atomic pending -> in_progress. Exactly one concurrent caller gets rowcount 1;
        a retry that is not yet due cannot be claimed.
        """
        self.session.flush()
        result = self.session.execute(
            update(RecoveryAction)
            .where(
                RecoveryAction.id == action_id,
                RecoveryAction.execution_status == RecoveryStatus.PENDING,
                or_(RecoveryAction.next_retry_at.is_(None), RecoveryAction.next_retry_at <= now),
            )
            .values(execution_status=RecoveryStatus.IN_PROGRESS, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def cancel_if_pending(self, action_id: int, now: datetime) -> bool:
        self.session.flush()
        result = self.session.execute(
            update(RecoveryAction)
            .where(RecoveryAction.id == action_id, RecoveryAction.execution_status == RecoveryStatus.PENDING)
            .values(execution_status=RecoveryStatus.CANCELLED, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def due_retries(self, now: datetime, owner_id: Optional[str] = None) -> List[RecoveryAction]:
        q = self.session.query(RecoveryAction).filter(
            RecoveryAction.execution_status == RecoveryStatus.PENDING,
            RecoveryAction.next_retry_at.isnot(None),
            RecoveryAction.next_retry_at <= now,
        )
        if owner_id is not None:
            q = q.filter(RecoveryAction.owner_id == owner_id)
        return q.order_by(RecoveryAction.next_retry_at).all()


# ==========================================================
# AUDIT LOG REPOSITORY (append + reads, nothing else)
# ==========================================================
class AuditLogRepository:
    def __init__(self, session: Session):
        self.session = session

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        self.session.add(entry)
        self.session.flush()
        return entry

    def find_by_id(self, owner_id: str, entry_id: int) -> Optional[AuditLogEntry]:
        return self.session.query(AuditLogEntry).filter(
            AuditLogEntry.owner_id == owner_id, AuditLogEntry.id == entry_id
        ).first()

    def list(self, owner_id: str, event_category: Optional[str] = None, event_type: Optional[str] = None,
             subject_type: Optional[str] = None, subject_id: Optional[int] = None,
             since: Optional[datetime] = None, limit: int = 100) -> List[AuditLogEntry]:
        q = self.session.query(AuditLogEntry).filter(AuditLogEntry.owner_id == owner_id)
        if event_category:
            q = q.filter(AuditLogEntry.event_category == event_category)
        if event_type:
            q = q.filter(AuditLogEntry.event_type == event_type)
        if subject_type:
            q = q.filter(AuditLogEntry.subject_type == subject_type)
        if subject_id is not None:
            q = q.filter(AuditLogEntry.subject_id == subject_id)
        if since is not None:
            q = q.filter(AuditLogEntry.created_at >= since)
        return q.order_by(AuditLogEntry.id.desc()).limit(limit).all()


# ==========================================================
# SELF TEST REPOSITORY
# ==========================================================
class SelfTestRepository:
    def __init__(self, session: Session):
        self.session = session

    def add_all(self, results: List[SelfTestResult]) -> List[SelfTestResult]:
        self.session.add_all(results)
        self.session.flush()
        return results

    def list_run(self, owner_id: str, run_id: str) -> List[SelfTestResult]:
        return self.session.query(SelfTestResult).filter(
            SelfTestResult.owner_id == owner_id, SelfTestResult.run_id == run_id
        ).order_by(SelfTestResult.id).all()
#--- END OF FILE ---
