# src/healguard/application/services/recommendation_service.py
"""
RecommendationService - the approval-gated queue between decisions and their effects.

Every queue item carries one action type from a closed set; each type maps to exactly
one handler and the mapping is checked for completeness when the service is built.
Execution claims an item with a conditional UPDATE, so two executors racing on the same
item produce one execution and one ConcurrencyConflict.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable, Awaitable

import httpx
from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import (
    ApprovalStatus, QueueStatus, DecisionStatus, ExecutionMode, RecommendationActionType,
    Urgency, RiskLevel, ActorType, utcnow
)
from healguard.domain.errors import (
    ValidationError, NotFoundError, AuthorizationError, ConcurrencyConflict,
    ExternalDependencyError, InvalidTransitionError
)
from healguard.domain.value_objects import DecisionPolicy
from healguard.application.services.recovery_service import RecoveryRequest
from healguard.infrastructure.db.models import RecommendationQueueItem, DecisionEvent
from healguard.infrastructure.db.repository import RecommendationRepository
from healguard.infrastructure.monitoring.metrics import DECISION_TO_EXECUTION
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)

URGENCY_BY_RISK = {
    RiskLevel.LOW: Urgency.LOW,
    RiskLevel.MEDIUM: Urgency.MEDIUM,
    RiskLevel.HIGH: Urgency.HIGH,
    RiskLevel.CRITICAL: Urgency.CRITICAL,
}

Handler = Callable[[Session, RecommendationQueueItem, str], Awaitable[Dict[str, Any]]]


class RecommendationService:
    def __init__(self, audit_service: Any, notifier: Any = None, threshold_service: Any = None,
                 policy: Optional[DecisionPolicy] = None, http_client: Optional[httpx.AsyncClient] = None,
                 handlers: Optional[Dict[RecommendationActionType, Handler]] = None):
        self.audit = audit_service
        self.notifier = notifier
        self.threshold_service = threshold_service
        self.policy = policy or DecisionPolicy.from_settings(settings)
        self.http = http_client
        # wired in boot
        self.recovery_service = None
        self.selftest_service = None

        self.handlers: Dict[RecommendationActionType, Handler] = {
            RecommendationActionType.CREATE_TASK: self._handle_create_task,
            RecommendationActionType.SEND_NOTIFICATION: self._handle_send_notification,
            RecommendationActionType.INVOKE_WEBHOOK: self._handle_invoke_webhook,
            RecommendationActionType.ADJUST_THRESHOLD: self._handle_adjust_threshold,
            RecommendationActionType.TRIGGER_RECOVERY: self._handle_trigger_recovery,
            RecommendationActionType.RUN_SELF_TEST: self._handle_run_self_test,
        }
        if handlers:
            self.handlers.update(handlers)
        missing = set(RecommendationActionType) - set(self.handlers)
        if missing:
            raise ValueError(f"No handler registered for: {sorted(m.value for m in missing)}")

    # ------------------------------------------------------------------
    # Queue management
    # ------------------------------------------------------------------
    def enqueue_from_decision(self, db_session: Session, event: DecisionEvent,
                              action_type: str = RecommendationActionType.SEND_NOTIFICATION.value,
                              action_target: Optional[str] = None,
                              action_payload: Optional[Dict[str, Any]] = None,
                              urgency: Optional[str] = None) -> RecommendationQueueItem:
        auto = (not event.requires_approval) and event.confidence_score >= self.policy.auto_approve_threshold
        approval = ApprovalStatus.AUTO_APPROVED if auto else ApprovalStatus.PENDING
        item = RecommendationRepository(db_session).add(RecommendationQueueItem(
            owner_id=event.owner_id,
            decision_event_id=event.id,
            recommendation_type=event.decision_type,
            action_type=RecommendationActionType(action_type),
            action_target=action_target,
            action_payload=action_payload or {},
            priority=event.priority,
            urgency=Urgency(urgency) if urgency else URGENCY_BY_RISK[event.risk_level],
            approval_status=approval,
            approved_by="system" if auto else None,
            approved_at=utcnow() if auto else None,
            execution_status=QueueStatus.QUEUED,
            expires_at=event.expires_at,
            execution_attempts=0,
        ))
        if auto:
            event.approval_status = ApprovalStatus.AUTO_APPROVED
            event.approved_by = "system"
            event.approved_at = item.approved_at
        self.audit.record(
            db_session, event.owner_id, "recommendation_queued", "recommendation",
            f"Recommendation #{item.id} ({item.action_type.value}) queued for decision #{event.id}, "
            f"approval {approval.value}",
            actor_type=ActorType.AUTOMATION, subject_type="recommendation", subject_id=item.id,
            new_state=QueueStatus.QUEUED.value,
            metadata={"decision_event_id": event.id, "approval_status": approval.value},
        )
        return item

    def get(self, db_session: Session, owner_id: str, recommendation_id: int) -> RecommendationQueueItem:
        item = RecommendationRepository(db_session).find_by_id(owner_id, recommendation_id)
        if not item:
            raise NotFoundError(f"Recommendation #{recommendation_id} not found")
        return item

    def sync_decision_approval(self, db_session: Session, event: DecisionEvent, status: ApprovalStatus,
                               actor: str, reason: Optional[str] = None) -> Optional[RecommendationQueueItem]:
        """Carries a decision approval onto its still-pending queue item."""
        item = RecommendationRepository(db_session).find_by_decision(event.owner_id, event.id)
        if item is None or item.approval_status != ApprovalStatus.PENDING:
            return item
        self._apply_approval(db_session, item, status, actor, reason)
        return item

    def _apply_approval(self, db_session: Session, item: RecommendationQueueItem, status: ApprovalStatus,
                        actor: str, reason: Optional[str]) -> None:
        previous = item.approval_status
        item.approval_status = status
        item.approved_by = actor
        item.approved_at = utcnow()
        if status == ApprovalStatus.REJECTED:
            item.rejection_reason = reason
            item.execution_status = QueueStatus.REJECTED
        self.audit.record(
            db_session, item.owner_id, f"recommendation_{status.value}", "recommendation",
            f"Recommendation #{item.id} {status.value} by {actor}" + (f": {reason}" if reason else ""),
            triggered_by=actor, actor_type=ActorType.USER,
            subject_type="recommendation", subject_id=item.id,
            previous_state=previous.value, new_state=status.value,
        )

    def approve(self, db_session: Session, owner_id: str, recommendation_id: int, actor: str) -> RecommendationQueueItem:
        item = self.get(db_session, owner_id, recommendation_id)
        if item.approval_status != ApprovalStatus.PENDING or item.execution_status != QueueStatus.QUEUED:
            raise InvalidTransitionError(
                f"Recommendation #{recommendation_id} is {item.approval_status.value}/{item.execution_status.value}"
            )
        self._apply_approval(db_session, item, ApprovalStatus.APPROVED, actor, None)
        db_session.commit()
        return item

    def reject(self, db_session: Session, owner_id: str, recommendation_id: int, actor: str,
               reason: Optional[str] = None) -> RecommendationQueueItem:
        item = self.get(db_session, owner_id, recommendation_id)
        if item.execution_status != QueueStatus.QUEUED or item.approval_status == ApprovalStatus.REJECTED:
            raise InvalidTransitionError(
                f"Recommendation #{recommendation_id} is {item.approval_status.value}/{item.execution_status.value}"
            )
        self._apply_approval(db_session, item, ApprovalStatus.REJECTED, actor, reason)
        db_session.commit()
        return item

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def execute(self, db_session: Session, owner_id: str, recommendation_id: int,
                      execution_mode: str = ExecutionMode.IMMEDIATE.value, actor: str = "system",
                      override_approval: bool = False, scheduled_for: Optional[datetime] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        try:
            mode = ExecutionMode(execution_mode)
        except ValueError:
            raise ValidationError(f"Unknown execution_mode '{execution_mode}'")

        repo = RecommendationRepository(db_session)
        item = self.get(db_session, owner_id, recommendation_id)

        if item.approval_status == ApprovalStatus.REJECTED:
            raise ConcurrencyConflict(f"Recommendation #{item.id} was rejected", current_state=item.execution_status.value)
        if item.execution_status != QueueStatus.QUEUED:
            raise ConcurrencyConflict(
                f"Recommendation #{item.id} is already {item.execution_status.value}",
                current_state=item.execution_status.value,
            )
        if item.approval_status == ApprovalStatus.PENDING:
            if not override_approval:
                raise AuthorizationError(f"Recommendation #{item.id} is awaiting approval")
            self._apply_approval(db_session, item, ApprovalStatus.APPROVED, actor, "approval override")

        if item.expires_at is not None and item.expires_at < now:
            item.execution_status = QueueStatus.EXPIRED
            self.audit.record(
                db_session, owner_id, "recommendation_expired", "recommendation",
                f"Recommendation #{item.id} expired at {item.expires_at.isoformat()}",
                triggered_by=actor, subject_type="recommendation", subject_id=item.id,
                previous_state=QueueStatus.QUEUED.value, new_state=QueueStatus.EXPIRED.value,
            )
            db_session.commit()
            return {"recommendation_id": item.id, "execution_status": item.execution_status.value, "latency_ms": None}

        if mode == ExecutionMode.SCHEDULED:
            if scheduled_for is None:
                raise ValidationError("scheduled_for is required for scheduled execution")
            item.execution_mode = mode
            item.scheduled_for = scheduled_for
            self.audit.record(
                db_session, owner_id, "recommendation_scheduled", "recommendation",
                f"Recommendation #{item.id} scheduled for {scheduled_for.isoformat()}",
                triggered_by=actor, subject_type="recommendation", subject_id=item.id,
            )
            db_session.commit()
            return {"recommendation_id": item.id, "execution_status": item.execution_status.value,
                    "scheduled_for": scheduled_for.isoformat(), "latency_ms": None}

        return await self._run(db_session, repo, item, mode, actor, now)

    async def _run(self, db_session: Session, repo: RecommendationRepository, item: RecommendationQueueItem,
                   mode: ExecutionMode, actor: str, now: datetime) -> Dict[str, Any]:
        db_session.flush()
        if not repo.claim(item.id):
            current = repo.reload(item.id)
            raise ConcurrencyConflict(
                f"Recommendation #{item.id} was claimed by another executor",
                current_state=current.execution_status.value if current else None,
            )
        db_session.commit()
        item = repo.reload(item.id)
        item.execution_mode = mode

        handler = self.handlers[item.action_type]
        try:
            result = await handler(db_session, item, actor)
            item.execution_status = QueueStatus.EXECUTED
            item.execution_result = {"ok": True, **(result or {})}
        except Exception as e:
            log.error(f"Recommendation #{item.id} ({item.action_type.value}) failed: {e}", exc_info=True)
            item.execution_status = QueueStatus.FAILED
            item.execution_result = {"ok": False, "error": str(e), "error_type": type(e).__name__}

        finished = utcnow()
        item.executed_at = finished
        decision = item.decision_event
        latency_ms = None
        if decision is not None:
            decision.status = DecisionStatus.EXECUTED if item.execution_status == QueueStatus.EXECUTED else DecisionStatus.FAILED
            if decision.created_at is not None:
                latency_ms = max((finished - decision.created_at).total_seconds() * 1000.0, 0.0)
                DECISION_TO_EXECUTION.observe(latency_ms / 1000.0)
        item.latency_ms = latency_ms

        self.audit.record(
            db_session, item.owner_id, f"recommendation_{item.execution_status.value}", "recommendation",
            f"Recommendation #{item.id} ({item.action_type.value}) {item.execution_status.value}"
            + (f" in {latency_ms:.0f} ms" if latency_ms is not None else ""),
            triggered_by=actor,
            actor_type=ActorType.USER if actor != "system" else ActorType.AUTOMATION,
            subject_type="recommendation", subject_id=item.id,
            previous_state=QueueStatus.IN_PROGRESS.value, new_state=item.execution_status.value,
            metadata={"attempts": item.execution_attempts},
        )
        db_session.commit()
        return {"recommendation_id": item.id, "execution_status": item.execution_status.value,
                "latency_ms": latency_ms, "result": item.execution_result}

    async def run_due(self, db_session: Session, now: Optional[datetime] = None,
                      owner_id: Optional[str] = None) -> int:
        """Runs scheduled items whose time has come. Returns how many were executed."""
        now = now or utcnow()
        repo = RecommendationRepository(db_session)
        ran = 0
        for item in repo.due_scheduled(now, owner_id):
            try:
                if item.expires_at is not None and item.expires_at < now:
                    item.execution_status = QueueStatus.EXPIRED
                    db_session.commit()
                    continue
                await self._run(db_session, repo, item, ExecutionMode.SCHEDULED, "scheduler", now)
                ran += 1
            except ConcurrencyConflict as e:
                log.info(f"Scheduled recommendation #{item.id} skipped: {e}")
            except Exception as e:
                log.error(f"Scheduled recommendation #{item.id} failed: {e}", exc_info=True)
        return ran

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_create_task(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        payload = item.action_payload or {}
        title = payload.get("title") or f"{item.recommendation_type} follow-up"
        self.audit.record(
            db_session, item.owner_id, "task_created", "recommendation",
            f"Task created: {title}",
            triggered_by=actor, subject_type="recommendation", subject_id=item.id,
            metadata={"assignee": payload.get("assignee"), "target": item.action_target},
        )
        return {"task": title, "assignee": payload.get("assignee")}

    async def _handle_send_notification(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        if self.notifier is None:
            raise ExternalDependencyError("No notification dispatcher configured")
        payload = item.action_payload or {}
        outcomes = await self.notifier.dispatch(Notification(
            subject=payload.get("subject") or f"Recommendation #{item.id}: {item.recommendation_type}",
            body=payload.get("message") or payload.get("body") or "",
            severity=payload.get("severity") or item.urgency.value,
            channel=item.action_target or payload.get("channel"),
        ))
        if outcomes and not any(outcomes.values()):
            raise ExternalDependencyError(f"All notification channels failed: {outcomes}")
        return {"channels": outcomes}

    async def _handle_invoke_webhook(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        url = item.action_target or (item.action_payload or {}).get("url")
        if not url or not url.startswith(("http://", "https://")):
            raise ValidationError(f"invoke_webhook needs an http(s) target (got {url!r})")
        body = (item.action_payload or {}).get("body", item.action_payload or {})
        client = self.http or httpx.AsyncClient(timeout=settings.NOTIFY_TIMEOUT_SECONDS)
        try:
            response = await client.post(url, json=body)
        except httpx.HTTPError as e:
            raise ExternalDependencyError(f"Webhook {url} unreachable: {e}") from e
        finally:
            if client is not self.http:
                await client.aclose()
        if response.status_code >= 400:
            raise ExternalDependencyError(f"Webhook {url} returned {response.status_code}")
        return {"status_code": response.status_code}

    async def _handle_adjust_threshold(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        if self.threshold_service is None:
            raise ExternalDependencyError("Threshold service is not configured")
        payload = item.action_payload or {}
        threshold_id = payload.get("threshold_id") or item.action_target
        if threshold_id is None or payload.get("threshold_value") is None:
            raise ValidationError("adjust_threshold needs threshold_id and threshold_value")
        threshold = self.threshold_service.set_threshold_value(
            db_session, item.owner_id, int(threshold_id), float(payload["threshold_value"]), actor=actor
        )
        return {"threshold_id": threshold.id, "threshold_value": threshold.threshold_value}

    async def _handle_trigger_recovery(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        if self.recovery_service is None:
            raise ExternalDependencyError("Recovery orchestrator is not configured")
        payload = dict(item.action_payload or {})
        request = RecoveryRequest(
            action_type=payload.pop("action_type", None) or "",
            target_component_type=payload.pop("target_component_type", None) or "",
            target_component_name=payload.pop("target_component_name", None) or item.action_target or "",
            action_config=payload.pop("action_config", None) or {},
            dry_run=bool(payload.pop("dry_run", False)),
        )
        result = await self.recovery_service.execute(db_session, item.owner_id, request, actor=actor)
        if result["execution_status"] not in ("completed", "pending"):
            raise ExternalDependencyError(
                f"Recovery action #{result['recovery_action_id']} ended {result['execution_status']}"
            )
        return result

    async def _handle_run_self_test(self, db_session: Session, item: RecommendationQueueItem, actor: str) -> Dict[str, Any]:
        if self.selftest_service is None:
            raise ExternalDependencyError("Self-test service is not configured")
        summary = await self.selftest_service.run_all(db_session, item.owner_id)
        return {"run_id": summary["run_id"], "passed": summary["passed"], "failed": summary["failed"]}
