# src/healguard/application/services/recovery_service.py
"""
RecoveryService - runs remediation actions against components and tracks their lifecycle.

    pending -> in_progress -> completed | failed | timeout
    pending -> cancelled
    in_progress -> pending            (scheduled retry)
    completed | failed -> rolled_back (compensating action linked via rollback_action_id)

Only this service writes RecoveryAction rows. Claims are conditional UPDATEs, so of two
workers racing on the same pending action exactly one runs the handler; the other gets
the winner's state back and performs no side effects.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any, Callable, Awaitable

from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import (
    RecoveryActionType, RecoveryStatus, TriggerType, AnomalyStatus, ActorType,
    ensure_transition, utcnow
)
from healguard.domain.errors import (
    ValidationError, NotFoundError, InvalidTransitionError, ExternalDependencyError
)
from healguard.domain.value_objects import (
    RetryPolicy, ActionConfig, AlertEscalationConfig, ScaleDownConfig, ScaleUpConfig,
    parse_action_config,
)
from healguard.application.engine.remediation import plan_for_anomaly, effectiveness
from healguard.infrastructure.cache import stats_prefix
from healguard.infrastructure.db.models import RecoveryAction, AnomalySignal, HealthWindow
from healguard.infrastructure.db.repository import RecoveryRepository, HealthRepository
from healguard.infrastructure.monitoring.metrics import RECOVERY_OUTCOMES
from healguard.infrastructure.notify.dispatcher import Notification

log = logging.getLogger(__name__)

ActionHandler = Callable[[RecoveryAction, ActionConfig], Awaitable[Dict[str, Any]]]

# actions the control plane performs directly
CONTROL_PLANE_ACTIONS = (
    RecoveryActionType.RESTART_FUNCTION,
    RecoveryActionType.ROLLBACK_DEPLOYMENT,
    RecoveryActionType.SCALE_UP,
    RecoveryActionType.SCALE_DOWN,
    RecoveryActionType.RESET_CONNECTION,
    RecoveryActionType.FAILOVER,
    RecoveryActionType.CIRCUIT_BREAKER,
    RecoveryActionType.RATE_LIMIT,
)


@dataclass
class RecoveryRequest:
    action_type: str
    target_component_type: str
    target_component_name: str
    action_config: Dict[str, Any] = field(default_factory=dict)
    trigger_type: str = TriggerType.MANUAL.value
    triggered_by_anomaly_id: Optional[int] = None
    retry_policy: Optional[Dict[str, Any]] = None
    timeout_seconds: Optional[int] = None
    dry_run: bool = False


def compensating_action(action: RecoveryAction) -> RecoveryActionType:
    if action.action_type == RecoveryActionType.SCALE_UP:
        return RecoveryActionType.SCALE_DOWN
    if action.action_type == RecoveryActionType.SCALE_DOWN:
        return RecoveryActionType.SCALE_UP
    if action.action_type == RecoveryActionType.FAILOVER:
        return RecoveryActionType.FAILOVER
    return RecoveryActionType.ALERT_ESCALATION


class RecoveryService:
    def __init__(self, audit_service: Any, notifier: Any = None, controller: Any = None, cache: Any = None,
                 retry_policy: Optional[RetryPolicy] = None, timeout_seconds: Optional[int] = None,
                 handlers: Optional[Dict[RecoveryActionType, ActionHandler]] = None):
        self.audit = audit_service
        self.notifier = notifier
        self.controller = controller
        self.cache = cache
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.timeout_seconds = timeout_seconds or settings.RECOVERY_TIMEOUT_SECONDS

        self.handlers: Dict[RecoveryActionType, ActionHandler] = {
            action_type: self._handle_control_plane for action_type in CONTROL_PLANE_ACTIONS
        }
        self.handlers[RecoveryActionType.CLEAR_CACHE] = self._handle_clear_cache
        self.handlers[RecoveryActionType.ALERT_ESCALATION] = self._handle_alert_escalation
        if handlers:
            self.handlers.update(handlers)
        missing = set(RecoveryActionType) - set(self.handlers)
        if missing:
            raise ValueError(f"No recovery handler for: {sorted(m.value for m in missing)}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    async def _handle_control_plane(self, action: RecoveryAction, config: ActionConfig) -> Dict[str, Any]:
        if self.controller is None:
            raise ExternalDependencyError("No component controller configured")
        result = await self.controller.perform(
            action.target_component_type, action.target_component_name, action.action_type.value, config.to_dict()
        )
        return {"message": result.message, "payload": result.payload}

    async def _handle_clear_cache(self, action: RecoveryAction, config: ActionConfig) -> Dict[str, Any]:
        removed = 0
        if self.cache is not None:
            removed = await self.cache.invalidate_prefix(stats_prefix(action.owner_id))
        out: Dict[str, Any] = {"shared_cache_keys_removed": removed, "cache_type": config.cache_type}
        if self.controller is not None and getattr(self.controller, "base_url", None):
            result = await self.controller.perform(
                action.target_component_type, action.target_component_name, action.action_type.value, config.to_dict()
            )
            out["payload"] = result.payload
        return out

    async def _handle_alert_escalation(self, action: RecoveryAction, config: AlertEscalationConfig) -> Dict[str, Any]:
        if self.notifier is None:
            raise ExternalDependencyError("No notification dispatcher configured")
        outcomes = await self.notifier.dispatch(Notification(
            subject=f"Escalation: {action.component_key}",
            body=config.message or f"Manual intervention requested for {action.component_key}",
            severity=config.severity,
        ))
        if outcomes and not any(outcomes.values()):
            raise ExternalDependencyError(f"Escalation could not be delivered: {outcomes}")
        return {"channels": outcomes}

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_action(self, db_session: Session, owner_id: str, request: RecoveryRequest,
                      actor: str = "system") -> RecoveryAction:
        try:
            action_type = RecoveryActionType(request.action_type)
        except ValueError:
            raise ValidationError(f"Unknown recovery action_type '{request.action_type}'")
        try:
            trigger_type = TriggerType(request.trigger_type)
        except ValueError:
            raise ValidationError(f"Unknown trigger_type '{request.trigger_type}'")
        if not request.target_component_type or not request.target_component_name:
            raise ValidationError("target_component_type and target_component_name are required")
        config = parse_action_config(action_type, request.action_config)
        policy = RetryPolicy.from_dict(request.retry_policy, defaults=self.retry_policy)
        timeout = request.timeout_seconds or self.timeout_seconds
        if timeout <= 0:
            raise ValidationError("timeout_seconds must be positive")

        now = utcnow()
        action = RecoveryRepository(db_session).add(RecoveryAction(
            owner_id=owner_id,
            action_type=action_type,
            action_category=action_type.category,
            target_component_type=request.target_component_type,
            target_component_name=request.target_component_name,
            action_config=config.to_dict(),
            trigger_type=trigger_type,
            triggered_by=actor,
            triggered_by_anomaly_id=request.triggered_by_anomaly_id,
            execution_status=RecoveryStatus.PENDING,
            attempt_number=1,
            max_attempts=policy.max_attempts,
            retry_policy=policy.to_dict(),
            timeout_seconds=timeout,
            dry_run=request.dry_run,
            created_at=now,
            updated_at=now,
        ))
        self.audit.record(
            db_session, owner_id, "recovery_created", "recovery",
            f"{action_type.value} on {action.component_key} created ({trigger_type.value})"
            + (" [dry run]" if request.dry_run else ""),
            triggered_by=actor,
            actor_type=ActorType.AUTOMATION if trigger_type == TriggerType.AUTOMATIC else ActorType.USER,
            subject_type="recovery_action", subject_id=action.id,
            new_state=RecoveryStatus.PENDING.value,
            metadata={"config": action.action_config, "retry_policy": action.retry_policy},
        )
        return action

    async def execute(self, db_session: Session, owner_id: str, request: RecoveryRequest,
                      actor: str = "system") -> Dict[str, Any]:
        action = self.create_action(db_session, owner_id, request, actor)
        db_session.commit()
        action = await self.run_action(db_session, owner_id, action.id)
        return {
            "recovery_action_id": action.id,
            "execution_status": action.execution_status.value,
            "attempt_number": action.attempt_number,
            "next_retry_at": action.next_retry_at.isoformat() if action.next_retry_at else None,
        }

    def get(self, db_session: Session, owner_id: str, action_id: int) -> RecoveryAction:
        action = RecoveryRepository(db_session).find_by_id(owner_id, action_id)
        if not action:
            raise NotFoundError(f"Recovery action #{action_id} not found")
        return action

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _snapshot(self, db_session: Session, action: RecoveryAction) -> Optional[Dict[str, Any]]:
        window = HealthRepository(db_session).latest_window(
            action.owner_id, action.target_component_type, action.target_component_name
        )
        return window.snapshot() if window else None

    async def run_action(self, db_session: Session, owner_id: str, action_id: int,
                         now: Optional[datetime] = None) -> RecoveryAction:
        now = now or utcnow()
        repo = RecoveryRepository(db_session)
        self.get(db_session, owner_id, action_id)

        if not repo.claim(action_id, now):
            current = repo.reload(action_id)
            log.info(f"Recovery action #{action_id} not claimed; current state {current.execution_status.value}")
            return current
        db_session.commit()
        action = repo.reload(action_id)
        self.audit.record(
            db_session, owner_id, "recovery_started", "recovery",
            f"{action.action_type.value} on {action.component_key} attempt {action.attempt_number}/{action.max_attempts}",
            actor_type=ActorType.AUTOMATION, subject_type="recovery_action", subject_id=action.id,
            previous_state=RecoveryStatus.PENDING.value, new_state=RecoveryStatus.IN_PROGRESS.value,
        )
        if action.pre_action_metrics is None:
            # first attempt only; retries are measured against the original state
            action.pre_action_metrics = self._snapshot(db_session, action)
        db_session.commit()

        config = parse_action_config(action.action_type, action.action_config)
        handler = self.handlers[action.action_type]
        started = time.monotonic()
        result: Dict[str, Any] = {}
        error: Optional[str] = None
        try:
            if action.dry_run:
                result = {"dry_run": True, "planned": action.action_type.value, "config": config.to_dict()}
            else:
                result = await asyncio.wait_for(handler(action, config), timeout=action.timeout_seconds)
            outcome = RecoveryStatus.COMPLETED
        except asyncio.TimeoutError:
            outcome = RecoveryStatus.TIMEOUT
            error = f"timed out after {action.timeout_seconds}s"
        except Exception as e:
            outcome = RecoveryStatus.FAILED
            error = str(e) or type(e).__name__
            log.warning(f"Recovery action #{action.id} attempt {action.attempt_number} failed: {error}")
        duration_ms = (time.monotonic() - started) * 1000.0

        # claim time plus handler time, on the same clock as `now`
        finished = now + timedelta(milliseconds=duration_ms)
        attempts = list((action.execution_result or {}).get("attempts", []))
        attempts.append({
            "attempt": action.attempt_number,
            "outcome": outcome.value,
            "error": error,
            "duration_ms": round(duration_ms, 2),
            "finished_at": finished.isoformat(),
        })
        action.execution_result = {"attempts": attempts, "last_result": result}
        action.execution_duration_ms = duration_ms
        action.error_message = error
        action.updated_at = finished
        RECOVERY_OUTCOMES.labels(action_type=action.action_type.value, outcome=outcome.value).inc()

        if outcome == RecoveryStatus.COMPLETED:
            self._finish(db_session, action, outcome, finished)
        elif action.attempt_number < action.max_attempts:
            self._schedule_retry(db_session, action, outcome, finished)
        else:
            self._finish(db_session, action, outcome, finished)
            self._escalate(action)
        db_session.commit()
        await self._invalidate(owner_id)
        return action

    def _finish(self, db_session: Session, action: RecoveryAction, outcome: RecoveryStatus, finished: datetime) -> None:
        ensure_transition(action.execution_status, outcome)
        action.execution_status = outcome
        action.completed_at = finished
        action.next_retry_at = None
        self.audit.record(
            db_session, action.owner_id, f"recovery_{outcome.value}", "recovery",
            f"{action.action_type.value} on {action.component_key} {outcome.value} after "
            f"{action.attempt_number} attempt(s)" + (f": {action.error_message}" if action.error_message else ""),
            decision_impact="critical" if outcome != RecoveryStatus.COMPLETED else None,
            actor_type=ActorType.AUTOMATION, subject_type="recovery_action", subject_id=action.id,
            previous_state=RecoveryStatus.IN_PROGRESS.value, new_state=outcome.value,
            metadata={"duration_ms": round(action.execution_duration_ms or 0.0, 2)},
        )
        log.info(f"Recovery action #{action.id} {outcome.value} (attempt {action.attempt_number}/{action.max_attempts})")

    async def score_effectiveness(self, db_session: Session, window: HealthWindow) -> List[RecoveryAction]:
        """
        Scores completed actions on the window's component against their pre-action capture.
        Runs on the first window that starts at or after the action completed.
        """
        scored = []
        repo = RecoveryRepository(db_session)
        for action in repo.awaiting_effectiveness(
            window.owner_id, window.component_type, window.component_name, window.window_start
        ):
            action.post_action_metrics = window.snapshot()
            score, improvement = effectiveness(action.pre_action_metrics, action.post_action_metrics)
            action.recovery_effectiveness_score = score
            action.metrics_improvement_percentage = improvement
            self.audit.record(
                db_session, action.owner_id, "recovery_effectiveness_measured", "recovery",
                f"{action.action_type.value} on {action.component_key} scored {score}",
                actor_type=ActorType.AUTOMATION, subject_type="recovery_action", subject_id=action.id,
                metadata={"effectiveness_score": score, "improvement_percentage": improvement,
                          "window_start": window.window_start.isoformat()},
            )
            scored.append(action)
        if scored:
            db_session.commit()
            await self._invalidate(window.owner_id)
        return scored

    def _schedule_retry(self, db_session: Session, action: RecoveryAction, outcome: RecoveryStatus,
                        failed_at: datetime) -> None:
        policy = RetryPolicy.from_dict(action.retry_policy, defaults=self.retry_policy)
        failed_attempt = action.attempt_number
        ensure_transition(action.execution_status, RecoveryStatus.PENDING)
        action.execution_status = RecoveryStatus.PENDING
        action.attempt_number = failed_attempt + 1
        action.next_retry_at = failed_at + policy.delay_for(failed_attempt)
        self.audit.record(
            db_session, action.owner_id, "recovery_retry_scheduled", "recovery",
            f"{action.action_type.value} on {action.component_key} {outcome.value} on attempt {failed_attempt}; "
            f"retry {action.attempt_number}/{action.max_attempts} at {action.next_retry_at.isoformat()}",
            actor_type=ActorType.AUTOMATION, subject_type="recovery_action", subject_id=action.id,
            previous_state=RecoveryStatus.IN_PROGRESS.value, new_state=RecoveryStatus.PENDING.value,
            metadata={"error": action.error_message},
        )

    def _escalate(self, action: RecoveryAction) -> None:
        if self.notifier is None:
            return
        self.notifier.fire_and_forget(Notification(
            subject=f"Recovery exhausted: {action.action_type.value} on {action.component_key}",
            body=f"Action #{action.id} ended {action.execution_status.value} after {action.attempt_number} "
                 f"attempt(s): {action.error_message}",
            severity="critical",
        ))

    async def run_due_retries(self, db_session: Session, now: Optional[datetime] = None,
                              owner_id: Optional[str] = None) -> List[RecoveryAction]:
        clock = now
        now = now or utcnow()
        ran = []
        for action in RecoveryRepository(db_session).due_retries(now, owner_id):
            try:
                # each claim reads the clock again unless the caller pinned it
                ran.append(await self.run_action(db_session, action.owner_id, action.id, now=clock))
            except Exception as e:
                log.error(f"Retry of recovery action #{action.id} failed: {e}", exc_info=True)
        return ran

    # ------------------------------------------------------------------
    # Cancellation / rollback
    # ------------------------------------------------------------------
    async def cancel(self, db_session: Session, owner_id: str, action_id: int, actor: str) -> RecoveryAction:
        repo = RecoveryRepository(db_session)
        action = self.get(db_session, owner_id, action_id)
        if not repo.cancel_if_pending(action_id, utcnow()):
            current = repo.reload(action_id)
            raise InvalidTransitionError(
                f"Recovery action #{action_id} cannot be cancelled while {current.execution_status.value}"
            )
        action = repo.reload(action_id)
        self.audit.record(
            db_session, owner_id, "recovery_cancelled", "recovery",
            f"{action.action_type.value} on {action.component_key} cancelled by {actor}",
            triggered_by=actor, actor_type=ActorType.USER,
            subject_type="recovery_action", subject_id=action.id,
            previous_state=RecoveryStatus.PENDING.value, new_state=RecoveryStatus.CANCELLED.value,
        )
        db_session.commit()
        await self._invalidate(owner_id)
        return action

    async def rollback(self, db_session: Session, owner_id: str, action_id: int, reason: str,
                       actor: str = "system") -> Dict[str, Any]:
        original = self.get(db_session, owner_id, action_id)
        ensure_transition(original.execution_status, RecoveryStatus.ROLLED_BACK)
        if not reason:
            raise ValidationError("A rollback reason is required")

        comp_type = compensating_action(original)
        if comp_type == RecoveryActionType.SCALE_DOWN:
            config = ScaleDownConfig(metadata={"compensates": original.id}).to_dict()
        elif comp_type == RecoveryActionType.SCALE_UP:
            config = ScaleUpConfig(metadata={"compensates": original.id}).to_dict()
        elif comp_type == RecoveryActionType.ALERT_ESCALATION:
            config = AlertEscalationConfig(
                severity="high",
                message=f"Rollback of {original.action_type.value} #{original.id} on {original.component_key}: {reason}",
                metadata={"compensates": original.id},
            ).to_dict()
        else:
            config = {"compensates": original.id}

        compensating = self.create_action(db_session, owner_id, RecoveryRequest(
            action_type=comp_type.value,
            target_component_type=original.target_component_type,
            target_component_name=original.target_component_name,
            action_config=config,
            trigger_type=TriggerType.MANUAL.value,
            triggered_by_anomaly_id=original.triggered_by_anomaly_id,
            retry_policy={"max_attempts": 1},
        ), actor=actor)

        previous = original.execution_status
        original.execution_status = RecoveryStatus.ROLLED_BACK
        original.rollback_action_id = compensating.id
        original.rollback_reason = reason
        original.updated_at = utcnow()
        self.audit.record(
            db_session, owner_id, "recovery_rolled_back", "recovery",
            f"{original.action_type.value} #{original.id} rolled back by {actor} via "
            f"{comp_type.value} #{compensating.id}: {reason}",
            triggered_by=actor, actor_type=ActorType.USER,
            subject_type="recovery_action", subject_id=original.id,
            previous_state=previous.value, new_state=RecoveryStatus.ROLLED_BACK.value,
        )
        db_session.commit()

        compensating = await self.run_action(db_session, owner_id, compensating.id)
        return {
            "recovery_action_id": original.id,
            "execution_status": original.execution_status.value,
            "rollback_action_id": compensating.id,
            "rollback_action_status": compensating.execution_status.value,
        }

    # ------------------------------------------------------------------
    # Self-healing
    # ------------------------------------------------------------------
    async def self_heal(self, db_session: Session, anomaly: AnomalySignal) -> RecoveryAction:
        plan = plan_for_anomaly(anomaly)
        action = self.create_action(db_session, anomaly.owner_id, RecoveryRequest(
            action_type=plan.action_type.value,
            target_component_type=anomaly.source_component_type,
            target_component_name=anomaly.source_component_name,
            action_config=plan.config.to_dict(),
            trigger_type=TriggerType.AUTOMATIC.value,
            triggered_by_anomaly_id=anomaly.id,
        ), actor="self-healing")

        anomaly.triggered_recovery_action_id = action.id
        if anomaly.status == AnomalyStatus.DETECTED:
            ensure_transition(anomaly.status, AnomalyStatus.ACKNOWLEDGED)
            anomaly.status = AnomalyStatus.ACKNOWLEDGED
            anomaly.status_changed_at = utcnow()
            anomaly.status_changed_by = "self-healing"
        self.audit.record(
            db_session, anomaly.owner_id, "self_healing_triggered", "recovery",
            f"Anomaly #{anomaly.id} ({anomaly.anomaly_type.value}, {anomaly.severity.value}) -> "
            f"{plan.action_type.value} #{action.id}: {plan.reason}",
            decision_impact=anomaly.severity.value, anomaly_detected=True,
            actor_type=ActorType.AUTOMATION, subject_type="anomaly", subject_id=anomaly.id,
            previous_state=AnomalyStatus.DETECTED.value, new_state=anomaly.status.value,
            metadata={"recovery_action_id": action.id},
        )
        db_session.commit()
        return await self.run_action(db_session, anomaly.owner_id, action.id)

    async def _invalidate(self, owner_id: str) -> None:
        if self.cache is not None:
            await self.cache.invalidate_prefix(stats_prefix(owner_id))
