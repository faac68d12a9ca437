# src/healguard/application/services/decision_service.py
"""
DecisionService - persists scored decisions and hands them to the recommendation queue.

Scoring and validation are pure (see `application/engine/scoring.py`); this service only
adds storage, audit and the approval workflow. A DecisionEvent is immutable after
creation except for its approval fields and its final execution status.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any

from sqlalchemy.orm import Session

from healguard.config import settings
from healguard.domain.entities import (
    ApprovalStatus, DecisionStatus, RiskLevel, RecommendationActionType, Urgency, ActorType, utcnow
)
from healguard.domain.errors import ValidationError, NotFoundError, InvalidTransitionError
from healguard.domain.value_objects import DecisionPolicy
from healguard.application.engine.scoring import FactorInput, assess, validate_decision, ValidationReport
from healguard.infrastructure.db.models import DecisionEvent, DecisionFactor
from healguard.infrastructure.db.repository import DecisionRepository
from healguard.infrastructure.monitoring.metrics import DECISIONS

log = logging.getLogger(__name__)

DEFAULT_PRIORITY = {
    RiskLevel.LOW: 3,
    RiskLevel.MEDIUM: 5,
    RiskLevel.HIGH: 7,
    RiskLevel.CRITICAL: 9,
}


@dataclass
class DecisionRequest:
    decision_type: str
    trigger_source: str
    factors: List[FactorInput]
    context_data: Dict[str, Any] = field(default_factory=dict)
    requires_approval: Optional[bool] = None
    priority: Optional[int] = None
    expires_in_minutes: Optional[int] = None
    # what the queued recommendation should do once approved
    action_type: str = RecommendationActionType.SEND_NOTIFICATION.value
    action_target: Optional[str] = None
    action_payload: Dict[str, Any] = field(default_factory=dict)
    urgency: Optional[str] = None


class DecisionService:
    def __init__(self, audit_service: Any, recommendation_service: Any = None,
                 policy: Optional[DecisionPolicy] = None):
        self.audit = audit_service
        self.recommendation_service = recommendation_service
        self.policy = policy or DecisionPolicy.from_settings(settings)

    def _check_request(self, request: DecisionRequest) -> None:
        if not request.decision_type or not request.trigger_source:
            raise ValidationError("decision_type and trigger_source are required")
        if request.priority is not None and not 1 <= request.priority <= 10:
            raise ValidationError("priority must be between 1 and 10")
        if request.expires_in_minutes is not None and request.expires_in_minutes <= 0:
            raise ValidationError("expires_in_minutes must be positive")
        try:
            RecommendationActionType(request.action_type)
        except ValueError:
            raise ValidationError(f"Unknown action_type '{request.action_type}'")
        if request.urgency is not None:
            try:
                Urgency(request.urgency)
            except ValueError:
                raise ValidationError(f"Unknown urgency '{request.urgency}'")

    def evaluate(self, db_session: Session, owner_id: str, request: DecisionRequest,
                 actor: str = "system") -> Dict[str, Any]:
        self._check_request(request)
        assessment = assess(request.factors, self.policy, request.requires_approval)
        now = utcnow()

        event = DecisionEvent(
            owner_id=owner_id,
            decision_type=request.decision_type,
            trigger_source=request.trigger_source,
            context_data=request.context_data or {},
            confidence_score=round(assessment.confidence, 6),
            risk_level=assessment.risk_level,
            requires_approval=assessment.requires_approval,
            approval_status=ApprovalStatus.PENDING,
            recommended_action=assessment.recommended_action,
            priority=request.priority or DEFAULT_PRIORITY[assessment.risk_level],
            status=DecisionStatus.PENDING,
            expires_at=now + timedelta(minutes=request.expires_in_minutes) if request.expires_in_minutes else None,
            created_by=actor,
            created_at=now,
        )
        factors = [
            DecisionFactor(
                factor_name=f.name,
                category=f.category,
                current_value=f.current_value,
                baseline_value=f.baseline_value,
                threshold_value=f.threshold_value,
                weight=f.weight,
                normalized_score=f.normalized_score,
                weighted_score=f.weighted_score,
                deviation_percentage=f.deviation_percentage,
                higher_is_better=f.higher_is_better,
            )
            for f in assessment.factors
        ]
        event = DecisionRepository(db_session).add(event, factors)

        self.audit.record(
            db_session, owner_id, "decision_evaluated", "decision",
            f"{request.decision_type} from {request.trigger_source}: confidence {assessment.confidence:.3f}, "
            f"risk {assessment.risk_level.value}, recommended {assessment.recommended_action.value}",
            decision_impact=assessment.risk_level.value,
            triggered_by=actor,
            actor_type=ActorType.USER if actor != "system" else ActorType.SYSTEM,
            subject_type="decision", subject_id=event.id,
            new_state=DecisionStatus.PENDING.value,
            metadata={"requires_approval": assessment.requires_approval, "factors": len(factors)},
        )
        DECISIONS.labels(
            risk_level=assessment.risk_level.value, recommended_action=assessment.recommended_action.value
        ).inc()

        recommendation = None
        if self.recommendation_service is not None:
            recommendation = self.recommendation_service.enqueue_from_decision(
                db_session, event,
                action_type=request.action_type,
                action_target=request.action_target,
                action_payload=request.action_payload,
                urgency=request.urgency,
            )
        db_session.commit()
        log.info(
            f"Decision #{event.id} ({request.decision_type}) for owner {owner_id}: "
            f"confidence={assessment.confidence:.3f} risk={assessment.risk_level.value} "
            f"approval={'required' if assessment.requires_approval else 'auto'}"
        )

        return {
            "decision_event_id": event.id,
            "confidence_score": event.confidence_score,
            "factors_analyzed": [f.to_dict() for f in assessment.factors],
            "risk_level": assessment.risk_level.value,
            "requires_approval": assessment.requires_approval,
            "recommended_action": assessment.recommended_action.value,
            "priority": event.priority,
            "recommendation_id": recommendation.id if recommendation is not None else None,
        }

    def get(self, db_session: Session, owner_id: str, decision_id: int) -> DecisionEvent:
        event = DecisionRepository(db_session).find_by_id(owner_id, decision_id)
        if not event:
            raise NotFoundError(f"Decision #{decision_id} not found")
        return event

    def validate(self, db_session: Session, owner_id: str, decision_id: int,
                 rules: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> ValidationReport:
        """Read-only re-check of a stored decision."""
        event = self.get(db_session, owner_id, decision_id)
        return validate_decision(event, rules, now=now, tolerance=self.policy.weight_tolerance)

    def _set_approval(self, db_session: Session, owner_id: str, decision_id: int,
                      target: ApprovalStatus, actor: str, reason: Optional[str] = None) -> DecisionEvent:
        event = self.get(db_session, owner_id, decision_id)
        if event.approval_status != ApprovalStatus.PENDING:
            raise InvalidTransitionError(
                f"Decision #{decision_id} is already {event.approval_status.value}"
            )
        previous = event.approval_status
        event.approval_status = target
        event.approved_by = actor
        event.approved_at = utcnow()
        self.audit.record(
            db_session, owner_id, f"decision_{target.value}", "decision",
            f"Decision #{decision_id} {target.value} by {actor}" + (f": {reason}" if reason else ""),
            triggered_by=actor, actor_type=ActorType.USER,
            subject_type="decision", subject_id=decision_id,
            previous_state=previous.value, new_state=target.value,
        )

        if self.recommendation_service is not None:
            self.recommendation_service.sync_decision_approval(db_session, event, target, actor, reason)
        db_session.commit()
        log.info(f"Decision #{decision_id} {target.value} by {actor}")
        return event

    def approve(self, db_session: Session, owner_id: str, decision_id: int, actor: str) -> DecisionEvent:
        return self._set_approval(db_session, owner_id, decision_id, ApprovalStatus.APPROVED, actor)

    def reject(self, db_session: Session, owner_id: str, decision_id: int, actor: str,
               reason: Optional[str] = None) -> DecisionEvent:
        return self._set_approval(db_session, owner_id, decision_id, ApprovalStatus.REJECTED, actor, reason)
