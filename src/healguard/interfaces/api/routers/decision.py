# src/healguard/interfaces/api/routers/decision.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from healguard.application.engine.scoring import FactorInput
from healguard.application.services.decision_service import DecisionRequest
from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_operator, require_user, resolve_owner, get_decision_service
from healguard.interfaces.api.schemas import DecisionEvaluateIn, DecisionValidateIn, DecisionOut, ApprovalIn

router = APIRouter(prefix="/decision", tags=["Decisions"])


@router.post("/evaluate", status_code=status.HTTP_201_CREATED)
def evaluate(
    body: DecisionEvaluateIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    decision_service=Depends(get_decision_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    request = DecisionRequest(
        decision_type=body.decision_type,
        trigger_source=body.trigger_source,
        factors=[FactorInput(**f.model_dump()) for f in body.factors],
        context_data=body.context_data,
        requires_approval=body.requires_approval,
        priority=body.priority,
        expires_in_minutes=body.expires_in_minutes,
        action_type=body.recommendation.action_type,
        action_target=body.recommendation.action_target,
        action_payload=body.recommendation.action_payload,
        urgency=body.recommendation.urgency,
    )
    return decision_service.evaluate(db, owner_id, request, actor=user.sub)


@router.post("/validate")
def validate(
    body: DecisionValidateIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    decision_service=Depends(get_decision_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    report = decision_service.validate(db, owner_id, body.decision_event_id, body.rules)
    return {"decision_event_id": body.decision_event_id, **report.to_dict()}


@router.get("/{decision_id}", response_model=DecisionOut)
def get_decision(
    decision_id: int,
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    decision_service=Depends(get_decision_service),
):
    return decision_service.get(db, resolve_owner(user, owner_id), decision_id)


@router.post("/{decision_id}/approve", response_model=DecisionOut)
def approve(
    decision_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    decision_service=Depends(get_decision_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return decision_service.approve(db, owner_id, decision_id, actor=user.sub)


@router.post("/{decision_id}/reject", response_model=DecisionOut)
def reject(
    decision_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    decision_service=Depends(get_decision_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return decision_service.reject(db, owner_id, decision_id, actor=user.sub, reason=body.reason if body else None)
