# src/healguard/interfaces/api/routers/recommendation.py
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import (
    CurrentUser, require_operator, require_user, resolve_owner, get_recommendation_service
)
from healguard.interfaces.api.schemas import RecommendationExecuteIn, RecommendationOut, ApprovalIn

router = APIRouter(prefix="/recommendation", tags=["Recommendations"])


@router.post("/execute")
async def execute(
    body: RecommendationExecuteIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recommendation_service=Depends(get_recommendation_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    return await recommendation_service.execute(
        db, owner_id, body.recommendation_id,
        execution_mode=body.execution_mode,
        actor=user.sub,
        override_approval=body.override_approval,
        scheduled_for=body.scheduled_for,
    )


@router.get("/{recommendation_id}", response_model=RecommendationOut)
def get_recommendation(
    recommendation_id: int,
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    recommendation_service=Depends(get_recommendation_service),
):
    return recommendation_service.get(db, resolve_owner(user, owner_id), recommendation_id)


@router.post("/{recommendation_id}/approve", response_model=RecommendationOut)
def approve(
    recommendation_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recommendation_service=Depends(get_recommendation_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return recommendation_service.approve(db, owner_id, recommendation_id, actor=user.sub)


@router.post("/{recommendation_id}/reject", response_model=RecommendationOut)
def reject(
    recommendation_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recommendation_service=Depends(get_recommendation_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return recommendation_service.reject(
        db, owner_id, recommendation_id, actor=user.sub, reason=body.reason if body else None
    )
