# src/healguard/interfaces/api/routers/thresholds.py
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import (
    CurrentUser, require_operator, require_user, resolve_owner, get_threshold_service
)
from healguard.interfaces.api.schemas import ThresholdIn, ThresholdOut, EvaluateMetricIn, AlertOut, ApprovalIn

router = APIRouter(tags=["Thresholds"])


@router.post("/thresholds", response_model=ThresholdOut, status_code=status.HTTP_201_CREATED)
def create_threshold(
    body: ThresholdIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    threshold_service=Depends(get_threshold_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    data = body.model_dump(exclude={"owner_id"})
    return threshold_service.create_threshold(db, owner_id, actor=user.sub, **data)


@router.get("/thresholds", response_model=List[ThresholdOut])
def list_thresholds(
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    threshold_service=Depends(get_threshold_service),
):
    return threshold_service.list_thresholds(db, resolve_owner(user, owner_id))


@router.post("/thresholds/evaluate", response_model=List[AlertOut])
async def evaluate_metric(
    body: EvaluateMetricIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    threshold_service=Depends(get_threshold_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    component = (body.component_type, body.component_name) if body.component_type and body.component_name else None
    return await threshold_service.evaluate(db, owner_id, body.metric_name, body.value, component=component)


@router.post("/alerts/{alert_id}/acknowledge", response_model=AlertOut)
def acknowledge_alert(
    alert_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    threshold_service=Depends(get_threshold_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return threshold_service.acknowledge_alert(db, owner_id, alert_id, actor=user.sub)
