# src/healguard/interfaces/api/routers/anomaly.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_operator, resolve_owner, get_anomaly_service
from healguard.interfaces.api.schemas import DetectIn, SignalIn, AnomalyOut, ApprovalIn

router = APIRouter(prefix="/anomaly", tags=["Anomalies"])


@router.post("/detect")
async def detect(
    body: DetectIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    anomaly_service=Depends(get_anomaly_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    report = await anomaly_service.detect(db, owner_id, body.time_window_minutes, auto_analyze=body.auto_analyze)
    payload = report.to_dict()
    payload["anomalies"] = [AnomalyOut.model_validate(a).model_dump(mode="json") for a in report.anomalies]
    return payload


@router.post("/signals", status_code=status.HTTP_201_CREATED)
async def record_signal(
    body: SignalIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    anomaly_service=Depends(get_anomaly_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    anomaly = await anomaly_service.record_signal(
        db, owner_id, body.event_type, body.source_component_type, body.source_component_name,
        stability_variance=body.stability_variance,
        instability_probability=body.instability_probability,
        reinforcement_rate=body.reinforcement_rate,
        signal_id=body.signal_id,
    )
    if anomaly is None:
        return {"created": False, "anomaly": None}
    return {"created": True, "anomaly": AnomalyOut.model_validate(anomaly).model_dump(mode="json")}


@router.post("/{anomaly_id}/acknowledge", response_model=AnomalyOut)
async def acknowledge(
    anomaly_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    anomaly_service=Depends(get_anomaly_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return await anomaly_service.acknowledge(db, owner_id, anomaly_id, actor=user.sub)


@router.post("/{anomaly_id}/resolve", response_model=AnomalyOut)
async def resolve(
    anomaly_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    anomaly_service=Depends(get_anomaly_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return await anomaly_service.resolve(db, owner_id, anomaly_id, actor=user.sub)


@router.post("/{anomaly_id}/false-positive", response_model=AnomalyOut)
async def mark_false_positive(
    anomaly_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    anomaly_service=Depends(get_anomaly_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return await anomaly_service.mark_false_positive(db, owner_id, anomaly_id, actor=user.sub)
