# src/healguard/interfaces/api/routers/stats.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_user, resolve_owner, get_stats_service

router = APIRouter(prefix="/stats", tags=["Stats"])


@router.get("/health-summary")
async def health_summary(
    hours: int = Query(24),
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    stats_service=Depends(get_stats_service),
):
    return await stats_service.health_summary(db, resolve_owner(user, owner_id), hours)


@router.get("/anomalies")
async def anomaly_stats(
    hours: int = Query(24),
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    stats_service=Depends(get_stats_service),
):
    return await stats_service.anomaly_stats(db, resolve_owner(user, owner_id), hours)


@router.get("/recovery-actions")
async def recovery_stats(
    hours: int = Query(24),
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    stats_service=Depends(get_stats_service),
):
    return await stats_service.recovery_stats(db, resolve_owner(user, owner_id), hours)
