# src/healguard/interfaces/api/routers/health.py
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from healguard.domain.entities import HealthSample, utcnow
from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import (
    CurrentUser, require_operator, require_user, resolve_owner, get_health_service
)
from healguard.interfaces.api.schemas import IngestIn, IngestOut, HealthWindowOut

router = APIRouter(prefix="/health", tags=["Health"])


@router.post("/ingest", response_model=IngestOut)
async def ingest(
    body: IngestIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    health_service=Depends(get_health_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    samples = [HealthSample(**s.model_dump()) for s in body.samples]
    report = await health_service.ingest(db, owner_id, samples)
    return report.to_dict()


@router.get("/windows", response_model=List[HealthWindowOut])
def list_windows(
    minutes: int = Query(60, ge=1, le=10080),
    component_type: Optional[str] = None,
    component_name: Optional[str] = None,
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    health_service=Depends(get_health_service),
):
    owner = resolve_owner(user, owner_id)
    since = utcnow() - timedelta(minutes=minutes)
    return health_service.list_windows(db, owner, since, component_type, component_name)
