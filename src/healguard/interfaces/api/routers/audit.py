# src/healguard/interfaces/api/routers/audit.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_user, resolve_owner, get_audit_service
from healguard.interfaces.api.schemas import AuditEntryOut

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=List[AuditEntryOut])
def list_audit(
    event_category: Optional[str] = None,
    event_type: Optional[str] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[int] = None,
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    audit_service=Depends(get_audit_service),
):
    """Read-only view of the append-only trail, newest first."""
    return audit_service.list_entries(
        db, resolve_owner(user, owner_id),
        event_category=event_category, event_type=event_type,
        subject_type=subject_type, subject_id=subject_id,
        since=since, limit=limit,
    )
