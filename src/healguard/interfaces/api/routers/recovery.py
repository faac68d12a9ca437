# src/healguard/interfaces/api/routers/recovery.py
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from healguard.application.services.recovery_service import RecoveryRequest
from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_operator, require_user, resolve_owner, get_recovery_service
from healguard.interfaces.api.schemas import RecoveryExecuteIn, RecoveryOut, RollbackIn, ApprovalIn

router = APIRouter(prefix="/recovery", tags=["Recovery"])


@router.post("/execute", status_code=status.HTTP_202_ACCEPTED)
async def execute(
    body: RecoveryExecuteIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recovery_service=Depends(get_recovery_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    request = RecoveryRequest(**body.model_dump(exclude={"owner_id"}))
    return await recovery_service.execute(db, owner_id, request, actor=user.sub)


@router.get("/{action_id}", response_model=RecoveryOut)
def get_action(
    action_id: int,
    owner_id: Optional[str] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_user),
    recovery_service=Depends(get_recovery_service),
):
    return recovery_service.get(db, resolve_owner(user, owner_id), action_id)


@router.post("/{action_id}/cancel", response_model=RecoveryOut)
async def cancel(
    action_id: int,
    body: Optional[ApprovalIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recovery_service=Depends(get_recovery_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return await recovery_service.cancel(db, owner_id, action_id, actor=user.sub)


@router.post("/{action_id}/rollback")
async def rollback(
    action_id: int,
    body: RollbackIn,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    recovery_service=Depends(get_recovery_service),
):
    owner_id = resolve_owner(user, body.owner_id)
    return await recovery_service.rollback(db, owner_id, action_id, body.reason, actor=user.sub)
