# src/healguard/interfaces/api/routers/selftest.py
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from healguard.infrastructure.db.base import get_session
from healguard.interfaces.api.deps import CurrentUser, require_operator, resolve_owner, get_selftest_service
from healguard.interfaces.api.schemas import SelfTestIn

router = APIRouter(prefix="/selftest", tags=["Self Test"])


@router.post("/run")
async def run_selftest(
    body: Optional[SelfTestIn] = None,
    db: Session = Depends(get_session),
    user: CurrentUser = Depends(require_operator),
    selftest_service=Depends(get_selftest_service),
):
    owner_id = resolve_owner(user, body.owner_id if body else None)
    return await selftest_service.run_all(db, owner_id)
