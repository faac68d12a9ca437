# src/healguard/interfaces/api/deps.py

from __future__ import annotations
from fastapi import Header, HTTPException, Request, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional, List, Set, Any
from dataclasses import dataclass

from healguard.config import settings
from healguard.interfaces.api.security.auth import decode_token

# --- Security & Auth Dependencies ---

bearer_scheme = HTTPBearer(auto_error=False)

OPERATOR_ROLES = {"OPERATOR", "ADMIN"}

@dataclass
class CurrentUser:
    """The authenticated caller; `sub` is also the owner scope of everything they touch."""
    sub: str
    roles: List[str]
    is_authenticated: bool = False

    @property
    def is_admin(self) -> bool:
        return "ADMIN" in self.roles

def get_current_user(creds: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> CurrentUser:
    if creds is None:
        return CurrentUser(sub="guest", roles=[], is_authenticated=False)
    try:
        payload = decode_token(creds.credentials)
        return CurrentUser(
            sub=payload.get("sub", ""),
            roles=[role.upper() for role in payload.get("roles", [])],
            is_authenticated=True
        )
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

def require_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Any authenticated caller (read endpoints)."""
    if not user.is_authenticated or not user.sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user

def require_roles(required: Set[str]):
    """
    Dependency that requires the current user to have at least one of the specified roles.
    """
    def _dependency(user: CurrentUser = Depends(require_user)):
        if not set(user.roles).intersection(required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user
    return _dependency

require_operator = require_roles(OPERATOR_ROLES)

def resolve_owner(user: CurrentUser, owner_id: Optional[str] = None) -> str:
    """Callers act for themselves; only ADMIN may name another owner."""
    if owner_id is None or owner_id == user.sub:
        return user.sub
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act for another owner")
    return owner_id

# --- Service Dependencies ---

def _service(request: Request, name: str, label: str) -> Any:
    services = request.app.state.services or {}
    service = services.get(name)
    if not service:
        raise HTTPException(status_code=503, detail=f"{label} is currently unavailable.")
    return service

def get_health_service(request: Request):
    return _service(request, "health_service", "Health service")

def get_threshold_service(request: Request):
    return _service(request, "threshold_service", "Threshold service")

def get_anomaly_service(request: Request):
    return _service(request, "anomaly_service", "Anomaly service")

def get_decision_service(request: Request):
    return _service(request, "decision_service", "Decision service")

def get_recommendation_service(request: Request):
    return _service(request, "recommendation_service", "Recommendation service")

def get_recovery_service(request: Request):
    return _service(request, "recovery_service", "Recovery service")

def get_audit_service(request: Request):
    return _service(request, "audit_service", "Audit service")

def get_selftest_service(request: Request):
    return _service(request, "selftest_service", "Self-test service")

def get_stats_service(request: Request):
    return _service(request, "stats_service", "Stats service")

def get_scheduler(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler is currently unavailable.")
    return scheduler

# --- API Key Dependency ---

def require_api_key(x_api_key: str | None = Header(default=None)):
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True
