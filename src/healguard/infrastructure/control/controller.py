# src/healguard/infrastructure/control/controller.py
"""
Async client for the component control plane.

Recovery handlers call `perform` to apply a side effect (restart, scale, failover, ...)
to a target component. Any transport or HTTP failure surfaces as ExternalDependencyError
so the orchestrator can feed it into the retry policy.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import httpx

from healguard.config import settings
from healguard.domain.errors import ExternalDependencyError

log = logging.getLogger(__name__)


@dataclass
class ControlResult:
    ok: bool
    payload: Dict[str, Any]
    message: str = ""


class HttpComponentController:
    def __init__(self, base_url: Optional[str] = None, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = (base_url or settings.CONTROL_PLANE_URL or "").rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    def _url(self, component_type: str, component_name: str, action: str) -> str:
        return f"{self.base_url}/components/{component_type}/{component_name}/actions/{action}"

    async def perform(self, component_type: str, component_name: str, action: str,
                      config: Optional[Dict[str, Any]] = None) -> ControlResult:
        if not self.base_url:
            raise ExternalDependencyError("CONTROL_PLANE_URL is not configured")
        url = self._url(component_type, component_name, action)
        try:
            response = await self.client.post(url, json={"config": config or {}})
        except httpx.HTTPError as e:
            log.error("Control plane request %s failed: %s", url, e)
            raise ExternalDependencyError(f"control plane unreachable: {e}") from e

        if response.status_code >= 400:
            log.warning("Control plane rejected %s on %s/%s: %s %s",
                        action, component_type, component_name, response.status_code, response.text[:200])
            raise ExternalDependencyError(
                f"control plane returned {response.status_code} for {action} on {component_type}/{component_name}"
            )
        try:
            payload = response.json()
        except ValueError:
            payload = {"raw": response.text[:500]}
        return ControlResult(ok=True, payload=payload, message=f"{action} accepted")

    async def close(self) -> None:
        await self.client.aclose()
