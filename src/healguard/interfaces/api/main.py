# --- START OF FILE: src/healguard/interfaces/api/main.py ---
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from healguard.config import settings
from healguard.boot import build_services
from healguard.logging_conf import setup_logging
from healguard.domain.errors import (
    HealGuardError, ValidationError, AuthorizationError, NotFoundError, ExternalDependencyError,
    ExecutionTimeoutError, ConcurrencyConflict, InvalidTransitionError, AuditImmutableError,
)
from healguard.infrastructure.db.uow import create_tables
from healguard.infrastructure.monitoring.system_monitor import SystemMonitor
from healguard.infrastructure.sched.scheduler import MaintenanceScheduler
from healguard.interfaces.api.metrics import router as metrics_router, track_requests
from healguard.interfaces.api.routers import (
    auth as auth_router,
    health as health_router,
    thresholds as thresholds_router,
    anomaly as anomaly_router,
    decision as decision_router,
    recommendation as recommendation_router,
    recovery as recovery_router,
    stats as stats_router,
    audit as audit_router,
    selftest as selftest_router,
    jobs as jobs_router,
)

log = logging.getLogger(__name__)

# Order matters: subclasses before their bases.
ERROR_STATUS = (
    (ValidationError, 422),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConcurrencyConflict, 409),
    (InvalidTransitionError, 409),
    (AuditImmutableError, 409),
    (ExecutionTimeoutError, 504),
    (ExternalDependencyError, 502),
)


def status_for(exc: HealGuardError) -> int:
    for kind, code in ERROR_STATUS:
        if isinstance(exc, kind):
            return code
    return 500


# --- FastAPI App ---
app = FastAPI(title="HealGuard API", version="1.0.0")
app.state.services = None
app.state.scheduler = None
app.state.monitor = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)
if settings.METRICS_ENABLED:
    app.middleware("http")(track_requests)


@app.exception_handler(HealGuardError)
async def healguard_error_handler(request: Request, exc: HealGuardError):
    code = status_for(exc)
    if code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc}")
    body = {"detail": str(exc), "error": type(exc).__name__}
    current = getattr(exc, "current_state", None)
    if current is not None:
        body["current_state"] = current
    return JSONResponse(status_code=code, content=body)


@app.on_event("startup")
async def on_startup():
    setup_logging()
    log.info("Application startup sequence initiated...")
    if settings.DATABASE_URL.startswith("sqlite"):
        # Local runs skip Alembic.
        create_tables()
    app.state.services = build_services()

    scheduler = MaintenanceScheduler(app.state.services)
    app.state.scheduler = scheduler
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
        monitor = SystemMonitor(health_service=app.state.services["health_service"])
        monitor.start()
        app.state.monitor = monitor
    log.info("Application startup complete.")


@app.on_event("shutdown")
async def on_shutdown():
    if app.state.monitor:
        app.state.monitor.stop()
    if app.state.scheduler:
        app.state.scheduler.stop()
    services = app.state.services or {}
    notifier = services.get("notifier")
    if notifier is not None and hasattr(notifier, "drain"):
        await notifier.drain()
    cache = services.get("cache")
    if cache is not None:
        await cache.close()


@app.get("/")
def root(): return {"message": "HealGuard API Running"}

@app.get("/health")
def health_check(): return {"status": "ok"}

app.include_router(auth_router.router)
app.include_router(metrics_router)
app.include_router(health_router.router)
app.include_router(thresholds_router.router)
app.include_router(anomaly_router.router)
app.include_router(decision_router.router)
app.include_router(recommendation_router.router)
app.include_router(recovery_router.router)
app.include_router(stats_router.router)
app.include_router(audit_router.router)
app.include_router(selftest_router.router)
app.include_router(jobs_router.router)
# --- END OF FILE ---
