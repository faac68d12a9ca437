# src/healguard/interfaces/api/routers/jobs.py
"""Manual triggers for the maintenance jobs, for cron-driven deployments."""
from fastapi import APIRouter, Depends

from healguard.interfaces.api.deps import require_api_key, get_scheduler

router = APIRouter(prefix="/jobs", tags=["Jobs"], dependencies=[Depends(require_api_key)])


@router.post("/close-windows")
async def close_windows(scheduler=Depends(get_scheduler)):
    return await scheduler.close_windows()


@router.post("/run-retries")
async def run_retries(scheduler=Depends(get_scheduler)):
    return await scheduler.run_retries()


@router.post("/run-recommendations")
async def run_recommendations(scheduler=Depends(get_scheduler)):
    return await scheduler.run_due_recommendations()


@router.post("/anomaly-sweep")
async def anomaly_sweep(scheduler=Depends(get_scheduler)):
    return await scheduler.anomaly_sweep()


@router.post("/auto-adjust")
async def auto_adjust(scheduler=Depends(get_scheduler)):
    return await scheduler.auto_adjust()
