# src/healguard/interfaces/api/metrics.py
import time

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Request, Response

router = APIRouter(prefix="/metrics", tags=["metrics"])

REQUESTS = Counter("hg_requests_total", "Total API requests", ["method", "status"])
LATENCY = Histogram("hg_request_latency_seconds", "Request latency", ["method"])


async def track_requests(request: Request, call_next):
    start = time.perf_counter()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        REQUESTS.labels(method=request.method, status=str(status)).inc()
        LATENCY.labels(method=request.method).observe(time.perf_counter() - start)


@router.get("")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
