"""Monitoring API routes for health checks and metrics"""
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from loyalty_processor.core.metrics import update_queue_size_gauge

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


def _timed(check) -> int:
    """Run a check, return its latency in milliseconds"""
    start = time.perf_counter()
    check()
    return int((time.perf_counter() - start) * 1000)


@router.get("/metrics")
def metrics_endpoint(request: Request):
    """Prometheus metrics endpoint - updates queue gauges before export"""
    try:
        update_queue_size_gauge(request.app.state.resources.queue.counts())
    except Exception as e:
        logger.warning(f"Failed to refresh queue gauges: {e}")
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(request: Request):
    """Health check endpoint - database and Redis reachability"""
    resources = request.app.state.resources
    services = {
        "database": {"status": "down"},
        "redis": {"status": "down"},
    }
    healthy = True

    try:
        services["database"] = {"status": "up", "latency": _timed(resources.database.ping)}
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        healthy = False

    try:
        services["redis"] = {"status": "up", "latency": _timed(resources.queue.ping)}
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        healthy = False

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "services": services,
        }
    )
