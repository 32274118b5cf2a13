import json
import logging

from fastapi import APIRouter
from fastapi.responses import Response

from marketpulse.config import settings
from marketpulse.core.metrics import get_metrics, get_metrics_content_type

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get(
    "/health",
    summary="Liveness check",
    description="Basic liveness probe that returns HTTP 200 if the application process is running.",
)
async def liveness():
    """Liveness probe. Returns 200 if the process is running."""
    return {"status": "healthy"}


@router.get(
    "/health/ready",
    summary="Readiness check",
    description="Readiness probe that verifies the job queue (and Redis, when the "
    "shared proxy pool is enabled) is reachable. Returns HTTP 503 if any "
    "dependency is unavailable.",
)
async def readiness():
    """Readiness probe. Checks queue and, if used, Redis connectivity."""
    checks = {}

    try:
        from marketpulse.api.deps import get_queue

        await get_queue().get_queue_attributes()
        checks["queue"] = "ok"
    except Exception as e:
        checks["queue"] = f"error: {e}"

    if settings.PROXY_POOL_BACKEND == "redis":
        try:
            from marketpulse.core.redis import get_redis

            await get_redis().ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    all_ok = all(v == "ok" for v in checks.values())
    status_code = 200 if all_ok else 503
    if not all_ok:
        logger.warning(f"Readiness check failed: {checks}")

    return Response(
        content=json.dumps({"status": "ready" if all_ok else "not ready", "checks": checks}),
        status_code=status_code,
        media_type="application/json",
    )


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose application metrics in Prometheus exposition format. "
    "Returns HTTP 404 if metrics collection is disabled.",
)
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(content="Metrics disabled", status_code=404)

    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type(),
    )
