from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from chatgateway.config import settings
from chatgateway.providers import catalog

router = APIRouter(prefix="/health", tags=["health"])
log = structlog.get_logger()
tracer = trace.get_tracer(__name__)


@router.get("")
async def health() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "version": settings.app_version,
        }
    )


@router.get("/live")
async def liveness() -> JSONResponse:
    """Kubernetes liveness probe: always returns 200 if the process is running."""
    return JSONResponse(content={"status": "alive"})


@router.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    """Kubernetes readiness probe: the gateway is built and its default model resolves.

    Bedrock itself is not called; a probe must not spend tokens.
    """
    checks: dict[str, str] = {}
    errors: dict[str, str] = {}

    with tracer.start_as_current_span("health.readiness"):
        gateway = getattr(request.app.state, "gateway", None)
        if gateway is None:
            errors["gateway"] = "not initialised"
            log.warning("readiness_check_failed", check="gateway")
        else:
            checks["gateway"] = "ok"

            if catalog.is_valid(gateway.default_model_id):
                checks["catalog"] = "ok"
            else:
                errors["catalog"] = f"default model '{gateway.default_model_id}' not in catalog"
                log.warning("readiness_check_failed", check="catalog")

    if errors:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "checks": checks, "errors": errors},
        )

    return JSONResponse(content={"status": "ready", "checks": checks})
