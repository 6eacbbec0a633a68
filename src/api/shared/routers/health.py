"""
Health endpoints for container orchestration.

/health/ready reports the workflow store and whether a sweeper currently
holds the runner lease. A missing sweeper does not fail readiness: the API
still accepts requests, SLA timeouts just wait for the next sweeper.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from cancellations.engine.models import parse_iso
from core.config import config

router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    return {"status": "healthy", "timestamp": _now(), "version": config.APP_VERSION}


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


def _sweeper_status(engine) -> str:
    lease = engine.store.get_runner_lease(runner_name=config.SWEEPER_RUNNER_NAME)
    if lease is None:
        return "not running"
    expires = parse_iso(lease.lease_expires_at)
    if expires is not None and expires > datetime.now(timezone.utc):
        return "leased"
    return "lease expired"


@router.get("/health/ready")
def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    """200 when the workflow store answers; 503 otherwise."""
    engine = getattr(request.app.state, "engine", None)
    checks: Dict[str, str] = {}

    if engine is None:
        checks["workflow_store"] = "not initialized"
    else:
        try:
            engine.store.ping()
            checks["workflow_store"] = "healthy"
            checks["sweeper"] = _sweeper_status(engine)
        except Exception as e:
            checks["workflow_store"] = f"unhealthy: {str(e)[:100]}"

    ready = checks["workflow_store"] == "healthy"
    if not ready:
        response.status_code = 503
    return {"status": "ready" if ready else "not_ready", "checks": checks, "timestamp": _now()}


@router.get("/api/version")
async def get_version() -> Dict[str, Any]:
    """Build information for deployment verification."""
    return {
        "version": config.APP_VERSION,
        "commit": os.getenv("GIT_COMMIT", "unknown"),
        "build_time": os.getenv("BUILD_TIME", "unknown"),
        "environment": os.getenv("APP_ENV", "development"),
    }
