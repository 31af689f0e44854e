"""Health & Readiness Probes — liveness and readiness endpoints for the sync bridge.

Invariants:
    - GET /health/ always returns 200 if process is up (liveness)
    - GET /health/ready returns 503 until the sync core is wired (readiness)

Design Decisions:
    - Readiness does not call the remote store: an unreachable store degrades to
      stale local state, it does not make the bridge unusable
"""

import logging
from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("/", status_code=status.HTTP_200_OK)
async def health_check():
    """Basic liveness probe. Returns 200 if the process is up."""
    return {
        "status": "healthy",
        "service": "marble-sync",
        "version": "1.0.0",
    }


@router.get("/ready")
async def readiness_check(request: Request):
    core = getattr(request.app.state, "sync_core", None)
    if core is None:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "reason": "sync_core_unavailable",
            },
        )
    return {
        "status": "ready",
        "checks": {"sync_core": "healthy", "autosave": core.autosave.status.value},
    }
