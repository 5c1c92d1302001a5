"""Health check endpoints.

/health        - Liveness probe: is the process up?
/health/ready  - Readiness probe: request store and identity store reachable?

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter
from sqlalchemy import text

from rtbf.database import get_engine, get_identity_engine

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness() -> dict:
    """Readiness probe - checks both database connections."""
    checks: dict[str, str] = {}
    for name, get in (("request_store", get_engine), ("identity_store", get_identity_engine)):
        try:
            async with get().connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks[name] = "ok"
        except Exception as exc:
            checks[name] = f"error: {exc}"

    is_ready = all(v == "ok" for v in checks.values())
    return {
        "status": "ready" if is_ready else "not_ready",
        **checks,
        "timestamp": datetime.now(UTC).isoformat(),
    }
