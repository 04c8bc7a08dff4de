"""
Health endpoints: liveness and database reachability.
"""

from fastapi import APIRouter

from foundpoems.core.config import settings
from foundpoems.core.database import check_connection

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("")
def health():
    """Database probe; ok is false when the store is unreachable."""
    database = check_connection()
    return {"ok": database, "database": database, "version": settings.RELEASE_VERSION}
