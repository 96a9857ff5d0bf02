"""Health routes."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from subkeeper import extensions
from subkeeper.core.helpers import _get_pyproject_attr
from subkeeper.core.logging import get_logger

logger = get_logger("routes.health")
router = APIRouter(prefix="/api/health", tags=["Health"])


@router.get("")
def health(request: Request):
    """
    Liveness and readiness check.

    Returns 503 if the database is unreachable or the broadcaster is not
    running.
    """
    database_ok = True
    try:
        with extensions.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Health check database query failed", exc_info=True)
        database_ok = False

    service = getattr(request.app.state, "task_service", None)
    broadcaster_ok = service is not None and service.broadcaster.is_running
    stats = service.scheduler.get_stats() if service is not None else {}

    healthy = database_ok and broadcaster_ok
    return JSONResponse(
        {
            "status": "ok" if healthy else "degraded",
            "version": _get_pyproject_attr("version"),
            "database": database_ok,
            "broadcaster": broadcaster_ok,
            "scheduler": stats,
        },
        status_code=200 if healthy else 503,
    )
