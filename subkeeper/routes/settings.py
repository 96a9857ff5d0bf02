"""Settings routes."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from subkeeper.core.logging import get_logger
from subkeeper.extensions import get_db
from subkeeper.models.settings import SETTING_TASK_RETENTION_DAYS, Settings
from subkeeper.schemas.settings import TaskRetentionResponse, TaskRetentionUpdate

logger = get_logger("routes.settings")
router = APIRouter(prefix="/api/settings", tags=["Settings"])


@router.get("/task-retention", response_model=TaskRetentionResponse)
def get_task_retention(request: Request, db: Session = Depends(get_db)):
    """Get how long finished tasks are kept before the retention sweep."""
    default = request.app.state.config.task_retention_days
    retention_days = Settings.get_int(db, SETTING_TASK_RETENTION_DAYS, default)
    return {"retention_days": retention_days}


@router.put("/task-retention", response_model=TaskRetentionResponse)
def update_task_retention(
    payload: TaskRetentionUpdate, db: Session = Depends(get_db)
):
    """Update task retention. 0 disables the retention sweep."""
    Settings.set_int(db, SETTING_TASK_RETENTION_DAYS, payload.retention_days)
    logger.info("Updated task retention to %d days", payload.retention_days)
    return {"retention_days": payload.retention_days}
