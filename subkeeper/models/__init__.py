from sqlalchemy.orm import declarative_base

Base = declarative_base()

from subkeeper.models.settings import Settings  # noqa: E402
from subkeeper.models.task import (  # noqa: E402
    TERMINAL_STATUSES,
    Task,
    TaskLog,
    TaskLogLevel,
    TaskPriority,
    TaskStatus,
    TaskType,
)

__all__ = [
    "Base",
    "Settings",
    "Task",
    "TaskLog",
    "TaskLogLevel",
    "TaskPriority",
    "TaskStatus",
    "TaskType",
    "TERMINAL_STATUSES",
]
