import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from subkeeper.core.helpers import isoformat, utcnow
from subkeeper.models import Base


class TaskStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class TaskType(str, Enum):
    SCAN_LIBRARY = "scan_library"
    EXTRACT_SUBTITLES = "extract_subtitles"
    GENERATE_SUBTITLES = "generate_subtitles"
    TRANSLATE_SUBTITLES = "translate_subtitles"
    SYNC_SUBTITLES = "sync_subtitles"
    BATCH_PROCESS = "batch_process"
    CLEANUP_FILES = "cleanup_files"
    BACKUP_DATABASE = "backup_database"
    OPTIMIZE_DATABASE = "optimize_database"
    HEALTH_CHECK = "health_check"
    USER_EXPORT = "user_export"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Dispatch rank, higher runs first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.MEDIUM: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.URGENT: 3,
}


class TaskLogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


def _new_task_id() -> str:
    return str(uuid.uuid4())


class Task(Base):
    """Background task persisted to database."""

    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_new_task_id)
    task_type = Column(String(32), nullable=False)
    status = Column(String(20), nullable=False, default=TaskStatus.PENDING.value)
    priority = Column(String(10), nullable=False, default=TaskPriority.MEDIUM.value)
    parameters = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    progress_percentage = Column(Integer, nullable=False, default=0)
    progress_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    created_by = Column(String(100), nullable=False, default="system")
    executor_id = Column(String(100), nullable=True)
    video_id = Column(String(64), nullable=True)
    subtitle_id = Column(String(64), nullable=True)
    actual_duration_ms = Column(Integer, nullable=True)
    scheduled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_heartbeat = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    logs = relationship(
        "TaskLog",
        back_populates="task",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="TaskLog.id",
    )

    __table_args__ = (
        Index("ix_tasks_status_type", "status", "task_type"),
        Index("ix_tasks_status_heartbeat", "status", "last_heartbeat"),
        Index("ix_tasks_status_completed", "status", "completed_at"),
        Index("ix_tasks_created_at", "created_at"),
        Index("ix_tasks_video_id", "video_id"),
        Index("ix_tasks_subtitle_id", "subtitle_id"),
    )

    @property
    def attempt(self) -> int:
        return (self.retry_count or 0) + 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.task_type,
            "status": self.status,
            "priority": self.priority,
            "parameters": self.parameters or {},
            "result": self.result,
            "error_message": self.error_message,
            "progress_percentage": self.progress_percentage,
            "progress_message": self.progress_message,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_by": self.created_by,
            "executor_id": self.executor_id,
            "video_id": self.video_id,
            "subtitle_id": self.subtitle_id,
            "actual_duration_ms": self.actual_duration_ms,
            "scheduled_at": isoformat(self.scheduled_at),
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "last_heartbeat": isoformat(self.last_heartbeat),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }


class TaskLog(Base):
    """Log entry for a task attempt."""

    __tablename__ = "task_logs"

    id = Column(Integer, primary_key=True)
    task_id = Column(
        String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    attempt = Column(Integer, nullable=False)
    level = Column(String(10), nullable=False, default=TaskLogLevel.INFO.value)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    task = relationship("Task", back_populates="logs")

    __table_args__ = (Index("ix_task_logs_task_id", "task_id"),)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt": self.attempt,
            "level": self.level,
            "message": self.message,
            "created_at": isoformat(self.created_at),
        }
