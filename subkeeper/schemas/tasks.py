"""Task schemas."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from subkeeper.schemas.common import PaginationQuery


class _RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TaskQuery(PaginationQuery):
    """Task list query parameters."""

    status: str | None = Field(None, description="Filter by status")
    type: str | None = Field(None, description="Filter by task type")
    video_id: str | None = Field(None, description="Filter by associated video")
    subtitle_id: str | None = Field(None, description="Filter by associated subtitle")


class CreateTaskRequest(_RequestModel):
    """Generic task creation request."""

    type: str = Field(..., description="Task type, e.g. scan_library")
    priority: str | None = Field(None, description="low, medium, high or urgent")
    parameters: dict[str, Any] = Field(default_factory=dict)
    video_id: str | None = None
    subtitle_id: str | None = None
    scheduled_at: datetime | None = Field(
        None, description="Run at this UTC time instead of immediately"
    )
    created_by: str | None = None
    max_retries: int | None = Field(None, ge=0, le=20)


class ScanRequest(_RequestModel):
    """Library scan request."""

    paths: list[str] = Field(..., min_length=1)
    recursive: bool = True
    update_existing: bool = True


class SyncRequest(_RequestModel):
    """Subtitle sync request for one video."""

    video_path: str
    subtitle_paths: list[str] = Field(default_factory=list)


class TranslateRequest(_RequestModel):
    """Subtitle translation request."""

    subtitle_path: str
    target_language: str = "el"
    provider: str = "openai"


class BatchRequest(_RequestModel):
    """Batch operation request."""

    operation: Literal["extract_all", "sync_all", "translate_all"]
    file_paths: list[str] = Field(..., min_length=1)
    batch_size: int = Field(10, ge=1, le=1000)
    target_language: str = "el"


class TaskResponse(BaseModel):
    """Task response."""

    id: str
    type: str
    status: str
    priority: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    progress_percentage: int = 0
    progress_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    created_by: str = "system"
    executor_id: str | None = None
    video_id: str | None = None
    subtitle_id: str | None = None
    actual_duration_ms: int | None = None
    scheduled_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_heartbeat: str | None = None
    created_at: str
    updated_at: str


class TaskLogResponse(BaseModel):
    """Task log response."""

    id: int
    attempt: int
    level: str = "info"
    message: str
    created_at: str


class TaskStatisticsResponse(BaseModel):
    """Task statistics response."""

    pending: int
    scheduled: int
    running: int
    completed: int
    failed: int
    cancelled: int
    paused: int
    active_executions: int
    max_workers: int
    subscribers: int


class CancelResponse(BaseModel):
    """Cancel result."""

    success: bool
    interrupted: bool = Field(
        description="Whether a running execution was signalled to stop"
    )
    task: TaskResponse


class CleanupResponse(BaseModel):
    """Cleanup result."""

    deleted: int
    older_than_days: int
