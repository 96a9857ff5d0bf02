"""Settings schemas."""

from pydantic import BaseModel, Field


class TaskRetentionResponse(BaseModel):
    """Task retention settings response."""

    retention_days: int = Field(
        description="Days to keep finished tasks (0 = retention sweep disabled)"
    )


class TaskRetentionUpdate(BaseModel):
    """Task retention settings update."""

    retention_days: int = Field(
        ge=0,
        le=365,
        description="Days to keep finished tasks (0 = disabled, max 1 year)",
    )
