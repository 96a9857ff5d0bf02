"""Common schemas."""

from pydantic import BaseModel, Field


class PaginationQuery(BaseModel):
    """Common pagination parameters."""

    limit: int = Field(50, ge=1, le=500, description="Maximum items to return")
    offset: int = Field(0, ge=0, description="Number of items to skip")
