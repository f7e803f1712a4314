"""Common schemas used across the application."""

from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field


T = TypeVar("T")


class ErrorResponse(BaseModel):
    """Error body returned for domain errors."""

    detail: str = Field(..., description="Error message")
    holder: Optional[Dict[str, Any]] = Field(
        default=None, description="Current holder of a conflicting address"
    )


class PaginatedResponse(BaseModel, Generic[T]):
    """Paginated response schema."""

    items: List[T] = Field(..., description="List of items")
    total: int = Field(..., description="Total number of items")
    page: int = Field(..., description="Current page number", ge=1)
    page_size: int = Field(..., description="Number of items per page", ge=1)
    total_pages: int = Field(..., description="Total number of pages")


class HealthCheckResponse(BaseModel):
    """Health check response schema."""

    status: str = Field(..., description="Service status", examples=["healthy"])
    version: str = Field(..., description="API version", examples=["1.0.0"])
    database: str = Field(..., description="Database status", examples=["connected"])
    monitor: str = Field(
        default="stopped", description="Liveness monitor state", examples=["running"]
    )
