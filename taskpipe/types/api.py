"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field


class CreateTaskRequest(BaseModel):
    """Request body for submitting a task."""

    description: str = Field(..., min_length=1, description="What the task should do")
    task_type: str | None = Field(
        default=None, description="Registered handler name; defaults to 'describe'"
    )
    data: dict[str, Any] | None = Field(default=None, description="Handler-specific data")

    def to_payload(self) -> dict[str, Any]:
        """Payload document carried by the envelope."""
        return self.model_dump(exclude_none=True)


class CreateTaskResponse(BaseModel):
    """Acknowledgment returned once the task is accepted for delivery."""

    status: Literal["queued"] = "queued"
    id: UUID


class ProducerStatusResponse(BaseModel):
    """Producer status."""

    status: str
    connected: bool
    queue: str


class ReplayResponse(BaseModel):
    """Result of a dead-letter replay."""

    replayed: int
    dead_letter_queue: str
    queue: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    broker: str
    queue_depth: int | None
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    retryable: bool = False
