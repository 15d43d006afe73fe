"""
Type definitions for the task pipeline.
Contains input/output type definitions, grouped by module.
"""

from taskpipe.types.api import (
    CreateTaskRequest,
    CreateTaskResponse,
    ErrorResponse,
    HealthResponse,
    ProducerStatusResponse,
    ReplayResponse,
)
from taskpipe.types.task import (
    RetryDecision,
    TaskContext,
    TaskEnvelope,
)

__all__ = [
    # API types
    "CreateTaskRequest",
    "CreateTaskResponse",
    "ProducerStatusResponse",
    "ReplayResponse",
    "HealthResponse",
    "ErrorResponse",
    # Task types
    "TaskEnvelope",
    "TaskContext",
    "RetryDecision",
]
