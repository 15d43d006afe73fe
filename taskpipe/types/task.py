"""
Task-related type definitions for internal use.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, JsonValue, PrivateAttr, field_validator

from taskpipe.constants import RetryAction


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TaskEnvelope(BaseModel):
    """
    The unit of work in flight.

    ``id``, ``payload``, ``attempt_count`` and ``enqueued_at`` travel on the
    wire. The payload must be a JSON-native document (no NaN or infinity),
    so decoding an encoded envelope yields the same payload. ``delivery_tag``
    is a broker handle for the current delivery only: it is never encoded
    and never read from the wire. Unknown wire fields are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    id: UUID = Field(default_factory=uuid4)
    payload: dict[str, JsonValue]
    attempt_count: int = Field(default=0, ge=0)
    enqueued_at: datetime = Field(default_factory=utcnow)

    _delivery_tag: int | None = PrivateAttr(default=None)

    @field_validator("payload")
    @classmethod
    def payload_must_be_finite(cls, v: dict[str, JsonValue]) -> dict[str, JsonValue]:
        if not _all_finite(v):
            raise ValueError("payload contains NaN or infinity")
        return v

    @property
    def delivery_tag(self) -> int | None:
        return self._delivery_tag

    def bind_delivery(self, delivery_tag: int | None) -> "TaskEnvelope":
        """Attach the broker handle of the delivery this envelope came from."""
        self._delivery_tag = delivery_tag
        return self

    def with_next_attempt(self) -> "TaskEnvelope":
        """Copy for redelivery: attempt incremented, delivery tag cleared."""
        copy = self.model_copy(update={"attempt_count": self.attempt_count + 1})
        return copy.bind_delivery(None)

    def with_reset_attempts(self) -> "TaskEnvelope":
        """Copy with the attempt history cleared (dead-letter replay)."""
        copy = self.model_copy(update={"attempt_count": 0})
        return copy.bind_delivery(None)


def _all_finite(value: JsonValue) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_all_finite(item) for item in value.values())
    if isinstance(value, list):
        return all(_all_finite(item) for item in value)
    return True


@dataclass
class TaskContext:
    """
    Context passed to task handlers during execution.
    Contains envelope metadata and the decoded payload.
    """

    task_id: UUID
    payload: dict[str, Any]
    attempt_count: int
    max_retries: int
    enqueued_at: datetime
    delivery_tag: int | None
    redelivered: bool
    worker_id: str

    @property
    def is_last_attempt(self) -> bool:
        """Check if a transient failure now would be dead-lettered."""
        return self.attempt_count >= self.max_retries

    @property
    def remaining_attempts(self) -> int:
        """Get remaining redeliveries after this attempt."""
        return max(0, self.max_retries - self.attempt_count)

    @property
    def task_type(self) -> str | None:
        return self.payload.get("task_type")


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of the retry policy for one failed delivery."""

    action: RetryAction
    delay_seconds: float = 0.0

    @property
    def requeues(self) -> bool:
        return self.action != RetryAction.DISCARD
