"""
Error hierarchy for the task pipeline.

Every error carries a class-level ``transient`` flag so the worker and
callers can tell retryable conditions apart from permanent ones.
"""


class TaskPipeError(Exception):
    """Base exception for all task pipeline errors."""

    #: Whether this error type is considered transient (retryable).
    transient: bool = False


class NotConnectedError(TaskPipeError, ConnectionError):
    """
    Raised when the broker connection is unavailable.

    Publish, subscribe and ack calls made while disconnected raise this
    instead of silently succeeding. Retryable by the caller.
    """

    transient = True


class FatalChannelError(TaskPipeError):
    """
    Raised for unrecoverable broker conditions.

    Authentication failures and queue declaration mismatches are never
    retried; the affected process should log and exit.
    """


class EncodeError(TaskPipeError):
    """Raised when a payload cannot be serialized. Permanent."""


class DecodeError(TaskPipeError):
    """Raised when wire bytes are not a valid task envelope. Permanent."""


class PublishRejectedError(TaskPipeError):
    """
    Raised when the broker refuses a publish (e.g. queue length limit).

    Surfaced to submitters as backpressure.
    """

    transient = True


class HandlerTransientFailure(TaskPipeError):
    """Raised by handlers for failures worth retrying (dependency down, etc.)."""

    transient = True


class HandlerPermanentFailure(TaskPipeError):
    """Raised by handlers for failures that retrying cannot fix."""


class TaskTimeoutError(TaskPipeError):
    """Raised when a handler exceeds the per-task timeout."""

    transient = True

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Task exceeded timeout of {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds
