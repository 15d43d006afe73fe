"""
Delivery/retry policy.

A pure decision function: given the attempt count of a failed delivery and
the kind of failure, decide whether to requeue it (immediately or after a
delay) or discard it to the dead-letter queue.
"""

import asyncio
import random

from pydantic import ValidationError

from taskpipe.config import Settings, get_settings
from taskpipe.constants import FailureKind, RetryAction
from taskpipe.errors import TaskPipeError
from taskpipe.types.task import RetryDecision

# Programming and validation errors: retrying the same input cannot help.
PERMANENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    ValidationError,
    TypeError,
    ValueError,
    LookupError,
    AttributeError,
    NotImplementedError,
)

MAX_BACKOFF_EXPONENT = 63


def classify_failure(exc: BaseException) -> FailureKind:
    """
    Classify a handler failure as transient or permanent.

    Pipeline errors carry their own ``transient`` flag. Known programming
    errors are permanent. Everything else (network, timeouts, resource
    exhaustion, unknown) is transient and bounded by the retry ceiling.

    Args:
        exc: The exception raised while processing a delivery.

    Returns:
        The failure kind.
    """
    if isinstance(exc, TaskPipeError):
        return FailureKind.TRANSIENT if exc.transient else FailureKind.PERMANENT
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError, MemoryError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, PERMANENT_EXCEPTIONS):
        return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


def compute_backoff(
    attempt: int,
    base_seconds: float,
    max_seconds: float,
    jitter: bool = False,
) -> float:
    """
    Exponential backoff ``base * 2**attempt`` capped at ``max_seconds``.

    With ``jitter`` the result is drawn from the upper half of the window
    (equal jitter), which keeps a floor while spreading reconnect storms.
    """
    # 2**63 already exceeds any sane cap; larger exponents overflow float
    exponent = min(max(0, attempt), MAX_BACKOFF_EXPONENT)
    delay = min(max_seconds, base_seconds * (2 ** exponent))
    if jitter and delay > 0:
        half = delay / 2
        return half + random.uniform(0, half)
    return delay


class RetryPolicy:
    """
    Decides what happens to a failed delivery.

    - Permanent failures are discarded immediately.
    - Transient failures are requeued with a capped exponential delay until
      ``attempt_count >= max_retries``, then discarded.
    """

    def __init__(
        self,
        max_retries: int,
        delay_base_seconds: float = 0.0,
        delay_max_seconds: float = 0.0,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.delay_base_seconds = delay_base_seconds
        self.delay_max_seconds = delay_max_seconds

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_retries=settings.max_retries,
            delay_base_seconds=settings.retry_delay_base_seconds,
            delay_max_seconds=settings.retry_delay_max_seconds,
        )

    def decide(self, attempt_count: int, failure_kind: FailureKind) -> RetryDecision:
        """
        Decide the fate of a failed delivery.

        Args:
            attempt_count: Attempt count of the envelope that just failed.
            failure_kind: Classification of the failure.

        Returns:
            RetryDecision with the action and, for delayed requeues, the delay.
        """
        if failure_kind == FailureKind.PERMANENT:
            return RetryDecision(RetryAction.DISCARD)

        if attempt_count >= self.max_retries:
            return RetryDecision(RetryAction.DISCARD)

        delay = compute_backoff(
            attempt_count, self.delay_base_seconds, self.delay_max_seconds
        )
        if delay <= 0:
            return RetryDecision(RetryAction.REQUEUE)
        return RetryDecision(RetryAction.REQUEUE_WITH_DELAY, delay_seconds=delay)
