"""
Task submitter.

Turns a caller payload into a persistent message on the durable work queue.
Success means "accepted for delivery", not "processed".
"""

import logging
from typing import Any
from uuid import UUID

from taskpipe.constants import HEADER_ATTEMPT_COUNT, HEADER_ENQUEUED_AT, SPAN_SUBMIT_TASK
from taskpipe.errors import EncodeError, NotConnectedError, PublishRejectedError
from taskpipe.observability.metrics import get_metrics
from taskpipe.observability.tracing import get_tracer
from taskpipe.queue.channel import QueueChannel
from taskpipe.queue.codec import build_envelope, encode_envelope
from taskpipe.types.task import TaskEnvelope

logger = logging.getLogger(__name__)


def envelope_headers(envelope: TaskEnvelope) -> dict[str, Any]:
    """AMQP headers mirroring envelope metadata, for broker-side inspection."""
    return {
        HEADER_ATTEMPT_COUNT: envelope.attempt_count,
        HEADER_ENQUEUED_AT: envelope.enqueued_at.isoformat(),
    }


class Submitter:
    """
    Publishes task envelopes onto the work queue.

    The confirmation guarantee follows the channel: with publisher confirms
    ``submit`` returns once the broker has acknowledged the message; with
    confirms disabled it returns once the bytes were written to the socket.
    """

    def __init__(self, channel: QueueChannel):
        """
        Initialize the submitter.

        Args:
            channel: Connected queue channel shared by the process.
        """
        self._channel = channel
        self._metrics = get_metrics()

    @property
    def channel(self) -> QueueChannel:
        return self._channel

    async def submit(self, payload: dict[str, Any]) -> UUID:
        """
        Submit a task for asynchronous processing.

        Args:
            payload: JSON-serializable task document.

        Returns:
            The submission id (envelope id).

        Raises:
            EncodeError: The payload is invalid. Permanent.
            NotConnectedError: The broker is unavailable. Retry later.
            PublishRejectedError: The broker refused the message. Back off.
        """
        queue = self._channel.queue_name

        with get_tracer().start_as_current_span(SPAN_SUBMIT_TASK) as span:
            try:
                envelope = build_envelope(payload)
                body = encode_envelope(envelope)
            except EncodeError:
                self._metrics.record_publish_rejected(queue, "encode")
                raise

            span.set_attribute("task_id", str(envelope.id))
            span.set_attribute("queue", queue)

            try:
                await self._channel.publish(
                    body,
                    message_id=str(envelope.id),
                    headers=envelope_headers(envelope),
                )
            except NotConnectedError:
                self._metrics.record_publish_rejected(queue, "not_connected")
                logger.warning(
                    "Submission failed: broker unavailable",
                    extra={"task_id": str(envelope.id), "queue": queue},
                )
                raise
            except PublishRejectedError:
                self._metrics.record_publish_rejected(queue, "rejected")
                logger.warning(
                    "Submission rejected by broker",
                    extra={"task_id": str(envelope.id), "queue": queue},
                )
                raise

        self._metrics.record_task_submitted(queue)
        logger.info(
            "Task submitted",
            extra={"task_id": str(envelope.id), "queue": queue},
        )
        return envelope.id
