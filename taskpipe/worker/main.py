"""
Worker process for executing tasks.

The worker subscribes to the durable work queue, executes each delivery's
handler, and settles the delivery explicitly: ack after success, re-enqueue
or dead-letter after failure according to the retry policy.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from typing import Any

from taskpipe.config import Settings, get_settings
from taskpipe.constants import (
    HEADER_ATTEMPT_COUNT,
    HEADER_DEAD_LETTERED_AT,
    HEADER_FAILURE_KIND,
    HEADER_FAILURE_REASON,
    DeliveryState,
    FailureKind,
    RetryAction,
    SPAN_EXECUTE_TASK,
)
from taskpipe.errors import (
    DecodeError,
    FatalChannelError,
    NotConnectedError,
    PublishRejectedError,
    TaskTimeoutError,
)
from taskpipe.observability.logging import delivery_context, setup_logging
from taskpipe.observability.metrics import get_metrics, serve_metrics, setup_metrics
from taskpipe.observability.tracing import get_tracer, setup_tracing
from taskpipe.producer.submitter import envelope_headers
from taskpipe.queue.channel import Delivery, QueueChannel, Subscription
from taskpipe.queue.codec import decode_envelope, encode_envelope
from taskpipe.queue.retry import RetryPolicy, classify_failure
from taskpipe.types.task import TaskContext, TaskEnvelope, utcnow
from taskpipe.worker.handlers import TaskHandler, dispatch_task

logger = logging.getLogger(__name__)

_MAX_REASON_LENGTH = 500


class Worker:
    """
    Task worker consuming the durable work queue.

    Features:
    - Manual acknowledgement only, always after the handler completed
    - ``prefetch_count`` receive-loop slots on one subscription, so the
      worker never holds more unacknowledged deliveries than its prefetch
    - Per-task timeout
    - Retry via re-enqueue with incremented attempt count (optionally
      through a TTL delay queue) and dead-lettering on exhaustion
    - Graceful drain on SIGTERM/SIGINT
    """

    def __init__(
        self,
        channel: QueueChannel,
        handler: TaskHandler | None = None,
        worker_id: str | None = None,
        prefetch_count: int | None = None,
        task_timeout: float | None = None,
        policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the worker.

        Args:
            channel: Connected queue channel.
            handler: Task handler. Defaults to the registry dispatcher.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            prefetch_count: Concurrent deliveries (and broker prefetch).
            task_timeout: Seconds a handler may run before it is abandoned.
            policy: Retry policy. Defaults to one built from settings.
            settings: Settings override.
        """
        settings = settings or get_settings()

        self.worker_id = (
            worker_id or settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.prefetch_count = prefetch_count or settings.prefetch_count
        self.task_timeout = task_timeout or settings.task_timeout_seconds
        self.policy = policy or RetryPolicy.from_settings(settings)

        self._channel = channel
        self._handler = handler or dispatch_task
        self._subscription: Subscription | None = None
        self._slots: list[asyncio.Task] = []
        self._stop_requested = False
        self._fatal_error: FatalChannelError | None = None
        self._in_flight = 0
        self._metrics = get_metrics()

    @property
    def in_flight(self) -> int:
        """Deliveries currently held by this worker."""
        return self._in_flight

    async def start(self) -> None:
        """
        Subscribe and process deliveries until stopped.

        Returns after ``stop`` once every in-flight delivery was settled.

        Raises:
            FatalChannelError: If the broker connection became unrecoverable.
        """
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "prefetch_count": self.prefetch_count,
                "task_timeout": self.task_timeout,
                "max_retries": self.policy.max_retries,
            },
        )

        self._subscription = await self._channel.subscribe(self.prefetch_count)
        if self._stop_requested:
            await self._subscription.cancel()

        self._slots = [
            asyncio.create_task(self._slot_loop(self._subscription, slot))
            for slot in range(self.prefetch_count)
        ]
        await asyncio.gather(*self._slots)

        fatal = self._fatal_error or self._channel.fatal_error
        if fatal is not None:
            raise fatal

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """
        Stop gracefully: accept no new deliveries, let in-flight handlers
        finish or time out and settle them.
        """
        logger.info(
            "Worker stopping",
            extra={"worker_id": self.worker_id, "in_flight": self._in_flight},
        )
        self._stop_requested = True
        if self._subscription is not None:
            await self._subscription.cancel()

    async def _slot_loop(self, subscription: Subscription, slot: int) -> None:
        while True:
            delivery = await subscription.get()
            if delivery is None:
                logger.debug(
                    "Worker slot exiting",
                    extra={"worker_id": self.worker_id, "slot": slot},
                )
                return
            await self.process_delivery(delivery)

    async def process_delivery(self, delivery: Delivery) -> DeliveryState | None:
        """
        Drive one delivery through its lifecycle.

        Args:
            delivery: The delivery lent by the broker.

        Returns:
            The terminal state, or None if the delivery could not be settled
            (the broker will redeliver it).
        """
        self._in_flight += 1
        self._metrics.set_in_flight(self.worker_id, self._in_flight)
        try:
            return await self._handle(delivery)
        except NotConnectedError as e:
            logger.warning(
                "Connection lost before delivery was settled; broker will redeliver",
                extra={"delivery_tag": delivery.delivery_tag, "error": str(e)},
            )
            return None
        except FatalChannelError as e:
            logger.critical(
                "Unrecoverable broker error, stopping worker",
                extra={"worker_id": self.worker_id, "error": str(e)},
            )
            self._fatal_error = e
            await self.stop()
            return None
        except Exception:
            logger.exception(
                "Unexpected error settling delivery",
                extra={"delivery_tag": delivery.delivery_tag},
            )
            if not delivery.settled:
                await self._return_to_broker(delivery)
            return None
        finally:
            self._in_flight -= 1
            self._metrics.set_in_flight(self.worker_id, self._in_flight)

    async def _handle(self, delivery: Delivery) -> DeliveryState:
        queue = self._channel.queue_name

        try:
            envelope = decode_envelope(delivery.body)
        except DecodeError as e:
            logger.error(
                "Undecodable delivery",
                extra={"delivery_tag": delivery.delivery_tag, "error": str(e)},
            )
            state = await self._discard(
                delivery,
                task_id=delivery.message_id,
                attempt_count=None,
                failure_kind=FailureKind.PERMANENT,
                reason=str(e),
            )
            self._metrics.record_delivery(queue, state)
            return state

        envelope.bind_delivery(delivery.delivery_tag)
        context = TaskContext(
            task_id=envelope.id,
            payload=envelope.payload,
            attempt_count=envelope.attempt_count,
            max_retries=self.policy.max_retries,
            enqueued_at=envelope.enqueued_at,
            delivery_tag=delivery.delivery_tag,
            redelivered=delivery.redelivered,
            worker_id=self.worker_id,
        )

        with delivery_context(
            task_id=str(envelope.id),
            worker_id=self.worker_id,
            attempt_count=envelope.attempt_count,
        ):
            logger.info(
                "Processing task",
                extra={
                    "state": DeliveryState.PROCESSING,
                    "delivery_tag": delivery.delivery_tag,
                    "redelivered": delivery.redelivered,
                },
            )

            start_time = time.monotonic()
            failure: BaseException | None = None

            with get_tracer().start_as_current_span(SPAN_EXECUTE_TASK) as span:
                span.set_attribute("task_id", str(envelope.id))
                span.set_attribute("attempt_count", envelope.attempt_count)
                span.set_attribute("worker_id", self.worker_id)
                try:
                    await asyncio.wait_for(self._handler(context), timeout=self.task_timeout)
                except asyncio.TimeoutError:
                    failure = TaskTimeoutError(self.task_timeout)
                except Exception as e:
                    failure = e

            duration = time.monotonic() - start_time

            if failure is None:
                await delivery.ack()
                self._metrics.record_delivery(queue, DeliveryState.ACKED, duration)
                logger.info(
                    "Task completed successfully",
                    extra={"state": DeliveryState.ACKED, "duration": f"{duration:.2f}s"},
                )
                return DeliveryState.ACKED

            state = await self._handle_failure(delivery, envelope, failure)
            self._metrics.record_delivery(queue, state, duration)
            return state

    async def _handle_failure(
        self,
        delivery: Delivery,
        envelope: TaskEnvelope,
        failure: BaseException,
    ) -> DeliveryState:
        kind = classify_failure(failure)
        decision = self.policy.decide(envelope.attempt_count, kind)

        if not decision.requeues:
            return await self._discard(
                delivery,
                task_id=str(envelope.id),
                attempt_count=envelope.attempt_count,
                failure_kind=kind,
                reason=_describe(failure),
            )

        retry = envelope.with_next_attempt()
        try:
            routing_key = None
            if decision.action == RetryAction.REQUEUE_WITH_DELAY:
                routing_key = await self._channel.declare_delay_queue(decision.delay_seconds)
            await self._channel.publish(
                encode_envelope(retry),
                routing_key=routing_key,
                message_id=str(retry.id),
                headers=envelope_headers(retry),
            )
        except (NotConnectedError, PublishRejectedError) as e:
            logger.warning(
                "Could not re-enqueue failed task, returning delivery to broker",
                extra={"error": str(e), "failure": _describe(failure)},
            )
            await delivery.reject(requeue=True)
            return DeliveryState.NACKED_REQUEUE

        await delivery.ack()
        logger.warning(
            "Task failed, retry scheduled",
            extra={
                "state": DeliveryState.NACKED_REQUEUE,
                "failure_kind": kind,
                "error": _describe(failure),
                "next_attempt": retry.attempt_count,
                "delay_seconds": decision.delay_seconds,
            },
        )
        return DeliveryState.NACKED_REQUEUE

    async def _discard(
        self,
        delivery: Delivery,
        task_id: str | None,
        attempt_count: int | None,
        failure_kind: FailureKind,
        reason: str,
    ) -> DeliveryState:
        dead_letter_queue = self._channel.dead_letter_queue_name
        log_extra: dict[str, Any] = {
            "task_id": task_id,
            "attempt_count": attempt_count,
            "failure_kind": failure_kind,
            "error": reason,
        }

        if not dead_letter_queue:
            await delivery.reject(requeue=False)
            logger.error(
                "Task dropped: no dead-letter queue configured",
                extra={"state": DeliveryState.NACKED_DISCARD, **log_extra},
            )
            return DeliveryState.NACKED_DISCARD

        headers: dict[str, Any] = {
            **delivery.headers,
            HEADER_FAILURE_KIND: str(failure_kind),
            HEADER_FAILURE_REASON: reason[:_MAX_REASON_LENGTH],
            HEADER_DEAD_LETTERED_AT: utcnow().isoformat(),
        }
        if attempt_count is not None:
            headers[HEADER_ATTEMPT_COUNT] = attempt_count

        try:
            await self._channel.publish(
                delivery.body,
                routing_key=dead_letter_queue,
                message_id=task_id,
                headers=headers,
            )
        except (NotConnectedError, PublishRejectedError) as e:
            logger.warning(
                "Could not dead-letter task, returning delivery to broker",
                extra={"error": str(e), **log_extra},
            )
            await delivery.reject(requeue=True)
            return DeliveryState.NACKED_REQUEUE

        await delivery.ack()
        logger.warning(
            "Task dead-lettered",
            extra={
                "state": DeliveryState.NACKED_DISCARD,
                "dead_letter_queue": dead_letter_queue,
                **log_extra,
            },
        )
        return DeliveryState.NACKED_DISCARD

    async def _return_to_broker(self, delivery: Delivery) -> None:
        try:
            await delivery.reject(requeue=True)
        except NotConnectedError:
            logger.warning(
                "Could not return delivery; broker will redeliver on disconnect",
                extra={"delivery_tag": delivery.delivery_tag},
            )


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging("worker")
    setup_metrics()
    setup_tracing()

    settings = get_settings()
    if settings.worker_metrics_port:
        serve_metrics(settings.worker_metrics_port)

    async with QueueChannel(settings) as channel:
        worker = Worker(channel, settings=settings)

        # Handle shutdown signals
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(
                sig,
                lambda: asyncio.create_task(worker.stop())
            )

        await worker.start()


def run() -> None:
    """Run the worker."""
    try:
        asyncio.run(run_async())
    except (FatalChannelError, NotConnectedError) as e:
        logger.critical(f"Worker terminated: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
