"""
Queue channel over a RabbitMQ connection.

One ``QueueChannel`` owns the process's broker connection. It multiplexes a
publisher channel (with publisher confirms) and one AMQP channel per
subscription, so acks on one worker never queue behind publishes of another.

Features:
- Idempotent declaration of the durable work queue, dead-letter queue and
  TTL delay queues
- Reconnect with capped exponential backoff and jitter; queues and active
  subscriptions are re-declared after reconnect
- Explicit ``NotConnectedError`` while disconnected instead of silent success
- Manual acknowledgement only; prefetch bounds unacked deliveries
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import aio_pika
from aio_pika import DeliveryMode, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import (
    AMQPConnectionError,
    AMQPError,
    AuthenticationError,
    ChannelInvalidStateError,
    ChannelPreconditionFailed,
    DeliveryError,
    ProbableAuthenticationError,
)

from taskpipe.config import Settings, get_settings
from taskpipe.constants import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_DEAD_LETTER_ROUTING_KEY,
    ARG_MAX_LENGTH,
    ARG_MESSAGE_TTL,
    ARG_OVERFLOW,
    CONTENT_TYPE_JSON,
    OVERFLOW_REJECT_PUBLISH,
)
from taskpipe.errors import FatalChannelError, NotConnectedError, PublishRejectedError
from taskpipe.observability.metrics import get_metrics
from taskpipe.queue.retry import compute_backoff
from taskpipe.types.task import utcnow

logger = logging.getLogger(__name__)

# Errors that mean the connection or channel underneath us is gone.
_CONNECTION_ERRORS = (AMQPError, ChannelInvalidStateError, ConnectionError)


@dataclass
class Delivery:
    """
    One broker delivery lent to a worker.

    ``ack`` and ``reject`` are the only ways to complete it and exactly one
    of them may be called.
    """

    body: bytes
    delivery_tag: int
    ack_fn: Callable[[], Awaitable[None]] = field(repr=False)
    reject_fn: Callable[[bool], Awaitable[None]] = field(repr=False)
    redelivered: bool = False
    message_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    settled: bool = False

    @classmethod
    def from_message(cls, message: AbstractIncomingMessage) -> "Delivery":
        async def _ack() -> None:
            await message.ack()

        async def _reject(requeue: bool) -> None:
            await message.reject(requeue=requeue)

        return cls(
            body=message.body,
            delivery_tag=message.delivery_tag or 0,
            ack_fn=_ack,
            reject_fn=_reject,
            redelivered=bool(message.redelivered),
            message_id=message.message_id,
            headers=dict(message.headers or {}),
        )

    async def ack(self) -> None:
        """Acknowledge: the broker deletes the message permanently."""
        await self._settle(self.ack_fn)

    async def reject(self, requeue: bool) -> None:
        """Negative-acknowledge, optionally asking the broker to requeue."""
        await self._settle(lambda: self.reject_fn(requeue))

    async def _settle(self, action: Callable[[], Awaitable[None]]) -> None:
        if self.settled:
            raise RuntimeError(f"Delivery {self.delivery_tag} already settled")
        try:
            await action()
        except _CONNECTION_ERRORS as e:
            raise NotConnectedError(
                f"Cannot settle delivery {self.delivery_tag}: channel is gone"
            ) from e
        self.settled = True


class Subscription:
    """
    A consumer on the work queue with its own AMQP channel and prefetch.

    Deliveries are buffered locally; the broker never pushes more than
    ``prefetch_count`` unacknowledged messages, so the buffer is bounded.
    """

    def __init__(self, queue_name: str, prefetch_count: int, arguments: dict[str, Any]):
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self._arguments = arguments
        self._buffer: asyncio.Queue[Delivery | None] = asyncio.Queue()
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._consumer_tag: str | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def get(self) -> Delivery | None:
        """
        Wait for the next delivery.

        Returns:
            The delivery, or None once the subscription is cancelled.
        """
        item = await self._buffer.get()
        if item is None:
            # Wake the next waiting slot too.
            self._buffer.put_nowait(None)
        return item

    async def cancel(self) -> None:
        """
        Stop consuming. Buffered deliveries that no slot has picked up yet
        are handed back to the broker. Deliveries already being processed
        can still be settled until ``close``.
        """
        if self._cancelled:
            return
        self._cancelled = True

        if self._queue is not None and self._consumer_tag is not None:
            try:
                await self._queue.cancel(self._consumer_tag)
            except _CONNECTION_ERRORS as e:
                logger.debug(f"Consumer cancel failed: {e}")
        self._consumer_tag = None

        for delivery in self._drain():
            try:
                await delivery.reject(requeue=True)
            except NotConnectedError as e:
                # Connection already gone; the broker requeues on its own.
                logger.debug(f"Buffered delivery not returned: {e}")
        self._buffer.put_nowait(None)

    async def close(self) -> None:
        """Close the subscription's AMQP channel."""
        await self.cancel()
        if self._channel is not None and not self._channel.is_closed:
            try:
                await self._channel.close()
            except _CONNECTION_ERRORS as e:
                logger.debug(f"Subscription channel close failed: {e}")
        self._channel = None
        self._queue = None

    async def _attach(self, connection: AbstractConnection) -> None:
        """Open a channel on ``connection`` and start consuming."""
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=self.prefetch_count)
        queue = await channel.declare_queue(
            self.queue_name,
            durable=True,
            arguments=self._arguments,
        )
        self._channel = channel
        self._queue = queue
        self._consumer_tag = await queue.consume(self._on_message, no_ack=False)
        logger.info(
            "Subscription attached",
            extra={"queue": self.queue_name, "prefetch_count": self.prefetch_count},
        )

    def _detach(self) -> None:
        """Forget a dead connection; its deliveries will be redelivered."""
        stale = self._drain()
        if stale:
            logger.info(
                "Dropped buffered deliveries of lost connection",
                extra={"count": len(stale), "queue": self.queue_name},
            )
        self._channel = None
        self._queue = None
        self._consumer_tag = None

    def _fail(self) -> None:
        """Wake all waiting slots after an unrecoverable channel error."""
        self._cancelled = True
        self._drain()
        self._buffer.put_nowait(None)

    def _drain(self) -> list[Delivery]:
        items: list[Delivery] = []
        while not self._buffer.empty():
            item = self._buffer.get_nowait()
            if item is not None:
                items.append(item)
        return items

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        delivery = Delivery.from_message(message)
        if self._cancelled:
            await delivery.reject(requeue=True)
            return
        self._buffer.put_nowait(delivery)


class QueueChannel:
    """
    Durable work-queue channel bound to one broker connection.

    Use as an async context manager to guarantee close on shutdown:

        async with QueueChannel(settings) as channel:
            await channel.publish(body)
    """

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self.queue_name = self._settings.queue_name
        self.dead_letter_queue_name = self._settings.dead_letter_queue

        self._connection: AbstractConnection | None = None
        self._publish_channel: AbstractChannel | None = None
        self._connected = False
        self._closing = False
        self._lock = asyncio.Lock()
        self._declare_lock = asyncio.Lock()
        self._subscriptions: list[Subscription] = []
        self._delay_queues: dict[int, str] = {}
        self._reconnect_task: asyncio.Task | None = None
        self.fatal_error: FatalChannelError | None = None
        self._metrics = get_metrics()

    async def __aenter__(self) -> "QueueChannel":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return (
            self._connected
            and self._connection is not None
            and not self._connection.is_closed
        )

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self) -> None:
        """
        Connect and declare the queue topology.

        Raises:
            NotConnectedError: If the broker stays unreachable for
                ``connect_max_attempts`` attempts.
            FatalChannelError: On authentication failure or declaration mismatch.
        """
        async with self._lock:
            if self.is_connected:
                return
            self._closing = False
            await self._connect_with_backoff(self._settings.connect_max_attempts)

    async def close(self) -> None:
        """Close subscriptions, the publisher channel and the connection."""
        self._closing = True

        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()

        if self._publish_channel is not None and not self._publish_channel.is_closed:
            try:
                await self._publish_channel.close()
            except _CONNECTION_ERRORS as e:
                logger.debug(f"Publisher channel close failed: {e}")
        self._publish_channel = None

        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None
        self._connected = False

        logger.info("Queue channel closed", extra={"queue": self.queue_name})

    async def _connect_with_backoff(self, max_attempts: int | None) -> None:
        attempt = 0
        while True:
            try:
                await self._open()
                return
            except (AMQPConnectionError, OSError, asyncio.TimeoutError) as e:
                attempt += 1
                if max_attempts is not None and attempt >= max_attempts:
                    raise NotConnectedError(
                        f"Broker unreachable after {attempt} attempts: {e}"
                    ) from e
                delay = compute_backoff(
                    attempt - 1,
                    self._settings.reconnect_base_seconds,
                    self._settings.reconnect_max_seconds,
                    jitter=True,
                )
                logger.warning(
                    "Broker connection failed, retrying",
                    extra={"attempt": attempt, "retry_in": f"{delay:.2f}s", "error": str(e)},
                )
                await asyncio.sleep(delay)

    async def _open(self) -> None:
        try:
            connection = await aio_pika.connect(
                self._settings.broker_url,
                timeout=self._settings.connect_timeout_seconds,
            )
        except (AuthenticationError, ProbableAuthenticationError) as e:
            raise FatalChannelError(f"Broker rejected credentials: {e}") from e

        try:
            channel = await connection.channel(
                publisher_confirms=self._settings.publisher_confirms,
            )
            await self._declare_topology(channel)
            for subscription in self._subscriptions:
                if not subscription.cancelled:
                    await subscription._attach(connection)
        except ChannelPreconditionFailed as e:
            await connection.close()
            raise FatalChannelError(
                f"Queue declaration does not match the existing queue: {e}"
            ) from e
        except BaseException:
            await connection.close()
            raise

        connection.close_callbacks.add(self._on_connection_closed)
        self._connection = connection
        self._publish_channel = channel
        self._connected = True

        logger.info(
            "Connected to broker",
            extra={
                "queue": self.queue_name,
                "dead_letter_queue": self.dead_letter_queue_name,
                "publisher_confirms": self._settings.publisher_confirms,
            },
        )

    def _on_connection_closed(self, _sender: Any, exc: BaseException | None = None) -> None:
        if self._closing or not self._connected:
            return
        self._connected = False
        logger.warning(
            "Broker connection lost",
            extra={"queue": self.queue_name, "error": str(exc) if exc else None},
        )
        for subscription in self._subscriptions:
            subscription._detach()
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_loop()
        )

    async def _reconnect_loop(self) -> None:
        try:
            async with self._lock:
                await self._connect_with_backoff(max_attempts=None)
        except FatalChannelError as e:
            self._fail_reconnect(e)
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail_reconnect(FatalChannelError(f"Reconnect aborted: {e!r}"), cause=e)
            return

        self._metrics.record_reconnect()
        logger.info(
            "Reconnected to broker",
            extra={"queue": self.queue_name, "subscriptions": len(self._subscriptions)},
        )

    def _fail_reconnect(
        self,
        error: FatalChannelError,
        cause: BaseException | None = None,
    ) -> None:
        """Record an unrecoverable reconnect failure and wake all subscriptions."""
        logger.critical(
            "Unrecoverable broker error during reconnect",
            extra={"error": str(error)},
            exc_info=cause,
        )
        if cause is not None:
            error.__cause__ = cause
        self.fatal_error = error
        for subscription in self._subscriptions:
            subscription._fail()

    # ========================================================================
    # Topology
    # ========================================================================

    def work_queue_arguments(self) -> dict[str, Any]:
        """Arguments of the work queue declaration."""
        arguments: dict[str, Any] = {}
        if self._settings.queue_max_length is not None:
            arguments[ARG_MAX_LENGTH] = self._settings.queue_max_length
            arguments[ARG_OVERFLOW] = OVERFLOW_REJECT_PUBLISH
        return arguments

    def _delay_queue_arguments(self, delay_ms: int) -> dict[str, Any]:
        return {
            ARG_MESSAGE_TTL: delay_ms,
            ARG_DEAD_LETTER_EXCHANGE: "",
            ARG_DEAD_LETTER_ROUTING_KEY: self.queue_name,
        }

    async def _declare_topology(self, channel: AbstractChannel) -> None:
        await channel.declare_queue(
            self.queue_name,
            durable=self._settings.queue_durable,
            arguments=self.work_queue_arguments(),
        )
        if self.dead_letter_queue_name:
            await channel.declare_queue(self.dead_letter_queue_name, durable=True)
        for delay_ms, name in self._delay_queues.items():
            await channel.declare_queue(
                name,
                durable=True,
                arguments=self._delay_queue_arguments(delay_ms),
            )

    async def declare_delay_queue(self, delay_seconds: float) -> str:
        """
        Ensure a TTL queue that dead-letters back to the work queue.

        Args:
            delay_seconds: How long messages wait before redelivery.

        Returns:
            The delay queue name to publish to.
        """
        delay_ms = max(1, int(round(delay_seconds * 1000)))
        name = f"{self.queue_name}.retry.{delay_ms}"
        if delay_ms in self._delay_queues:
            return name

        channel = self._require_channel()
        async with self._declare_lock:
            try:
                await channel.declare_queue(
                    name,
                    durable=True,
                    arguments=self._delay_queue_arguments(delay_ms),
                )
            except ChannelPreconditionFailed as e:
                raise FatalChannelError(f"Delay queue {name} declaration mismatch: {e}") from e
            except _CONNECTION_ERRORS as e:
                raise NotConnectedError(f"Cannot declare delay queue {name}: {e}") from e
        self._delay_queues[delay_ms] = name
        return name

    async def queue_depth(self, queue_name: str | None = None) -> int:
        """
        Number of ready messages in a queue (passive declare).

        Args:
            queue_name: Queue to inspect; defaults to the work queue.
        """
        name = queue_name or self.queue_name
        channel = self._require_channel()
        try:
            queue = await channel.declare_queue(name, passive=True)
        except _CONNECTION_ERRORS as e:
            raise NotConnectedError(f"Cannot inspect queue {name}: {e}") from e
        depth = queue.declaration_result.message_count or 0
        if name == self.queue_name:
            self._metrics.update_queue_depth(name, depth)
        return depth

    # ========================================================================
    # Publish / subscribe
    # ========================================================================

    async def publish(
        self,
        body: bytes,
        *,
        routing_key: str | None = None,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        """
        Publish a persistent message.

        With publisher confirms this returns only after the broker
        acknowledged the message; without, after it was written to the socket.

        Args:
            body: Encoded message body.
            routing_key: Target queue; defaults to the work queue.
            message_id: AMQP message id.
            headers: Extra AMQP headers.

        Raises:
            NotConnectedError: If the channel is disconnected.
            PublishRejectedError: If the broker nacked or returned the message.
        """
        channel = self._require_channel()
        target = routing_key or self.queue_name
        message = Message(
            body=body,
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type=CONTENT_TYPE_JSON,
            message_id=message_id,
            headers=headers or {},
            timestamp=utcnow(),
        )
        try:
            await channel.default_exchange.publish(
                message,
                routing_key=target,
                mandatory=True,
            )
        except DeliveryError as e:
            raise PublishRejectedError(f"Broker rejected message for {target}") from e
        except _CONNECTION_ERRORS as e:
            raise NotConnectedError(f"Publish to {target} failed: {e}") from e

    async def subscribe(self, prefetch_count: int) -> Subscription:
        """
        Start consuming the work queue on a dedicated channel.

        Args:
            prefetch_count: Maximum unacknowledged deliveries for this consumer.

        Raises:
            NotConnectedError: If the channel is disconnected.
        """
        if not self.is_connected or self._connection is None:
            raise NotConnectedError("Not connected to broker")

        subscription = Subscription(
            self.queue_name,
            prefetch_count,
            self.work_queue_arguments(),
        )
        try:
            await subscription._attach(self._connection)
        except _CONNECTION_ERRORS as e:
            raise NotConnectedError(f"Cannot subscribe to {self.queue_name}: {e}") from e
        self._subscriptions.append(subscription)
        return subscription

    async def get_one(self, queue_name: str) -> Delivery | None:
        """
        Fetch a single message from ``queue_name`` without consuming.

        Used by the dead-letter replay. Returns None when the queue is empty.
        """
        channel = self._require_channel()
        try:
            queue = await channel.get_queue(queue_name, ensure=False)
            message = await queue.get(no_ack=False, fail=False)
        except _CONNECTION_ERRORS as e:
            raise NotConnectedError(f"Cannot read from {queue_name}: {e}") from e
        if message is None:
            return None
        return Delivery.from_message(message)

    def _require_channel(self) -> AbstractChannel:
        if not self.is_connected or self._publish_channel is None:
            raise NotConnectedError("Not connected to broker")
        return self._publish_channel
