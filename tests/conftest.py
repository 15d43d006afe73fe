"""
Pytest configuration and shared fixtures.

Broker-level tests run against an in-memory double of the queue channel.
It keeps the properties the worker relies on: FIFO queues, prefetch-bounded
unacknowledged deliveries per consumer, redelivery of unacked messages when
a consumer dies, and TTL delay queues that dead-letter back to the work queue.
"""

import asyncio
import itertools
import time
from collections import defaultdict, deque
from collections.abc import AsyncGenerator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from taskpipe.api.main import create_app
from taskpipe.config import Settings
from taskpipe.errors import NotConnectedError, PublishRejectedError
from taskpipe.queue.channel import Delivery
from taskpipe.queue.codec import build_envelope, encode_envelope
from taskpipe.queue.retry import RetryPolicy
from taskpipe.worker.handlers import TaskHandler
from taskpipe.worker.main import Worker

TEST_QUEUE = "test_tasks"
TEST_DEAD_LETTER_QUEUE = "test_tasks.dead_letter"


@dataclass
class StoredMessage:
    """A message sitting in (or lent out of) an in-memory queue."""

    body: bytes
    message_id: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
    redelivered: bool = False


class FakeSubscription:
    """Consumer on the in-memory broker with AMQP prefetch semantics."""

    def __init__(self, broker: "FakeBroker", queue_name: str, prefetch_count: int):
        self.queue_name = queue_name
        self.prefetch_count = prefetch_count
        self.unacked: dict[int, StoredMessage] = {}
        self.max_unacked = 0
        self._broker = broker
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def get(self) -> Delivery | None:
        async with self._broker.changed:
            await self._broker.changed.wait_for(self._ready)
            if self._cancelled:
                return None
            return self._broker.lend(self)

    async def cancel(self) -> None:
        self._cancelled = True
        await self._broker.notify()

    def _ready(self) -> bool:
        if self._cancelled:
            return True
        return (
            len(self.unacked) < self.prefetch_count
            and bool(self._broker.queues[self.queue_name])
        )


class FakeBroker:
    """In-memory message broker with named FIFO queues."""

    def __init__(self):
        self.queues: dict[str, deque[StoredMessage]] = defaultdict(deque)
        self.delay_queues: dict[str, tuple[float, str]] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.acked: list[StoredMessage] = []
        self.dropped: list[StoredMessage] = []
        self.changed = asyncio.Condition()
        self._tags = itertools.count(1)
        self._fetched: dict[int, tuple[str, StoredMessage]] = {}

    async def notify(self) -> None:
        async with self.changed:
            self.changed.notify_all()

    async def put(self, queue_name: str, message: StoredMessage) -> None:
        if queue_name in self.delay_queues:
            ttl, target = self.delay_queues[queue_name]
            asyncio.get_running_loop().call_later(
                ttl, lambda: asyncio.ensure_future(self.put(target, message))
            )
            return
        self.queues[queue_name].append(message)
        await self.notify()

    def depth(self, queue_name: str) -> int:
        return len(self.queues[queue_name])

    def unacked_count(self) -> int:
        return sum(len(s.unacked) for s in self.subscriptions) + len(self._fetched)

    def messages(self, queue_name: str) -> list[StoredMessage]:
        return list(self.queues[queue_name])

    def lend(self, subscription: FakeSubscription) -> Delivery:
        """Hand the head of the queue to a consumer as an unacked delivery."""
        message = self.queues[subscription.queue_name].popleft()
        tag = next(self._tags)
        subscription.unacked[tag] = message
        subscription.max_unacked = max(subscription.max_unacked, len(subscription.unacked))

        async def _ack() -> None:
            if subscription.unacked.pop(tag, None) is None:
                raise ConnectionError("channel closed")
            self.acked.append(message)
            await self.notify()

        async def _reject(requeue: bool) -> None:
            if subscription.unacked.pop(tag, None) is None:
                raise ConnectionError("channel closed")
            if requeue:
                message.redelivered = True
                self.queues[subscription.queue_name].appendleft(message)
            else:
                self.dropped.append(message)
            await self.notify()

        return Delivery(
            body=message.body,
            delivery_tag=tag,
            ack_fn=_ack,
            reject_fn=_reject,
            redelivered=message.redelivered,
            message_id=message.message_id,
            headers=dict(message.headers),
        )

    async def kill_consumer(self, subscription: FakeSubscription) -> None:
        """Simulate consumer death: unacked deliveries return to the queue head."""
        subscription._cancelled = True
        queue = self.queues[subscription.queue_name]
        for tag in sorted(subscription.unacked, reverse=True):
            message = subscription.unacked.pop(tag)
            message.redelivered = True
            queue.appendleft(message)
        await self.notify()

    def fetch(self, queue_name: str) -> Delivery | None:
        """Basic.get with manual acknowledgement."""
        if not self.queues[queue_name]:
            return None
        message = self.queues[queue_name].popleft()
        tag = next(self._tags)
        self._fetched[tag] = (queue_name, message)

        async def _ack() -> None:
            self._fetched.pop(tag)
            self.acked.append(message)

        async def _reject(requeue: bool) -> None:
            self._fetched.pop(tag)
            if requeue:
                message.redelivered = True
                self.queues[queue_name].appendleft(message)
            else:
                self.dropped.append(message)
            await self.notify()

        return Delivery(
            body=message.body,
            delivery_tag=tag,
            ack_fn=_ack,
            reject_fn=_reject,
            redelivered=message.redelivered,
            message_id=message.message_id,
            headers=dict(message.headers),
        )


class FakeChannel:
    """Stands in for ``QueueChannel`` on top of a ``FakeBroker``."""

    def __init__(
        self,
        broker: FakeBroker,
        queue_name: str = TEST_QUEUE,
        dead_letter_queue_name: str | None = TEST_DEAD_LETTER_QUEUE,
    ):
        self.broker = broker
        self.queue_name = queue_name
        self.dead_letter_queue_name = dead_letter_queue_name
        self.fatal_error = None
        self.connected = True
        self.reject_publishes = False
        self.published: list[tuple[str, StoredMessage]] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def publish(
        self,
        body: bytes,
        *,
        routing_key: str | None = None,
        message_id: str | None = None,
        headers: dict[str, Any] | None = None,
    ) -> None:
        if not self.connected:
            raise NotConnectedError("Not connected to broker")
        target = routing_key or self.queue_name
        if self.reject_publishes:
            raise PublishRejectedError(f"Broker rejected message for {target}")
        message = StoredMessage(body=body, message_id=message_id, headers=dict(headers or {}))
        self.published.append((target, message))
        await self.broker.put(target, message)

    async def declare_delay_queue(self, delay_seconds: float) -> str:
        delay_ms = max(1, int(round(delay_seconds * 1000)))
        name = f"{self.queue_name}.retry.{delay_ms}"
        self.broker.delay_queues[name] = (delay_ms / 1000, self.queue_name)
        return name

    async def queue_depth(self, queue_name: str | None = None) -> int:
        if not self.connected:
            raise NotConnectedError("Not connected to broker")
        return self.broker.depth(queue_name or self.queue_name)

    async def subscribe(self, prefetch_count: int) -> FakeSubscription:
        if not self.connected:
            raise NotConnectedError("Not connected to broker")
        subscription = FakeSubscription(self.broker, self.queue_name, prefetch_count)
        self.broker.subscriptions.append(subscription)
        return subscription

    async def get_one(self, queue_name: str) -> Delivery | None:
        if not self.connected:
            raise NotConnectedError("Not connected to broker")
        return self.broker.fetch(queue_name)

    async def close(self) -> None:
        self.connected = False


async def _wait_until(
    predicate: Callable[[], bool],
    timeout: float = 3.0,
    interval: float = 0.01,
) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        queue_name=TEST_QUEUE,
        dead_letter_queue=TEST_DEAD_LETTER_QUEUE,
        prefetch_count=1,
        max_retries=3,
        task_timeout_seconds=2.0,
        retry_delay_base_seconds=0.0,
        retry_delay_max_seconds=0.0,
        worker_id="test-worker",
        worker_metrics_port=None,
        log_level="DEBUG",
        log_format="console",
        tracing_enabled=False,
    )


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def channel(broker: FakeBroker) -> FakeChannel:
    return FakeChannel(broker)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or fail the test."""
    return _wait_until


@pytest.fixture
def enqueue(channel: FakeChannel) -> Callable[..., Awaitable[str]]:
    """Publish a task straight onto the test work queue."""

    async def _enqueue(payload: dict[str, Any], attempt_count: int = 0) -> str:
        envelope = build_envelope(payload)
        if attempt_count:
            envelope = envelope.model_copy(update={"attempt_count": attempt_count})
        await channel.publish(encode_envelope(envelope), message_id=str(envelope.id))
        return str(envelope.id)

    return _enqueue


@pytest_asyncio.fixture
async def start_worker(
    channel: FakeChannel,
    test_settings: Settings,
) -> AsyncGenerator[Callable[..., Awaitable[Worker]]]:
    """
    Factory starting workers on the fake channel.

    Workers still running at teardown are stopped and awaited.
    """
    running: list[tuple[Worker, asyncio.Task]] = []

    async def _start(
        handler: TaskHandler | None = None,
        prefetch_count: int = 1,
        task_timeout: float | None = None,
        policy: RetryPolicy | None = None,
    ) -> Worker:
        worker = Worker(
            channel,
            handler=handler,
            prefetch_count=prefetch_count,
            task_timeout=task_timeout,
            policy=policy,
            settings=test_settings,
        )
        task = asyncio.create_task(worker.start())
        running.append((worker, task))
        # Let the worker subscribe before the test continues
        await asyncio.sleep(0)
        return worker

    yield _start

    for worker, task in running:
        if not task.done():
            await worker.stop()
        await asyncio.wait_for(task, timeout=5.0)


@pytest.fixture
def app(channel: FakeChannel, test_settings: Settings) -> FastAPI:
    """Create a FastAPI app bound to the fake channel."""
    return create_app(channel=channel, settings=test_settings)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_task_payload() -> dict[str, Any]:
    """Create a sample task payload."""
    return {
        "description": "send welcome email",
        "task_type": "echo",
        "data": {"to": "user@example.com"},
    }
