"""
Unit tests for the queue channel with the aio-pika layer mocked out.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aio_pika import DeliveryMode
from aio_pika.exceptions import (
    AuthenticationError,
    ChannelPreconditionFailed,
    DeliveryError,
    ProbableAuthenticationError,
)

from taskpipe.config import Settings
from taskpipe.errors import FatalChannelError, NotConnectedError, PublishRejectedError
from taskpipe.queue.channel import Delivery, QueueChannel, Subscription


@pytest.fixture
def settings() -> Settings:
    return Settings(
        queue_name="orders",
        dead_letter_queue="orders.dead_letter",
        connect_max_attempts=2,
        reconnect_base_seconds=0.01,
        reconnect_max_seconds=0.02,
        tracing_enabled=False,
    )


@pytest.fixture
def amqp_channel() -> MagicMock:
    """A mocked aio-pika channel."""
    queue = MagicMock()
    queue.consume = AsyncMock(return_value="consumer-1")
    queue.cancel = AsyncMock()
    queue.declaration_result.message_count = 5

    channel = MagicMock()
    channel.declare_queue = AsyncMock(return_value=queue)
    channel.set_qos = AsyncMock()
    channel.close = AsyncMock()
    channel.default_exchange.publish = AsyncMock()
    return channel


@pytest.fixture
def amqp_connection(amqp_channel: MagicMock) -> MagicMock:
    """A mocked aio-pika robust-less connection."""
    connection = MagicMock()
    connection.is_closed = False
    connection.channel = AsyncMock(return_value=amqp_channel)
    connection.close = AsyncMock()
    return connection


def make_message(body: bytes = b"{}", delivery_tag: int = 1) -> MagicMock:
    message = MagicMock()
    message.body = body
    message.delivery_tag = delivery_tag
    message.redelivered = False
    message.message_id = "m-1"
    message.headers = {"x-attempt-count": 0}
    message.ack = AsyncMock()
    message.reject = AsyncMock()
    return message


class TestDelivery:
    """Tests for delivery settlement."""

    @pytest.mark.asyncio
    async def test_ack_settles_once(self):
        """A delivery can be settled exactly once."""
        message = make_message()
        delivery = Delivery.from_message(message)

        await delivery.ack()

        assert delivery.settled is True
        message.ack.assert_awaited_once()
        with pytest.raises(RuntimeError):
            await delivery.reject(requeue=True)

    @pytest.mark.asyncio
    async def test_reject_passes_requeue(self):
        message = make_message()
        delivery = Delivery.from_message(message)

        await delivery.reject(requeue=False)

        message.reject.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_settle_on_dead_channel(self):
        """Settling after the channel died raises NotConnectedError."""
        message = make_message()
        message.ack.side_effect = ConnectionResetError()
        delivery = Delivery.from_message(message)

        with pytest.raises(NotConnectedError):
            await delivery.ack()

        assert delivery.settled is False

    def test_from_message_copies_metadata(self):
        delivery = Delivery.from_message(make_message(body=b"abc", delivery_tag=9))

        assert delivery.body == b"abc"
        assert delivery.delivery_tag == 9
        assert delivery.message_id == "m-1"
        assert delivery.headers == {"x-attempt-count": 0}


class TestSubscription:
    """Tests for the buffered consumer."""

    @pytest.mark.asyncio
    async def test_get_returns_buffered_delivery(self):
        subscription = Subscription("orders", prefetch_count=2, arguments={})

        await subscription._on_message(make_message(delivery_tag=3))
        delivery = await subscription.get()

        assert delivery is not None
        assert delivery.delivery_tag == 3

    @pytest.mark.asyncio
    async def test_cancel_returns_buffered_and_wakes_all(self):
        """Cancel hands buffered deliveries back and wakes every waiter."""
        subscription = Subscription("orders", prefetch_count=2, arguments={})
        message = make_message()
        await subscription._on_message(message)

        await subscription.cancel()

        message.reject.assert_awaited_once_with(requeue=True)
        assert await subscription.get() is None
        assert await subscription.get() is None

    @pytest.mark.asyncio
    async def test_message_after_cancel_is_returned(self):
        subscription = Subscription("orders", prefetch_count=1, arguments={})
        await subscription.cancel()
        message = make_message()

        await subscription._on_message(message)

        message.reject.assert_awaited_once_with(requeue=True)


class TestQueueChannel:
    """Tests for the channel against a mocked broker."""

    @pytest.mark.asyncio
    async def test_publish_while_disconnected(self, settings: Settings):
        """Publishing without a connection never silently succeeds."""
        channel = QueueChannel(settings)

        with pytest.raises(NotConnectedError):
            await channel.publish(b"{}")

    @pytest.mark.asyncio
    async def test_connect_declares_topology(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        """Connecting declares the durable work queue and dead-letter queue."""
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()

        assert channel.is_connected is True
        amqp_connection.channel.assert_awaited_once_with(publisher_confirms=True)
        amqp_channel.declare_queue.assert_any_await("orders", durable=True, arguments={})
        amqp_channel.declare_queue.assert_any_await("orders.dead_letter", durable=True)

    @pytest.mark.asyncio
    async def test_connect_gives_up(self, settings: Settings):
        """An unreachable broker raises after the configured attempts."""
        connect = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        with patch("taskpipe.queue.channel.aio_pika.connect", connect):
            channel = QueueChannel(settings)
            with pytest.raises(NotConnectedError):
                await channel.connect()

        assert connect.await_count == 2
        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_publish_is_persistent(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()

        await channel.publish(b'{"a": 1}', message_id="abc", headers={"x-attempt-count": 0})

        publish = amqp_channel.default_exchange.publish
        publish.assert_awaited_once()
        message = publish.await_args.args[0]
        assert message.delivery_mode == DeliveryMode.PERSISTENT
        assert message.body == b'{"a": 1}'
        assert message.message_id == "abc"
        assert publish.await_args.kwargs["routing_key"] == "orders"
        assert publish.await_args.kwargs["mandatory"] is True

    @pytest.mark.asyncio
    async def test_publish_nack_is_rejection(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        """A broker nack surfaces as PublishRejectedError."""
        amqp_channel.default_exchange.publish.side_effect = DeliveryError(None, None)
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()

        with pytest.raises(PublishRejectedError):
            await channel.publish(b"{}")

    @pytest.mark.asyncio
    async def test_max_length_arguments(self):
        """A bounded queue refuses publishes instead of dropping old messages."""
        channel = QueueChannel(Settings(queue_max_length=1000, tracing_enabled=False))

        assert channel.work_queue_arguments() == {
            "x-max-length": 1000,
            "x-overflow": "reject-publish",
        }

    @pytest.mark.asyncio
    async def test_declare_delay_queue(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        """Delay queues dead-letter back to the work queue and are declared once."""
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()
        amqp_channel.declare_queue.reset_mock()

        first = await channel.declare_delay_queue(2.0)
        second = await channel.declare_delay_queue(2.0)

        assert first == second == "orders.retry.2000"
        amqp_channel.declare_queue.assert_awaited_once_with(
            "orders.retry.2000",
            durable=True,
            arguments={
                "x-message-ttl": 2000,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": "orders",
            },
        )

    @pytest.mark.asyncio
    async def test_queue_depth(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()

        assert await channel.queue_depth() == 5
        amqp_channel.declare_queue.assert_awaited_with("orders", passive=True)

    @pytest.mark.asyncio
    async def test_subscribe_sets_prefetch(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        """Each subscription bounds unacked deliveries with basic.qos."""
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            await channel.connect()

        subscription = await channel.subscribe(3)

        assert subscription.prefetch_count == 3
        amqp_channel.set_qos.assert_awaited_once_with(prefetch_count=3)
        queue = amqp_channel.declare_queue.return_value
        assert queue.consume.await_args.kwargs["no_ack"] is False

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_loss(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
    ):
        """A lost connection is re-established in the background."""
        connect = AsyncMock(return_value=amqp_connection)
        with patch("taskpipe.queue.channel.aio_pika.connect", connect):
            channel = QueueChannel(settings)
            await channel.connect()

            channel._on_connection_closed(None, ConnectionResetError())
            assert channel.is_connected is False
            with pytest.raises(NotConnectedError):
                await channel.publish(b"{}")

            for _ in range(100):
                if channel.is_connected:
                    break
                await asyncio.sleep(0.01)

        assert channel.is_connected is True
        assert connect.await_count == 2
        await channel.close()
        assert channel.is_connected is False


class TestFatalConditions:
    """Conditions reconnecting cannot fix surface as FatalChannelError."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            AuthenticationError("ACCESS_REFUSED"),
            ProbableAuthenticationError("connection closed during handshake"),
        ],
    )
    async def test_bad_credentials(self, settings: Settings, error: Exception):
        """Credential failures are not retried."""
        connect = AsyncMock(side_effect=error)
        with patch("taskpipe.queue.channel.aio_pika.connect", connect):
            channel = QueueChannel(settings)
            with pytest.raises(FatalChannelError):
                await channel.connect()

        assert connect.await_count == 1
        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_declaration_mismatch(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
        amqp_channel: MagicMock,
    ):
        """A queue declared with different arguments is fatal and closes the connection."""
        amqp_channel.declare_queue.side_effect = ChannelPreconditionFailed(
            406, "PRECONDITION_FAILED - inequivalent arg 'durable'"
        )
        with patch("taskpipe.queue.channel.aio_pika.connect", AsyncMock(return_value=amqp_connection)):
            channel = QueueChannel(settings)
            with pytest.raises(FatalChannelError):
                await channel.connect()

        amqp_connection.close.assert_awaited_once()
        assert channel.is_connected is False

    @pytest.mark.asyncio
    async def test_fatal_error_during_reconnect(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
    ):
        """A fatal reconnect failure is recorded and wakes every subscription."""
        connect = AsyncMock(return_value=amqp_connection)
        with patch("taskpipe.queue.channel.aio_pika.connect", connect):
            channel = QueueChannel(settings)
            await channel.connect()
            subscription = await channel.subscribe(2)

            connect.side_effect = AuthenticationError("ACCESS_REFUSED")
            channel._on_connection_closed(None, ConnectionResetError())
            await asyncio.wait_for(channel._reconnect_task, timeout=2)

        assert isinstance(channel.fatal_error, FatalChannelError)
        assert await asyncio.wait_for(subscription.get(), timeout=1) is None
        assert subscription.cancelled is True

    @pytest.mark.asyncio
    async def test_unexpected_error_during_reconnect(
        self,
        settings: Settings,
        amqp_connection: MagicMock,
    ):
        """An unexpected error does not leave the reconnect task dead and silent."""
        connect = AsyncMock(return_value=amqp_connection)
        with patch("taskpipe.queue.channel.aio_pika.connect", connect):
            channel = QueueChannel(settings)
            await channel.connect()
            subscription = await channel.subscribe(1)

            connect.side_effect = ConnectionRefusedError("refused")
            with patch(
                "taskpipe.queue.channel.compute_backoff",
                side_effect=OverflowError("int too large to convert to float"),
            ):
                channel._on_connection_closed(None, ConnectionResetError())
                await asyncio.wait_for(channel._reconnect_task, timeout=2)

        assert isinstance(channel.fatal_error, FatalChannelError)
        assert isinstance(channel.fatal_error.__cause__, OverflowError)
        assert await asyncio.wait_for(subscription.get(), timeout=1) is None
