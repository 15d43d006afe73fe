"""
Dead-letter replay.

Moves envelopes that exhausted their retries (or failed permanently) from
the dead-letter queue back onto the work queue. Replay is operator-triggered
only: nothing moves dead letters automatically.
"""

import argparse
import asyncio
import logging
import sys

from taskpipe.config import Settings, get_settings
from taskpipe.constants import HEADER_REPLAYED_AT, SPAN_REPLAY_DEAD_LETTERS
from taskpipe.errors import DecodeError, FatalChannelError, NotConnectedError
from taskpipe.observability.logging import setup_logging
from taskpipe.observability.metrics import get_metrics
from taskpipe.observability.tracing import get_tracer, setup_tracing
from taskpipe.producer.submitter import envelope_headers
from taskpipe.queue.channel import Delivery, QueueChannel
from taskpipe.queue.codec import decode_envelope, encode_envelope
from taskpipe.types.task import TaskEnvelope, utcnow

logger = logging.getLogger(__name__)


class DeadLetterReplayer:
    """
    Replays dead-lettered tasks onto the work queue.

    Each message is published to the work queue first and only then
    acknowledged on the dead-letter queue, so a crash in between leaves a
    duplicate rather than a loss.
    """

    def __init__(self, channel: QueueChannel, settings: Settings | None = None):
        settings = settings or get_settings()
        self.batch_size = settings.replay_batch_size
        self._channel = channel
        self._metrics = get_metrics()

    async def run_once(self, limit: int | None = None, reset_attempts: bool = True) -> int:
        """
        Replay up to ``limit`` dead letters.

        Args:
            limit: Maximum messages to move. Defaults to the configured batch size.
            reset_attempts: Restart the retry budget of replayed tasks.

        Returns:
            Number of tasks moved back to the work queue.

        Raises:
            NotConnectedError: If the broker is unavailable.
        """
        dead_letter_queue = self._channel.dead_letter_queue_name
        if not dead_letter_queue:
            logger.warning("Replay requested but no dead-letter queue is configured")
            return 0

        limit = limit or self.batch_size
        replayed = 0
        # Held unacked until the pass ends so the queue moves past them
        undecodable: list[Delivery] = []

        with get_tracer().start_as_current_span(SPAN_REPLAY_DEAD_LETTERS) as span:
            span.set_attribute("dead_letter_queue", dead_letter_queue)
            span.set_attribute("limit", limit)

            try:
                while replayed < limit:
                    delivery = await self._channel.get_one(dead_letter_queue)
                    if delivery is None:
                        break

                    try:
                        envelope = decode_envelope(delivery.body)
                    except DecodeError as e:
                        # Replaying it would only dead-letter it again
                        logger.error(
                            "Undecodable dead letter left in place",
                            extra={"message_id": delivery.message_id, "error": str(e)},
                        )
                        undecodable.append(delivery)
                        continue

                    await self._replay(delivery, envelope, reset_attempts)
                    replayed += 1
            finally:
                await self._return_undecodable(undecodable)

            span.set_attribute("replayed", replayed)
            span.set_attribute("undecodable", len(undecodable))

        if replayed > 0:
            self._metrics.record_dead_letters_replayed(self._channel.queue_name, replayed)
            logger.info(
                f"Replayed {replayed} dead letters",
                extra={"dead_letter_queue": dead_letter_queue, "queue": self._channel.queue_name},
            )
        return replayed

    async def _replay(
        self,
        delivery: Delivery,
        envelope: TaskEnvelope,
        reset_attempts: bool,
    ) -> None:
        if reset_attempts:
            envelope = envelope.with_reset_attempts()

        headers = envelope_headers(envelope)
        headers[HEADER_REPLAYED_AT] = utcnow().isoformat()

        try:
            await self._channel.publish(
                encode_envelope(envelope),
                message_id=str(envelope.id),
                headers=headers,
            )
        except Exception:
            await delivery.reject(requeue=True)
            raise

        await delivery.ack()
        logger.info(
            "Dead letter replayed",
            extra={
                "task_id": str(envelope.id),
                "attempt_count": envelope.attempt_count,
            },
        )

    async def _return_undecodable(self, deliveries: list[Delivery]) -> None:
        """Hand skipped dead letters back in their original order."""
        for delivery in reversed(deliveries):
            try:
                await delivery.reject(requeue=True)
            except NotConnectedError as e:
                # The broker requeues unacked messages of a closed channel itself
                logger.warning(
                    "Undecodable dead letter not returned explicitly",
                    extra={"message_id": delivery.message_id, "error": str(e)},
                )


async def run_async(limit: int | None = None, reset_attempts: bool = True) -> int:
    """Run a single replay pass asynchronously."""
    setup_logging("replay")
    setup_tracing()

    async with QueueChannel() as channel:
        replayer = DeadLetterReplayer(channel)
        return await replayer.run_once(limit=limit, reset_attempts=reset_attempts)


def run() -> None:
    """Run the dead-letter replay from the command line."""
    parser = argparse.ArgumentParser(description="Replay dead-lettered tasks")
    parser.add_argument("--limit", type=int, default=None, help="Maximum tasks to replay")
    parser.add_argument(
        "--keep-attempts",
        action="store_true",
        help="Keep the attempt count instead of resetting it",
    )
    args = parser.parse_args()

    try:
        count = asyncio.run(
            run_async(limit=args.limit, reset_attempts=not args.keep_attempts)
        )
    except (FatalChannelError, NotConnectedError) as e:
        logger.critical(f"Replay failed: {e}")
        sys.exit(1)

    print(f"Replayed {count} dead-lettered tasks")


if __name__ == "__main__":
    run()
