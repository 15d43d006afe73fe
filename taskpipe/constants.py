"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class DeliveryState(StrEnum):
    """
    Per-delivery lifecycle states on the consumer side.

    State transitions:
    - DELIVERED -> PROCESSING (decoded, handler started)
    - DELIVERED -> NACKED_DISCARD (undecodable body)
    - PROCESSING -> ACKED (handler succeeded)
    - PROCESSING -> NACKED_REQUEUE (transient failure, retries left)
    - PROCESSING -> NACKED_DISCARD (permanent failure or retries exhausted)
    """

    DELIVERED = "delivered"
    PROCESSING = "processing"
    ACKED = "acked"
    NACKED_REQUEUE = "nacked_requeue"
    NACKED_DISCARD = "nacked_discard"


class FailureKind(StrEnum):
    """Classification of a handler failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class RetryAction(StrEnum):
    """What to do with a failed delivery."""

    REQUEUE = "requeue"
    REQUEUE_WITH_DELAY = "requeue_with_delay"
    DISCARD = "discard"


# Default values
DEFAULT_TASK_TYPE = "describe"
CONTENT_TYPE_JSON = "application/json"

# AMQP message headers
HEADER_ATTEMPT_COUNT = "x-attempt-count"
HEADER_ENQUEUED_AT = "x-enqueued-at"
HEADER_FAILURE_KIND = "x-failure-kind"
HEADER_FAILURE_REASON = "x-failure-reason"
HEADER_DEAD_LETTERED_AT = "x-dead-lettered-at"
HEADER_REPLAYED_AT = "x-replayed-at"

# AMQP queue arguments
ARG_MAX_LENGTH = "x-max-length"
ARG_OVERFLOW = "x-overflow"
ARG_MESSAGE_TTL = "x-message-ttl"
ARG_DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
ARG_DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"
OVERFLOW_REJECT_PUBLISH = "reject-publish"

# Metrics names
METRIC_QUEUE_DEPTH = "task_queue_depth"
METRIC_TASKS_SUBMITTED = "tasks_submitted_total"
METRIC_PUBLISH_REJECTED = "publish_rejected_total"
METRIC_DELIVERIES = "deliveries_total"
METRIC_TASK_DURATION = "task_duration_seconds"
METRIC_IN_FLIGHT = "worker_in_flight"
METRIC_RECONNECTS = "broker_reconnects_total"
METRIC_DEAD_LETTERS_REPLAYED = "dead_letters_replayed_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_SUBMIT_TASK = "submit_task"
SPAN_EXECUTE_TASK = "execute_task"
SPAN_REPLAY_DEAD_LETTERS = "replay_dead_letters"
