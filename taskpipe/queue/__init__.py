"""
Queue module.
Contains the broker channel, the envelope codec and the retry policy.
"""

from taskpipe.queue.channel import Delivery, QueueChannel, Subscription
from taskpipe.queue.codec import build_envelope, decode_envelope, encode_envelope
from taskpipe.queue.retry import RetryPolicy, classify_failure, compute_backoff

__all__ = [
    "QueueChannel",
    "Subscription",
    "Delivery",
    "encode_envelope",
    "decode_envelope",
    "build_envelope",
    "RetryPolicy",
    "classify_failure",
    "compute_backoff",
]
