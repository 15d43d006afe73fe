"""
Dead-letter module.
Contains the operator-triggered dead-letter replay.
"""

from taskpipe.dlq.replay import DeadLetterReplayer, run

__all__ = ["DeadLetterReplayer", "run"]
