"""
Producer module.
Contains the task submitter.
"""

from taskpipe.producer.submitter import Submitter

__all__ = ["Submitter"]
