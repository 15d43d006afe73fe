"""
Durable Task Pipeline

A broker-backed task dispatch pipeline demonstrating correct durable publish,
manual ack/nack, bounded retries with delay queues, dead-lettering, and
observability.
"""

__version__ = "1.0.0"
