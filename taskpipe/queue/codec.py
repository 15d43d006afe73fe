"""
Task envelope codec.

Maps a ``TaskEnvelope`` to and from its JSON wire representation. Unknown
fields in an incoming document are ignored so older workers can read
envelopes written by newer producers.
"""

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from taskpipe.errors import DecodeError, EncodeError
from taskpipe.types.task import TaskEnvelope


def encode_envelope(envelope: TaskEnvelope) -> bytes:
    """
    Serialize an envelope to wire bytes.

    Args:
        envelope: The envelope to encode.

    Returns:
        UTF-8 encoded JSON document.

    Raises:
        EncodeError: If the payload is not JSON-serializable.
    """
    try:
        return envelope.model_dump_json().encode("utf-8")
    except (PydanticSerializationError, TypeError, ValueError) as e:
        raise EncodeError(f"Cannot encode task envelope: {e}") from e


def decode_envelope(body: bytes) -> TaskEnvelope:
    """
    Parse wire bytes into an envelope.

    Args:
        body: Raw message body.

    Returns:
        The decoded envelope (``delivery_tag`` unset).

    Raises:
        DecodeError: If the body is malformed or misses required fields.
    """
    try:
        return TaskEnvelope.model_validate_json(body)
    except ValidationError as e:
        raise DecodeError(f"Malformed task envelope: {e.error_count()} error(s)") from e
    except (UnicodeDecodeError, ValueError) as e:
        raise DecodeError(f"Malformed task envelope: {e}") from e


def build_envelope(payload: object) -> TaskEnvelope:
    """
    Build a fresh envelope for a caller payload.

    Raises:
        EncodeError: If the payload is not a mapping document.
    """
    try:
        return TaskEnvelope(payload=payload)
    except ValidationError as e:
        raise EncodeError(f"Invalid task payload: {e.errors()[0]['msg']}") from e
