"""
Message schema for the supervisor -> worker channel.

The channel is the worker's stdin: one JSON object per line, shaped
``{"type": "transcription" | "manual_chat", "data": "<text>"}``.
"""
import json
import logging
from typing import IO, Iterator, Optional, Tuple

log = logging.getLogger(__name__)

TRANSCRIPTION = "transcription"
MANUAL_CHAT = "manual_chat"
MESSAGE_TYPES = (TRANSCRIPTION, MANUAL_CHAT)


def encode_message(message_type: str, data: str) -> bytes:
    """
    Serializes a message into a single channel line.

    :raises ValueError: If the message type is not part of the schema.
    """
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type '{message_type}'.")
    return (json.dumps({"type": message_type, "data": data}) + "\n").encode("utf-8")


def decode_message(line) -> Optional[Tuple[str, str]]:
    """Parses one channel line. Returns None for blank, malformed or unknown messages."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        log.warning(f"Dropping malformed channel line: {line[:80]!r}")
        return None
    if not isinstance(payload, dict):
        return None
    message_type, data = payload.get("type"), payload.get("data")
    if message_type not in MESSAGE_TYPES or not isinstance(data, str):
        log.warning(f"Dropping unknown channel message: {line[:80]!r}")
        return None
    return message_type, data


def read_messages(stream: IO) -> Iterator[Tuple[str, str]]:
    """Yields decoded messages from the worker's end of the channel until EOF."""
    for line in stream:
        message = decode_message(line)
        if message is not None:
            yield message
