"""Newline-delimited JSON framing for the app-server stdio protocol.

Request:       {"id": int, "method": str, "params"?: object}
Response:      {"id": int, "result"?: object, "error"?: {"message": str}}
Notification:  {"method": str, "params"?: object}

Parsing is independent of dispatch so it can be tested on raw bytes.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class MessageKind(str, Enum):
    RESPONSE = "response"
    REQUEST = "request"
    NOTIFICATION = "notification"


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize one message as a single UTF-8 line."""
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def classify(message: dict[str, Any]) -> MessageKind | None:
    """Classify a decoded message; None for anything unusable.

    Ids must be integers (bool is rejected even though it subclasses int).
    """
    msg_id = message.get("id")
    has_id = isinstance(msg_id, int) and not isinstance(msg_id, bool)
    method = message.get("method")
    has_method = isinstance(method, str)
    if has_id and not has_method and "method" not in message:
        return MessageKind.RESPONSE
    if has_id and has_method:
        return MessageKind.REQUEST
    if has_method and "id" not in message:
        return MessageKind.NOTIFICATION
    return None


def decode_line(line: bytes) -> dict[str, Any] | None:
    """Decode one line; malformed input yields None instead of raising."""
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        message = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Dropping non-JSON line from app-server: %.200s", text)
        return None
    if not isinstance(message, dict):
        logger.debug("Dropping non-object message from app-server: %.200s", text)
        return None
    if classify(message) is None:
        logger.debug("Dropping unclassifiable message from app-server: %.200s", text)
        return None
    return message


class LineFramer:
    """Accumulates stdout bytes and yields complete decoded messages."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Add *chunk* and return every message completed by it."""
        self._buffer.extend(chunk)
        messages: list[dict[str, Any]] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline == -1:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            message = decode_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def finish(self) -> list[dict[str, Any]]:
        """Decode whatever is left at EOF (a final line without newline)."""
        if not self._buffer:
            return []
        line = bytes(self._buffer)
        self._buffer.clear()
        message = decode_line(line)
        return [message] if message is not None else []
