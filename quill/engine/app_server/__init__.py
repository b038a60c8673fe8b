"""Codex app-server connection: framing, transport and typed client."""

from .client import AppServerClient, LoginResult
from .framing import LineFramer, MessageKind, classify, decode_line, encode_message
from .transport import AppServerTransport, find_executable

__all__ = [
    "AppServerClient",
    "AppServerTransport",
    "LineFramer",
    "LoginResult",
    "MessageKind",
    "classify",
    "decode_line",
    "encode_message",
    "find_executable",
]
