"""Exception hierarchy for the turn execution engine.

Transport failures, turn failures and permission rejections are kept in
separate families: callers that retry a tool after a rejection must never
mistake it for a dead subprocess.
"""
from __future__ import annotations

from typing import Any

EXITED_MARKER = "app-server exited"
INSTRUCTIONS_REJECTED_MARKER = "instructions are not valid"


class QuillError(Exception):
    """Base exception for all engine errors."""


class ConfigError(QuillError):
    """A configuration value is missing or malformed."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid config value for '{key}': {reason}")


# ── Transport ──


class TransportError(QuillError):
    """Base class for app-server transport failures."""


class ExecutableNotFoundError(TransportError):
    """The backend CLI could not be located or spawned."""
    def __init__(self, command: str, reason: str | None = None):
        self.command = command
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Codex CLI '{command}' not found{detail}. "
            f"Install it from https://github.com/openai/codex."
        )


class TransportNotRunningError(TransportError):
    """A write was attempted with no live subprocess."""
    def __init__(self) -> None:
        super().__init__("codex app-server not running")


class TransportExitedError(TransportError):
    """The subprocess exited (or failed) while requests were outstanding."""
    def __init__(
        self,
        returncode: int | None = None,
        signal: int | None = None,
        reason: str | None = None,
    ):
        self.returncode = returncode
        self.signal = signal
        details = [
            f"code {returncode}" if returncode is not None else "",
            f"signal {signal}" if signal is not None else "",
            reason or "",
        ]
        joined = ", ".join(d for d in details if d)
        message = f"codex {EXITED_MARKER}"
        if joined:
            message = f"{message} ({joined})"
        super().__init__(message)


class TransportClosedError(TransportError):
    """The host shut the transport down."""
    def __init__(self) -> None:
        super().__init__("codex app-server transport closed")


class AppServerResponseError(TransportError):
    """A response carried an ``error`` object."""
    def __init__(
        self,
        method: str,
        message: str,
        code: int | None = None,
        data: Any = None,
    ):
        self.method = method
        self.code = code
        self.data = data
        super().__init__(message)


class ProtocolError(TransportError):
    """A well-formed reply that cannot be used (e.g. missing thread id)."""


def is_process_exit(exc: BaseException) -> bool:
    """True when *exc* reports that the app-server process went away."""
    return isinstance(exc, TransportExitedError) or (
        isinstance(exc, TransportError) and EXITED_MARKER in str(exc)
    )


# ── Turns ──


class TurnError(QuillError):
    """Base class for turn-level failures."""


class TurnFailedError(TurnError):
    """The backend reported the turn as failed."""
    def __init__(self, message: str, error_info: str | None = None):
        self.error_info = error_info
        super().__init__(message)


class AuthRequiredError(TurnError):
    """The backend needs (re-)authentication before it can run turns."""
    def __init__(self, message: str, provider: str = "codex"):
        self.provider = provider
        super().__init__(message)


def is_instructions_rejected(exc: BaseException | str) -> bool:
    """Match the backend's rejection of developer instructions.

    The backend has no structured code for this; its error text is the
    only signal.
    """
    return INSTRUCTIONS_REJECTED_MARKER in str(exc).lower()


# ── Permissions ──


class PermissionRejectedError(QuillError):
    """The user rejected a permission request.

    Tools catch this and answer "try again with different arguments"
    instead of failing the turn.
    """
    def __init__(
        self,
        session_id: str,
        permission_id: str,
        call_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self.session_id = session_id
        self.permission_id = permission_id
        self.call_id = call_id
        self.metadata = dict(metadata or {})
        super().__init__(
            "The user rejected permission to use this functionality"
        )


class PermissionDeniedError(PermissionRejectedError):
    """A configured ``deny`` rule matched; nobody was asked."""
    def __init__(
        self,
        session_id: str,
        permission: str,
        pattern: str,
        call_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        super().__init__(session_id, "", call_id, metadata)
        self.permission = permission
        self.pattern = pattern
        self.args = (
            f"Permission '{permission}' denied by rule for '{pattern}'",
        )


# ── Storage ──


class StorageError(QuillError):
    """Durable storage read or write failed."""


class StorageNotFoundError(StorageError):
    """No document stored under the requested key."""
    def __init__(self, key: list[str]):
        self.key = list(key)
        super().__init__(f"Resource not found: {'/'.join(key)}")
