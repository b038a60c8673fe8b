"""Permission negotiator: pending human approvals with once/always/reject.

Requests are published through the event callback and block the asking
coroutine until ``respond`` (or ``shutdown``) settles them. An "always"
answer is remembered per (session, type) for the lifetime of the
negotiator.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any

from .config import EventCallback, fire_event
from .errors import PermissionDeniedError, PermissionRejectedError
from .models import (
    PermissionAction,
    PermissionRequest,
    PermissionResponse,
    PermissionRule,
    ascending_id,
)

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=256)
def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    pieces = []
    for ch in pattern:
        if ch == "*":
            pieces.append(".*")
        elif ch == "?":
            pieces.append(".")
        else:
            pieces.append(re.escape(ch))
    return re.compile("".join(pieces) + r"\Z", re.DOTALL)


def wildcard_match(value: str, pattern: str) -> bool:
    """``*`` matches any run of characters, ``?`` exactly one."""
    return _wildcard_regex(pattern).match(value) is not None


def evaluate(
    permission: str,
    pattern: str,
    rules: Iterable[PermissionRule],
) -> PermissionAction:
    """Action of the last matching rule; ASK when nothing matches."""
    action = PermissionAction.ASK
    for rule in rules:
        if wildcard_match(permission, rule.permission) and wildcard_match(pattern, rule.pattern):
            action = rule.action
    return action


class _Pending:
    __slots__ = ("request", "future")

    def __init__(self, request: PermissionRequest, future: asyncio.Future) -> None:
        self.request = request
        self.future = future


class PermissionNegotiator:
    """Registry of outstanding approval requests."""

    def __init__(self, event_callback: EventCallback | None = None) -> None:
        self._event_callback = event_callback
        # session_id -> request_id -> pending entry
        self._pending: dict[str, dict[str, _Pending]] = {}
        # session_id -> types approved with "always"
        self._approved: dict[str, set[str]] = {}
        self._reply_tasks: set[asyncio.Task] = set()

    def is_approved(self, session_id: str, type: str) -> bool:
        return type in self._approved.get(session_id, ())

    def list_pending(self, session_id: str | None = None) -> list[PermissionRequest]:
        sessions = (
            [self._pending.get(session_id, {})] if session_id is not None
            else list(self._pending.values())
        )
        requests = [p.request for entries in sessions for p in entries.values()]
        return sorted(requests, key=lambda r: r.id)

    async def ask(
        self,
        *,
        session_id: str,
        type: str,
        pattern: Sequence[str],
        message_id: str,
        call_id: str | None = None,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
        ruleset: Sequence[PermissionRule] = (),
    ) -> None:
        """Return once approved; raise PermissionRejectedError otherwise."""
        patterns = list(pattern) or ["*"]
        metadata = dict(metadata or {})

        if self.is_approved(session_id, type):
            logger.debug("Permission %s pre-approved for session %s", type, session_id)
            return

        if ruleset:
            actions = [evaluate(type, p, ruleset) for p in patterns]
            for p, action in zip(patterns, actions):
                if action is PermissionAction.DENY:
                    logger.info("Permission %s denied by rule for %r", type, p)
                    raise PermissionDeniedError(session_id, type, p, call_id, metadata)
            if all(a is PermissionAction.ALLOW for a in actions):
                logger.debug("Permission %s allowed by rules for %s", type, patterns)
                return

        request = PermissionRequest(
            id=ascending_id("per"),
            type=type,
            pattern=patterns,
            session_id=session_id,
            message_id=message_id,
            call_id=call_id,
            title=title or f"{type}: {', '.join(patterns)}",
            metadata=metadata,
        )
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(session_id, {})[request.id] = _Pending(request, future)
        logger.info(
            "Permission asked: %s %s (session=%s, id=%s)",
            type, patterns, session_id, request.id,
        )
        try:
            await fire_event(self._event_callback, {
                "event": "permission_asked",
                "session_id": session_id,
                "request_id": request.id,
                "permission": type,
                "patterns": patterns,
                "message_id": message_id,
                "call_id": call_id,
                "title": request.title,
                "metadata": metadata,
            })
            await future
        finally:
            self._forget(session_id, request.id)

    def respond(
        self,
        session_id: str,
        request_id: str,
        response: PermissionResponse | str,
    ) -> bool:
        """Settle a pending request. Returns False if it is unknown."""
        response = PermissionResponse(response)
        entry = self._pending.get(session_id, {}).get(request_id)
        if entry is None:
            logger.debug("respond: no pending permission %s", request_id)
            return False
        self._forget(session_id, request_id)
        request = entry.request
        logger.info("Permission %s answered %s", request_id, response.value)
        self._publish_reply(session_id, request_id, response)

        if response is PermissionResponse.REJECT:
            _settle(entry.future, PermissionRejectedError(
                session_id, request.id, request.call_id, request.metadata,
            ))
            return True

        _settle(entry.future)
        if response is PermissionResponse.ALWAYS:
            self._approved.setdefault(session_id, set()).add(request.type)
            for other in list(self._pending.get(session_id, {}).values()):
                if other.request.type == request.type:
                    self.respond(session_id, other.request.id, response)
        return True

    def shutdown(self) -> int:
        """Reject everything still pending. Returns how many were rejected."""
        count = 0
        for session_id, entries in list(self._pending.items()):
            for entry in list(entries.values()):
                request = entry.request
                _settle(entry.future, PermissionRejectedError(
                    session_id, request.id, request.call_id, request.metadata,
                ))
                count += 1
        self._pending.clear()
        if count:
            logger.info("Rejected %d pending permission request(s) on shutdown", count)
        return count

    def clear_session(self, session_id: str) -> None:
        """Forget "always" approvals and reject pending asks for one session."""
        self._approved.pop(session_id, None)
        for entry in list(self._pending.pop(session_id, {}).values()):
            request = entry.request
            _settle(entry.future, PermissionRejectedError(
                session_id, request.id, request.call_id, request.metadata,
            ))

    def _publish_reply(
        self, session_id: str, request_id: str, response: PermissionResponse,
    ) -> None:
        if self._event_callback is None:
            return
        task = asyncio.get_running_loop().create_task(fire_event(self._event_callback, {
            "event": "permission_replied",
            "session_id": session_id,
            "request_id": request_id,
            "response": response.value,
        }))
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    def _forget(self, session_id: str, request_id: str) -> None:
        entries = self._pending.get(session_id)
        if entries is None:
            return
        entries.pop(request_id, None)
        if not entries:
            del self._pending[session_id]


def _settle(future: asyncio.Future, error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is None:
        future.set_result(None)
    else:
        future.set_exception(error)
