"""Event types emitted by the turn engine.

Each event corresponds to an engine callback dict, parsed into a typed
dataclass for safe consumption by a display surface.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the turn engine."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionStatus(EngineEvent):
    event_type: str = "session_status"
    status: str = "idle"  # busy | idle


@dataclass
class TurnStarted(EngineEvent):
    event_type: str = "turn_started"
    thread_id: str = ""
    turn_id: str | None = None


@dataclass
class TurnFinished(EngineEvent):
    event_type: str = "turn_finished"
    thread_id: str = ""
    turn_id: str | None = None
    finish: str = ""
    error: str | None = None
    cost: float = 0.0
    tokens: dict[str, int] = field(default_factory=dict)


@dataclass
class PartUpdated(EngineEvent):
    """A part changed; ``delta`` is set for streamed text appends."""
    event_type: str = "part_updated"
    message_id: str = ""
    part: dict[str, Any] = field(default_factory=dict)
    delta: str | None = None


@dataclass
class PermissionAsked(EngineEvent):
    event_type: str = "permission_asked"
    request_id: str = ""
    permission: str = ""
    patterns: list[str] = field(default_factory=list)
    message_id: str = ""
    call_id: str | None = None
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionReplied(EngineEvent):
    event_type: str = "permission_replied"
    request_id: str = ""
    response: str = ""


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "session_status": SessionStatus,
    "turn_started": TurnStarted,
    "turn_finished": TurnFinished,
    "part_updated": PartUpdated,
    "permission_asked": PermissionAsked,
    "permission_replied": PermissionReplied,
}


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Convert a typed event dataclass to a plain dict for JSON serialization."""
    d: dict[str, Any] = {}
    for f in event.__dataclass_fields__:
        val = getattr(event, f)
        if val is not None:
            d[f] = val
    # Engine callbacks use "event" rather than "event_type"
    if "event_type" in d:
        d["event"] = d.pop("event_type")
    return d


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
