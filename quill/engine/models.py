"""Core data models for the turn execution engine.

Conversation parts, tool states, token accounting and permission
records. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import dataclasses
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class PartType(str, Enum):
    """Tag of every persisted conversation part."""
    TEXT = "text"
    REASONING = "reasoning"
    TOOL = "tool"
    STEP_START = "step-start"
    STEP_FINISH = "step-finish"
    SNAPSHOT = "snapshot"
    PATCH = "patch"


class ToolStatus(str, Enum):
    """Tool call lifecycle: pending -> running -> completed | error."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TurnState(str, Enum):
    """Turn lifecycle states. See lifecycle.py for transition rules."""
    AWAITING_THREAD = "awaiting_thread"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class PermissionResponse(str, Enum):
    """Human answer to a permission request."""
    ONCE = "once"
    ALWAYS = "always"
    REJECT = "reject"


class PermissionAction(str, Enum):
    """Outcome of a configured permission rule."""
    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"


class Decision(str, Enum):
    """Approval decision sent back to the app-server."""
    ACCEPT = "accept"
    DECLINE = "decline"
    CANCEL = "cancel"


def now_ms() -> int:
    return int(time.time() * 1000)


_id_lock = threading.Lock()
_last_ts = 0
_counter = 0


def ascending_id(prefix: str) -> str:
    """Return an id that sorts after every id previously issued here.

    Parts are ordered by id, so ids must grow with creation time even
    when several are created within the same millisecond.
    """
    global _last_ts, _counter
    with _id_lock:
        ts = now_ms()
        if ts != _last_ts:
            _last_ts = ts
            _counter = 0
        _counter += 1
        value = ts * 0x1000 + _counter
    return f"{prefix}_{value:014x}{os.urandom(5).hex()}"


# ── Tool states ──


@dataclass
class ToolStatePending:
    input: dict[str, Any] = field(default_factory=dict)
    raw: str = ""
    status: str = field(default=ToolStatus.PENDING.value, init=False)


@dataclass
class ToolStateRunning:
    input: dict[str, Any] = field(default_factory=dict)
    start: int = field(default_factory=now_ms)
    title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = field(default=ToolStatus.RUNNING.value, init=False)


@dataclass
class ToolStateCompleted:
    input: dict[str, Any] = field(default_factory=dict)
    output: str = ""
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    start: int = 0
    end: int = field(default_factory=now_ms)
    status: str = field(default=ToolStatus.COMPLETED.value, init=False)


@dataclass
class ToolStateError:
    input: dict[str, Any] = field(default_factory=dict)
    error: str = ""
    metadata: dict[str, Any] | None = None
    start: int = 0
    end: int = field(default_factory=now_ms)
    status: str = field(default=ToolStatus.ERROR.value, init=False)


ToolState = Union[
    ToolStatePending, ToolStateRunning, ToolStateCompleted, ToolStateError,
]

TOOL_STATES: dict[ToolStatus, type] = {
    ToolStatus.PENDING: ToolStatePending,
    ToolStatus.RUNNING: ToolStateRunning,
    ToolStatus.COMPLETED: ToolStateCompleted,
    ToolStatus.ERROR: ToolStateError,
}


def tool_state_from_dict(data: dict[str, Any]) -> ToolState:
    payload = dict(data)
    try:
        status = ToolStatus(payload.pop("status"))
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown tool state: {data.get('status')!r}") from exc
    return TOOL_STATES[status](**payload)


# ── Parts ──


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    def add(self, other: TokenUsage) -> None:
        self.input += other.input
        self.output += other.output
        self.reasoning += other.reasoning
        self.cache_read += other.cache_read
        self.cache_write += other.cache_write

    @property
    def total(self) -> int:
        return (
            self.input + self.output + self.reasoning
            + self.cache_read + self.cache_write
        )


@dataclass
class TextPart:
    id: str
    session_id: str
    message_id: str
    text: str = ""
    start: int | None = None
    end: int | None = None
    synthetic: bool = False
    metadata: dict[str, Any] | None = None
    type: str = field(default=PartType.TEXT.value, init=False)


@dataclass
class ReasoningPart:
    id: str
    session_id: str
    message_id: str
    text: str = ""
    start: int = field(default_factory=now_ms)
    end: int | None = None
    metadata: dict[str, Any] | None = None
    type: str = field(default=PartType.REASONING.value, init=False)


@dataclass
class ToolPart:
    id: str
    session_id: str
    message_id: str
    call_id: str = ""
    tool: str = ""
    state: ToolState = field(default_factory=ToolStatePending)
    metadata: dict[str, Any] | None = None
    type: str = field(default=PartType.TOOL.value, init=False)

    @property
    def status(self) -> ToolStatus:
        return ToolStatus(self.state.status)


@dataclass
class StepStartPart:
    id: str
    session_id: str
    message_id: str
    snapshot: str | None = None
    type: str = field(default=PartType.STEP_START.value, init=False)


@dataclass
class StepFinishPart:
    id: str
    session_id: str
    message_id: str
    reason: str = ""
    cost: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    snapshot: str | None = None
    type: str = field(default=PartType.STEP_FINISH.value, init=False)


@dataclass
class SnapshotPart:
    id: str
    session_id: str
    message_id: str
    snapshot: str = ""
    type: str = field(default=PartType.SNAPSHOT.value, init=False)


@dataclass
class PatchPart:
    id: str
    session_id: str
    message_id: str
    hash: str = ""
    files: list[str] = field(default_factory=list)
    type: str = field(default=PartType.PATCH.value, init=False)


Part = Union[
    TextPart, ReasoningPart, ToolPart, StepStartPart, StepFinishPart,
    SnapshotPart, PatchPart,
]

PART_TYPES: dict[PartType, type] = {
    PartType.TEXT: TextPart,
    PartType.REASONING: ReasoningPart,
    PartType.TOOL: ToolPart,
    PartType.STEP_START: StepStartPart,
    PartType.STEP_FINISH: StepFinishPart,
    PartType.SNAPSHOT: SnapshotPart,
    PartType.PATCH: PatchPart,
}


def assert_exhaustive(table: dict, enum_cls: type[Enum], name: str) -> None:
    """Fail loudly when a dispatch table misses a member of *enum_cls*."""
    missing = [m.value for m in enum_cls if m not in table]
    if missing:
        raise RuntimeError(f"{name} has no entry for: {', '.join(missing)}")


assert_exhaustive(PART_TYPES, PartType, "PART_TYPES")
assert_exhaustive(TOOL_STATES, ToolStatus, "TOOL_STATES")


def part_to_dict(part: Part) -> dict[str, Any]:
    return dataclasses.asdict(part)


def part_from_dict(data: dict[str, Any]) -> Part:
    """Rebuild a part from its stored dict form."""
    payload = dict(data)
    try:
        part_type = PartType(payload.pop("type"))
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown part type: {data.get('type')!r}") from exc
    if part_type is PartType.TOOL and isinstance(payload.get("state"), dict):
        payload["state"] = tool_state_from_dict(payload["state"])
    if part_type is PartType.STEP_FINISH and isinstance(payload.get("tokens"), dict):
        payload["tokens"] = TokenUsage(**payload["tokens"])
    return PART_TYPES[part_type](**payload)


# ── Permissions ──


@dataclass
class PermissionRequest:
    """A pending human approval."""
    id: str
    type: str
    pattern: list[str]
    session_id: str
    message_id: str
    call_id: str | None = None
    title: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    created: int = field(default_factory=now_ms)


@dataclass
class PermissionRule:
    """One configured rule: permission + wildcard pattern -> action."""
    permission: str
    pattern: str
    action: PermissionAction


# ── Turns ──


@dataclass
class TurnInput:
    """Everything needed to run one turn for a session."""
    session_id: str
    message_id: str
    prompt: str
    model: str
    agent_prompt: str | None = None
    system: str | None = None
    images: list[str] = field(default_factory=list)
    effort: str | None = None
    permission_rules: list[PermissionRule] = field(default_factory=list)


@dataclass
class TurnResult:
    finish: str
    cost: float
    tokens: TokenUsage
