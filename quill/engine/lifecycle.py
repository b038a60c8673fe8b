"""Turn lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    AWAITING_THREAD ──> STREAMING ──┬──> COMPLETED
           │                        │
           │                        ├──> FAILED
           │                        │
           │                        └──> INTERRUPTED
           │
           └──> FAILED  (thread could not be resolved)
"""
from __future__ import annotations

from .models import TurnState

VALID_TRANSITIONS: dict[TurnState, set[TurnState]] = {
    TurnState.AWAITING_THREAD: {
        TurnState.STREAMING,
        TurnState.FAILED,
        TurnState.INTERRUPTED,
    },
    TurnState.STREAMING: {
        TurnState.COMPLETED,
        TurnState.FAILED,
        TurnState.INTERRUPTED,
    },
    TurnState.COMPLETED: set(),
    TurnState.FAILED: set(),
    TurnState.INTERRUPTED: set(),
}


def validate_transition(current: TurnState, target: TurnState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in allowed) or "none (terminal)"
        raise ValueError(
            f"Invalid turn transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
