"""Adapters package - Bridge between the turn engine and its consumers.

Typed event records and the event bus that carries engine callbacks to
a display surface (the CLI, or any other frontend).
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EngineEvent",
    "dict_to_event",
    "event_to_dict",
]

from quill.adapters.event_bus import EventBus
from quill.adapters.events import EngineEvent, dict_to_event, event_to_dict
