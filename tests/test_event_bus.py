import asyncio

import pytest

from quill.adapters.event_bus import EventBus
from quill.adapters.events import (
    EngineEvent,
    PartUpdated,
    PermissionAsked,
    SessionStatus,
    dict_to_event,
    event_to_dict,
)


def test_dict_to_event_picks_type_and_drops_unknown_fields() -> None:
    event = dict_to_event({
        "event": "part_updated",
        "session_id": "ses_1",
        "message_id": "msg_1",
        "part": {"type": "text"},
        "delta": "hi",
        "unexpected": True,
    })

    assert isinstance(event, PartUpdated)
    assert event.delta == "hi"
    assert not hasattr(event, "unexpected")


def test_unknown_event_falls_back_to_base() -> None:
    event = dict_to_event({"event": "something_new", "session_id": "ses_1"})
    assert type(event) is EngineEvent
    assert event.event_type == "something_new"


def test_event_to_dict_uses_event_key_and_skips_none() -> None:
    data = event_to_dict(PermissionAsked(session_id="ses_1", request_id="per_1", permission="bash"))

    assert data["event"] == "permission_asked"
    assert "event_type" not in data
    assert "call_id" not in data
    assert dict_to_event(data) == PermissionAsked(
        session_id="ses_1", request_id="per_1", permission="bash",
    )


@pytest.mark.asyncio
async def test_consume_drains_queue_after_close() -> None:
    bus = EventBus()
    callback = bus.make_callback()
    await callback({"event": "session_status", "session_id": "ses_1", "status": "busy"})
    await callback({"event": "session_status", "session_id": "ses_1", "status": "idle"})
    bus.close()

    events = [event async for event in bus.consume()]

    assert [e.status for e in events] == ["busy", "idle"]
    assert all(isinstance(e, SessionStatus) for e in events)


@pytest.mark.asyncio
async def test_emit_after_close_is_dropped_and_reset_reopens() -> None:
    bus = EventBus()
    bus.close()
    await bus.emit(SessionStatus(session_id="ses_1"))
    assert [e async for e in bus.consume()] == []

    bus.reset()
    await bus.emit(SessionStatus(session_id="ses_1"))
    bus.close()
    assert len([e async for e in bus.consume()]) == 1


@pytest.mark.asyncio
async def test_full_queue_drops_after_timeout(caplog) -> None:
    bus = EventBus(maxsize=1, put_timeout=0.01)
    await bus.emit(SessionStatus(session_id="a"))
    await asyncio.wait_for(bus.emit(SessionStatus(session_id="b")), 1)

    bus.close()
    events = [e async for e in bus.consume()]
    assert [e.session_id for e in events] == ["a"]
    assert "dropping" in caplog.text
