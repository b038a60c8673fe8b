import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from quill.engine.app_server.client import AppServerClient, LoginResult
from quill.engine.errors import (
    AppServerResponseError,
    ProtocolError,
    TransportExitedError,
)


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.request = AsyncMock()
    mock.notification_handlers = []

    def subscribe(handler):
        mock.notification_handlers.append(handler)
        return lambda: mock.notification_handlers.remove(handler)

    mock.on_notification.side_effect = subscribe
    return mock


def _notify(transport, method, params):
    for handler in list(transport.notification_handlers):
        handler({"method": method, "params": params})


@pytest.mark.asyncio
async def test_call_retries_once_after_process_exit(transport) -> None:
    transport.request.side_effect = [TransportExitedError(returncode=1), {"ok": True}]
    client = AppServerClient(transport)

    assert await client.call("model/list", {}) == {"ok": True}
    assert transport.request.await_count == 2


@pytest.mark.asyncio
async def test_call_surfaces_second_exit(transport) -> None:
    transport.request.side_effect = [
        TransportExitedError(returncode=1),
        TransportExitedError(returncode=2),
    ]
    client = AppServerClient(transport)

    with pytest.raises(TransportExitedError, match="code 2"):
        await client.call("model/list", {})
    assert transport.request.await_count == 2


@pytest.mark.asyncio
async def test_call_does_not_retry_response_errors(transport) -> None:
    transport.request.side_effect = AppServerResponseError("thread/start", "nope")
    client = AppServerClient(transport)

    with pytest.raises(AppServerResponseError):
        await client.call("thread/start", {})
    assert transport.request.await_count == 1


@pytest.mark.asyncio
async def test_turn_interrupt_is_never_retried(transport) -> None:
    transport.request.side_effect = TransportExitedError(returncode=1)
    client = AppServerClient(transport)

    with pytest.raises(TransportExitedError):
        await client.turn_interrupt("thr_1", "turn_1")
    transport.request.assert_awaited_once_with(
        "turn/interrupt", {"threadId": "thr_1", "turnId": "turn_1"},
    )


@pytest.mark.asyncio
async def test_model_list_follows_cursor(transport) -> None:
    transport.request.side_effect = [
        {"data": [{"id": "gpt-5.2-codex"}], "nextCursor": "page-2"},
        {"data": [{"id": "gpt-5.1-mini"}, "junk"], "nextCursor": None},
    ]
    client = AppServerClient(transport)

    models = await client.model_list()

    assert [m["id"] for m in models] == ["gpt-5.2-codex", "gpt-5.1-mini"]
    assert transport.request.await_args_list[0].args == ("model/list", {})
    assert transport.request.await_args_list[1].args == ("model/list", {"cursor": "page-2"})


@pytest.mark.asyncio
async def test_thread_start_requires_thread_id(transport) -> None:
    transport.request.side_effect = [{"thread": {"id": "thr_9"}}, {"thread": {}}]
    client = AppServerClient(transport)

    assert await client.thread_start({"model": "m"}) == "thr_9"
    with pytest.raises(ProtocolError):
        await client.thread_start({"model": "m"})


@pytest.mark.asyncio
async def test_account_read_does_not_refresh_token(transport) -> None:
    transport.request.return_value = {"account": {"type": "chatgpt"}}
    client = AppServerClient(transport)

    assert await client.has_account() is True
    transport.request.assert_awaited_once_with("account/read", {"refreshToken": False})


@pytest.mark.asyncio
async def test_wait_for_login_resolved_by_notification(transport) -> None:
    transport.request.return_value = {"account": None}
    client = AppServerClient(transport, login_poll_initial=10.0)

    waiter = asyncio.create_task(client.wait_for_login("login-1"))
    await asyncio.sleep(0)
    _notify(transport, "account/login/completed", {"loginId": "other", "success": True})
    await asyncio.sleep(0)
    assert not waiter.done()

    _notify(transport, "account/login/completed", {"loginId": "login-1", "success": False, "error": "denied"})
    assert await waiter == LoginResult(False, "denied")


@pytest.mark.asyncio
async def test_wait_for_login_falls_back_to_polling(transport) -> None:
    transport.request.side_effect = [{"account": None}, {"account": {"type": "apiKey"}}]
    client = AppServerClient(transport, login_poll_initial=0.01, login_poll_max=0.02)

    result = await asyncio.wait_for(client.wait_for_login("login-2"), 1.0)

    assert result == LoginResult(True)
    assert transport.request.await_count == 2


@pytest.mark.asyncio
async def test_close_unsubscribes(transport) -> None:
    client = AppServerClient(transport)
    assert len(transport.notification_handlers) == 1
    client.close()
    assert transport.notification_handlers == []
