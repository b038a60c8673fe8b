import asyncio
import logging
import os
from unittest.mock import AsyncMock, patch

import pytest

from fakes import FakeSpawner
from quill.engine.app_server.transport import AppServerTransport, find_executable
from quill.engine.errors import (
    AppServerResponseError,
    ExecutableNotFoundError,
    TransportClosedError,
    TransportExitedError,
    TransportNotRunningError,
)


@pytest.fixture
def codex_on_path():
    with patch(
        "quill.engine.app_server.transport.find_executable",
        return_value="/usr/bin/codex",
    ):
        yield


@pytest.fixture
def spawner():
    return FakeSpawner()


async def _started(transport: AppServerTransport, spawner: FakeSpawner, count: int = 1):
    ensure = asyncio.create_task(transport.ensure())
    process = await spawner.spawned(count)
    await process.handshake()
    await ensure
    return process


@pytest.mark.asyncio
async def test_concurrent_ensure_shares_one_handshake(codex_on_path, spawner, tmp_path) -> None:
    transport = AppServerTransport(spawner=spawner, codex_home=tmp_path / "codex")

    callers = [asyncio.create_task(transport.ensure()) for _ in range(3)]
    process = await spawner.spawned()
    init = await process.next_message()
    assert init["params"]["clientInfo"]["name"] == "quill"
    assert not any(c.done() for c in callers)

    process.send({"id": init["id"], "result": {}})
    await asyncio.gather(*callers)

    assert len(spawner.processes) == 1
    assert await process.next_message() == {"method": "initialized"}
    args, kwargs = spawner.calls[0]
    assert args == ("/usr/bin/codex", "app-server")
    assert kwargs["env"]["CODEX_HOME"] == str(tmp_path / "codex")
    assert (tmp_path / "codex").is_dir()
    if os.name != "nt":
        assert kwargs["start_new_session"] is True
    assert transport.is_running


@pytest.mark.asyncio
async def test_responses_resolve_out_of_order(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)

    first = asyncio.create_task(transport.request("model/list", {}))
    second = asyncio.create_task(transport.request("account/read", {"refreshToken": False}))
    req_a = await process.next_message()
    req_b = await process.next_message()
    assert req_b["id"] > req_a["id"]

    process.send({"id": req_b["id"], "result": {"account": None}})
    process.send({"id": req_a["id"], "result": {"data": []}})

    assert await first == {"data": []}
    assert await second == {"account": None}
    assert transport.pending_count == 0


@pytest.mark.asyncio
async def test_error_response_rejects_only_that_request(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)

    failing = asyncio.create_task(transport.request("thread/start", {}))
    request = await process.next_message()
    process.send({"id": request["id"], "error": {"code": -32600, "message": "bad params"}})

    with pytest.raises(AppServerResponseError) as excinfo:
        await failing
    assert excinfo.value.method == "thread/start"
    assert excinfo.value.code == -32600
    assert str(excinfo.value) == "bad params"
    assert transport.is_running


@pytest.mark.asyncio
async def test_exit_rejects_every_pending_request_with_same_error(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)
    exits: list[Exception] = []
    transport.on_exit(exits.append)

    pending = [asyncio.create_task(transport.request("model/list", {})) for _ in range(3)]
    for _ in pending:
        await process.next_message()

    process.exit(1)
    results = await asyncio.gather(*pending, return_exceptions=True)

    assert all(isinstance(r, TransportExitedError) for r in results)
    assert results[0] is results[1] is results[2]
    assert "code 1" in str(results[0])
    assert results[0].returncode == 1
    assert exits == [results[0]]
    assert transport.pending_count == 0
    assert not transport.is_running


@pytest.mark.asyncio
async def test_next_ensure_after_exit_spawns_fresh_process(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    first = await _started(transport, spawner)
    first.exit(0)
    for _ in range(50):
        if transport.pid is None:
            break
        await asyncio.sleep(0.005)

    second = await _started(transport, spawner, count=2)
    assert second is not first
    assert transport.pid == second.pid


@pytest.mark.asyncio
async def test_signal_exit_reports_signal(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)
    call = asyncio.create_task(transport.request("model/list", {}))
    await process.next_message()

    process.exit(-9)
    with pytest.raises(TransportExitedError) as excinfo:
        await call
    assert excinfo.value.signal == 9
    assert "signal 9" in str(excinfo.value)


@pytest.mark.asyncio
async def test_unhandled_inbound_request_is_auto_cancelled(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)

    async def not_mine(message):
        return False

    transport.on_request(not_mine)
    process.send({
        "id": 77,
        "method": "item/commandExecution/requestApproval",
        "params": {"itemId": "cmd-1"},
    })

    assert await process.next_message() == {"id": 77, "result": {"decision": "cancel"}}


@pytest.mark.asyncio
async def test_handled_inbound_request_is_not_auto_cancelled(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)

    async def approve(message):
        await transport.respond(message["id"], {"decision": "accept"})
        return True

    async def broken(message):
        raise RuntimeError("boom")

    transport.on_request(broken)
    transport.on_request(approve)
    process.send({"id": 5, "method": "item/fileChange/requestApproval", "params": {}})

    assert await process.next_message() == {"id": 5, "result": {"decision": "accept"}}
    with pytest.raises(asyncio.TimeoutError):
        await process.next_message(timeout=0.05)


@pytest.mark.asyncio
async def test_notifications_fan_out_and_survive_bad_handlers(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)
    seen_a: list[str] = []
    seen_b: list[str] = []

    def explode(message):
        raise ValueError("listener bug")

    transport.on_notification(explode)
    unsubscribe_a = transport.on_notification(lambda m: seen_a.append(m["method"]))
    transport.on_notification(lambda m: seen_b.append(m["method"]))

    process.send({"method": "turn/started", "params": {}})
    process.send_raw(b"this is not json\n")
    process.send({"method": "turn/completed", "params": {}})
    await asyncio.sleep(0.02)
    unsubscribe_a()
    process.send({"method": "error", "params": {}})
    await asyncio.sleep(0.02)

    assert seen_a == ["turn/started", "turn/completed"]
    assert seen_b == ["turn/started", "turn/completed", "error"]


@pytest.mark.asyncio
async def test_missing_executable_fails_the_caller_only(spawner) -> None:
    transport = AppServerTransport("definitely-not-codex", spawner=spawner)
    with patch("quill.engine.app_server.transport.find_executable", return_value=None):
        with pytest.raises(ExecutableNotFoundError):
            await transport.ensure()
    assert spawner.processes == []

    with patch("quill.engine.app_server.transport.find_executable", return_value="/bin/codex"):
        await _started(transport, spawner)
    assert transport.is_running


@pytest.mark.asyncio
async def test_spawn_oserror_becomes_executable_not_found(codex_on_path) -> None:
    async def failing_spawner(*args, **kwargs):
        raise FileNotFoundError(2, "No such file", args[0])

    transport = AppServerTransport(spawner=failing_spawner)
    with pytest.raises(ExecutableNotFoundError):
        await transport.ensure()


@pytest.mark.asyncio
async def test_failed_handshake_terminates_process(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    terminate = AsyncMock(return_value=0)
    with patch("quill.engine.app_server.transport.terminate_process_tree", terminate):
        ensure = asyncio.create_task(transport.ensure())
        process = await spawner.spawned()
        init = await process.next_message()
        process.send({"id": init["id"], "error": {"message": "unsupported client"}})
        with pytest.raises(AppServerResponseError):
            await ensure

    terminate.assert_awaited_once()
    assert terminate.await_args.args[0] is process
    assert transport.pid is None


@pytest.mark.asyncio
async def test_respond_without_process_raises(spawner) -> None:
    transport = AppServerTransport(spawner=spawner)
    with pytest.raises(TransportNotRunningError):
        await transport.respond(1, {"decision": "cancel"})


@pytest.mark.asyncio
async def test_shutdown_rejects_pending_and_terminates_tree(codex_on_path, spawner) -> None:
    transport = AppServerTransport(spawner=spawner, shutdown_grace_seconds=0.5)
    process = await _started(transport, spawner)
    exits: list[Exception] = []
    transport.on_exit(exits.append)
    call = asyncio.create_task(transport.request("model/list", {}))
    await process.next_message()

    terminate = AsyncMock(return_value=0)
    with patch("quill.engine.app_server.transport.terminate_process_tree", terminate):
        await transport.shutdown()

    with pytest.raises(TransportClosedError):
        await call
    assert len(exits) == 1 and isinstance(exits[0], TransportClosedError)
    terminate.assert_awaited_once_with(process, grace_seconds=0.5)
    assert process.stdin.closed
    with pytest.raises(TransportClosedError):
        await transport.ensure()


@pytest.mark.asyncio
async def test_stderr_lines_are_logged(codex_on_path, spawner, caplog) -> None:
    transport = AppServerTransport(spawner=spawner)
    process = await _started(transport, spawner)
    with caplog.at_level(logging.WARNING, logger="quill.engine.app_server.transport"):
        process.stderr.feed_data(b"warning: config file missing\n")
        await asyncio.sleep(0.02)
    assert "config file missing" in caplog.text


def test_find_executable_prefers_env_override(tmp_path, monkeypatch) -> None:
    binary = tmp_path / "codex-custom"
    binary.write_text("#!/bin/sh\n")
    monkeypatch.setenv("CODEX_BIN", str(binary))
    assert find_executable("codex") == str(binary)


def test_find_executable_uses_path_lookup(monkeypatch) -> None:
    monkeypatch.delenv("CODEX_BIN", raising=False)
    monkeypatch.delenv("CODEX_PATH", raising=False)
    with patch("quill.engine.app_server.transport.shutil.which", return_value="/opt/bin/codex"):
        assert find_executable("codex") == "/opt/bin/codex"


def test_find_executable_returns_none_when_absent(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("CODEX_BIN", raising=False)
    monkeypatch.delenv("CODEX_PATH", raising=False)
    with patch("quill.engine.app_server.transport.shutil.which", return_value=None), \
            patch("quill.engine.app_server.transport._candidate_paths", return_value=[tmp_path / "codex"]):
        assert find_executable("codex") is None
