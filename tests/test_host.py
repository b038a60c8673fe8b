import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from quill.engine.config import EngineConfig
from quill.engine.errors import ConfigError, PermissionRejectedError
from quill.engine.host import EngineHost
from quill.engine.models import TextPart


@pytest.fixture
def transport():
    mock = MagicMock()
    mock.shutdown = AsyncMock()
    mock.request = AsyncMock()
    return mock


@pytest.fixture
def host(tmp_path, transport):
    config = EngineConfig(data_dir=str(tmp_path), cwd=str(tmp_path), part_flush_delay_seconds=10)
    return EngineHost(config, transport=transport)


def test_invalid_config_is_rejected(tmp_path) -> None:
    with pytest.raises(ConfigError):
        EngineHost(EngineConfig(data_dir=str(tmp_path), part_cache_size=0), transport=MagicMock())


@pytest.mark.asyncio
async def test_shutdown_flushes_rejects_and_stops_transport(host, transport, tmp_path) -> None:
    host.parts.update_part(TextPart(id="prt_1", session_id="ses_1", message_id="msg_1", text="hi"))
    ask = asyncio.create_task(host.permissions.ask(
        session_id="ses_1", type="bash", pattern=["ls"], message_id="msg_1",
    ))
    await asyncio.sleep(0)

    await host.shutdown()

    assert host.storage.read(["message", "ses_1", "msg_1"])["parts"][0]["text"] == "hi"
    with pytest.raises(PermissionRejectedError):
        await ask
    transport.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(host, transport) -> None:
    async with host:
        pass
    await host.shutdown()
    await asyncio.gather(host.shutdown(), host.shutdown())

    transport.shutdown.assert_awaited_once()


@pytest.mark.asyncio
async def test_respond_permission_routes_to_negotiator(host) -> None:
    ask = asyncio.create_task(host.permissions.ask(
        session_id="ses_1", type="edit", pattern=["a.py"], message_id="msg_1",
    ))
    await asyncio.sleep(0)
    [request] = host.permissions.list_pending()

    assert host.respond_permission("ses_1", request.id, "once") is True
    await ask
    assert host.respond_permission("ses_1", request.id, "once") is False


@pytest.mark.asyncio
async def test_list_models_paginates_through_client(host, transport) -> None:
    transport.request.side_effect = [
        {"data": [{"id": "a"}], "nextCursor": "c1"},
        {"data": [{"id": "b"}], "nextCursor": None},
    ]

    models = await host.list_models()

    assert [m["id"] for m in models] == ["a", "b"]
