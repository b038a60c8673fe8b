"""Composition root: one app-server, one part store, one negotiator.

Shutdown order matters: unflushed parts are written first, then
pending approvals are rejected, then outstanding requests are rejected
and the subprocess tree is terminated.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from quill.shared.services.storage import Storage
from quill.shared.services.thread_store import ThreadStore

from .app_server.client import AppServerClient
from .app_server.transport import AppServerTransport
from .config import EngineConfig
from .models import PermissionResponse, TurnInput, TurnResult
from .part_store import PartStore
from .permission import PermissionNegotiator
from .turn_processor import TurnProcessor

logger = logging.getLogger(__name__)


class EngineHost:
    """Owns every long-lived engine component for one process."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        transport: AppServerTransport | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.config.validate()
        self.storage = Storage(self.config.storage_dir)
        self.threads = ThreadStore(self.storage)
        self.parts = PartStore(
            self.storage,
            flush_delay=self.config.part_flush_delay_seconds,
            max_entries=self.config.part_cache_size,
        )
        self.permissions = PermissionNegotiator(self.config.event_callback)
        self.transport = transport or AppServerTransport(
            self.config.codex_command,
            self.config.codex_args,
            cwd=self.config.cwd,
            codex_home=self.config.resolved_codex_home,
            client_info={
                "name": self.config.client_name,
                "title": self.config.client_title,
                "version": self.config.client_version,
            },
            shutdown_grace_seconds=self.config.shutdown_grace_seconds,
        )
        self.client = AppServerClient(self.transport)
        self.processor = TurnProcessor(
            self.client,
            self.parts,
            self.permissions,
            self.threads,
            self.config,
            self.config.event_callback,
        )
        self._shutdown_lock = asyncio.Lock()
        self._closed = False

    async def __aenter__(self) -> EngineHost:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    async def run_turn(self, turn: TurnInput, abort: asyncio.Event | None = None) -> TurnResult:
        return await self.processor.process(turn, abort)

    def respond_permission(
        self, session_id: str, request_id: str, response: PermissionResponse | str,
    ) -> bool:
        return self.permissions.respond(session_id, request_id, response)

    async def list_models(self) -> list[dict[str, Any]]:
        return await self.client.model_list()

    async def shutdown(self) -> None:
        if self._shutdown_lock.locked():
            logger.info("Shutdown already in progress, skipping concurrent call")
            return
        async with self._shutdown_lock:
            if self._closed:
                return
            self._closed = True
            failures = self.parts.flush_all()
            rejected = self.permissions.shutdown()
            self.client.close()
            await self.transport.shutdown()
            logger.info(
                "Engine shutdown complete (flush failures=%d, rejected permissions=%d)",
                failures, rejected,
            )
