"""Typed wrapper over the app-server transport.

Adds the single process-exit retry and the thread, turn, model and
account calls the engine uses.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from quill.engine.errors import ProtocolError, TransportError, is_process_exit

from .transport import (
    AppServerTransport,
    ExitHandler,
    NotificationHandler,
    RequestHandler,
    Unsubscribe,
)

logger = logging.getLogger(__name__)

LOGIN_COMPLETED = "account/login/completed"


@dataclass
class LoginResult:
    success: bool
    error: str | None = None


class AppServerClient:
    """Request helpers bound to one AppServerTransport."""

    def __init__(
        self,
        transport: AppServerTransport,
        *,
        login_poll_initial: float = 0.5,
        login_poll_max: float = 2.0,
    ) -> None:
        self._transport = transport
        self._login_poll_initial = login_poll_initial
        self._login_poll_max = login_poll_max
        self._login_waiters: dict[str, asyncio.Future] = {}
        self._unsubscribe = transport.on_notification(self._on_notification)

    @property
    def transport(self) -> AppServerTransport:
        return self._transport

    async def call(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Request with exactly one retry when the subprocess went away."""
        try:
            return await self._transport.request(method, params)
        except TransportError as exc:
            if not is_process_exit(exc):
                raise
            logger.warning("%s failed (%s); restarting app-server and retrying", method, exc)
            return await self._transport.request(method, params)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._transport.notify(method, params)

    async def respond(self, request_id: int, result: dict[str, Any]) -> None:
        await self._transport.respond(request_id, result)

    def on_notification(self, handler: NotificationHandler) -> Unsubscribe:
        return self._transport.on_notification(handler)

    def on_request(self, handler: RequestHandler) -> Unsubscribe:
        return self._transport.on_request(handler)

    def on_exit(self, handler: ExitHandler) -> Unsubscribe:
        return self._transport.on_exit(handler)

    def close(self) -> None:
        self._unsubscribe()
        for future in self._login_waiters.values():
            if not future.done():
                future.cancel()
        self._login_waiters.clear()

    # ── Threads and turns ──

    async def thread_start(self, params: dict[str, Any]) -> str:
        result = await self.call("thread/start", params)
        return _thread_id(result, "thread/start")

    async def thread_resume(self, thread_id: str) -> str:
        result = await self.call("thread/resume", {"threadId": thread_id})
        return _thread_id(result, "thread/resume")

    async def turn_start(self, params: dict[str, Any]) -> dict[str, Any]:
        return await self.call("turn/start", params)

    async def turn_interrupt(self, thread_id: str, turn_id: str) -> None:
        # No retry: a restarted app-server has no such turn.
        await self._transport.request("turn/interrupt", {"threadId": thread_id, "turnId": turn_id})

    # ── Models ──

    async def model_list(self) -> list[dict[str, Any]]:
        """All models, following ``nextCursor`` until exhausted."""
        models: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {"cursor": cursor} if cursor else {}
            result = await self.call("model/list", params)
            models.extend(m for m in result.get("data", []) if isinstance(m, dict))
            cursor = result.get("nextCursor")
            if not cursor:
                return models

    # ── Account ──

    async def account_read(self) -> dict[str, Any]:
        return await self.call("account/read", {"refreshToken": False})

    async def has_account(self) -> bool:
        result = await self.account_read()
        return bool(result.get("account"))

    async def login_api_key(self, api_key: str) -> dict[str, Any]:
        return await self.call("account/login/start", {"type": "apiKey", "apiKey": api_key})

    async def login_chatgpt(self) -> dict[str, Any]:
        """Start a browser login; the result carries ``loginId`` and ``authUrl``."""
        return await self.call("account/login/start", {"type": "chatgpt"})

    async def cancel_login(self, login_id: str) -> None:
        await self.call("account/login/cancel", {"loginId": login_id})
        future = self._login_waiters.pop(login_id, None)
        if future is not None and not future.done():
            future.set_result(LoginResult(False, "cancelled"))

    async def logout(self) -> None:
        await self.call("account/logout")

    async def wait_for_login(self, login_id: str, timeout: float | None = None) -> LoginResult:
        """Block until *login_id* completes.

        Resolved by the completion notification or, failing that, by
        polling ``account/read`` with a backoff.
        """
        loop = asyncio.get_running_loop()
        future = self._login_waiters.get(login_id)
        if future is None:
            future = loop.create_future()
            self._login_waiters[login_id] = future
        poller = asyncio.create_task(self._poll_login(future))
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        finally:
            poller.cancel()
            if self._login_waiters.get(login_id) is future:
                del self._login_waiters[login_id]

    async def _poll_login(self, future: asyncio.Future) -> None:
        delay = self._login_poll_initial
        while not future.done():
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._login_poll_max)
            try:
                present = await self.has_account()
            except TransportError as exc:
                logger.debug("Login poll failed: %s", exc)
                continue
            if present and not future.done():
                future.set_result(LoginResult(True))

    def _on_notification(self, message: dict[str, Any]) -> None:
        if message.get("method") != LOGIN_COMPLETED:
            return
        params = message.get("params") or {}
        login_id = params.get("loginId")
        future = self._login_waiters.get(login_id) if login_id else None
        if future is None:
            # Notifications without a login id settle every waiter.
            if login_id:
                return
            waiters = list(self._login_waiters.values())
        else:
            waiters = [future]
        result = LoginResult(bool(params.get("success")), params.get("error"))
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(result)


def _thread_id(result: dict[str, Any], method: str) -> str:
    thread = result.get("thread")
    thread_id = thread.get("id") if isinstance(thread, dict) else None
    if not isinstance(thread_id, str) or not thread_id:
        raise ProtocolError(f"{method} returned no thread id")
    return thread_id
