"""Process transport for the Codex app-server.

Owns zero-or-one live ``codex app-server`` subprocess and multiplexes
concurrent requests, responses, notifications and subprocess-initiated
requests over its stdio pipes. All registries live on the transport
instance; nothing is process-global.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from quill import __version__
from quill.engine.errors import (
    AppServerResponseError,
    ExecutableNotFoundError,
    TransportClosedError,
    TransportError,
    TransportExitedError,
    TransportNotRunningError,
)
from quill.shared.services.process_cleanup import terminate_process_tree

from .framing import LineFramer, MessageKind, classify, encode_message

logger = logging.getLogger(__name__)

_READ_CHUNK_SIZE = 64 * 1024

NotificationHandler = Callable[[dict[str, Any]], None]
RequestHandler = Callable[[dict[str, Any]], Awaitable[bool]]
ExitHandler = Callable[[TransportError], None]
Unsubscribe = Callable[[], None]


def _candidate_paths(name: str) -> list[Path]:
    home = Path.home()
    if os.name == "nt":
        return [
            home / ".local" / "bin" / f"{name}.exe",
            home / "AppData" / "Roaming" / "npm" / f"{name}.cmd",
            home / "AppData" / "Roaming" / "npm" / f"{name}.exe",
            home / "AppData" / "Local" / "pnpm" / f"{name}.cmd",
            home / "scoop" / "shims" / f"{name}.exe",
        ]
    return [
        home / ".local" / "bin" / name,
        Path("/usr/local/bin") / name,
        Path("/usr/bin") / name,
        Path("/opt/homebrew/bin") / name,
        home / ".npm-global" / "bin" / name,
        home / ".local" / "share" / "pnpm" / name,
        home / "Library" / "pnpm" / name,
        home / ".yarn" / "bin" / name,
        home / ".bun" / "bin" / name,
        home / ".volta" / "bin" / name,
        home / ".asdf" / "shims" / name,
    ]


def find_executable(command: str) -> str | None:
    """Locate the backend CLI.

    Order: CODEX_BIN / CODEX_PATH, an explicit path, PATH lookup, then
    well-known package-manager install locations.
    """
    from_env = os.environ.get("CODEX_BIN") or os.environ.get("CODEX_PATH")
    if from_env and os.path.isfile(from_env):
        return from_env

    if os.sep in command or (os.altsep and os.altsep in command):
        path = Path(command).expanduser()
        return str(path) if path.is_file() else None

    found = shutil.which(command)
    if found:
        return found

    for candidate in _candidate_paths(command):
        if candidate.is_file() and os.access(candidate, os.X_OK):
            logger.info("Found %s executable at %s", command, candidate)
            return str(candidate)
    return None


def _subscribe(listeners: list, handler: Any) -> Unsubscribe:
    listeners.append(handler)

    def unsubscribe() -> None:
        if handler in listeners:
            listeners.remove(handler)

    return unsubscribe


def _exit_error(returncode: int | None, reason: str | None = None) -> TransportExitedError:
    if returncode is not None and returncode < 0:
        return TransportExitedError(signal=-returncode, reason=reason)
    return TransportExitedError(returncode=returncode, reason=reason)


@dataclass
class _PendingRequest:
    method: str
    future: asyncio.Future


class AppServerTransport:
    """Lazily spawned, shared ``codex app-server`` connection.

    Requests are correlated purely by id and may complete out of order.
    The transport never retries on its own; see AppServerClient.call.
    """

    def __init__(
        self,
        command: str = "codex",
        args: Sequence[str] | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        codex_home: Path | str | None = None,
        client_info: dict[str, str] | None = None,
        shutdown_grace_seconds: float = 5.0,
        spawner: Callable[..., Awaitable[Any]] | None = None,
    ) -> None:
        self._command = command
        self._args = list(args) if args is not None else ["app-server"]
        self._cwd = cwd
        self._env_overrides = dict(env or {})
        self._codex_home = Path(codex_home).expanduser() if codex_home else None
        self._client_info = client_info or {
            "name": "quill",
            "title": "Quill",
            "version": __version__,
        }
        self._grace = shutdown_grace_seconds
        self._spawner = spawner or asyncio.create_subprocess_exec

        self._process: Any | None = None
        self._ready: asyncio.Future | None = None
        self._next_id = 0
        self._pending: dict[int, _PendingRequest] = {}
        self._notification_handlers: list[NotificationHandler] = []
        self._request_handlers: list[RequestHandler] = []
        self._exit_handlers: list[ExitHandler] = []
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._request_tasks: set[asyncio.Task] = set()
        self._write_lock: asyncio.Lock | None = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Lifecycle ──

    async def ensure(self) -> None:
        """Spawn and handshake if needed; concurrent callers share one start."""
        if self._closed:
            raise TransportClosedError()
        process = self._process
        if process is not None and process.returncode is not None:
            # Exited, but the read loop has not reported it yet.
            self._handle_exit(process, _exit_error(process.returncode))
        ready = self._ready
        if ready is None:
            ready = asyncio.ensure_future(self._start())
            self._ready = ready
        try:
            await asyncio.shield(ready)
        except asyncio.CancelledError:
            raise
        except Exception:
            if self._ready is ready:
                self._ready = None
            raise

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self._env_overrides)
        if self._codex_home is not None:
            self._codex_home.mkdir(parents=True, exist_ok=True)
            env["CODEX_HOME"] = str(self._codex_home)
        return env

    async def _start(self) -> None:
        executable = find_executable(self._command)
        if executable is None:
            raise ExecutableNotFoundError(self._command)

        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "cwd": self._cwd,
            "env": self._build_env(),
        }
        if os.name != "nt":
            kwargs["start_new_session"] = True
        try:
            # create_subprocess_exec passes args as an array, no shell
            process = await self._spawner(executable, *self._args, **kwargs)
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(self._command, str(exc)) from exc
        except OSError as exc:
            raise TransportError(
                f"Failed to start codex app-server: {exc}"
            ) from exc

        self._process = process
        self._reader_task = asyncio.create_task(self._read_loop(process))
        self._stderr_task = asyncio.create_task(self._drain_stderr(process))
        logger.info("Codex app-server started (pid=%s)", process.pid)

        try:
            await self._request_raw("initialize", {"clientInfo": self._client_info})
            await self._write({"method": "initialized"})
        except Exception:
            if self._process is process:
                self._process = None
                self._ready = None
                await terminate_process_tree(process, grace_seconds=self._grace)
                for task in (self._reader_task, self._stderr_task):
                    if task is not None:
                        task.cancel()
            raise
        logger.info("Codex app-server initialized (pid=%s)", process.pid)

    async def shutdown(self) -> None:
        """Reject everything outstanding, then terminate the process tree."""
        self._closed = True
        process = self._process
        if process is not None:
            self._handle_exit(process, TransportClosedError())
            if process.stdin is not None:
                process.stdin.close()
            returncode = await terminate_process_tree(
                process, grace_seconds=self._grace,
            )
            logger.info(
                "Codex app-server stopped (pid=%s, rc=%s)", process.pid, returncode,
            )
        tasks = [
            t for t in (self._reader_task, self._stderr_task, *self._request_tasks)
            if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._request_tasks.clear()

    # ── Public API ──

    async def request(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a request and wait for its correlated response."""
        await self.ensure()
        return await self._request_raw(method, params)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Fire-and-forget message without an id."""
        await self.ensure()
        message: dict[str, Any] = {"method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def respond(self, request_id: int, result: dict[str, Any]) -> None:
        """Answer a request the subprocess sent to us."""
        await self._write({"id": request_id, "result": result})

    def on_notification(self, handler: NotificationHandler) -> Unsubscribe:
        return _subscribe(self._notification_handlers, handler)

    def on_request(self, handler: RequestHandler) -> Unsubscribe:
        """Handlers return True when they answered the request themselves."""
        return _subscribe(self._request_handlers, handler)

    def on_exit(self, handler: ExitHandler) -> Unsubscribe:
        return _subscribe(self._exit_handlers, handler)

    # ── Internals ──

    def _lock(self) -> asyncio.Lock:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    async def _write(self, message: dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None or process.returncode is not None:
            raise TransportNotRunningError()
        data = encode_message(message)
        async with self._lock():
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise TransportNotRunningError() from exc

    async def _request_raw(
        self, method: str, params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        self._next_id += 1
        request_id = self._next_id
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = _PendingRequest(method, future)
        message: dict[str, Any] = {"id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        logger.debug("app-server request id=%d method=%s", request_id, method)
        try:
            await self._write(message)
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _read_loop(self, process: Any) -> None:
        framer = LineFramer()
        reason: str | None = None
        try:
            while True:
                chunk = await process.stdout.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                for message in framer.feed(chunk):
                    self._dispatch(message)
            for message in framer.finish():
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            logger.warning("app-server read loop failed: %s", exc)
            reason = f"read failed: {exc}"
        returncode = await process.wait()
        self._handle_exit(process, _exit_error(returncode, reason))

    async def _drain_stderr(self, process: Any) -> None:
        if process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning("codex app-server stderr: %s", text)

    def _dispatch(self, message: dict[str, Any]) -> None:
        kind = classify(message)
        if kind is MessageKind.RESPONSE:
            self._handle_response(message)
        elif kind is MessageKind.REQUEST:
            task = asyncio.create_task(self._handle_inbound_request(message))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
        elif kind is MessageKind.NOTIFICATION:
            self._handle_notification(message)

    def _handle_response(self, message: dict[str, Any]) -> None:
        pending = self._pending.pop(message["id"], None)
        if pending is None or pending.future.done():
            logger.debug("Ignoring response for unknown id %s", message["id"])
            return
        error = message.get("error")
        if error is not None:
            detail = error if isinstance(error, dict) else {"message": str(error)}
            pending.future.set_exception(AppServerResponseError(
                pending.method,
                str(detail.get("message") or "codex app-server error"),
                code=detail.get("code"),
                data=detail.get("data"),
            ))
            return
        result = message.get("result")
        pending.future.set_result(result if isinstance(result, dict) else {})

    def _handle_notification(self, message: dict[str, Any]) -> None:
        for handler in list(self._notification_handlers):
            try:
                handler(message)
            except Exception:
                logger.exception(
                    "Notification handler failed for %s", message.get("method"),
                )

    async def _handle_inbound_request(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        handlers = list(self._request_handlers)
        results = await asyncio.gather(
            *(handler(message) for handler in handlers),
            return_exceptions=True,
        )
        handled = False
        for result in results:
            if isinstance(result, BaseException):
                logger.error(
                    "Request handler failed for %s", method, exc_info=result,
                )
            elif result:
                handled = True
        if handled:
            return
        logger.info(
            "No handler answered %s (id=%s); replying cancel", method, message["id"],
        )
        try:
            await self.respond(message["id"], {"decision": "cancel"})
        except TransportError as exc:
            logger.debug("Could not auto-cancel %s: %s", method, exc)

    def _handle_exit(self, process: Any, error: TransportError) -> None:
        if self._process is not process:
            return
        self._process = None
        self._ready = None
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(error)
        logger.info(
            "Codex app-server gone (pid=%s): %s; rejected %d pending request(s)",
            process.pid, error, len(pending),
        )
        for handler in list(self._exit_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Exit handler failed")
