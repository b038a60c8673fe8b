"""Per-turn state machine over the Codex app-server event stream.

A turn resolves (or creates) the backend thread for its session, starts
a backend turn, then translates the granular notification stream into
conversation parts until a terminal signal arrives. Approval requests
from the subprocess are brokered through the PermissionNegotiator and
always answered exactly once.

Notifications, approval lookups and exit signals for one turn are
serialised through a single queue, so an approval is always matched
against parts created by earlier ``item/started`` notifications.
Approvals themselves run in their own tasks and never block the queue.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

from quill.shared.services.thread_store import ThreadStore

from .app_server.client import AppServerClient
from .config import EngineConfig, EventCallback, ModelCost, fire_event
from .errors import (
    AuthRequiredError,
    PermissionRejectedError,
    QuillError,
    StorageError,
    TransportError,
    TurnFailedError,
    is_instructions_rejected,
)
from .file_changes import aggregate_diff, relative_pattern, summarize_changes
from .lifecycle import validate_transition
from .models import (
    Decision,
    Part,
    PermissionRule,
    ReasoningPart,
    StepFinishPart,
    StepStartPart,
    TextPart,
    TokenUsage,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    ToolStateRunning,
    TurnInput,
    TurnResult,
    TurnState,
    ascending_id,
    assert_exhaustive,
    now_ms,
    part_to_dict,
)
from .part_store import PartStore
from .permission import PermissionNegotiator

logger = logging.getLogger(__name__)

AUTH_REQUIRED_MESSAGE = "Codex login required. Connect with ChatGPT or an API key."


class ItemType(str, Enum):
    """Backend item kinds the processor understands."""
    AGENT_MESSAGE = "agentMessage"
    REASONING = "reasoning"
    COMMAND_EXECUTION = "commandExecution"
    FILE_CHANGE = "fileChange"
    MCP_TOOL_CALL = "mcpToolCall"
    USER_MESSAGE = "userMessage"


class Notification(str, Enum):
    TURN_STARTED = "turn/started"
    TURN_COMPLETED = "turn/completed"
    ERROR = "error"
    ITEM_STARTED = "item/started"
    ITEM_COMPLETED = "item/completed"
    AGENT_MESSAGE_DELTA = "item/agentMessage/delta"
    REASONING_SUMMARY_DELTA = "item/reasoning/summaryTextDelta"
    REASONING_TEXT_DELTA = "item/reasoning/textDelta"
    COMMAND_OUTPUT_DELTA = "item/commandExecution/outputDelta"
    FILE_OUTPUT_DELTA = "item/fileChange/outputDelta"
    TOKEN_USAGE_UPDATED = "thread/tokenUsage/updated"


class ApprovalMethod(str, Enum):
    COMMAND = "item/commandExecution/requestApproval"
    FILE_CHANGE = "item/fileChange/requestApproval"


_FINISH_REASONS = {
    TurnState.COMPLETED: "end_turn",
    TurnState.INTERRUPTED: "interrupted",
    TurnState.FAILED: "error",
}

_BACKEND_STATUS = {
    "completed": TurnState.COMPLETED,
    "interrupted": TurnState.INTERRUPTED,
    "failed": TurnState.FAILED,
}


@dataclass
class TurnContext:
    """Mutable state of one in-flight turn. Discarded when the turn ends."""
    session_id: str
    message_id: str
    cwd: str
    permissions: list[PermissionRule]
    thread_id: str = ""
    turn_id: str | None = None
    state: TurnState = TurnState.AWAITING_THREAD
    # Terminal outcome reported by the backend (or by process exit)
    outcome: TurnState | None = None
    error: str | None = None
    error_info: str | None = None
    text_parts: dict[str, TextPart] = field(default_factory=dict)
    reasoning_parts: dict[str, ReasoningPart] = field(default_factory=dict)
    tool_parts: dict[str, ToolPart] = field(default_factory=dict)
    command_output: dict[str, str] = field(default_factory=dict)
    file_output: dict[str, str] = field(default_factory=dict)
    tokens: TokenUsage = field(default_factory=TokenUsage)
    step_start_id: str | None = None
    # Set when developer instructions were sent, so a rejection is retried
    has_instructions: bool = False
    abort_requested: bool = False
    interrupt_sent: bool = False
    tasks: set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task


# ── Payload helpers ──


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _joined(value: Any) -> str:
    if not isinstance(value, list):
        return ""
    return "\n".join(v for v in value if isinstance(v, str) and v)


def _reasoning_text(item: dict[str, Any]) -> str:
    return _joined(item.get("summary")) or _joined(item.get("content"))


def error_info_tag(value: Any) -> str | None:
    """``codexErrorInfo`` is either a bare string or a one-key object."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and value:
        return str(next(iter(value)))
    return None


def build_instructions(turn: TurnInput, cwd: str) -> str:
    environment = "\n".join([
        "<env>",
        f"  Working directory: {cwd}",
        f"  Platform: {sys.platform}",
        f"  Today's date: {date.today().isoformat()}",
        "</env>",
    ])
    pieces = [turn.agent_prompt, environment, turn.system]
    return "\n".join(p for p in pieces if p)


def image_input(image: str) -> dict[str, str]:
    if image.startswith("file:"):
        return {"type": "localImage", "path": url2pathname(urlparse(image).path)}
    return {"type": "image", "url": image}


def turn_cost(tokens: TokenUsage, price: ModelCost | None) -> float:
    if price is None:
        return 0.0
    total = (
        tokens.input * price.input
        + (tokens.output + tokens.reasoning) * price.output
        + tokens.cache_read * price.cache_read
        + tokens.cache_write * price.cache_write
    )
    return total / 1_000_000


def _mcp_output(item: dict[str, Any]) -> str:
    result = item.get("result")
    if isinstance(result, str):
        return result
    content = _dict(result).get("content")
    if isinstance(content, list):
        texts = [
            c["text"] for c in content
            if isinstance(c, dict) and isinstance(c.get("text"), str)
        ]
        if texts:
            return "\n".join(texts)
    return json.dumps(result) if result is not None else ""


class TurnProcessor:
    """Runs turns against a shared AppServerClient."""

    def __init__(
        self,
        client: AppServerClient,
        store: PartStore,
        permissions: PermissionNegotiator,
        threads: ThreadStore,
        config: EngineConfig,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._client = client
        self._store = store
        self._permissions = permissions
        self._threads = threads
        self._config = config
        self._event_callback = event_callback
        self._cwd = str(Path(config.cwd).expanduser().resolve())

    async def process(
        self,
        turn: TurnInput,
        abort: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run one turn to its terminal state.

        Raises TurnFailedError / AuthRequiredError for failed turns and
        TransportError subclasses when the subprocess is unusable.
        """
        abort = abort or asyncio.Event()
        logger.info(
            "Turn starting (session=%s, message=%s, model=%s)",
            turn.session_id, turn.message_id, turn.model,
        )
        await self._emit({"event": "session_status", "session_id": turn.session_id, "status": "busy"})
        try:
            instructions = build_instructions(turn, self._cwd)
            try:
                return await self._run(turn, abort, instructions)
            except QuillError as exc:
                if not is_instructions_rejected(exc):
                    raise
                logger.warning(
                    "Developer instructions rejected for session %s; retrying without them",
                    turn.session_id,
                )
                self._clear_thread(turn.session_id)
                return await self._run(turn, abort, "")
        finally:
            await self._emit({"event": "session_status", "session_id": turn.session_id, "status": "idle"})

    # ── Turn lifecycle ──

    async def _run(self, turn: TurnInput, abort: asyncio.Event, instructions: str) -> TurnResult:
        ctx = TurnContext(
            session_id=turn.session_id,
            message_id=turn.message_id,
            cwd=self._cwd,
            permissions=list(turn.permission_rules or self._config.permission_rules),
        )
        ctx.has_instructions = bool(instructions)
        ctx.thread_id = await self._ensure_thread(turn, instructions)

        queue: asyncio.Queue = asyncio.Queue()
        done = asyncio.Event()
        unsubscribers = [
            self._client.on_notification(lambda message: self._enqueue_notification(ctx, queue, message)),
            self._client.on_request(lambda message: self._enqueue_request(ctx, queue, message)),
            self._client.on_exit(lambda error: queue.put_nowait(("exit", error, None))),
        ]
        pump = asyncio.create_task(self._pump(ctx, queue, done))
        watcher = asyncio.create_task(self._watch_abort(ctx, abort))
        try:
            if abort.is_set():
                logger.info("Turn aborted before start (session=%s)", ctx.session_id)
                ctx.abort_requested = True
                ctx.outcome = TurnState.INTERRUPTED
                return await self._finish(ctx, turn)

            await self._ensure_account()
            self._advance(ctx, TurnState.STREAMING)
            step_start = StepStartPart(
                id=ascending_id("prt"),
                session_id=ctx.session_id,
                message_id=ctx.message_id,
            )
            ctx.step_start_id = step_start.id
            await self._update_part(ctx, step_start)
            response = await self._client.turn_start(self._turn_params(ctx, turn))
            await self._set_turn_id(ctx, _str(_dict(response.get("turn")).get("id")))
            await done.wait()
            return await self._finish(ctx, turn)
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            await self._cleanup(ctx, queue, pump, watcher)

    async def _finish(self, ctx: TurnContext, turn: TurnInput) -> TurnResult:
        outcome = ctx.outcome or TurnState.COMPLETED
        if outcome is TurnState.COMPLETED and ctx.abort_requested:
            outcome = TurnState.INTERRUPTED
        self._advance(ctx, outcome)

        if (
            ctx.has_instructions
            and outcome is TurnState.FAILED
            and is_instructions_rejected(ctx.error or "")
        ):
            # Retried by process(); this attempt leaves no step markers
            if ctx.step_start_id:
                self._store.remove_part(ctx.session_id, ctx.message_id, ctx.step_start_id)
            raise TurnFailedError(ctx.error or "", ctx.error_info)

        finish = _FINISH_REASONS[outcome]
        cost = turn_cost(ctx.tokens, self._config.model_costs.get(turn.model))
        await self._update_part(ctx, StepFinishPart(
            id=ascending_id("prt"),
            session_id=ctx.session_id,
            message_id=ctx.message_id,
            reason=finish,
            cost=cost,
            tokens=ctx.tokens,
        ))
        await self._emit({
            "event": "turn_finished",
            "session_id": ctx.session_id,
            "thread_id": ctx.thread_id,
            "turn_id": ctx.turn_id,
            "finish": finish,
            "error": ctx.error if outcome is TurnState.FAILED else None,
            "cost": cost,
            "tokens": {
                "input": ctx.tokens.input,
                "output": ctx.tokens.output,
                "reasoning": ctx.tokens.reasoning,
                "cache_read": ctx.tokens.cache_read,
                "cache_write": ctx.tokens.cache_write,
            },
        })
        logger.info(
            "Turn %s finished: %s (session=%s, tokens=%d)",
            ctx.turn_id, outcome.value, ctx.session_id, ctx.tokens.total,
        )

        if outcome is TurnState.FAILED:
            message = ctx.error or "Codex turn failed"
            if (ctx.error_info or "").lower() == "unauthorized":
                raise AuthRequiredError(message)
            raise TurnFailedError(message, ctx.error_info)
        return TurnResult(finish=finish, cost=cost, tokens=ctx.tokens)

    async def _cleanup(
        self,
        ctx: TurnContext,
        queue: asyncio.Queue,
        pump: asyncio.Task,
        watcher: asyncio.Task,
    ) -> None:
        pump.cancel()
        watcher.cancel()
        await asyncio.gather(pump, watcher, return_exceptions=True)
        # Requests nobody looked at fall back to the transport's cancel reply
        while not queue.empty():
            _, _, future = queue.get_nowait()
            if future is not None and not future.done():
                future.set_result(False)
        tasks = list(ctx.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._store.flush(ctx.session_id, ctx.message_id)

    def _advance(self, ctx: TurnContext, target: TurnState) -> None:
        validate_transition(ctx.state, target)
        logger.debug("Turn %s: %s -> %s", ctx.turn_id, ctx.state.value, target.value)
        ctx.state = target

    async def _ensure_thread(self, turn: TurnInput, instructions: str) -> str:
        existing = self._threads.get(turn.session_id)
        if existing:
            try:
                return await self._client.thread_resume(existing)
            except TransportError as exc:
                logger.warning(
                    "Could not resume thread %s (%s); starting a new one", existing, exc,
                )

        params: dict[str, Any] = {
            "model": turn.model,
            "cwd": self._cwd,
            "approvalPolicy": self._config.approval_policy,
        }
        if instructions:
            params["developerInstructions"] = instructions
        thread_id = await self._client.thread_start(params)
        try:
            self._threads.set(turn.session_id, thread_id)
        except StorageError:
            logger.error("Failed to persist thread for session %s", turn.session_id, exc_info=True)
        return thread_id

    def _clear_thread(self, session_id: str) -> None:
        try:
            self._threads.clear(session_id)
        except StorageError:
            logger.error("Failed to clear thread for session %s", session_id, exc_info=True)

    async def _ensure_account(self) -> None:
        try:
            response = await self._client.account_read()
        except TransportError as exc:
            logger.debug("account/read failed: %s", exc)
            return
        if response.get("requiresOpenaiAuth") is True and not isinstance(response.get("account"), dict):
            raise AuthRequiredError(AUTH_REQUIRED_MESSAGE)

    def _turn_params(self, ctx: TurnContext, turn: TurnInput) -> dict[str, Any]:
        inputs: list[dict[str, Any]] = [{"type": "text", "text": turn.prompt}]
        inputs.extend(image_input(image) for image in turn.images if image)
        params: dict[str, Any] = {
            "threadId": ctx.thread_id,
            "input": inputs,
            "cwd": self._cwd,
            "approvalPolicy": self._config.approval_policy,
            "sandboxPolicy": {
                "type": "externalSandbox",
                "networkAccess": "enabled" if self._config.network_access else "restricted",
            },
            "model": turn.model,
        }
        if turn.effort:
            params["effort"] = turn.effort
        return params

    # ── Abort ──

    async def _watch_abort(self, ctx: TurnContext, abort: asyncio.Event) -> None:
        await abort.wait()
        ctx.abort_requested = True
        logger.info("Abort requested (session=%s, turn=%s)", ctx.session_id, ctx.turn_id)
        await self._interrupt(ctx)

    async def _set_turn_id(self, ctx: TurnContext, turn_id: str | None) -> None:
        if not turn_id or ctx.turn_id:
            return
        ctx.turn_id = turn_id
        await self._emit({
            "event": "turn_started",
            "session_id": ctx.session_id,
            "thread_id": ctx.thread_id,
            "turn_id": turn_id,
        })
        if ctx.abort_requested:
            ctx.spawn(self._interrupt(ctx))

    async def _interrupt(self, ctx: TurnContext) -> None:
        """Send ``turn/interrupt`` at most once per turn."""
        if ctx.interrupt_sent or not ctx.turn_id:
            return
        ctx.interrupt_sent = True
        try:
            await self._client.turn_interrupt(ctx.thread_id, ctx.turn_id)
        except TransportError as exc:
            logger.warning("turn/interrupt failed for %s: %s", ctx.turn_id, exc)

    # ── Inbound stream ──

    def _enqueue_notification(
        self, ctx: TurnContext, queue: asyncio.Queue, message: dict[str, Any],
    ) -> None:
        params = message.get("params")
        if not isinstance(params, dict):
            return
        thread_id = _str(params.get("threadId"))
        if thread_id and thread_id != ctx.thread_id:
            return
        queue.put_nowait(("notification", message, None))

    async def _enqueue_request(
        self, ctx: TurnContext, queue: asyncio.Queue, message: dict[str, Any],
    ) -> bool:
        if message.get("method") not in {m.value for m in ApprovalMethod}:
            return False
        params = message.get("params")
        if not isinstance(params, dict):
            return False
        thread_id = _str(params.get("threadId"))
        if thread_id and thread_id != ctx.thread_id:
            return False
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.put_nowait(("request", message, future))
        return await future

    async def _pump(self, ctx: TurnContext, queue: asyncio.Queue, done: asyncio.Event) -> None:
        while True:
            kind, payload, future = await queue.get()
            try:
                if kind == "notification":
                    await self._handle_notification(ctx, payload, done)
                elif kind == "request":
                    future.set_result(self._handle_approval(ctx, payload))
                elif kind == "exit":
                    self._handle_exit(ctx, payload, done)
            except Exception:
                logger.exception("Turn %s: failed to handle %s", ctx.turn_id, kind)
                if future is not None and not future.done():
                    future.set_result(False)

    def _handle_exit(self, ctx: TurnContext, error: BaseException, done: asyncio.Event) -> None:
        if ctx.outcome is None:
            if ctx.abort_requested:
                ctx.outcome = TurnState.INTERRUPTED
            else:
                ctx.outcome = TurnState.FAILED
                ctx.error = str(error)
        done.set()

    async def _handle_notification(
        self, ctx: TurnContext, message: dict[str, Any], done: asyncio.Event,
    ) -> None:
        try:
            method = Notification(message.get("method"))
        except ValueError:
            logger.debug("Ignoring notification %s", message.get("method"))
            return
        await _NOTIFICATION_HANDLERS[method](self, ctx, message["params"], done)

    # ── Notification handlers ──

    async def _on_turn_started(self, ctx, params, done) -> None:
        await self._set_turn_id(ctx, _str(_dict(params.get("turn")).get("id")))

    async def _on_turn_completed(self, ctx, params, done) -> None:
        turn = _dict(params.get("turn"))
        await self._set_turn_id(ctx, _str(turn.get("id")))
        status = (_str(turn.get("status")) or "completed").lower()
        if ctx.outcome is None:
            ctx.outcome = _BACKEND_STATUS.get(status, TurnState.COMPLETED)
        self._capture_error(ctx, turn.get("error"))
        done.set()

    async def _on_error(self, ctx, params, done) -> None:
        self._capture_error(ctx, params.get("error"))
        if params.get("willRetry") is False:
            if ctx.outcome is None:
                ctx.outcome = TurnState.FAILED
            done.set()
        else:
            logger.warning("Backend error (will retry): %s", ctx.error)

    def _capture_error(self, ctx: TurnContext, error: Any) -> None:
        error = _dict(error)
        message = _str(error.get("message"))
        if message:
            ctx.error = message
        info = error_info_tag(error.get("codexErrorInfo"))
        if info:
            ctx.error_info = info

    async def _on_item_started(self, ctx, params, done) -> None:
        item = params.get("item")
        handler = self._item_handler(item, _ITEM_STARTED)
        if handler is not None:
            await handler(self, ctx, item)

    async def _on_item_completed(self, ctx, params, done) -> None:
        item = params.get("item")
        handler = self._item_handler(item, _ITEM_COMPLETED)
        if handler is not None:
            await handler(self, ctx, item)

    def _item_handler(self, item: Any, table: dict) -> Any:
        if not isinstance(item, dict) or not _str(item.get("id")):
            return None
        try:
            return table[ItemType(item.get("type"))]
        except ValueError:
            logger.debug("Ignoring item type %r", item.get("type"))
            return None

    async def _on_text_delta(self, ctx, params, done) -> None:
        item_id, delta = _str(params.get("itemId")), _str(params.get("delta"))
        part = ctx.text_parts.get(item_id) if item_id else None
        if part is None or not delta:
            return
        part.text += delta
        await self._update_part(ctx, part, delta=delta)

    async def _on_reasoning_delta(self, ctx, params, done) -> None:
        item_id, delta = _str(params.get("itemId")), _str(params.get("delta"))
        part = ctx.reasoning_parts.get(item_id) if item_id else None
        if part is None or not delta:
            return
        part.text += delta
        await self._update_part(ctx, part, delta=delta)

    async def _on_command_output(self, ctx, params, done) -> None:
        await self._buffer_output(ctx, ctx.command_output, params)

    async def _on_file_output(self, ctx, params, done) -> None:
        await self._buffer_output(ctx, ctx.file_output, params)

    async def _buffer_output(self, ctx: TurnContext, buffers: dict[str, str], params: dict) -> None:
        item_id, delta = _str(params.get("itemId")), _str(params.get("delta"))
        if not item_id or not delta:
            return
        buffers[item_id] = buffers.get(item_id, "") + delta
        part = ctx.tool_parts.get(item_id)
        if part is not None and isinstance(part.state, ToolStateRunning):
            part.state.metadata["output"] = buffers[item_id]
            await self._update_part(ctx, part, delta=delta)

    async def _on_token_usage(self, ctx, params, done) -> None:
        last = _dict(_dict(params.get("tokenUsage")).get("last"))
        if not last:
            return
        ctx.tokens.add(TokenUsage(
            input=int(last.get("inputTokens") or 0),
            output=int(last.get("outputTokens") or 0),
            reasoning=int(last.get("reasoningOutputTokens") or 0),
            cache_read=int(last.get("cachedInputTokens") or 0),
        ))

    # ── Item handlers ──

    async def _start_text(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        part = TextPart(
            id=ascending_id("prt"),
            session_id=ctx.session_id,
            message_id=ctx.message_id,
            text=_str(item.get("text")) or "",
            start=now_ms(),
        )
        ctx.text_parts[item["id"]] = part
        await self._update_part(ctx, part)

    async def _complete_text(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        part = ctx.text_parts.get(item["id"])
        if part is None:
            return
        text = _str(item.get("text"))
        if text is not None:
            part.text = text
        part.start = part.start or now_ms()
        part.end = now_ms()
        await self._update_part(ctx, part)

    async def _start_reasoning(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        part = ReasoningPart(
            id=ascending_id("prt"),
            session_id=ctx.session_id,
            message_id=ctx.message_id,
            text=_reasoning_text(item),
        )
        ctx.reasoning_parts[item["id"]] = part
        await self._update_part(ctx, part)

    async def _complete_reasoning(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        part = ctx.reasoning_parts.get(item["id"])
        if part is None:
            return
        text = _reasoning_text(item)
        if text:
            part.text = text
        part.end = now_ms()
        await self._update_part(ctx, part)

    async def _start_tool(
        self, ctx: TurnContext, item: dict[str, Any], tool: str,
        input: dict[str, Any], metadata: dict[str, Any],
    ) -> None:
        part = ToolPart(
            id=ascending_id("prt"),
            session_id=ctx.session_id,
            message_id=ctx.message_id,
            call_id=item["id"],
            tool=tool,
            state=ToolStateRunning(input=input, metadata=metadata),
        )
        ctx.tool_parts[item["id"]] = part
        await self._update_part(ctx, part)

    async def _finish_tool(
        self, ctx: TurnContext, item: dict[str, Any], label: str,
        *, output: str, title: str, metadata: dict[str, Any],
        error: str | None = None,
    ) -> None:
        part = ctx.tool_parts.get(item["id"])
        if part is None:
            return
        start = part.state.start if isinstance(part.state, ToolStateRunning) else now_ms()
        status = _str(item.get("status"))
        if status and status.lower() != "completed":
            part.state = ToolStateError(
                input=part.state.input,
                error=error or f"{label} {status}",
                start=start,
            )
        else:
            part.state = ToolStateCompleted(
                input=part.state.input,
                output=output,
                title=title,
                metadata=metadata,
                start=start,
            )
        await self._update_part(ctx, part)

    async def _start_command(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        command = _str(item.get("command")) or ""
        await self._start_tool(
            ctx, item, "bash",
            {"command": command, "description": command},
            {"item": item},
        )

    async def _complete_command(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        command = _str(item.get("command")) or ""
        output = _str(item.get("aggregatedOutput"))
        if output is None:
            output = ctx.command_output.get(item["id"], "")
        await self._finish_tool(
            ctx, item, "Command",
            output=output,
            title=command or "command",
            metadata={
                "command": command,
                "cwd": _str(item.get("cwd")) or "",
                "exitCode": item.get("exitCode"),
            },
        )

    async def _start_file_change(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        summaries = summarize_changes(item.get("changes"))
        await self._start_tool(
            ctx, item, "patch",
            {"files": [s.file for s in summaries]},
            {
                "changes": [s.to_dict() for s in summaries],
                "diff": aggregate_diff(summaries),
                "item": item,
            },
        )

    async def _complete_file_change(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        summaries = summarize_changes(item.get("changes"))
        diff = aggregate_diff(summaries)
        await self._finish_tool(
            ctx, item, "File change",
            output=diff,
            title=f"{len(summaries)} files",
            metadata={
                "changes": [s.to_dict() for s in summaries],
                "diff": diff,
                "output": ctx.file_output.get(item["id"]),
            },
        )

    async def _start_mcp_call(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        server = _str(item.get("server")) or "mcp"
        tool = _str(item.get("tool")) or "tool"
        await self._start_tool(
            ctx, item, f"mcp:{server}/{tool}",
            _dict(item.get("arguments")),
            {"item": item},
        )

    async def _complete_mcp_call(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        tool = _str(item.get("tool")) or "tool"
        await self._finish_tool(
            ctx, item, "Tool call",
            output=_mcp_output(item),
            title=tool,
            metadata={"server": _str(item.get("server")) or ""},
            error=_str(_dict(item.get("error")).get("message")),
        )

    async def _ignore_item(self, ctx: TurnContext, item: dict[str, Any]) -> None:
        return None

    # ── Approvals ──

    def _handle_approval(self, ctx: TurnContext, message: dict[str, Any]) -> bool:
        """Claim an approval request. Returns False to leave it to others."""
        params = message["params"]
        item_id = _str(params.get("itemId"))
        if not item_id:
            return False
        part = ctx.tool_parts.get(item_id)
        if part is None:
            if params.get("threadId") != ctx.thread_id:
                return False
            logger.warning("Approval for unknown item %s; cancelling", item_id)
            ctx.spawn(self._respond(message["id"], Decision.CANCEL))
            return True

        metadata = part.state.metadata if isinstance(part.state, ToolStateRunning) else {}
        if message["method"] == ApprovalMethod.COMMAND.value:
            item = _dict(metadata.get("item"))
            command = _str(item.get("command")) or ""
            permission = "bash"
            patterns = [command] if command else ["*"]
            details = {
                "command": command,
                "cwd": _str(item.get("cwd")) or "",
                "reason": params.get("reason"),
            }
        else:
            changes = metadata.get("changes") or []
            paths = [relative_pattern(c["file"], ctx.cwd) for c in changes if isinstance(c, dict)]
            permission = "edit"
            patterns = paths or ["*"]
            details = {"diff": metadata.get("diff", "")}

        ctx.spawn(self._resolve_approval(
            ctx, message["id"], permission, patterns, details, item_id,
        ))
        return True

    async def _resolve_approval(
        self,
        ctx: TurnContext,
        request_id: int,
        permission: str,
        patterns: list[str],
        metadata: dict[str, Any],
        call_id: str,
    ) -> None:
        decision = Decision.CANCEL
        try:
            await self._permissions.ask(
                session_id=ctx.session_id,
                type=permission,
                pattern=patterns,
                message_id=ctx.message_id,
                call_id=call_id,
                metadata=metadata,
                ruleset=ctx.permissions,
            )
            decision = Decision.ACCEPT
        except PermissionRejectedError:
            decision = Decision.DECLINE
        except QuillError as exc:
            logger.warning("Permission %s for %s failed: %s", permission, call_id, exc)
        finally:
            await self._respond(request_id, decision)

    async def _respond(self, request_id: int, decision: Decision) -> None:
        try:
            await self._client.respond(request_id, {"decision": decision.value})
        except TransportError as exc:
            logger.warning("Could not answer approval %s: %s", request_id, exc)

    # ── Output ──

    async def _update_part(self, ctx: TurnContext, part: Part, delta: str | None = None) -> None:
        self._store.update_part(part)
        await self._emit({
            "event": "part_updated",
            "session_id": ctx.session_id,
            "message_id": ctx.message_id,
            "part": part_to_dict(part),
            "delta": delta,
        })

    async def _emit(self, event: dict[str, Any]) -> None:
        await fire_event(self._event_callback, event)


_NOTIFICATION_HANDLERS = {
    Notification.TURN_STARTED: TurnProcessor._on_turn_started,
    Notification.TURN_COMPLETED: TurnProcessor._on_turn_completed,
    Notification.ERROR: TurnProcessor._on_error,
    Notification.ITEM_STARTED: TurnProcessor._on_item_started,
    Notification.ITEM_COMPLETED: TurnProcessor._on_item_completed,
    Notification.AGENT_MESSAGE_DELTA: TurnProcessor._on_text_delta,
    Notification.REASONING_SUMMARY_DELTA: TurnProcessor._on_reasoning_delta,
    Notification.REASONING_TEXT_DELTA: TurnProcessor._on_reasoning_delta,
    Notification.COMMAND_OUTPUT_DELTA: TurnProcessor._on_command_output,
    Notification.FILE_OUTPUT_DELTA: TurnProcessor._on_file_output,
    Notification.TOKEN_USAGE_UPDATED: TurnProcessor._on_token_usage,
}

_ITEM_STARTED = {
    ItemType.AGENT_MESSAGE: TurnProcessor._start_text,
    ItemType.REASONING: TurnProcessor._start_reasoning,
    ItemType.COMMAND_EXECUTION: TurnProcessor._start_command,
    ItemType.FILE_CHANGE: TurnProcessor._start_file_change,
    ItemType.MCP_TOOL_CALL: TurnProcessor._start_mcp_call,
    ItemType.USER_MESSAGE: TurnProcessor._ignore_item,
}

_ITEM_COMPLETED = {
    ItemType.AGENT_MESSAGE: TurnProcessor._complete_text,
    ItemType.REASONING: TurnProcessor._complete_reasoning,
    ItemType.COMMAND_EXECUTION: TurnProcessor._complete_command,
    ItemType.FILE_CHANGE: TurnProcessor._complete_file_change,
    ItemType.MCP_TOOL_CALL: TurnProcessor._complete_mcp_call,
    ItemType.USER_MESSAGE: TurnProcessor._ignore_item,
}

assert_exhaustive(_NOTIFICATION_HANDLERS, Notification, "_NOTIFICATION_HANDLERS")
assert_exhaustive(_ITEM_STARTED, ItemType, "_ITEM_STARTED")
assert_exhaustive(_ITEM_COMPLETED, ItemType, "_ITEM_COMPLETED")
