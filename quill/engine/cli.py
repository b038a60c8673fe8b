"""CLI entry point for running a single turn.

Usage:
    quill-turn "Fix the failing test in tests/test_api.py"
    quill-turn --session ses_123 --model gpt-5.2-codex "Now add a docstring"
    quill-turn --config quill.yaml --cwd ~/src/project "Explain main.py"
    quill-turn --list-models
    quill-turn --login [--api-key KEY]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from rich.console import Console
from rich.prompt import Prompt

from quill.adapters.event_bus import EventBus
from quill.adapters.events import PartUpdated, PermissionAsked, TurnFinished

from .config import EngineConfig
from .errors import QuillError
from .host import EngineHost
from .models import PermissionResponse, TurnInput, TurnResult, ascending_id
from .yaml_config import load_yaml_config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="quill-turn",
        description="Run one coding-agent turn through the Codex app-server",
    )
    parser.add_argument("prompt", nargs="?", default=None, help="Prompt text")
    parser.add_argument(
        "--session", "-s",
        default=None,
        help="Session id to continue (default: a new session)",
    )
    parser.add_argument("--model", default=None, help="Model id (default: from config)")
    parser.add_argument("--effort", default=None, help="Reasoning effort")
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        help="Image URL or file: URL to attach (repeatable)",
    )
    parser.add_argument("--cwd", default=None, help="Project root (default: current dir)")
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument("--list-models", action="store_true", help="List available models")
    parser.add_argument("--login", action="store_true", help="Log in to the backend")
    parser.add_argument("--api-key", default=None, help="API key for --login")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)
    console = Console()

    try:
        config = load_yaml_config(args.config) if args.config else EngineConfig.from_env()
    except QuillError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(2)
    if args.cwd is not None:
        config.cwd = args.cwd

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper())
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        if args.list_models:
            asyncio.run(_list_models(config, console))
        elif args.login:
            asyncio.run(_login(config, console, args.api_key))
        else:
            if not args.prompt:
                parser.error("a prompt is required")
            result = asyncio.run(_run_turn(config, args, console))
            console.print()
            console.print(
                f"[dim]finish={result.finish} tokens={result.tokens.total} "
                f"cost=${result.cost:.4f}[/dim]"
            )
    except QuillError as exc:
        console.print(f"\n[red]Error:[/red] {exc}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\nInterrupted.")
        sys.exit(130)


async def _list_models(config: EngineConfig, console: Console) -> None:
    async with EngineHost(config) as host:
        for model in await host.list_models():
            console.print(f"{model.get('id', '?')}  [dim]{model.get('displayName', '')}[/dim]")


async def _login(config: EngineConfig, console: Console, api_key: str | None) -> None:
    async with EngineHost(config) as host:
        if api_key:
            await host.client.login_api_key(api_key)
            console.print("Logged in with API key.")
            return
        started = await host.client.login_chatgpt()
        console.print(f"Open this URL to log in:\n{started.get('authUrl', '')}")
        result = await host.client.wait_for_login(str(started.get("loginId", "")))
        if result.success:
            console.print("[green]Logged in.[/green]")
        else:
            console.print(f"[red]Login failed:[/red] {result.error or 'unknown error'}")


async def _run_turn(config: EngineConfig, args: argparse.Namespace, console: Console) -> TurnResult:
    bus = EventBus()
    config.event_callback = bus.make_callback()
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
    except (NotImplementedError, RuntimeError):
        pass  # Windows: KeyboardInterrupt ends the run instead

    turn = TurnInput(
        session_id=args.session or ascending_id("ses"),
        message_id=ascending_id("msg"),
        prompt=args.prompt,
        model=args.model or config.default_model,
        images=list(args.image),
        effort=args.effort,
    )
    console.print(f"[dim]session {turn.session_id}[/dim]")

    async with EngineHost(config) as host:
        renderer = asyncio.create_task(_render(bus, host, console))
        try:
            return await host.run_turn(turn, abort)
        finally:
            bus.close()
            await renderer


async def _render(bus: EventBus, host: EngineHost, console: Console) -> None:
    async for event in bus.consume():
        if isinstance(event, PartUpdated):
            _render_part(event, console)
        elif isinstance(event, PermissionAsked):
            answer = await asyncio.to_thread(
                Prompt.ask,
                f"\n[yellow]Allow {event.permission}[/yellow] {', '.join(event.patterns)}?",
                choices=[r.value for r in PermissionResponse],
                default=PermissionResponse.ONCE.value,
                console=console,
            )
            host.respond_permission(event.session_id or "", event.request_id, answer)
        elif isinstance(event, TurnFinished) and event.error:
            console.print(f"\n[red]{event.error}[/red]")


def _render_part(event: PartUpdated, console: Console) -> None:
    part = event.part
    if part.get("type") == "text" and event.delta:
        console.print(event.delta, end="", markup=False, highlight=False, soft_wrap=True)
    elif part.get("type") == "tool":
        state = part.get("state") or {}
        status = state.get("status")
        if status == "completed":
            console.print(f"\n[bold]{part.get('tool')}[/bold] {state.get('title', '')} [green]done[/green]")
        elif status == "error":
            console.print(f"\n[bold]{part.get('tool')}[/bold] [red]{state.get('error', '')}[/red]")


if __name__ == "__main__":
    main()
