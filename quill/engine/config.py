"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via QUILL_* env vars or a
YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .models import PermissionRule

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set; callback errors are logged only."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.exception("Event callback failed for %s", event.get("event"))


@dataclass
class ModelCost:
    """USD per million tokens."""
    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0


def _default_data_dir() -> str:
    return str(Path.home() / ".quill")


@dataclass
class EngineConfig:
    """Turn engine configuration."""

    # Backend subprocess
    codex_command: str = "codex"
    codex_args: list[str] = field(default_factory=lambda: ["app-server"])
    codex_home: str | None = None  # defaults to <data_dir>/codex
    client_name: str = "quill"
    client_title: str = "Quill"
    client_version: str = "0.1.0"

    # Project / storage
    data_dir: str = field(default_factory=_default_data_dir)
    cwd: str = "."

    # Turn defaults
    default_model: str = "gpt-5.2-codex"
    approval_policy: str = "on-request"
    network_access: bool = True

    # Part store
    part_flush_delay_seconds: float = 0.1
    part_cache_size: int = 500

    # Seconds between SIGTERM and SIGKILL on shutdown.
    shutdown_grace_seconds: float = 5.0

    # Permission rules evaluated before asking the user.
    permission_rules: list[PermissionRule] = field(default_factory=list)

    # Per-model pricing, keyed by model id.
    model_costs: dict[str, ModelCost] = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"

    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def resolved_codex_home(self) -> Path:
        if self.codex_home:
            return Path(self.codex_home).expanduser()
        return Path(self.data_dir).expanduser() / "codex"

    @property
    def storage_dir(self) -> Path:
        return Path(self.data_dir).expanduser() / "storage"

    def validate(self) -> None:
        if self.part_flush_delay_seconds < 0:
            raise ConfigError(
                "part_flush_delay_seconds", "must be >= 0",
            )
        if self.part_cache_size < 1:
            raise ConfigError("part_cache_size", "must be >= 1")
        if self.shutdown_grace_seconds < 0:
            raise ConfigError("shutdown_grace_seconds", "must be >= 0")
        if not self.codex_command:
            raise ConfigError("codex_command", "must not be empty")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError("log_level", f"unknown level {self.log_level!r}")

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from QUILL_* environment variables."""
        quill_vars = {
            k: v for k, v in os.environ.items() if k.startswith("QUILL_")
        }
        if quill_vars:
            logger.info(
                "EngineConfig.from_env: QUILL_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(quill_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no QUILL_* env vars set, using defaults")

        try:
            config = cls(
                codex_command=os.getenv(
                    "QUILL_CODEX_COMMAND", cls.codex_command
                ),
                codex_home=os.getenv("QUILL_CODEX_HOME") or None,
                data_dir=os.getenv("QUILL_DATA_DIR") or _default_data_dir(),
                cwd=os.getenv("QUILL_CWD", cls.cwd),
                default_model=os.getenv(
                    "QUILL_DEFAULT_MODEL", cls.default_model
                ),
                approval_policy=os.getenv(
                    "QUILL_APPROVAL_POLICY", cls.approval_policy
                ),
                network_access=(
                    os.getenv("QUILL_NETWORK_ACCESS", "true").lower()
                    in {"1", "true", "yes"}
                ),
                part_flush_delay_seconds=float(os.getenv(
                    "QUILL_PART_FLUSH_DELAY",
                    str(cls.part_flush_delay_seconds),
                )),
                part_cache_size=int(os.getenv(
                    "QUILL_PART_CACHE_SIZE", str(cls.part_cache_size)
                )),
                shutdown_grace_seconds=float(os.getenv(
                    "QUILL_SHUTDOWN_GRACE",
                    str(cls.shutdown_grace_seconds),
                )),
                log_level=os.getenv("QUILL_LOG_LEVEL", cls.log_level),
            )
        except ValueError as exc:
            raise ConfigError("environment", str(exc)) from exc
        config.validate()
        logger.info(
            "EngineConfig.from_env: command=%s model=%s cwd=%s log_level=%s",
            config.codex_command, config.default_model,
            config.cwd, config.log_level,
        )
        return config
