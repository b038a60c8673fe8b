"""YAML configuration loader.

Loads a single YAML file on top of the QUILL_* environment defaults.

Example YAML:
    engine:
      default_model: gpt-5.2-codex
      cwd: /path/to/project
      log_level: INFO

    codex:
      command: codex
      args: [app-server]
      home: ~/.quill/codex
      network_access: true
      approval_policy: on-request

    part_store:
      flush_delay_seconds: 0.1
      cache_size: 500

    permission:
      bash:
        "git status": allow
        "rm *": deny
        "*": ask
      edit: ask

    model_costs:
      gpt-5.2-codex:
        input: 1.25
        output: 10.0
        cache_read: 0.125
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, ModelCost
from .errors import ConfigError
from .models import PermissionAction, PermissionRule

logger = logging.getLogger(__name__)

_ENGINE_KEYS = {
    "default_model": "default_model",
    "cwd": "cwd",
    "data_dir": "data_dir",
    "log_level": "log_level",
    "shutdown_grace_seconds": "shutdown_grace_seconds",
}
_CODEX_KEYS = {
    "command": "codex_command",
    "args": "codex_args",
    "home": "codex_home",
    "network_access": "network_access",
    "approval_policy": "approval_policy",
}
_PART_STORE_KEYS = {
    "flush_delay_seconds": "part_flush_delay_seconds",
    "cache_size": "part_cache_size",
}


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(name, "expected a mapping")
    return value


def _apply(
    config: EngineConfig,
    section: dict[str, Any],
    mapping: dict[str, str],
    prefix: str,
) -> None:
    for key, value in section.items():
        attr = mapping.get(key)
        if attr is None:
            logger.warning("Ignoring unknown config key %s.%s", prefix, key)
            continue
        setattr(config, attr, value)


def _parse_action(key: str, value: Any) -> PermissionAction:
    try:
        return PermissionAction(str(value).lower())
    except ValueError as exc:
        raise ConfigError(
            key, f"expected allow, deny or ask, got {value!r}"
        ) from exc


def parse_permission_rules(raw: Any) -> list[PermissionRule]:
    """Expand the ``permission`` section into an ordered rule list.

    ``edit: ask`` is shorthand for ``edit: {"*": ask}``. Order within a
    mapping is preserved; later rules win when evaluated.
    """
    if raw is None:
        return []
    if not isinstance(raw, dict):
        raise ConfigError("permission", "expected a mapping")
    rules: list[PermissionRule] = []
    for permission, value in raw.items():
        if isinstance(value, dict):
            for pattern, action in value.items():
                rules.append(PermissionRule(
                    permission=str(permission),
                    pattern=str(pattern),
                    action=_parse_action(f"permission.{permission}", action),
                ))
        else:
            rules.append(PermissionRule(
                permission=str(permission),
                pattern="*",
                action=_parse_action(f"permission.{permission}", value),
            ))
    return rules


def parse_model_costs(raw: Any) -> dict[str, ModelCost]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("model_costs", "expected a mapping")
    costs: dict[str, ModelCost] = {}
    for model_id, prices in raw.items():
        if not isinstance(prices, dict):
            raise ConfigError(f"model_costs.{model_id}", "expected a mapping")
        try:
            costs[str(model_id)] = ModelCost(**{
                k: float(v) for k, v in prices.items()
            })
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"model_costs.{model_id}", str(exc)) from exc
    return costs


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load *path* and overlay it on *base* (or the env-derived config)."""
    config_path = Path(os.path.expanduser(str(path)))
    if not config_path.is_file():
        raise ConfigError("config", f"file not found: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError("config", f"invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config", "top level must be a mapping")

    config = base or EngineConfig.from_env()
    _apply(config, _section(data, "engine"), _ENGINE_KEYS, "engine")
    _apply(config, _section(data, "codex"), _CODEX_KEYS, "codex")
    _apply(config, _section(data, "part_store"), _PART_STORE_KEYS, "part_store")
    if "permission" in data:
        config.permission_rules = parse_permission_rules(data["permission"])
    if "model_costs" in data:
        config.model_costs = parse_model_costs(data["model_costs"])
    if isinstance(config.codex_args, str):
        config.codex_args = config.codex_args.split()
    config.validate()

    logger.info(
        "Loaded config %s: model=%s rules=%d priced_models=%d",
        config_path, config.default_model,
        len(config.permission_rules), len(config.model_costs),
    )
    return config
