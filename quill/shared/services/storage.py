"""Keyed JSON document storage.

Storage layout:
    <root>/<key[0]>/<key[1]>/.../<key[-1]>.json

Keys are short lists of identifiers, e.g. ``["message", session_id,
message_id]`` or ``["codex-thread", session_id]``.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from quill.engine.errors import StorageError, StorageNotFoundError
from quill.shared.services.durable_write import atomic_write_json, fsync_dir

logger = logging.getLogger(__name__)


class Storage:
    """Read, write and remove JSON documents by key."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, key: list[str]) -> Path:
        if not key:
            raise ValueError("storage key must not be empty")
        for segment in key:
            if not segment or "/" in segment or "\\" in segment or segment in {".", ".."}:
                raise ValueError(f"invalid storage key segment: {segment!r}")
        return self._root.joinpath(*key[:-1], f"{key[-1]}.json")

    def read(self, key: list[str]) -> Any:
        path = self.path_for(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StorageNotFoundError(key) from None
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Corrupt document at {path}: {exc}") from exc

    def write(self, key: list[str], data: Any) -> None:
        path = self.path_for(key)
        try:
            atomic_write_json(path, data)
        except (OSError, TypeError, ValueError) as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        logger.debug("Wrote %s", path)

    def remove(self, key: list[str]) -> None:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"Failed to remove {path}: {exc}") from exc
        fsync_dir(path.parent)
