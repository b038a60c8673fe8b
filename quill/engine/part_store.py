"""Bounded, debounced write-back cache of conversation parts.

Reads always see the latest write: the in-memory list is authoritative
and durable storage trails it by at most one debounce window. Entries
are evicted least-recently-used first; a dirty entry is flushed before
it is dropped.

Documents are stored under ``["message", session_id, message_id]`` as
``{"info": {...} | null, "parts": [...]}``.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from typing import Any

from quill.shared.services.storage import Storage

from .errors import StorageError, StorageNotFoundError
from .models import Part, part_from_dict, part_to_dict

logger = logging.getLogger(__name__)

_Key = tuple[str, str]


class Debouncer:
    """Per-key cancellable timers; rescheduling a key restarts its delay.

    Without a running event loop the callback runs immediately.
    """

    def __init__(self, delay: float, callback: Callable[[Any], None]) -> None:
        self._delay = delay
        self._callback = callback
        self._handles: dict[Hashable, asyncio.TimerHandle] = {}

    def schedule(self, key: Hashable) -> None:
        self.cancel(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._callback(key)
            return
        self._handles[key] = loop.call_later(self._delay, self._fire, key)

    def cancel(self, key: Hashable) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def is_scheduled(self, key: Hashable) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def _fire(self, key: Hashable) -> None:
        self._handles.pop(key, None)
        try:
            self._callback(key)
        except Exception:
            logger.exception("Debounced callback failed for %s", key)


@dataclass
class _Entry:
    parts: list[Part] = field(default_factory=list)
    info: dict[str, Any] | None = None
    dirty: bool = False


class PartStore:
    """(session, message) -> ordered parts, backed by Storage."""

    def __init__(
        self,
        storage: Storage,
        *,
        flush_delay: float = 0.1,
        max_entries: int = 500,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._storage = storage
        self._max_entries = max_entries
        self._cache: OrderedDict[_Key, _Entry] = OrderedDict()
        self._debouncer = Debouncer(flush_delay, self._flush_key)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def is_dirty(self, session_id: str, message_id: str) -> bool:
        entry = self._cache.get((session_id, message_id))
        return entry is not None and entry.dirty

    # ── Reads ──

    def get_parts(self, session_id: str, message_id: str) -> list[Part]:
        """Freshest known parts for a message, sorted by id."""
        return list(self._entry((session_id, message_id)).parts)

    def get_message_info(self, session_id: str, message_id: str) -> dict[str, Any] | None:
        return self._entry((session_id, message_id)).info

    # ── Writes ──

    def update_part(self, part: Part) -> None:
        key = (part.session_id, part.message_id)
        entry = self._entry(key)
        for index, existing in enumerate(entry.parts):
            if existing.id == part.id:
                entry.parts[index] = part
                break
        else:
            entry.parts.append(part)
            entry.parts.sort(key=lambda p: p.id)
        self._mark_dirty(key, entry)

    def remove_part(self, session_id: str, message_id: str, part_id: str) -> bool:
        key = (session_id, message_id)
        entry = self._entry(key)
        kept = [p for p in entry.parts if p.id != part_id]
        if len(kept) == len(entry.parts):
            return False
        entry.parts = kept
        self._mark_dirty(key, entry)
        return True

    def cache_message_info(
        self, session_id: str, message_id: str, info: dict[str, Any],
    ) -> None:
        key = (session_id, message_id)
        entry = self._entry(key)
        entry.info = dict(info)
        self._mark_dirty(key, entry)

    # ── Flushing ──

    def flush(self, session_id: str, message_id: str) -> bool:
        """Write one entry now. False if the write failed."""
        key = (session_id, message_id)
        self._debouncer.cancel(key)
        return self._flush_key(key)

    def flush_all(self) -> int:
        """Write every dirty entry now. Returns the number of failures."""
        self._debouncer.cancel_all()
        failures = sum(1 for key in list(self._cache) if not self._flush_key(key))
        if failures:
            logger.error("flush_all: %d entr(y/ies) could not be written", failures)
        return failures

    def clear_cache(self, session_id: str, message_id: str) -> bool:
        """Flush and drop one entry; a failed flush keeps it cached."""
        key = (session_id, message_id)
        if key not in self._cache:
            return True
        if not self.flush(session_id, message_id):
            return False
        del self._cache[key]
        return True

    def clear_all_cache(self) -> None:
        self.flush_all()
        for key in [k for k, e in self._cache.items() if not e.dirty]:
            del self._cache[key]

    # ── Internals ──

    def _mark_dirty(self, key: _Key, entry: _Entry) -> None:
        entry.dirty = True
        self._debouncer.schedule(key)

    def _entry(self, key: _Key) -> _Entry:
        entry = self._cache.get(key)
        if entry is not None:
            self._cache.move_to_end(key)
            return entry
        entry = self._load(key)
        self._cache[key] = entry
        self._evict(keep=key)
        return entry

    def _load(self, key: _Key) -> _Entry:
        try:
            doc = self._storage.read(["message", *key])
        except StorageNotFoundError:
            return _Entry()
        if not isinstance(doc, dict):
            raise StorageError(f"Malformed message document for {'/'.join(key)}")
        parts: list[Part] = []
        for raw in doc.get("parts") or []:
            try:
                parts.append(part_from_dict(raw))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable part in %s: %s", "/".join(key), exc)
        parts.sort(key=lambda p: p.id)
        info = doc.get("info")
        return _Entry(parts=parts, info=info if isinstance(info, dict) else None)

    def _flush_key(self, key: _Key) -> bool:
        entry = self._cache.get(key)
        if entry is None or not entry.dirty:
            return True
        doc = {
            "info": entry.info,
            "parts": [part_to_dict(p) for p in entry.parts],
        }
        try:
            self._storage.write(["message", *key], doc)
        except StorageError:
            logger.error("Failed to flush parts for %s", "/".join(key), exc_info=True)
            return False
        entry.dirty = False
        return True

    def _evict(self, keep: _Key) -> None:
        while len(self._cache) > self._max_entries:
            for key in self._cache:
                if key == keep:
                    continue
                if self._cache[key].dirty:
                    self._debouncer.cancel(key)
                    if not self._flush_key(key):
                        # Unwritten data stays cached; try the next one.
                        self._debouncer.schedule(key)
                        continue
                del self._cache[key]
                logger.debug("Evicted parts cache entry %s", "/".join(key))
                break
            else:
                logger.warning(
                    "Parts cache over capacity (%d > %d): nothing evictable",
                    len(self._cache), self._max_entries,
                )
                return
