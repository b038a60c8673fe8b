"""Persisted mapping from host session id to backend thread id."""
from __future__ import annotations

import logging

from quill.engine.errors import StorageNotFoundError
from quill.shared.services.storage import Storage

logger = logging.getLogger(__name__)

_PREFIX = "codex-thread"


class ThreadStore:
    """One backend thread per host session."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get(self, session_id: str) -> str | None:
        try:
            value = self._storage.read([_PREFIX, session_id])
        except StorageNotFoundError:
            return None
        return value if isinstance(value, str) and value else None

    def set(self, session_id: str, thread_id: str) -> None:
        self._storage.write([_PREFIX, session_id], thread_id)
        logger.debug("Session %s bound to thread %s", session_id, thread_id)

    def clear(self, session_id: str) -> None:
        self._storage.remove([_PREFIX, session_id])
        logger.debug("Session %s thread binding cleared", session_id)
