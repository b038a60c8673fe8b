"""Termination of a spawned subprocess and everything it started.

Children are spawned as session leaders on POSIX, so signalling the
process group reaches grandchildren (shells, tool runners) too.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal

logger = logging.getLogger(__name__)


def _signal_tree(pid: int, sig: int) -> bool:
    """Signal *pid*'s process group, falling back to the pid alone."""
    if os.name != "nt" and hasattr(os, "killpg"):
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            logger.debug("killpg(%d) not permitted; signalling pid", pid)
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False


async def terminate_process_tree(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float = 5.0,
) -> int | None:
    """SIGTERM the tree, wait *grace_seconds*, then SIGKILL.

    Returns the process return code (None if it could not be reaped).
    """
    if process.returncode is not None:
        return process.returncode
    pid = process.pid
    if not _signal_tree(pid, signal.SIGTERM):
        return await process.wait()
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.warning(
            "Process %d ignored SIGTERM for %.1fs; killing", pid, grace_seconds,
        )
    kill_sig = getattr(signal, "SIGKILL", signal.SIGTERM)
    _signal_tree(pid, kill_sig)
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except asyncio.TimeoutError:
        logger.error("Process %d could not be reaped", pid)
        return None
