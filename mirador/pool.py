"""Deadline-bounded pool shutdown shared by every backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

LOG = logging.getLogger(__name__)

# Close tasks that outlived their deadline; held so they are not collected mid-flight.
_PENDING_CLOSES: set[asyncio.Task[None]] = set()


async def close_with_deadline(
    closer: Callable[[], Awaitable[None]],
    timeout: float,
    *,
    label: str,
) -> bool:
    """Run ``closer`` but return once ``timeout`` seconds have elapsed.

    Returns True when the native close finished (cleanly or not) before the
    deadline. On timeout the close keeps running in the background and any
    eventual failure is only logged.
    """

    task: asyncio.Task[None] = asyncio.ensure_future(closer())
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        # The caller gave up; the close itself keeps running.
        _detach(task, label)
        raise
    if task in done:
        if task.cancelled():
            return True
        exc = task.exception()
        if exc is not None:
            LOG.warning("Failed to close %s pool cleanly: %s", label, exc)
        return True

    LOG.warning("%s pool close timed out; continuing shutdown asynchronously.", label)
    _detach(task, label)
    return False


def pending_closes() -> int:
    """Number of close handshakes still running past their deadline."""

    return len(_PENDING_CLOSES)


def _detach(task: asyncio.Task[None], label: str) -> None:
    _PENDING_CLOSES.add(task)
    task.add_done_callback(lambda finished: _report_late_close(finished, label))


def _report_late_close(task: asyncio.Task[None], label: str) -> None:
    _PENDING_CLOSES.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOG.warning("%s pool close eventually failed: %s", label, exc)


__all__ = ["close_with_deadline", "pending_closes"]
