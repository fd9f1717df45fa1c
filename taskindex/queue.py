"""Per-document FIFO serialization of scan work."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[None]]


class ScanQueue:
    """Runs work for the same key one at a time, in the order it was queued.

    Work for different keys runs independently. A failure is logged where
    the work runs and does not stop later work for the same key.
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tails

    def enqueue(self, key: str, work: Work) -> asyncio.Task:
        """Chain ``work`` behind the current tail for ``key``.

        Must be called from the event loop's thread. The returned task
        finishes when ``work`` has finished (successfully or not).
        """
        previous = self._tails.get(key)
        task = asyncio.ensure_future(self._run_after(key, previous, work))
        self._tails[key] = task
        task.add_done_callback(lambda done: self._release(key, done))
        return task

    async def wait(self, key: str) -> None:
        """Wait until everything queued so far for ``key`` has finished."""
        tail = self._tails.get(key)
        if tail is not None:
            await asyncio.wait({tail})

    async def wait_all(self) -> None:
        tails = set(self._tails.values())
        if tails:
            await asyncio.wait(tails)

    async def _run_after(self, key: str, previous: asyncio.Task | None, work: Work) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await work()
        except Exception:
            logger.exception("[SCAN] Error scanning %s", key)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]
