"""Completion diffing: how many times did each task newly become complete?"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable

from .models import Task

logger = logging.getLogger(__name__)

NO_DATE = "no-date"


def task_signature(task: Task) -> str:
    """Identity used to correlate occurrences of a task across scans.

    Two records with the same signature count as the same recurring
    occurrence even if they sit on different lines.
    """
    commands = "".join(cmd.signature() for cmd in task.commands)
    start = task.start_date.isoformat() if task.start_date is not None else NO_DATE
    return f"{task.path}|{start}|{task.content.strip()}|{commands}"


@dataclass
class CompletionDiff:
    """Result of diffing one fresh parse against the high-water marks."""

    path: str
    counts: dict[str, int] = field(default_factory=dict)
    triggers: list[Task] = field(default_factory=list)

    @property
    def has_triggers(self) -> bool:
        return bool(self.triggers)


class CompletionTracker:
    """Per-signature high-water marks of completed, command-bearing tasks.

    Entries are scoped to their document: each diff replaces every entry of
    the scanned document with the counts seen in that parse.

    An optimistic uncheck lowers a mark before the document on disk says
    so. Those unchecks stay pending until the next diff of the document,
    which absorbs re-counts the live records do not account for.
    """

    def __init__(self, is_triggerable: Callable[[Task], bool]) -> None:
        self._is_triggerable = is_triggerable
        self._counts: dict[str, dict[str, int]] = {}  # path -> {signature: count}
        self._pending: dict[str, Counter[str]] = {}  # path -> {signature: unchecks}

    def count(self, task: Task) -> int:
        return self._counts.get(task.path, {}).get(task_signature(task), 0)

    def counts_for(self, path: str) -> dict[str, int]:
        return dict(self._counts.get(path, {}))

    def pending_for(self, path: str) -> dict[str, int]:
        return dict(self._pending.get(path, {}))

    def is_candidate(self, task: Task) -> bool:
        return task.has_commands and self._is_triggerable(task)

    def diff(self, path: str, tasks: list[Task], live: list[Task] | None = None) -> CompletionDiff:
        """Diff a document's fresh task list and replace its high-water marks.

        Returns the trigger events in the order their signatures first
        appear in the document; a signature whose count grew by N appears
        N times, represented by its first record.

        ``live`` is the document's in-memory records before this parse.
        A pending uncheck still reflected there (the record is not complete
        again) is restored silently instead of firing.
        """
        current: Counter[str] = Counter()
        representatives: dict[str, Task] = {}
        for task in tasks:
            if not self.is_candidate(task):
                continue
            sig = task_signature(task)
            current[sig] += 1
            representatives.setdefault(sig, task)

        previous = self._counts.get(path, {})
        pending = self._pending.pop(path, Counter())
        live_counts = Counter(task_signature(t) for t in live or () if self.is_candidate(t))

        result = CompletionDiff(path=path, counts=dict(current))
        for sig, task in representatives.items():
            prev = previous.get(sig, 0)
            delta = current[sig] - prev
            if delta > 0 and live is not None and pending[sig]:
                rechecked = max(0, live_counts[sig] - prev)
                silent = min(delta, max(0, pending[sig] - rechecked))
                delta -= silent
                logger.debug("[DIFF] %s: restored %d unchecked '%s'", path, silent, task.content[:30])
            logger.debug(
                "[DIFF] %s: cur=%d prev=%d '%s'",
                path, current[sig], prev, task.content[:30],
            )
            if delta > 0:
                result.triggers.extend([task] * delta)

        if current:
            self._counts[path] = dict(current)
        else:
            self._counts.pop(path, None)
        return result

    def decrement(self, task: Task) -> None:
        """Lower a task's high-water mark by one, flooring at zero.

        The uncheck is remembered until the document is next diffed.
        """
        entries = self._counts.get(task.path)
        sig = task_signature(task)
        if not entries or not entries.get(sig):
            return
        entries[sig] -= 1
        self._pending.setdefault(task.path, Counter())[sig] += 1
        logger.debug("[DIFF] decremented '%s' to %d", sig, entries[sig])

    def forget(self, path: str) -> None:
        self._counts.pop(path, None)
        self._pending.pop(path, None)
