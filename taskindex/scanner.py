"""Scanning documents into the store and dispatching new completions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .completions import CompletionDiff, CompletionTracker
from .config import IndexSettings
from .models import Task
from .parser import LineParser, frontmatter_end, is_ignored, parse_document
from .queue import ScanQueue
from .recurrence import RecurrenceManager
from .store import TaskStore
from .vault import Vault

logger = logging.getLogger(__name__)


@dataclass
class ValidationError:
    """A date-block warning found while scanning a task line."""

    file: str
    line: int  # 1-indexed
    task_id: str
    error: str


class TaskScanner:
    """Parses documents, diffs completions and keeps the store current.

    Completion triggers are suppressed while the initial vault load is in
    progress and on the first scan of each document this session.
    """

    def __init__(
        self,
        vault: Vault,
        store: TaskStore,
        tracker: CompletionTracker,
        recurrence: RecurrenceManager,
        parser: LineParser,
        settings: IndexSettings,
    ) -> None:
        self._vault = vault
        self._store = store
        self._tracker = tracker
        self._recurrence = recurrence
        self._parser = parser
        self.settings = settings
        self._queue = ScanQueue()
        self._visited: set[str] = set()
        self._errors: dict[str, list[ValidationError]] = {}  # path -> errors of last scan
        self._vault_passes = 0
        self.initializing = True

    @property
    def validation_errors(self) -> list[ValidationError]:
        return [error for errors in self._errors.values() for error in errors]

    async def scan_vault(self) -> None:
        """Scan every document once.

        The initial-load phase ends when the last vault pass that overlaps
        it finishes. Passes started after that run with dispatch enabled.
        """
        self._vault_passes += 1
        try:
            paths = self._vault.list_documents()
            logger.info("[SCAN] Scanning %d document(s)...", len(paths))
            self._errors.clear()
            for path in paths:
                await self.queue_scan(path)
        finally:
            self._vault_passes -= 1
            if self._vault_passes == 0 and self.initializing:
                self.initializing = False
                logger.info("[SCAN] Initial load complete: %d task(s) indexed", len(self._store))

    def queue_scan(self, path: str) -> asyncio.Task:
        """Queue a scan of ``path`` behind any scans already queued for it."""
        if self.settings.is_excluded(path):
            return self._queue.enqueue(path, lambda: self._drop(path))
        return self._queue.enqueue(path, lambda: self._scan_file(path))

    def queue_removal(self, path: str) -> asyncio.Task:
        return self._queue.enqueue(path, lambda: self._drop(path))

    async def wait_for_scan(self, path: str) -> None:
        await self._queue.wait(path)

    async def wait_idle(self) -> None:
        await self._queue.wait_all()

    async def _drop(self, path: str) -> None:
        removed = self._store.remove_by_path(path)
        self._errors.pop(path, None)
        logger.debug("[SCAN] Removed %d task(s) of %s", removed, path)

    async def _scan_file(self, path: str) -> None:
        text = await self._vault.read(path)

        lines = text.split("\n")
        if is_ignored(lines, frontmatter_end(lines), self.settings.ignore_key):
            self._store.remove_by_path(path)
            self._tracker.forget(path)
            self._errors.pop(path, None)
            logger.debug("[SCAN] %s is ignored by frontmatter", path)
            return

        tasks = parse_document(text, path, self._parser.parse_line)
        self._collect_errors(path, tasks)

        is_first_scan = path not in self._visited
        self._visited.add(path)

        diff = self._tracker.diff(path, tasks, live=self._store.get_by_path(path))
        self._store.replace_path(path, tasks)

        logger.debug(
            "[SCAN] %s: %d task(s), %d trigger(s), first=%s, initializing=%s",
            path, len(tasks), len(diff.triggers), is_first_scan, self.initializing,
        )
        await self._dispatch(diff, is_first_scan)

    def _collect_errors(self, path: str, tasks: list[Task]) -> None:
        errors = [
            ValidationError(file=path, line=task.line + 1, task_id=task.id, error=task.validation_warning)
            for task in tasks
            if task.validation_warning
        ]
        if errors:
            self._errors[path] = errors
            for error in errors:
                logger.warning("[SCAN] %s:%d %s", error.file, error.line, error.error)
        else:
            self._errors.pop(path, None)

    async def _dispatch(self, diff: CompletionDiff, is_first_scan: bool) -> None:
        if not diff.has_triggers:
            return
        if self.initializing or is_first_scan:
            logger.debug(
                "[TRIGGER] Skipping %d trigger(s) for %s (initializing=%s, first=%s)",
                len(diff.triggers), diff.path, self.initializing, is_first_scan,
            )
            return
        for task in diff.triggers:
            logger.info("[TRIGGER] '%s' (%s)", task.content, task.id)
            await self._recurrence.handle_task_completion(task)
