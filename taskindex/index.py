"""TaskIndex: the engine facade tying scanning, the store and mutations together."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import fields, replace
from datetime import date
from typing import Awaitable, Protocol

from .completions import CompletionTracker
from .config import IndexSettings
from .models import CHAR_BY_STATUS, STATUS_TODO, Task, status_for_char
from .parser import AtNotationParser, LineParser
from .recurrence import LoggingRecurrenceManager, RecurrenceManager
from .scanner import TaskScanner, ValidationError
from .store import Listener, TaskStore
from .vault import Vault

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
UPDATABLE_FIELDS = frozenset(f.name for f in fields(Task)) - {"id", "path"}


class Repository(Protocol):
    """Writes task mutations back into documents."""

    async def update_task_in_file(self, old: Task, new: Task) -> None: ...

    async def delete_task_from_file(self, task: Task) -> None: ...

    async def duplicate_task_in_file(self, task: Task) -> None: ...

    async def duplicate_task_for_week(self, task: Task) -> None: ...

    async def update_line(self, path: str, line: int, text: str) -> None: ...


class TaskIndex:
    """Live index of the tasks in a vault.

    All state (store, high-water marks, visited documents, listeners) is
    owned by the instance. Mutations are applied to the store first and
    written to disk afterwards; if a write fails the index keeps the
    optimistic state until the next scan of that document replaces it.
    """

    def __init__(
        self,
        vault: Vault,
        repository: Repository,
        recurrence: RecurrenceManager | None = None,
        settings: IndexSettings | None = None,
        parser: LineParser | None = None,
    ) -> None:
        self.settings = settings or IndexSettings()
        self.parser = parser or AtNotationParser()
        self.repository = repository
        self.recurrence = recurrence or LoggingRecurrenceManager()
        self.store = TaskStore()
        self.tracker = CompletionTracker(self.parser.is_triggerable)
        self.scanner = TaskScanner(
            vault, self.store, self.tracker, self.recurrence, self.parser, self.settings
        )
        self._pending_writes: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_layout_ready(self) -> None:
        """Initial full scan once the host has finished loading."""
        await self.scan_vault()

    async def scan_vault(self) -> None:
        await self.scanner.scan_vault()
        self.store.notify()

    def on_document_modified(self, path: str) -> asyncio.Task:
        scan = self.scanner.queue_scan(path)
        return asyncio.ensure_future(self._notify_after(scan))

    def on_document_created(self, path: str) -> asyncio.Task:
        return self.on_document_modified(path)

    def on_document_deleted(self, path: str) -> asyncio.Task:
        removal = self.scanner.queue_removal(path)
        return asyncio.ensure_future(self._notify_after(removal))

    async def _notify_after(self, work: asyncio.Task) -> None:
        await work
        self.store.notify()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def initializing(self) -> bool:
        return self.scanner.initializing

    def get_all(self) -> list[Task]:
        return self.store.get_all()

    def get_by_id(self, task_id: str) -> Task | None:
        return self.store.get_by_id(task_id)

    def get_by_date(self, day: date) -> list[Task]:
        return self.store.get_by_date(day)

    def get_for_visual_window(self, day: date, boundary_hour: int | None = None) -> list[Task]:
        if boundary_hour is None:
            boundary_hour = self.settings.start_hour
        return self.store.get_for_visual_window(day, boundary_hour)

    def get_deadline_tasks(self) -> list[Task]:
        return self.store.get_deadline_tasks()

    def get_validation_errors(self) -> list[ValidationError]:
        """Date-block warnings from the most recent scan of each document."""
        return self.scanner.validation_errors

    def on_change(self, callback: Listener):
        return self.store.on_change(callback)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def request_scan(self, path: str) -> asyncio.Task:
        return self.scanner.queue_scan(path)

    async def wait_for_scan(self, path: str) -> None:
        await self.scanner.wait_for_scan(path)

    async def wait_for_writes(self) -> None:
        """Wait for every outstanding background write."""
        if self._pending_writes:
            await asyncio.wait(set(self._pending_writes))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def update(self, task_id: str, changes: dict) -> asyncio.Task | None:
        """Apply ``changes`` to a task now and write it back in the background.

        Returns the background write, or None if the task is unknown.
        Setting a completed task back to todo lowers its high-water mark
        so that completing it again counts as a new completion.
        """
        task = self.store.get_by_id(task_id)
        if task is None:
            logger.warning("[UPDATE] Task %s not found", task_id)
            return None

        changes = _normalize_changes(changes)
        if self.parser.is_triggerable(task) and changes.get("status") == STATUS_TODO:
            self.tracker.decrement(task)

        previous = replace(task)
        for name, value in changes.items():
            setattr(task, name, value)
        self.store.notify(task_id, list(changes))

        return self._write_behind(
            self.repository.update_task_in_file(previous, replace(task)),
            f"update {task_id}",
        )

    async def delete(self, task_id: str) -> None:
        task = self.store.delete(task_id)
        if task is None:
            logger.warning("[DELETE] Task %s not found", task_id)
            return
        self.store.notify(task_id)
        await self._write_behind(self.repository.delete_task_from_file(task), f"delete {task_id}")
        await self.wait_for_scan(task.path)

    async def duplicate(self, task_id: str) -> None:
        task = self.store.get_by_id(task_id)
        if task is None:
            logger.warning("[DUPLICATE] Task %s not found", task_id)
            return
        await self.repository.duplicate_task_in_file(task)
        await self.wait_for_scan(task.path)

    async def duplicate_for_week(self, task_id: str) -> None:
        task = self.store.get_by_id(task_id)
        if task is None:
            logger.warning("[DUPLICATE] Task %s not found", task_id)
            return
        await self.repository.duplicate_task_for_week(task)
        await self.wait_for_scan(task.path)

    async def update_line(self, path: str, line: int, text: str) -> None:
        await self.repository.update_line(path, line, text)
        await self.wait_for_scan(path)

    def _write_behind(self, write: Awaitable[None], description: str) -> asyncio.Task:
        pending = asyncio.ensure_future(_run_write(write, description))
        self._pending_writes.add(pending)
        pending.add_done_callback(self._pending_writes.discard)
        return pending

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_task(self, ref: Task) -> Task | None:
        """Find the current record for a task reference that may be stale.

        The id is trusted only if content, path, line and start date still
        match. Otherwise the first record with the same path, content and
        start date wins, which is arbitrary when several records share them.
        """
        found = self.store.get_by_id(ref.id)
        if (
            found is not None
            and found.content == ref.content
            and found.path == ref.path
            and found.line == ref.line
            and found.start_date == ref.start_date
        ):
            return found

        for task in self.store.get_all():
            if task.path == ref.path and task.content == ref.content and task.start_date == ref.start_date:
                return task
        return None


async def _run_write(write: Awaitable[None], description: str) -> None:
    try:
        await write
    except Exception:
        logger.exception("[WRITEBACK] Failed to %s; index keeps the in-memory state until the next scan", description)


def _normalize_changes(changes: dict) -> dict:
    """Validate field names and keep ``status`` and ``status_char`` in step."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown task field(s): {', '.join(sorted(unknown))}")

    normalized = dict(changes)
    if "status_char" in normalized and "status" not in normalized:
        normalized["status"] = status_for_char(normalized["status_char"])
    elif "status" in normalized and "status_char" not in normalized:
        try:
            normalized["status_char"] = CHAR_BY_STATUS[normalized["status"]]
        except KeyError:
            raise ValueError(f"Unknown status: {normalized['status']!r}") from None
    return normalized
