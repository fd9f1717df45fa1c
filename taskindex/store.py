"""In-memory snapshot of indexed tasks."""

from __future__ import annotations

import logging
from datetime import date, time, timedelta
from typing import Callable

from .models import Task

logger = logging.getLogger(__name__)

Listener = Callable[[str | None, list[str] | None], None]


class TaskStore:
    """Current tasks keyed by id, plus the change-listener registry."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_all(self) -> list[Task]:
        return list(self._tasks.values())

    def get_by_id(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def get_by_path(self, path: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.path == path]

    def get_by_date(self, day: date) -> list[Task]:
        """Tasks whose start date is exactly ``day``."""
        return [t for t in self._tasks.values() if t.start_date == day]

    def get_for_visual_window(self, day: date, boundary_hour: int) -> list[Task]:
        """Tasks of the visual day running from ``boundary_hour:00`` on ``day``
        to ``boundary_hour:00`` on the next calendar day.

        All-day tasks only belong to their own calendar date.
        """
        boundary = time(boundary_hour)
        same_day = [
            t for t in self.get_by_date(day)
            if t.start_time is None or t.start_time >= boundary
        ]
        next_day = [
            t for t in self.get_by_date(day + timedelta(days=1))
            if t.start_time is not None and t.start_time < boundary
        ]
        return same_day + next_day

    def get_deadline_tasks(self) -> list[Task]:
        return [t for t in self._tasks.values() if t.deadline is not None]

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def delete(self, task_id: str) -> Task | None:
        return self._tasks.pop(task_id, None)

    def remove_by_path(self, path: str) -> int:
        stale = [task_id for task_id, t in self._tasks.items() if t.path == path]
        for task_id in stale:
            del self._tasks[task_id]
        return len(stale)

    def replace_path(self, path: str, tasks: list[Task]) -> None:
        """Drop every task of ``path`` and insert ``tasks`` in their place."""
        removed = self.remove_by_path(path)
        for task in tasks:
            self._tasks[task.id] = task
        logger.debug("[STORE] %s: replaced %d task(s) with %d", path, removed, len(tasks))

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_change(self, callback: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def notify(self, task_id: str | None = None, changes: list[str] | None = None) -> None:
        """Call every listener. No arguments means "everything may have changed"."""
        for listener in list(self._listeners):
            listener(task_id, changes)
