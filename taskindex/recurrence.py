"""Recurrence handlers invoked once per dispatched completion."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from .models import Task

logger = logging.getLogger(__name__)

USER_AGENT = "taskindex"


class RecurrenceManager(Protocol):
    """Receives one call per newly completed, command-bearing task."""

    async def handle_task_completion(self, task: Task) -> None: ...


class LoggingRecurrenceManager:
    """Records completions without acting on them."""

    def __init__(self) -> None:
        self.handled: list[Task] = []

    async def handle_task_completion(self, task: Task) -> None:
        self.handled.append(task)
        commands = ", ".join(cmd.signature() for cmd in task.commands)
        logger.info("[TRIGGER] '%s' (%s) -> %s", task.content, task.id, commands)


class WebhookRecurrenceManager:
    """Forwards each completion to an external automation endpoint."""

    def __init__(
        self,
        url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def handle_task_completion(self, task: Task) -> None:
        payload = {"event": "task.completed", "task": task.to_dict()}
        resp = await self._client.post(self.url, json=payload)
        resp.raise_for_status()
        logger.info("[TRIGGER] Sent completion of '%s' to %s (%d)", task.content, self.url, resp.status_code)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
