"""Feed filesystem events from watchdog into a TaskIndex."""

from __future__ import annotations

import asyncio
import logging

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .index import TaskIndex
from .vault import FileSystemVault

logger = logging.getLogger(__name__)


class VaultEventHandler(FileSystemEventHandler):
    """Turns watchdog callbacks (observer thread) into index host events
    scheduled on the index's event loop."""

    def __init__(self, index: TaskIndex, vault: FileSystemVault, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self.index = index
        self.vault = vault
        self.loop = loop

    def _relative(self, event: FileSystemEvent, attr: str = "src_path") -> str | None:
        if event.is_directory:
            return None
        path = self.vault.relative(getattr(event, attr))
        if path is None or any(part.startswith(".") for part in path.split("/")):
            return None
        return path

    def on_modified(self, event: FileSystemEvent) -> None:
        path = self._relative(event)
        if path:
            logger.debug("[WATCH] modified: %s", path)
            self.loop.call_soon_threadsafe(self.index.on_document_modified, path)

    def on_created(self, event: FileSystemEvent) -> None:
        path = self._relative(event)
        if path:
            logger.debug("[WATCH] created: %s", path)
            self.loop.call_soon_threadsafe(self.index.on_document_created, path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = self._relative(event)
        if path:
            logger.debug("[WATCH] deleted: %s", path)
            self.loop.call_soon_threadsafe(self.index.on_document_deleted, path)

    def on_moved(self, event: FileSystemEvent) -> None:
        # editors often save by writing a temp file and renaming it over the original
        old_path = self._relative(event)
        new_path = self._relative(event, "dest_path")
        if old_path:
            self.loop.call_soon_threadsafe(self.index.on_document_deleted, old_path)
        if new_path:
            self.loop.call_soon_threadsafe(self.index.on_document_modified, new_path)


def watch_vault(index: TaskIndex, vault: FileSystemVault, loop: asyncio.AbstractEventLoop):
    """Start a watchdog observer over the vault root. Caller stops it."""
    observer = Observer()
    observer.schedule(VaultEventHandler(index, vault, loop), str(vault.root), recursive=True)
    observer.start()
    logger.info("Watching %s for changes", vault.root)
    return observer
