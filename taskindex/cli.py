"""CLI entry point for taskindex."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from datetime import date
from pathlib import Path

from .config import IndexSettings
from .index import TaskIndex
from .models import Task
from .recurrence import LoggingRecurrenceManager, WebhookRecurrenceManager
from .vault import FileSystemVault
from .watcher import watch_vault
from .writeback import FileTaskRepository


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="taskindex",
        description="Index the tasks of a Markdown vault and react to newly completed ones.",
    )
    parser.add_argument(
        "vault",
        type=str,
        help="Path to the vault directory",
    )
    parser.add_argument(
        "--date",
        type=str,
        default=None,
        help="Show the visual day starting on this date (YYYY-MM-DD); default: all tasks",
    )
    parser.add_argument(
        "--start-hour",
        type=int,
        default=None,
        help="Hour at which the visual day begins (or set TASKINDEX_START_HOUR)",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        help="Path prefix to leave out of the index (repeatable, or set TASKINDEX_EXCLUDE)",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and react to file changes until interrupted",
    )
    parser.add_argument(
        "--webhook-url",
        type=str,
        default=None,
        help="POST completed tasks to this URL (or set TASKINDEX_WEBHOOK_URL)",
    )
    parser.add_argument(
        "--webhook-token",
        type=str,
        default=None,
        help="Bearer token for the webhook (or set TASKINDEX_WEBHOOK_TOKEN)",
    )
    parser.add_argument(
        "--output-json",
        type=str,
        default=None,
        help="Write the listed tasks to a JSON file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(message)s",
    )

    # Validate vault exists
    vault_path = Path(args.vault)
    if not vault_path.is_dir():
        logging.error("Vault directory not found: %s", vault_path)
        return 1

    try:
        settings = IndexSettings.from_env()
        if args.start_hour is not None:
            settings = replace(settings, start_hour=args.start_hour)
        if args.exclude:
            settings = replace(settings, excluded_paths=args.exclude)
        day = date.fromisoformat(args.date) if args.date else None
    except ValueError as e:
        logging.error("%s", e)
        return 1

    webhook_url = args.webhook_url or os.environ.get("TASKINDEX_WEBHOOK_URL")
    webhook_token = args.webhook_token or os.environ.get("TASKINDEX_WEBHOOK_TOKEN")

    return asyncio.run(
        _run(vault_path, settings, day, args.watch, webhook_url, webhook_token, args.output_json)
    )


async def _run(
    vault_path: Path,
    settings: IndexSettings,
    day: date | None,
    watch: bool,
    webhook_url: str | None,
    webhook_token: str | None,
    output_json: str | None,
) -> int:
    vault = FileSystemVault(vault_path)
    if webhook_url:
        recurrence = WebhookRecurrenceManager(webhook_url, token=webhook_token)
    else:
        recurrence = LoggingRecurrenceManager()
    index = TaskIndex(vault, FileTaskRepository(vault_path), recurrence=recurrence, settings=settings)

    try:
        logging.info("Indexing %s ...", vault_path)
        await index.on_layout_ready()

        tasks = index.get_for_visual_window(day) if day else index.get_all()
        tasks.sort(key=lambda t: (t.path, t.line))
        _report(tasks, day)

        if output_json:
            out = {
                "date": day.isoformat() if day else None,
                "start_hour": settings.start_hour,
                "tasks": [t.to_dict() for t in tasks],
            }
            Path(output_json).write_text(json.dumps(out, indent=2))
            logging.info("Results written to %s", output_json)

        if watch:
            await _watch(index, vault)
    finally:
        if isinstance(recurrence, WebhookRecurrenceManager):
            await recurrence.aclose()

    return 0


async def _watch(index: TaskIndex, vault: FileSystemVault) -> None:
    observer = watch_vault(index, vault, asyncio.get_running_loop())
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, asyncio.CancelledError):
        logging.info("Stopping watcher")
    finally:
        observer.stop()
        observer.join()
        await index.scanner.wait_idle()
        await index.wait_for_writes()


def _report(tasks: list[Task], day: date | None) -> None:
    if day:
        logging.info("%d task(s) on %s", len(tasks), day.isoformat())
    else:
        logging.info("%d task(s) indexed", len(tasks))
    for task in tasks:
        parts = [f"[{task.status_char}]", task.content]
        if task.start_date:
            parts.append(task.start_date.isoformat())
        if task.start_time:
            parts.append(task.start_time.strftime("%H:%M"))
        parts.append(f"({task.path}:{task.line + 1})")
        print(" ".join(parts))


if __name__ == "__main__":
    sys.exit(main())
