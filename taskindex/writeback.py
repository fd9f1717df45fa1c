"""Write task mutations back into vault documents."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from pathlib import Path
from typing import Callable

from .models import Task
from .parser import collect_child_block, format_task, leading_width, strip_block_id

logger = logging.getLogger(__name__)

WEEK_DAYS = 7


def edit_document(path: str | Path, edit: Callable[[list[str]], bool]) -> bool:
    """Apply ``edit`` to a document's lines and save it if ``edit`` returns True.

    Lines are split on ``\\n`` only, so a line from a ``\\r\\n`` ending keeps
    its ``\\r``. Every line keeps its own ending and the trailing newline is
    preserved.

    Returns:
        True if the file was modified, False otherwise.
    """
    p = Path(path)
    raw = p.read_bytes().decode("utf-8")
    lines = raw.split("\n")
    if not edit(lines):
        return False
    p.write_bytes("\n".join(lines).encode("utf-8"))
    return True


def replace_task_line(lines: list[str], task: Task, new_task: Task) -> bool:
    if not _in_range(lines, task.line, task.path):
        return False
    old_line = lines[task.line]
    indent = old_line[: leading_width(old_line)]
    lines[task.line] = indent + format_task(new_task).strip() + _cr(old_line)
    logger.debug("[WRITEBACK] %s:%d %r -> %r", task.path, task.line, old_line, lines[task.line])
    return lines[task.line] != old_line


def replace_line(lines: list[str], path: str, line: int, text: str) -> bool:
    if not _in_range(lines, line, path):
        return False
    old_line = lines[line]
    lines[line] = old_line[: leading_width(old_line)] + text.strip("\r\n").lstrip() + _cr(old_line)
    return lines[line] != old_line


def delete_task_line(lines: list[str], task: Task) -> bool:
    if not _in_range(lines, task.line, task.path):
        return False
    del lines[task.line]
    logger.debug("[WRITEBACK] %s:%d deleted", task.path, task.line)
    return True


def duplicate_task_block(lines: list[str], task: Task) -> bool:
    """Insert a copy of the task line and its child block right after the block."""
    if not _in_range(lines, task.line, task.path):
        return False
    children = collect_child_block(lines, task.line)
    copy = [strip_block_id(lines[task.line])] + [strip_block_id(c) for c in children]
    insert_at = task.line + 1 + len(children)
    lines[insert_at:insert_at] = copy
    logger.debug("[WRITEBACK] %s:%d duplicated %d line(s)", task.path, task.line, len(copy))
    return True


def duplicate_task_for_week(lines: list[str], task: Task) -> bool:
    """Insert seven copies of the task block, shifted by one to seven days."""
    if not _in_range(lines, task.line, task.path):
        return False
    task_line = lines[task.line]
    indent = task_line[: leading_width(task_line)]
    children = collect_child_block(lines, task.line)

    new_lines: list[str] = []
    for offset in range(1, WEEK_DAYS + 1):
        shift = timedelta(days=offset)
        shifted = replace(
            task,
            content=strip_block_id(task.content).strip(),
            start_date=task.start_date + shift if task.start_date else None,
            end_date=task.end_date + shift if task.end_date else None,
            deadline=task.deadline + shift if task.deadline else None,
        )
        new_lines.append(strip_block_id(indent + format_task(shifted).strip()) + _cr(task_line))
        new_lines.extend(strip_block_id(c) for c in children)

    insert_at = task.line + 1 + len(children)
    lines[insert_at:insert_at] = new_lines
    logger.debug("[WRITEBACK] %s:%d duplicated for a week", task.path, task.line)
    return True


def _cr(line: str) -> str:
    return "\r" if line.endswith("\r") else ""


def _in_range(lines: list[str], line: int, path: str) -> bool:
    if 0 <= line < len(lines):
        return True
    logger.warning(
        "[WRITEBACK] Line %d out of bounds in %s (file has %d lines)", line, path, len(lines)
    )
    return False


class FileTaskRepository:
    """Applies task mutations to Markdown files under a vault root."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    async def update_task_in_file(self, old: Task, new: Task) -> None:
        await self._edit(old.path, lambda lines: replace_task_line(lines, old, new))

    async def delete_task_from_file(self, task: Task) -> None:
        await self._edit(task.path, lambda lines: delete_task_line(lines, task))

    async def duplicate_task_in_file(self, task: Task) -> None:
        await self._edit(task.path, lambda lines: duplicate_task_block(lines, task))

    async def duplicate_task_for_week(self, task: Task) -> None:
        await self._edit(task.path, lambda lines: duplicate_task_for_week(lines, task))

    async def update_line(self, path: str, line: int, text: str) -> None:
        await self._edit(path, lambda lines: replace_line(lines, path, line, text))

    async def _edit(self, path: str, edit: Callable[[list[str]], bool]) -> bool:
        full_path = self.root / path
        if not full_path.is_file():
            logger.warning("[WRITEBACK] File not found: %s", path)
            return False
        return await asyncio.to_thread(edit_document, full_path, edit)
