"""Parser for task lines and the documents that contain them."""

from __future__ import annotations

import re
from datetime import date, time
from typing import Callable, Protocol

from .models import FlowCommand, FlowModifier, Task, status_for_char

# Regex patterns
RE_TASK_LINE = re.compile(r"^(\s*)-\s*\[(.)]\s*(.*)$")
RE_DATE_BLOCK = re.compile(r"(@(?:future|[\d\-T:]*)?(?:(?:>|>>)(?:[\d\-T:]*))*)")
RE_DATE = re.compile(r"(\d{4}-\d{2}-\d{2})")
RE_TIME = re.compile(r"(\d{2}:\d{2})")
RE_COMMAND = re.compile(r"([a-zA-Z0-9_]+)\((.*?)\)((?:\.[a-zA-Z0-9_]+\(.*?\))*)")
RE_MODIFIER = re.compile(r"\.([a-zA-Z0-9_]+)\((.*?)\)")
RE_BLOCK_ID = re.compile(r"\s\^[a-zA-Z0-9-]+(?=\r?$)")

FLOW_SEPARATOR = "==>"
FRONTMATTER_FENCE = "---"

# Status characters whose tasks may fire their commands
TRIGGERABLE_CHARS = frozenset({"x", "X", "-", "!"})

# Indent deltas that make a nested task a direct child (tab, 2 spaces, 4 spaces)
DIRECT_CHILD_INDENTS = (1, 2, 4)

TRUTHY_FLAGS = {"true", "yes", "on", "1"}


class LineParser(Protocol):
    """What the scanner needs from a line grammar."""

    def parse_line(self, text: str, path: str, line: int) -> Task | None: ...

    def is_triggerable(self, task: Task) -> bool: ...


class AtNotationParser:
    """The default ``- [x] content @start>end>deadline ==> cmd()`` grammar."""

    def __init__(self, triggerable_chars: frozenset[str] = TRIGGERABLE_CHARS) -> None:
        self.triggerable_chars = triggerable_chars

    def parse_line(self, text: str, path: str, line: int) -> Task | None:
        return parse_line(text, path, line)

    def is_triggerable(self, task: Task) -> bool:
        return task.status_char in self.triggerable_chars


def task_id(path: str, line: int) -> str:
    return f"{path}:{line}"


def parse_line(text: str, path: str, line: int) -> Task | None:
    """Parse one line into a Task, or return None if it is not a task.

    A checkbox line only counts as a task when it carries a start date or
    time, an end date, a deadline, ``@future`` or a flow command.
    """
    task_part, _, flow_part = text.partition(FLOW_SEPARATOR)
    if not flow_part:
        # "==>" with nothing after it is plain content
        task_part, flow_part = text, ""

    m = RE_TASK_LINE.match(task_part)
    if not m:
        return None

    indent, status_char, content = m.groups()
    builder = _TaskBuilder(content)
    if flow_part:
        builder.commands = parse_flow_commands(flow_part)
    builder.extract_date_block()

    if not builder.is_schedulable():
        return None

    return Task(
        id=task_id(path, line),
        path=path,
        line=line,
        original_text=text,
        content=builder.content.strip(),
        status_char=status_char,
        status=status_for_char(status_char),
        start_date=builder.start_date,
        start_time=builder.start_time,
        end_date=builder.end_date,
        end_time=builder.end_time,
        deadline=builder.deadline,
        deadline_time=builder.deadline_time,
        is_future=builder.is_future and builder.start_date is None,
        commands=builder.commands,
        indent=len(indent),
        validation_warning=builder.validate(),
    )


def parse_flow_commands(flow: str) -> list[FlowCommand]:
    """Parse ``name(a, b).mod(c) other()`` into FlowCommands."""
    commands: list[FlowCommand] = []
    for m in RE_COMMAND.finditer(flow):
        name, raw_args, raw_modifiers = m.groups()
        modifiers = [
            FlowModifier(name=mm.group(1), args=_split_args(mm.group(2)))
            for mm in RE_MODIFIER.finditer(raw_modifiers or "")
        ]
        commands.append(FlowCommand(name=name, args=_split_args(raw_args), modifiers=modifiers))
    return commands


def format_task(task: Task) -> str:
    """Render a Task back into its line form (without indentation)."""
    meta = ""
    start = ""
    if task.is_future and task.start_date is None:
        start = "@future"
    elif task.start_date is not None:
        start = f"@{task.start_date.isoformat()}"
        if task.start_time is not None:
            start += f"T{_fmt_time(task.start_time)}"
    elif task.start_time or task.end_date or task.end_time or task.deadline:
        # implicit start (today)
        start = "@"
        if task.start_time is not None:
            start += f"T{_fmt_time(task.start_time)}"

    if start:
        meta = f" {start}"
        if task.end_date is not None:
            same_day = task.start_date is not None and task.end_date == task.start_date
            if not same_day or task.end_time is not None:
                meta += ">"
                if not same_day:
                    meta += task.end_date.isoformat()
                    if task.end_time is not None:
                        meta += f"T{_fmt_time(task.end_time)}"
                else:
                    meta += _fmt_time(task.end_time)
            elif task.deadline is not None:
                meta += ">"
        elif task.end_time is not None:
            meta += f">{_fmt_time(task.end_time)}"
        elif task.deadline is not None:
            meta += ">"

        if task.deadline is not None:
            meta += f">{task.deadline.isoformat()}"
            if task.deadline_time is not None:
                meta += f"T{_fmt_time(task.deadline_time)}"

    flow = ""
    if task.commands:
        parts = []
        for cmd in task.commands:
            s = f"{cmd.name}({', '.join(cmd.args)})"
            s += "".join(f".{mod.name}({', '.join(mod.args)})" for mod in cmd.modifiers)
            parts.append(s)
        flow = f" {FLOW_SEPARATOR} {' '.join(parts)}"

    return f"- [{task.status_char}] {task.content}{meta}{flow}"


def strip_block_id(line: str) -> str:
    return RE_BLOCK_ID.sub("", line)


# ---------------------------------------------------------------------------
# Block collection and document scanning
# ---------------------------------------------------------------------------


def leading_width(line: str) -> int:
    """Number of leading whitespace characters (a tab counts as one)."""
    return len(line) - len(line.lstrip())


def collect_child_block(lines: list[str], index: int) -> list[str]:
    """Collect the raw lines scoped under the task line at ``lines[index]``.

    Blank lines are always taken; a non-blank line is taken only while it
    is strictly more indented than the task line. The caller resumes at
    ``index + 1 + len(result)``. Trailing blank lines at the end of the
    document end up in the block.
    """
    task_indent = leading_width(lines[index])
    children: list[str] = []
    j = index + 1
    while j < len(lines):
        next_line = lines[j]
        if next_line.strip() == "":
            children.append(next_line)
            j += 1
            continue
        if leading_width(next_line) > task_indent:
            children.append(next_line)
            j += 1
        else:
            break
    return children


def frontmatter_end(lines: list[str]) -> int:
    """Return the index of the first body line (0 if there is no frontmatter)."""
    if not lines or lines[0].strip() != FRONTMATTER_FENCE:
        return 0
    for i in range(1, len(lines)):
        if lines[i].strip() == FRONTMATTER_FENCE:
            return i + 1
    return 0


def is_ignored(lines: list[str], body_start: int, ignore_key: str) -> bool:
    """Check the frontmatter for a truthy ``ignore_key`` flag."""
    if body_start <= 0 or not ignore_key:
        return False
    key_line = re.compile(rf"^{re.escape(ignore_key)}\s*:\s*(.*)$")
    for line in lines[1 : body_start - 1]:
        m = key_line.match(line)
        if not m:
            continue
        value = m.group(1).strip()
        value = re.sub(r"\s+#.*$", "", value).strip().strip("'\"").lower()
        return value in TRUTHY_FLAGS
    return False


def parse_document(
    text: str,
    path: str,
    parse: Callable[[str, str, int], Task | None] = parse_line,
) -> list[Task]:
    """Parse a whole document into tasks, in document order.

    Frontmatter is skipped. Each task's child block is parsed again for
    nested tasks.
    """
    lines = text.split("\n")
    body_start = frontmatter_end(lines)
    return _extract(lines[body_start:], body_start, path, parse, parent=None)


def _extract(
    lines: list[str],
    base_line: int,
    path: str,
    parse: Callable[[str, str, int], Task | None],
    parent: Task | None,
) -> list[Task]:
    tasks: list[Task] = []
    i = 0
    while i < len(lines):
        line_no = base_line + i
        task = parse(lines[i], path, line_no)
        if task is None:
            i += 1
            continue

        task.indent = leading_width(lines[i])
        if parent is not None:
            _inherit_dates(task, parent)

        children = collect_child_block(lines, i)
        task.child_lines = children
        tasks.append(task)

        if children:
            nested = _extract(children, line_no + 1, path, parse, parent=task)
            for child in nested:
                if child.indent - task.indent in DIRECT_CHILD_INDENTS:
                    child.parent_id = task.id
                    task.child_ids.append(child.id)
            tasks.extend(nested)

        i += 1 + len(children)
    return tasks


def _inherit_dates(task: Task, parent: Task) -> None:
    if parent.start_date is None:
        return
    if task.start_date is None and task.start_time is not None:
        task.start_date = parent.start_date
        task.start_date_inherited = True
    if task.end_date is None and task.end_time is not None:
        task.end_date = parent.start_date


def _split_args(raw: str) -> list[str]:
    return [a.strip() for a in raw.split(",") if a.strip()]


def _fmt_time(value: time) -> str:
    return value.strftime("%H:%M")


def _parse_date_time(raw: str) -> tuple[date | None, time | None]:
    parsed_date: date | None = None
    parsed_time: time | None = None
    m = RE_DATE.search(raw)
    if m:
        try:
            parsed_date = date.fromisoformat(m.group(1))
        except ValueError:
            pass
    m = RE_TIME.search(raw)
    if m:
        hours, minutes = m.group(1).split(":")
        try:
            parsed_time = time(int(hours), int(minutes))
        except ValueError:
            pass
    return parsed_date, parsed_time


class _TaskBuilder:
    """Pulls the date block out of a task's content."""

    def __init__(self, content: str) -> None:
        self.content = content
        self.commands: list[FlowCommand] = []
        self.start_date: date | None = None
        self.start_time: time | None = None
        self.end_date: date | None = None
        self.end_time: time | None = None
        self.deadline: date | None = None
        self.deadline_time: time | None = None
        self.is_future = False
        self.warning: str | None = None
        self._raw_deadline = ""

    def extract_date_block(self) -> None:
        m = RE_DATE_BLOCK.search(self.content)
        if not m:
            return
        block = m.group(1)
        self.content = self.content.replace(block, "", 1).strip()

        parts = block[1:].split(">")
        raw_start = parts[0]
        if raw_start == "future":
            self.is_future = True
        elif raw_start:
            # "@T10:00" leaves the date implicit
            self.start_date, self.start_time = _parse_date_time(raw_start)

        if len(parts) > 1:
            raw_end = parts[1]
            if raw_end == "":
                # "@start>>deadline": end is the start day
                self.end_date = self.start_date
            else:
                self.end_date, self.end_time = _parse_date_time(raw_end)
                if self.end_date is None:
                    self.end_date = self.start_date

        if len(parts) > 2 and parts[2]:
            self.deadline, deadline_time = _parse_date_time(parts[2])
            if self.deadline is not None:
                self.deadline_time = deadline_time
        if len(parts) > 3:
            self.warning = (
                "Too many '>' separators in date block. "
                f"Expected at most 2 (start>end>deadline), found {len(parts) - 1}."
            )
        self._raw_deadline = parts[2] if len(parts) > 2 else ""

    def is_schedulable(self) -> bool:
        return bool(
            self.start_date
            or self.start_time is not None
            or self.end_date
            or self.end_time is not None
            or self.deadline
            or self.is_future
            or self.commands
        )

    def validate(self) -> str | None:
        """Return the last warning that applies to the parsed date block."""
        warning = self.warning
        if (
            self.start_date is not None
            and self.start_time is not None
            and self.end_time is not None
            and self.end_date == self.start_date
            and self.end_time < self.start_time
        ):
            warning = (
                f"Invalid time range: end time ({_fmt_time(self.end_time)}) is before start time "
                f"({_fmt_time(self.start_time)}) on the same day. "
                "Use an explicit end date for overnight tasks."
            )
        if self.end_time is not None and self.start_time is None:
            warning = "End time specified without start time."
        if self._raw_deadline and not RE_DATE.search(self._raw_deadline):
            warning = "Deadline must include a date (YYYY-MM-DD)."
        return warning
