"""Data models for tasks parsed from vault documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time

STATUS_TODO = "todo"
STATUS_DONE = "done"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"
STATUS_BLOCKED = "blocked"
STATUS_POSTPONED = "postponed"

# status character -> semantic status
STATUS_BY_CHAR = {
    "x": STATUS_DONE,
    "X": STATUS_DONE,
    "-": STATUS_CANCELLED,
    "!": STATUS_FAILED,
    "?": STATUS_BLOCKED,
    ">": STATUS_POSTPONED,
}

# semantic status -> canonical status character
CHAR_BY_STATUS = {
    STATUS_TODO: " ",
    STATUS_DONE: "x",
    STATUS_CANCELLED: "-",
    STATUS_FAILED: "!",
    STATUS_BLOCKED: "?",
    STATUS_POSTPONED: ">",
}


def status_for_char(status_char: str) -> str:
    return STATUS_BY_CHAR.get(status_char, STATUS_TODO)


@dataclass
class FlowModifier:
    """A chained modifier on a flow command, e.g. ``.as(New name)``."""

    name: str
    args: list[str] = field(default_factory=list)


@dataclass
class FlowCommand:
    """A structured command following ``==>`` on a task line."""

    name: str
    args: list[str] = field(default_factory=list)
    modifiers: list[FlowModifier] = field(default_factory=list)

    def signature(self) -> str:
        return f"{self.name}({','.join(self.args)})"


@dataclass
class Task:
    """A single task line and its indentation-scoped child block."""

    id: str
    path: str
    line: int
    original_text: str
    content: str
    status_char: str = " "
    status: str = STATUS_TODO
    start_date: date | None = None
    start_time: time | None = None
    end_date: date | None = None
    end_time: time | None = None
    deadline: date | None = None
    deadline_time: time | None = None
    is_future: bool = False
    start_date_inherited: bool = False
    commands: list[FlowCommand] = field(default_factory=list)
    child_lines: list[str] = field(default_factory=list)
    indent: int = 0
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    validation_warning: str | None = None

    @property
    def has_commands(self) -> bool:
        return bool(self.commands)

    def to_dict(self) -> dict:
        """Return a JSON-friendly dict of the task's user-facing fields."""
        d: dict = {
            "id": self.id,
            "path": self.path,
            "line": self.line,
            "content": self.content,
            "status": self.status,
            "status_char": self.status_char,
        }
        for name in ("start_date", "end_date", "deadline"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value.isoformat()
        for name in ("start_time", "end_time", "deadline_time"):
            value = getattr(self, name)
            if value is not None:
                d[name] = value.strftime("%H:%M")
        if self.is_future:
            d["is_future"] = True
        if self.commands:
            d["commands"] = [
                {
                    "name": c.name,
                    "args": list(c.args),
                    "modifiers": [{"name": m.name, "args": list(m.args)} for m in c.modifiers],
                }
                for c in self.commands
            ]
        if self.child_lines:
            d["child_lines"] = list(self.child_lines)
        if self.validation_warning:
            d["validation_warning"] = self.validation_warning
        return d
