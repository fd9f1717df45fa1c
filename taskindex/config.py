"""Index settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_START_HOUR = 5
DEFAULT_IGNORE_KEY = "taskindex-ignore"


@dataclass
class IndexSettings:
    """Knobs shared by the scanner and the query surface."""

    start_hour: int = DEFAULT_START_HOUR  # hour at which the visual day begins
    excluded_paths: list[str] = field(default_factory=list)  # path prefixes
    ignore_key: str = DEFAULT_IGNORE_KEY  # frontmatter flag that hides a document

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour <= 23:
            raise ValueError(f"start_hour must be between 0 and 23, got {self.start_hour}")

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.excluded_paths)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> IndexSettings:
        """Build settings from TASKINDEX_* environment variables."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}
        if env.get("TASKINDEX_START_HOUR"):
            kwargs["start_hour"] = int(env["TASKINDEX_START_HOUR"])
        if env.get("TASKINDEX_EXCLUDE"):
            kwargs["excluded_paths"] = [
                p.strip() for p in env["TASKINDEX_EXCLUDE"].split(",") if p.strip()
            ]
        if env.get("TASKINDEX_IGNORE_KEY"):
            kwargs["ignore_key"] = env["TASKINDEX_IGNORE_KEY"]
        return cls(**kwargs)
