"""Document stores the index reads from."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

MARKDOWN_SUFFIX = ".md"


class Vault(Protocol):
    """A set of text documents addressed by vault-relative paths."""

    def list_documents(self) -> list[str]: ...

    async def read(self, path: str) -> str: ...


class FileSystemVault:
    """Markdown files under a directory, addressed by relative POSIX paths."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def resolve(self, path: str) -> Path:
        return self.root / path

    def relative(self, path: str | Path) -> str | None:
        """Map an absolute path to a document path, or None if it is not one."""
        p = Path(path)
        if p.suffix != MARKDOWN_SUFFIX:
            return None
        try:
            return p.resolve().relative_to(self.root.resolve()).as_posix()
        except ValueError:
            return None

    def list_documents(self) -> list[str]:
        return sorted(
            p.relative_to(self.root).as_posix()
            for p in self.root.rglob(f"*{MARKDOWN_SUFFIX}")
            if p.is_file() and not any(part.startswith(".") for part in p.relative_to(self.root).parts)
        )

    async def read(self, path: str) -> str:
        return await asyncio.to_thread(self.resolve(path).read_text, encoding="utf-8")


class MemoryVault:
    """A vault held in a dict; handy for embedding and tests."""

    def __init__(self, documents: dict[str, str] | None = None) -> None:
        self.documents: dict[str, str] = dict(documents or {})

    def list_documents(self) -> list[str]:
        return sorted(self.documents)

    async def read(self, path: str) -> str:
        try:
            return self.documents[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    def write(self, path: str, text: str) -> None:
        self.documents[path] = text

    def remove(self, path: str) -> None:
        self.documents.pop(path, None)
