"""File access for migration and seed scripts.

Runners never touch the filesystem directly; they go through a `FileSource`
so scripts can come from disk, from package data or from an in-memory map in
tests. Paths are POSIX-style and relative to the source's root.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping


class FileSource(Protocol):
    def list_dir(self, path: str) -> list[str]:
        """Names of the regular files directly under ``path``.

        Raises
        ------
        OSError
            If ``path`` does not exist or cannot be read.
        """
        ...

    def read_text(self, path: str) -> str: ...

    def write_text(self, path: str, content: str) -> None:
        """Create ``path`` with ``content``; raises `FileExistsError` if it exists."""
        ...


class LocalFileSource:
    """Files under a directory on disk (the working directory by default)."""

    __slots__ = ("_root",)

    def __init__(self, root: str | Path = ".") -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def list_dir(self, path: str) -> list[str]:
        return sorted(entry.name for entry in (self._root / path).iterdir() if entry.is_file())

    def read_text(self, path: str) -> str:
        return (self._root / path).read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> None:
        target = self._root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("x", encoding="utf-8") as handle:
            handle.write(content)


class MemoryFileSource:
    """In-memory files keyed by POSIX path.

    Examples
    --------
    >>> files = MemoryFileSource({"db/seed/main/001_product.sql": "INSERT INTO product ..."})
    >>> files.list_dir("db/seed/main")
    ['001_product.sql']
    """

    __slots__ = ("_files",)

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files: dict[str, str] = {str(PurePosixPath(p)): body for p, body in (files or {}).items()}

    @property
    def files(self) -> dict[str, str]:
        return dict(self._files)

    def list_dir(self, path: str) -> list[str]:
        directory = PurePosixPath(path)
        names = [PurePosixPath(p).name for p in self._files if PurePosixPath(p).parent == directory]
        has_children = any(directory in PurePosixPath(p).parents for p in self._files)
        if not names and not has_children:
            raise FileNotFoundError(path)
        return sorted(names)

    def read_text(self, path: str) -> str:
        try:
            return self._files[str(PurePosixPath(path))]
        except KeyError:
            raise FileNotFoundError(path) from None

    def write_text(self, path: str, content: str) -> None:
        key = str(PurePosixPath(path))
        if key in self._files:
            raise FileExistsError(path)
        self._files[key] = content
