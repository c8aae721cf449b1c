"""Reader collaborator: realm file access by realm-relative path."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from realm_index.realm.paths import resolve_realm_path

Kind = Literal["file", "directory"]


@dataclass(slots=True, frozen=True)
class FileRef:
    """Text content of one realm file."""

    content: str
    last_modified: int


@dataclass(slots=True, frozen=True)
class DirEntry:
    """One entry of a single-level directory listing."""

    name: str
    path: str
    kind: Kind


class Reader(Protocol):
    """Read access to a realm's virtual file tree."""

    async def read_file_as_text(self, local_path: str) -> FileRef | None:
        """Return file content, or None when the file does not exist."""

    def readdir(self, local_path: str) -> AsyncIterator[DirEntry]:
        """Yield the entries of one directory level."""


class FilesystemReader:
    """Serve a realm from a local directory."""

    def __init__(self, realm_root: Path, excluded_dirs: tuple[Path, ...] = ()) -> None:
        self._root = realm_root.resolve()
        self._excluded = tuple(path.resolve() for path in excluded_dirs)

    @property
    def root(self) -> Path:
        """Return the on-disk realm root."""
        return self._root

    async def read_file_as_text(self, local_path: str) -> FileRef | None:
        """Read a UTF-8 file; modification time is reported in whole seconds."""
        path = resolve_realm_path(self._root, local_path)
        if not path.is_file():
            return None
        try:
            stat = path.stat()
            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None
        return FileRef(content=content, last_modified=int(stat.st_mtime))

    async def readdir(self, local_path: str) -> AsyncIterator[DirEntry]:
        """Yield entries sorted by name; symlinks and excluded dirs are skipped."""
        directory = resolve_realm_path(self._root, local_path)
        try:
            with os.scandir(directory) as entries:
                ordered_entries = sorted(entries, key=lambda item: item.name)
        except OSError:
            return
        for entry in ordered_entries:
            full_path = Path(entry.path)
            relative = full_path.relative_to(self._root).as_posix()
            if entry.is_dir(follow_symlinks=False):
                if full_path.resolve() in self._excluded:
                    continue
                yield DirEntry(name=entry.name, path=relative, kind="directory")
                continue
            if not entry.is_file(follow_symlinks=False):
                continue
            yield DirEntry(name=entry.name, path=relative, kind="file")
