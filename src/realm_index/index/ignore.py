"""Per-directory ignore rules compiled with pathspec (gitignore semantics)."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

import pathspec

from realm_index.realm.paths import RealmPaths
from realm_index.realm.reader import FileRef, Reader

REALM_METADATA_FILE = ".realm.json"


@dataclass(slots=True, frozen=True)
class CompiledIgnore:
    """Compiled ignore file contents for one directory scope."""

    source: str
    spec: pathspec.PathSpec

    def test(self, local_path: str) -> bool:
        """Return True when the realm-relative path is ignored by this scope."""
        return self.spec.match_file(local_path)


def compile_ignore(content: str) -> CompiledIgnore:
    """Compile ignore file text."""
    return CompiledIgnore(
        source=content,
        spec=pathspec.PathSpec.from_lines("gitwildmatch", content.splitlines()),
    )


async def load_ignore_patterns(
    reader: Reader,
    paths: RealmPaths,
    directory_url: str,
    ignore_files: tuple[str, ...],
) -> FileRef | None:
    """Return the first ignore file present in a directory, in preference order."""
    for name in ignore_files:
        ref = await reader.read_file_as_text(paths.local(f"{directory_url}{name}"))
        if ref is not None:
            return ref
    return None


def is_ignored(realm_url: str, ignore_map: Mapping[str, CompiledIgnore], url: str) -> bool:
    """Test a URL against the most specific ignore scope that contains it."""
    if url == realm_url:
        return False
    if url == f"{realm_url}{REALM_METADATA_FILE}":
        return True
    if not ignore_map:
        return False
    matching = [scope for scope in ignore_map if url.startswith(scope)]
    if not matching:
        return False
    closest = max(matching, key=len)
    local_path = RealmPaths(realm_url).local(url)
    return ignore_map[closest].test(local_path)
