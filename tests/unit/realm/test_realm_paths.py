from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from realm_index.realm.paths import (
    PathBlockedError,
    RealmPaths,
    normalize_realm_url,
    resolve_realm_path,
    url_basename,
)
from realm_index.realm.reader import FilesystemReader

REALM = "http://localhost/realm/"


def test_path_traversal_is_blocked(tmp_path: Path) -> None:
    with pytest.raises(PathBlockedError) as error:
        resolve_realm_path(tmp_path, "pets/../../outside.json")

    assert error.value.reason == "Path traversal is blocked."


@pytest.mark.parametrize("candidate", ["/etc/passwd", "C:\\realm\\pets", "\\\\share\\pets"])
def test_absolute_paths_are_blocked(tmp_path: Path, candidate: str) -> None:
    with pytest.raises(PathBlockedError) as error:
        resolve_realm_path(tmp_path, candidate)

    assert error.value.reason == "Absolute paths are not realm-relative."


def test_symlink_escape_is_blocked(tmp_path: Path) -> None:
    realm = tmp_path / "realm"
    realm.mkdir()
    outside = tmp_path / "outside-target"
    outside.mkdir()
    (outside / "leak.json").write_text("{}", encoding="utf-8")
    (realm / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(PathBlockedError) as error:
        resolve_realm_path(realm, "link/leak.json")

    assert error.value.reason == "Resolved path escapes the realm root."


def test_realm_urls_translate_to_local_paths() -> None:
    paths = RealmPaths("http://localhost/realm")

    assert paths.url == REALM
    assert paths.local(f"{REALM}pets/mango.json?fields=name#top") == "pets/mango.json"
    assert paths.local(f"{REALM}pets/") == "pets/"
    assert paths.file_url("/pets/mango.json") == f"{REALM}pets/mango.json"
    assert paths.directory_url("pets") == f"{REALM}pets/"
    assert paths.directory_url("") == REALM
    assert paths.in_realm("http://localhost/other/x") is False
    with pytest.raises(ValueError):
        paths.local("http://localhost/other/x")


def test_url_helpers() -> None:
    assert normalize_realm_url("https://cards.example/catalog?x=1#frag") == (
        "https://cards.example/catalog/"
    )
    assert url_basename(f"{REALM}pets/") == "pets"
    assert url_basename(f"{REALM}pets/mango.json") == "mango.json"


def test_reader_lists_sorted_entries_and_skips_excluded_dirs(tmp_path: Path) -> None:
    (tmp_path / "b.json").write_text("{}", encoding="utf-8")
    (tmp_path / "a").mkdir()
    (tmp_path / ".realm_index").mkdir()
    reader = FilesystemReader(tmp_path, excluded_dirs=(tmp_path / ".realm_index",))

    async def scenario() -> tuple[list[tuple[str, str]], object, object]:
        listing = [(entry.path, entry.kind) async for entry in reader.readdir("")]
        found = await reader.read_file_as_text("b.json")
        return listing, found, await reader.read_file_as_text("a")

    listing, found, directory = asyncio.run(scenario())

    assert listing == [("a", "directory"), ("b.json", "file")]
    assert found is not None and found.content == "{}"
    assert directory is None
