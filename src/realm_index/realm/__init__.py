"""Realm addressing and file access."""

from .paths import (
    PathBlockedError,
    RealmPaths,
    normalize_realm_url,
    resolve_realm_path,
    resolve_url,
    url_basename,
)
from .reader import DirEntry, FileRef, FilesystemReader, Kind, Reader

__all__ = [
    "DirEntry",
    "FileRef",
    "FilesystemReader",
    "Kind",
    "PathBlockedError",
    "Reader",
    "RealmPaths",
    "normalize_realm_url",
    "resolve_realm_path",
    "resolve_url",
    "url_basename",
]
