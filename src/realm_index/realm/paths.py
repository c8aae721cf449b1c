"""Realm URL helpers and sandboxed local path resolution."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Final
from urllib.parse import urljoin, urlsplit, urlunsplit

WINDOWS_ABSOLUTE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-zA-Z]:[\\/]")


class PathBlockedError(Exception):
    """Raised when a requested path escapes the realm root."""

    def __init__(self, reason: str, hint: str) -> None:
        super().__init__(reason)
        self.reason = reason
        self.hint = hint


def normalize_realm_url(url: str) -> str:
    """Return the realm URL with fragment/query dropped and a trailing slash."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if not path.endswith("/"):
        path = f"{path}/"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def resolve_url(reference: str, base: str) -> str:
    """Resolve a possibly relative URL against a base URL."""
    return urljoin(base, reference)


def url_basename(url: str) -> str:
    """Return the last path segment of a URL."""
    stripped = url[:-1] if url.endswith("/") else url
    return stripped.rpartition("/")[2]


class RealmPaths:
    """Translate between realm URLs and realm-relative local paths."""

    def __init__(self, realm_url: str) -> None:
        self.url = normalize_realm_url(realm_url)

    def in_realm(self, url: str) -> bool:
        """Return True when the URL lives inside this realm."""
        return url.startswith(self.url)

    def local(self, url: str) -> str:
        """Return the realm-relative path, keeping a trailing slash for directories."""
        if not self.in_realm(url):
            raise ValueError(f"url {url} is not in realm {self.url}")
        return urlsplit(url)._replace(query="", fragment="").geturl()[len(self.url) :]

    def file_url(self, local_path: str) -> str:
        """Return the URL of a file at a realm-relative path."""
        return f"{self.url}{local_path.lstrip('/')}"

    def directory_url(self, local_path: str) -> str:
        """Return the URL of a directory at a realm-relative path."""
        cleaned = local_path.strip("/")
        if not cleaned:
            return self.url
        return f"{self.url}{cleaned}/"


def _normalize_relative_input(candidate: str) -> tuple[str, bool]:
    """Normalize path separators and detect absolute-style inputs."""
    normalized = candidate.replace("\\", "/")
    if normalized.startswith("/"):
        return normalized, True
    if WINDOWS_ABSOLUTE_PATTERN.match(normalized):
        return normalized, True
    return normalized, False


def resolve_realm_path(realm_root: Path, local_path: str) -> Path:
    """Resolve a realm-relative path against the on-disk realm root."""
    root = realm_root.resolve()
    normalized, is_absolute_style = _normalize_relative_input(local_path)

    if not normalized:
        return root

    if is_absolute_style:
        raise PathBlockedError(
            reason="Absolute paths are not realm-relative.",
            hint="Use a path relative to the realm root such as 'pets/mango.json'.",
        )

    parts = [part for part in normalized.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        raise PathBlockedError(
            reason="Path traversal is blocked.",
            hint="Remove '..' segments and use a realm-relative path.",
        )

    resolved = (root / Path(*parts)).resolve(strict=False) if parts else root
    if not resolved.is_relative_to(root):
        raise PathBlockedError(
            reason="Resolved path escapes the realm root.",
            hint="Use a path located under the configured realm root.",
        )
    return resolved
