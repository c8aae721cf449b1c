"""Recursive realm traversal honoring ignore scopes."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field

from realm_index.config import IndexConfig
from realm_index.errors import CardError, CardParseError
from realm_index.index.ignore import (
    CompiledIgnore,
    compile_ignore,
    is_ignored,
    load_ignore_patterns,
)
from realm_index.index.models import (
    CardResource,
    DirectoryEntry,
    ErrorResult,
    ModuleEntry,
    ModuleError,
    ModuleWithErrors,
)
from realm_index.index.module_syntax import parse_module
from realm_index.index.refs import CardRef, absolutize, card_ref_from_dict
from realm_index.loader import Loader
from realm_index.logging import IndexEventLog
from realm_index.realm.paths import RealmPaths
from realm_index.realm.reader import FileRef, Reader

INSTANCE_EXTENSION = ".json"


@dataclass(slots=True, frozen=True)
class InstanceFile:
    """A parsed card document, stamped with its id and modification time."""

    file_url: str
    resource: CardResource
    adopts_from: CardRef


@dataclass(slots=True)
class WalkResult:
    """Everything one traversal collected."""

    modules: dict[str, ModuleWithErrors] = field(default_factory=dict)
    instances: dict[str, InstanceFile | ErrorResult] = field(default_factory=dict)
    directories: dict[str, tuple[DirectoryEntry, ...]] = field(default_factory=dict)
    ignore_map: dict[str, CompiledIgnore] = field(default_factory=dict)
    ignore_data: dict[str, str] = field(default_factory=dict)


def trim_extension(url: str, extensions: tuple[str, ...]) -> str:
    """Drop a trailing extension from the given set, if present."""
    for extension in extensions:
        if url.endswith(extension):
            return url[: -len(extension)]
    return url


def instance_id(file_url: str) -> str:
    """Return the id of the instance stored at a `.json` file URL."""
    return trim_extension(file_url, (INSTANCE_EXTENSION,))


def instance_file_url(card_id: str) -> str:
    """Return the file URL of the instance with the given id."""
    return f"{card_id}{INSTANCE_EXTENSION}"


def parse_instance(file_url: str, ref: FileRef, realm_url: str) -> InstanceFile | None:
    """Parse a `.json` file; non-card JSON yields None, malformed JSON raises."""
    try:
        document = json.loads(ref.content)
    except json.JSONDecodeError as error:
        raise CardParseError(f"Unable to parse {file_url}: {error.msg}", source=file_url) from error
    if not isinstance(document, dict):
        return None
    data = document.get("data")
    if not isinstance(data, dict):
        return None
    meta = data.get("meta")
    if not isinstance(meta, dict) or "adoptsFrom" not in meta:
        return None
    card_id = instance_id(file_url)
    try:
        adopts_from = absolutize(card_ref_from_dict(meta["adoptsFrom"]), card_id)
    except ValueError as error:
        raise CardParseError(
            f"Invalid adoptsFrom in {file_url}: {error}", source=file_url
        ) from error

    resource: CardResource = copy.deepcopy(data)
    resource["id"] = card_id
    resource.setdefault("type", "card")
    resource["meta"] = {
        **copy.deepcopy(meta),
        "lastModified": ref.last_modified,
        "realmURL": realm_url,
    }
    return InstanceFile(file_url=file_url, resource=resource, adopts_from=adopts_from)


class DirectoryWalker:
    """Walk a realm through its reader, classifying modules and instances."""

    def __init__(
        self,
        reader: Reader,
        paths: RealmPaths,
        loader: Loader,
        index_config: IndexConfig,
        events: IndexEventLog,
    ) -> None:
        self._reader = reader
        self._paths = paths
        self._loader = loader
        self._config = index_config
        self._events = events

    def is_module(self, url: str) -> bool:
        """Return True when the URL names an executable card module."""
        return any(url.endswith(extension) for extension in self._config.module_extensions)

    def is_instance(self, url: str) -> bool:
        """Return True when the URL names a card document."""
        return url.endswith(INSTANCE_EXTENSION)

    def module_key(self, url: str) -> str:
        """Return the extension-trimmed module URL."""
        return trim_extension(url, self._config.module_extensions)

    async def walk(self, *, listing_only: bool = False) -> WalkResult:
        """Traverse the realm; a listing-only walk skips reading card files."""
        result = WalkResult()
        await self._visit_directory(self._paths.url, result, listing_only)
        return result

    async def _visit_directory(
        self, directory_url: str, result: WalkResult, listing_only: bool
    ) -> None:
        ignore_ref = await load_ignore_patterns(
            self._reader, self._paths, directory_url, self._config.ignore_files
        )
        if ignore_ref is not None:
            result.ignore_map[directory_url] = compile_ignore(ignore_ref.content)
            result.ignore_data[directory_url] = ignore_ref.content

        listing: list[DirectoryEntry] = []
        subdirectories: list[str] = []
        files: list[str] = []
        async for entry in self._reader.readdir(self._paths.local(directory_url)):
            if entry.kind == "directory":
                url = self._paths.directory_url(entry.path)
            else:
                url = self._paths.file_url(entry.path)
            if is_ignored(self._paths.url, result.ignore_map, url):
                continue
            listing.append(DirectoryEntry(name=entry.name, kind=entry.kind))
            if entry.kind == "directory":
                subdirectories.append(url)
            else:
                files.append(url)
        result.directories[directory_url] = tuple(listing)

        for url in files:
            if not listing_only:
                await self.visit_file(url, result)
        for url in subdirectories:
            await self._visit_directory(url, result, listing_only)

    async def visit_file(self, url: str, result: WalkResult) -> None:
        """Classify and load one file into the walk result."""
        if self.is_module(url):
            if self.module_key(url) == self._loader.card_api_url:
                return
            module = await self.visit_module(url)
            if module is not None:
                result.modules[url] = module
                result.modules[self.module_key(url)] = module
            return
        if self.is_instance(url):
            instance = await self.visit_instance(url)
            if instance is not None:
                result.instances[instance_id(url)] = instance

    async def visit_module(self, url: str) -> ModuleWithErrors | None:
        """Read and analyse a module; None when the file is gone."""
        ref = await self._reader.read_file_as_text(self._paths.local(url))
        if ref is None:
            return None
        try:
            syntax = parse_module(ref.content, self._loader.import_map, url=url)
        except CardError as error:
            self._events.emit("module_error", url=url, detail=error.detail)
            return ModuleError(module_url=url, error=error.to_dict())
        return ModuleEntry(url=url, consumes=syntax.consumes(url), syntax=syntax)

    async def visit_instance(self, url: str) -> InstanceFile | ErrorResult | None:
        """Read and parse a card document; None when absent or not a card."""
        ref = await self._reader.read_file_as_text(self._paths.local(url))
        if ref is None:
            return None
        try:
            return parse_instance(url, ref, self._paths.url)
        except CardError as error:
            self._events.emit("instance_error", url=url, detail=error.detail)
            payload = error.to_dict()
            payload["deps"] = []
            return ErrorResult(error=payload)
