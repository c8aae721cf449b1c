"""Card stores: the published snapshot, or a persistent JSONL indexer."""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

from realm_index.index.models import (
    CardDefinition,
    CardResource,
    EntryResult,
    ErrorResult,
    RunState,
    SearchEntry,
    SearchEntryWithErrors,
    definition_from_resource,
    definition_to_resource,
)
from realm_index.index.refs import CardRef, card_ref_from_dict, card_ref_to_dict
from realm_index.index.state import IndexState
from realm_index.logging import utc_timestamp
from realm_index.query import Query, QueryEngine

INDEX_SCHEMA_VERSION = 2


class CardStore(Protocol):
    """Read side of the index used by search, card lookup and link loading."""

    async def get_entry(self, url: str) -> SearchEntryWithErrors | None:
        """Return the indexed entry (or error) for an instance id."""

    async def search(self, query: Query, engine: QueryEngine) -> list[SearchEntry]:
        """Return entries matching a query, in order."""

    def definitions(self) -> Mapping[str, CardDefinition]:
        """Return the realm's card definitions keyed by lookup key."""

    def exported_card_refs(self) -> Mapping[str, tuple[CardRef, ...]]:
        """Return the card refs each realm module exports."""

    async def publish(self, state: RunState) -> None:
        """Persist a snapshot that is about to become current."""


async def get_resource_copy(store: CardStore, url: str) -> CardResource | None:
    """Return a deep copy of an indexed resource, safe to rewrite."""
    item = await store.get_entry(url)
    if not isinstance(item, EntryResult):
        return None
    return copy.deepcopy(item.entry.resource)


class MemoryStore:
    """Serve reads from the currently published snapshot."""

    def __init__(self, state: IndexState) -> None:
        self._state = state

    async def get_entry(self, url: str) -> SearchEntryWithErrors | None:
        return self._state.current.instances.get(url)

    async def search(self, query: Query, engine: QueryEngine) -> list[SearchEntry]:
        snapshot = self._state.current
        return await engine.execute(snapshot.instances.values(), query)

    def definitions(self) -> Mapping[str, CardDefinition]:
        return self._state.current.definitions

    def exported_card_refs(self) -> Mapping[str, tuple[CardRef, ...]]:
        return self._state.current.exported_card_refs

    async def publish(self, state: RunState) -> None:
        return None


def entry_to_row(realm_url: str, url: str, item: SearchEntryWithErrors) -> dict[str, object]:
    """Serialize an entry (or error) to one JSONL row."""
    if isinstance(item, ErrorResult):
        return {"realm_url": realm_url, "url": url, "type": "error", "error": item.error}
    entry = item.entry
    return {
        "realm_url": realm_url,
        "url": url,
        "type": "entry",
        "resource": entry.resource,
        "search_data": entry.search_data,
        "types": list(entry.types),
        "deps": sorted(entry.deps),
        "html": entry.html,
    }


def entry_from_row(row: Mapping[str, object]) -> SearchEntryWithErrors | None:
    """Rebuild an entry from a JSONL row; malformed rows yield None."""
    if row.get("type") == "error":
        error = row.get("error")
        return ErrorResult(error=error) if isinstance(error, dict) else None
    resource = row.get("resource")
    search_data = row.get("search_data")
    types = row.get("types")
    deps = row.get("deps")
    html = row.get("html")
    if not isinstance(resource, dict) or not isinstance(search_data, dict):
        return None
    if not isinstance(types, list) or not isinstance(deps, list):
        return None
    return EntryResult(
        entry=SearchEntry(
            resource=resource,
            search_data=search_data,
            types=tuple(str(item) for item in types),
            deps=frozenset(str(item) for item in deps),
            html=html if isinstance(html, str) else None,
        )
    )


def definition_to_row(realm_url: str, key: str, definition: CardDefinition) -> dict[str, object]:
    """Serialize a definition, stored under one of its lookup keys."""
    return {
        "realm_url": realm_url,
        "url": key,
        "type": "definition",
        "resource": definition_to_resource(definition),
    }


def exports_to_row(realm_url: str, module: str, refs: tuple[CardRef, ...]) -> dict[str, object]:
    """Serialize the card refs one module exports."""
    return {
        "realm_url": realm_url,
        "url": module,
        "type": "exports",
        "refs": [card_ref_to_dict(ref) for ref in refs],
    }


@dataclass(slots=True)
class StoredRealm:
    """Rows of one realm as held by the indexer."""

    instances: dict[str, SearchEntryWithErrors] = field(default_factory=dict)
    definitions: dict[str, CardDefinition] = field(default_factory=dict)
    exported_card_refs: dict[str, tuple[CardRef, ...]] = field(default_factory=dict)

    def rows(self, realm_url: str) -> list[dict[str, object]]:
        """Return every row of the realm in a stable order."""
        rows = [entry_to_row(realm_url, url, self.instances[url]) for url in sorted(self.instances)]
        rows.extend(
            definition_to_row(realm_url, key, self.definitions[key])
            for key in sorted(self.definitions)
        )
        rows.extend(
            exports_to_row(realm_url, module, self.exported_card_refs[module])
            for module in sorted(self.exported_card_refs)
        )
        return rows

    def add_row(self, row: Mapping[str, object]) -> None:
        """Load one JSONL row; malformed rows are skipped."""
        url = row.get("url")
        if not isinstance(url, str):
            return
        row_type = row.get("type")
        if row_type == "definition":
            try:
                self.definitions[url] = definition_from_resource(row.get("resource"))
            except ValueError:
                return
        elif row_type == "exports":
            refs = row.get("refs")
            if not isinstance(refs, list):
                return
            try:
                self.exported_card_refs[url] = tuple(card_ref_from_dict(ref) for ref in refs)
            except ValueError:
                return
        else:
            item = entry_from_row(row)
            if item is not None:
                self.instances[url] = item


class JsonlIndexer:
    """Persist entries and definitions for any number of realms with atomic JSONL rewrites."""

    def __init__(self, data_dir: Path) -> None:
        self._index_dir = data_dir.resolve() / "index"
        self._manifest_path = self._index_dir / "manifest.json"
        self._entries_path = self._index_dir / "entries.jsonl"
        self._cache: dict[str, StoredRealm] | None = None

    @property
    def entries_path(self) -> Path:
        """Return the on-disk JSONL path."""
        return self._entries_path

    def status(self) -> dict[str, object]:
        """Return manifest-derived status."""
        manifest = self._read_manifest()
        if manifest is None:
            return {"index_status": "not_indexed", "entry_count": 0, "written_at": None}
        if manifest.get("schema_version") != INDEX_SCHEMA_VERSION:
            return {"index_status": "schema_mismatch", "entry_count": 0, "written_at": None}
        return {
            "index_status": "ready",
            "entry_count": manifest.get("entry_count", 0),
            "written_at": manifest.get("written_at"),
        }

    def write(
        self,
        realm_url: str,
        instances: Mapping[str, SearchEntryWithErrors],
        definitions: Mapping[str, CardDefinition] | None = None,
        exported_card_refs: Mapping[str, tuple[CardRef, ...]] | None = None,
    ) -> None:
        """Replace every stored row of one realm."""
        realms = dict(self._load())
        realms[realm_url] = StoredRealm(
            instances=dict(instances),
            definitions=dict(definitions or {}),
            exported_card_refs=dict(exported_card_refs or {}),
        )
        rows = [row for realm in sorted(realms) for row in realms[realm].rows(realm)]
        self._index_dir.mkdir(parents=True, exist_ok=True)
        self._atomic_write_jsonl(self._entries_path, rows)
        self._atomic_write_json(
            self._manifest_path,
            {
                "schema_version": INDEX_SCHEMA_VERSION,
                "written_at": utc_timestamp(),
                "entry_count": sum(len(stored.instances) for stored in realms.values()),
                "realms": sorted(realms),
            },
        )
        self._cache = realms

    def get_card(self, url: str) -> SearchEntryWithErrors | None:
        """Return the stored entry for an instance id in any realm."""
        for stored in self._load().values():
            if url in stored.instances:
                return stored.instances[url]
        return None

    def definitions(self, realm_url: str) -> Mapping[str, CardDefinition]:
        """Return one realm's stored definitions keyed by lookup key."""
        stored = self._load().get(realm_url)
        return MappingProxyType(stored.definitions if stored is not None else {})

    def exported_card_refs(self, realm_url: str) -> Mapping[str, tuple[CardRef, ...]]:
        """Return one realm's stored module exports."""
        stored = self._load().get(realm_url)
        return MappingProxyType(stored.exported_card_refs if stored is not None else {})

    async def search(self, realm_url: str, query: Query, engine: QueryEngine) -> list[SearchEntry]:
        """Run a query over one realm's stored entries."""
        stored = self._load().get(realm_url)
        if stored is None:
            return []
        return await engine.execute(stored.instances.values(), query)

    def _load(self) -> dict[str, StoredRealm]:
        if self._cache is not None:
            return self._cache
        realms: dict[str, StoredRealm] = {}
        manifest = self._read_manifest()
        if (
            manifest is not None
            and manifest.get("schema_version") == INDEX_SCHEMA_VERSION
            and self._entries_path.exists()
        ):
            for row in self._read_jsonl(self._entries_path):
                realm = row.get("realm_url")
                if isinstance(realm, str):
                    realms.setdefault(realm, StoredRealm()).add_row(row)
        self._cache = realms
        return realms

    def _read_manifest(self) -> dict[str, object] | None:
        if not self._manifest_path.exists():
            return None
        with self._manifest_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, dict):
            return None
        return payload

    @staticmethod
    def _read_jsonl(path: Path) -> list[dict[str, object]]:
        output: list[dict[str, object]] = []
        with path.open("r", encoding="utf-8") as handle:
            for raw_line in handle:
                stripped = raw_line.strip()
                if not stripped:
                    continue
                try:
                    obj = json.loads(stripped)
                except json.JSONDecodeError:
                    continue
                if isinstance(obj, dict):
                    output.append(obj)
        return output

    @staticmethod
    def _atomic_write_json(path: Path, payload: dict[str, object]) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, sort_keys=True)
            handle.write("\n")
        tmp.replace(path)

    @staticmethod
    def _atomic_write_jsonl(path: Path, rows: list[dict[str, object]]) -> None:
        tmp = path.with_suffix(path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            for row in rows:
                handle.write(json.dumps(row, sort_keys=True, default=str))
                handle.write("\n")
        tmp.replace(path)


class PersistentStore:
    """Delegate reads and searches entirely to a JSONL indexer."""

    def __init__(self, indexer: JsonlIndexer, realm_url: str) -> None:
        self._indexer = indexer
        self._realm_url = realm_url

    @property
    def indexer(self) -> JsonlIndexer:
        """Return the backing indexer."""
        return self._indexer

    async def get_entry(self, url: str) -> SearchEntryWithErrors | None:
        return self._indexer.get_card(url)

    async def search(self, query: Query, engine: QueryEngine) -> list[SearchEntry]:
        return await self._indexer.search(self._realm_url, query, engine)

    def definitions(self) -> Mapping[str, CardDefinition]:
        return self._indexer.definitions(self._realm_url)

    def exported_card_refs(self) -> Mapping[str, tuple[CardRef, ...]]:
        return self._indexer.exported_card_refs(self._realm_url)

    async def publish(self, state: RunState) -> None:
        self._indexer.write(
            self._realm_url, state.instances, state.definitions, state.exported_card_refs
        )
