"""Search index facade: one realm's runs, queries, cards and type lookups."""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping

from realm_index.config import IndexConfig, RealmConfig, RunnerMode
from realm_index.index.definitions import lookup_definition
from realm_index.index.ignore import is_ignored
from realm_index.index.models import (
    CardDefinition,
    CardResource,
    DirectoryEntry,
    EntryResult,
    ErrorResult,
    RunState,
    Stats,
)
from realm_index.index.refs import CardRef, ExportedCardRef, absolutize
from realm_index.index.runner import EntrySetter, RunnerOptions
from realm_index.index.state import IndexState, RunPhase
from realm_index.index.walker import instance_id, trim_extension
from realm_index.jobs import (
    InProcessDispatcher,
    LocalQueue,
    Queue,
    QueueDispatcher,
    RunnerOptionsRegistry,
    RunOrchestrator,
    register_index_jobs,
)
from realm_index.jobs.dispatch import Dispatcher
from realm_index.jobs.orchestrator import InvalidationCallback
from realm_index.links import LinkResolver
from realm_index.loader import Loader
from realm_index.logging import IndexEventLog, JsonlAuditLogger
from realm_index.query import Query, QueryEngine, parse_query
from realm_index.realm.paths import RealmPaths, resolve_url, url_basename
from realm_index.realm.reader import FilesystemReader, Reader
from realm_index.store import (
    CardStore,
    JsonlIndexer,
    MemoryStore,
    PersistentStore,
    get_resource_copy,
)

ALWAYS_IGNORED_NAMES = ("node_modules",)


class SearchIndex:
    """Index one realm and answer queries against its published snapshot."""

    def __init__(
        self,
        realm_url: str,
        reader: Reader,
        loader: Loader | None = None,
        *,
        index_config: IndexConfig | None = None,
        runner_mode: RunnerMode = "in-process",
        queue: Queue | None = None,
        indexer: JsonlIndexer | None = None,
        event_logger: JsonlAuditLogger | None = None,
    ) -> None:
        self._paths = RealmPaths(realm_url)
        self.realm_url = self._paths.url
        self._reader = reader
        self._loader = loader or Loader()
        self._config = index_config or IndexConfig()
        self._events = IndexEventLog(self.realm_url, event_logger)
        self._state = IndexState(self.realm_url)
        self._store: CardStore
        if indexer is not None:
            self._store = PersistentStore(indexer, self.realm_url)
        else:
            self._store = MemoryStore(self._state)
        self._registry = RunnerOptionsRegistry()
        dispatcher: Dispatcher
        if runner_mode == "queue":
            if queue is None:
                local_queue = LocalQueue()
                register_index_jobs(local_queue, self._registry, self.realm_url)
                queue = local_queue
            dispatcher = QueueDispatcher(queue, self.realm_url)
        else:
            dispatcher = InProcessDispatcher(self._registry)
        self._orchestrator = RunOrchestrator(
            realm_url=self.realm_url,
            state=self._state,
            registry=self._registry,
            dispatcher=dispatcher,
            options_factory=self._runner_options,
            publish_hook=self._store.publish,
        )
        self._links = LinkResolver(
            realm_url=self.realm_url,
            get_resource=self._get_resource,
            loader=self._loader,
            max_link_depth=self._config.max_link_depth,
        )

    @classmethod
    def from_config(cls, config: RealmConfig, *, loader: Loader | None = None) -> SearchIndex:
        """Build an index for a realm served from the configured local directory."""
        reader = FilesystemReader(config.realm_root, excluded_dirs=(config.data_dir,))
        indexer = JsonlIndexer(config.data_dir) if config.store_mode == "persistent" else None
        return cls(
            config.realm_url,
            reader,
            loader or Loader(config.loader),
            index_config=config.index,
            runner_mode=config.runner_mode,
            indexer=indexer,
            event_logger=JsonlAuditLogger(config.data_dir / "index_events.jsonl"),
        )

    @property
    def loader(self) -> Loader:
        """Return the loader used for base types and remote fetches."""
        return self._loader

    @property
    def runner_registry(self) -> RunnerOptionsRegistry:
        """Return the registry queue workers use to look up run options."""
        return self._registry

    @property
    def run_state(self) -> RunState:
        """Return the published snapshot."""
        return self._state.current

    @property
    def stats(self) -> Stats:
        """Return counters of the published snapshot."""
        return self._state.current.stats

    @property
    def phase(self) -> RunPhase:
        """Return the current run phase."""
        return self._state.phase

    def status(self) -> dict[str, object]:
        """Return a serializable summary of the index."""
        return self._state.summary()

    async def run(self) -> None:
        """Rebuild the index from scratch."""
        await self._orchestrator.run()

    async def update(
        self,
        url: str,
        *,
        delete: bool = False,
        on_invalidation: InvalidationCallback | None = None,
    ) -> None:
        """Re-index one changed (or deleted) file."""
        await self._orchestrator.update(url, delete=delete, on_invalidation=on_invalidation)

    def is_ignored(self, url: str) -> bool:
        """Return True when the URL is excluded from indexing."""
        if url_basename(url) in ALWAYS_IGNORED_NAMES:
            return True
        return is_ignored(self.realm_url, self._state.current.ignore_map, url)

    async def search(
        self,
        query: Query | Mapping[str, object] | None = None,
        *,
        load_links: bool = False,
    ) -> dict[str, object]:
        """Return a collection document of matching cards."""
        engine = self._query_engine()
        parsed = query if isinstance(query, Query) else parse_query(query, engine.root_ref)
        entries = await self._store.search(parsed, engine)
        data = [_with_self_link(copy.deepcopy(entry.resource)) for entry in entries]
        document: dict[str, object] = {"data": data}
        if load_links:
            omit = [str(resource["id"]) for resource in data]
            included: list[CardResource] = []
            for resource in data:
                included = await self._links.load_links(resource, omit=omit, included=included)
            if included:
                document["included"] = included
        return document

    async def card(self, url: str, *, load_links: bool = False) -> dict[str, object] | None:
        """Return `{"type": "doc", "doc": ...}`, `{"type": "error", ...}` or None."""
        card_id = instance_id(url)
        item = await self._store.get_entry(card_id)
        if item is None:
            return None
        if isinstance(item, ErrorResult):
            return {"type": "error", "error": item.error}
        resource = _with_self_link(copy.deepcopy(item.entry.resource))
        document: dict[str, object] = {"data": resource}
        if load_links:
            included = await self._links.load_links(resource, omit=[card_id])
            if included:
                document["included"] = included
        return {"type": "doc", "doc": document}

    async def search_entry(self, url: str) -> dict[str, object] | None:
        """Return the raw indexed view of one instance, or None for missing or errored ones."""
        item = await self._store.get_entry(instance_id(url))
        if not isinstance(item, EntryResult):
            return None
        entry = item.entry
        return {
            "type": "card",
            "card": entry.resource,
            "searchDoc": json.loads(json.dumps(entry.search_data, default=str)),
            "isolatedHtml": entry.html,
            "realmURL": self.realm_url,
            "realmVersion": self._state.generation,
            "indexedAt": self._state.published_at,
            "types": list(entry.types),
            "deps": sorted(entry.deps),
        }

    async def type_of(self, ref: CardRef) -> CardDefinition | None:
        """Return the definition of a type; other realms are asked through the loader."""
        normalized = self._normalize_ref(ref)
        return await lookup_definition(
            self.realm_url, self._store.definitions(), self._loader, normalized
        )

    def exported_cards_of(self, module: str) -> tuple[CardRef, ...]:
        """Return refs of the card types a realm module exports."""
        module_url = trim_extension(
            resolve_url(module, self.realm_url), self._config.module_extensions
        )
        return self._store.exported_card_refs().get(module_url, ())

    def directory(self, url: str) -> tuple[DirectoryEntry, ...] | None:
        """Return the listing of an indexed directory."""
        directory_url = url if url.endswith("/") else f"{url}/"
        return self._state.current.directories.get(directory_url)

    async def aclose(self) -> None:
        """Release network resources."""
        await self._loader.aclose()

    def _normalize_ref(self, ref: CardRef) -> CardRef:
        absolute = absolutize(ref, self.realm_url)
        if isinstance(absolute, ExportedCardRef):
            return ExportedCardRef(
                module=trim_extension(absolute.module, self._config.module_extensions),
                name=absolute.name,
            )
        return absolute

    def _runner_options(self, entry_setter: EntrySetter, prior: RunState | None) -> RunnerOptions:
        return RunnerOptions(
            realm_url=self.realm_url,
            reader=self._reader,
            loader=self._loader,
            index_config=self._config,
            events=self._events,
            entry_setter=entry_setter,
            prior=prior,
        )

    def _query_engine(self) -> QueryEngine:
        definitions = self._store.definitions()

        async def lookup(ref: CardRef) -> CardDefinition | None:
            return await lookup_definition(self.realm_url, definitions, self._loader, ref)

        return QueryEngine(lookup, self._loader)

    async def _get_resource(self, url: str) -> CardResource | None:
        resource = await get_resource_copy(self._store, url)
        return _with_self_link(resource) if resource is not None else None


def _with_self_link(resource: CardResource) -> CardResource:
    resource["links"] = {"self": resource.get("id")}
    return resource

