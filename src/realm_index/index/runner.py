"""Worker-side index runs: from-scratch rebuilds and single-file revisits."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Literal

from realm_index.config import IndexConfig
from realm_index.errors import CardError, CardFetchError
from realm_index.index.definitions import DefinitionResolver, lookup_definition, type_keys
from realm_index.index.ignore import is_ignored
from realm_index.index.models import (
    CardDefinition,
    EntryResult,
    ErrorResult,
    ModuleEntry,
    ModuleError,
    ModuleWithErrors,
    RunState,
    SearchEntry,
    SearchEntryWithErrors,
    Stats,
    freeze_state,
)
from realm_index.index.refs import CardRef, internal_key_for, root_module_of
from realm_index.index.walker import (
    DirectoryWalker,
    InstanceFile,
    instance_file_url,
    instance_id,
    trim_extension,
)
from realm_index.loader import Loader
from realm_index.logging import IndexEventLog
from realm_index.realm.paths import RealmPaths, resolve_url, url_basename
from realm_index.realm.reader import Reader

Operation = Literal["update", "delete"]
EntrySetter = Callable[[str, SearchEntryWithErrors], None]


@dataclass(slots=True)
class RunnerOptions:
    """Collaborators handed to a worker for the duration of one run."""

    realm_url: str
    reader: Reader
    loader: Loader
    index_config: IndexConfig
    events: IndexEventLog
    entry_setter: EntrySetter
    prior: RunState | None = None


def compute_stats(
    instances: Mapping[str, SearchEntryWithErrors],
    modules: Mapping[str, ModuleWithErrors],
) -> Stats:
    """Count indexed instances, instance errors and distinct module errors."""
    return Stats(
        instances_indexed=sum(1 for item in instances.values() if isinstance(item, EntryResult)),
        instance_errors=sum(1 for item in instances.values() if isinstance(item, ErrorResult)),
        module_errors=len(
            {item.module_url for item in modules.values() if isinstance(item, ModuleError)}
        ),
    )


def deps_of(item: SearchEntryWithErrors) -> frozenset[str]:
    """Return the URLs an indexed instance (or failed instance) depends on."""
    if isinstance(item, EntryResult):
        return item.entry.deps
    raw = item.error.get("deps")
    if isinstance(raw, list):
        return frozenset(dep for dep in raw if isinstance(dep, str))
    return frozenset()


def dependents_of(instances: Mapping[str, SearchEntryWithErrors], seeds: set[str]) -> set[str]:
    """Return ids of instances depending on any seed URL, directly or transitively."""
    invalidated = set(seeds)
    found: set[str] = set()
    changed = True
    while changed:
        changed = False
        for card_id, item in instances.items():
            if card_id in invalidated:
                continue
            if deps_of(item) & invalidated:
                invalidated.add(card_id)
                found.add(card_id)
                changed = True
    return found


def consumers_of(
    modules: Mapping[str, ModuleWithErrors],
    module_url: str,
    extensions: tuple[str, ...],
) -> set[str]:
    """Return trimmed URLs of modules importing `module_url`, transitively."""
    graph: dict[str, tuple[str, ...]] = {}
    for module in modules.values():
        if isinstance(module, ModuleEntry):
            graph[trim_extension(module.url, extensions)] = tuple(
                trim_extension(url, extensions) for url in module.consumes
            )
    found: set[str] = set()
    frontier = [module_url]
    while frontier:
        target = frontier.pop()
        for consumer, consumes in graph.items():
            if target in consumes and consumer not in found and consumer != module_url:
                found.add(consumer)
                frontier.append(consumer)
    return found


class IndexRunner:
    """Execute one index run against a reader and produce a new snapshot."""

    def __init__(self, options: RunnerOptions) -> None:
        self._options = options
        self._realm_url = RealmPaths(options.realm_url).url
        self._paths = RealmPaths(self._realm_url)
        self._loader = options.loader
        self._events = options.events
        self._walker = DirectoryWalker(
            reader=options.reader,
            paths=self._paths,
            loader=options.loader,
            index_config=options.index_config,
            events=options.events,
        )

    async def from_scratch(self) -> RunState:
        """Walk the whole realm into a fresh snapshot."""
        self._events.emit("run_started", kind="from-scratch")
        self._loader.invalidate()
        walk = await self._walker.walk()
        resolver = self._resolver(walk.modules)
        await resolver.build_all()

        instances: dict[str, SearchEntryWithErrors] = {}
        for card_id in sorted(walk.instances):
            entry = await self.index_instance(walk.instances[card_id], resolver.definitions)
            instances[card_id] = entry
            self._options.entry_setter(card_id, entry)

        stats = compute_stats(instances, walk.modules)
        self._events.emit("run_finished", kind="from-scratch", **stats.to_dict())
        return freeze_state(
            realm_url=self._realm_url,
            instances=instances,
            modules=walk.modules,
            ignore_map=walk.ignore_map,
            ignore_data=walk.ignore_data,
            stats=stats,
            invalidations=(),
            definitions=resolver.definitions,
            exported_card_refs=resolver.exported_card_refs,
            directories=walk.directories,
            definition_errors=resolver.failures,
        )

    async def incremental(self, prior: RunState, url: str, operation: Operation) -> RunState:
        """Re-visit one changed file and derive a new snapshot from `prior`."""
        self._events.emit("run_started", kind="incremental", url=url, operation=operation)
        if url_basename(url) in self._options.index_config.ignore_files:
            return await self._fallback_from_scratch(prior, url)

        listing = await self._walker.walk(listing_only=True)
        ignored = is_ignored(self._realm_url, listing.ignore_map, url)
        modules: dict[str, ModuleWithErrors] = dict(prior.modules)
        instances: dict[str, SearchEntryWithErrors] = dict(prior.instances)
        pending: dict[str, InstanceFile | ErrorResult] = {}
        seeds: set[str] = set()
        invalidated_urls: set[str] = set()
        rebuild_definitions = False

        if self._walker.is_module(url):
            module_url = self._walker.module_key(url)
            modules.pop(url, None)
            modules.pop(module_url, None)
            if operation == "update" and not ignored:
                module = await self._walker.visit_module(url)
                if module is not None:
                    modules[url] = module
                    modules[module_url] = module
            extensions = self._options.index_config.module_extensions
            consumers = consumers_of({**prior.modules, **modules}, module_url, extensions)
            seeds = {module_url, *consumers}
            for consumer in consumers:
                consumer_module = modules.get(consumer)
                if isinstance(consumer_module, ModuleEntry):
                    invalidated_urls.add(consumer_module.url)
            rebuild_definitions = True
        elif self._walker.is_instance(url):
            card_id = instance_id(url)
            instances.pop(card_id, None)
            seeds = {card_id}
            if operation == "update" and not ignored:
                instance = await self._walker.visit_instance(url)
                if instance is not None:
                    pending[card_id] = instance

        dependents = dependents_of(prior.instances, seeds)
        for card_id in sorted(dependents):
            file_url = instance_file_url(card_id)
            invalidated_urls.add(file_url)
            instance = await self._walker.visit_instance(file_url)
            if instance is None or is_ignored(self._realm_url, listing.ignore_map, file_url):
                instances.pop(card_id, None)
            else:
                pending[card_id] = instance

        if rebuild_definitions:
            resolver = self._resolver(modules)
            await resolver.build_all()
            definitions: Mapping[str, CardDefinition] = resolver.definitions
            exported: Mapping[str, tuple[CardRef, ...]] = resolver.exported_card_refs
            failures = tuple(resolver.failures)
        else:
            definitions = dict(prior.definitions)
            exported = prior.exported_card_refs
            failures = prior.definition_errors

        for card_id in sorted(pending):
            entry = await self.index_instance(pending[card_id], definitions)
            instances[card_id] = entry
            self._options.entry_setter(card_id, entry)

        invalidations = [url, *sorted(invalidated_urls - {url})]
        stats = compute_stats(instances, modules)
        self._events.emit(
            "run_finished",
            kind="incremental",
            url=url,
            invalidations=len(invalidations),
            **stats.to_dict(),
        )
        return freeze_state(
            realm_url=self._realm_url,
            instances=instances,
            modules=modules,
            ignore_map=listing.ignore_map,
            ignore_data=listing.ignore_data,
            stats=stats,
            invalidations=invalidations,
            definitions=definitions,
            exported_card_refs=exported,
            directories=listing.directories,
            definition_errors=failures,
        )

    async def _fallback_from_scratch(self, prior: RunState, url: str) -> RunState:
        self._events.emit("incremental_fallback", url=url, reason="ignore file changed")
        state = await self.from_scratch()
        affected = {instance_file_url(card_id) for card_id in prior.instances}
        affected.update(instance_file_url(card_id) for card_id in state.instances)
        return replace(state, invalidations=(url, *sorted(affected - {url})))

    def _resolver(self, modules: Mapping[str, ModuleWithErrors]) -> DefinitionResolver:
        return DefinitionResolver(
            realm_url=self._realm_url,
            modules=modules,
            loader=self._loader,
            events=self._events,
            module_extensions=self._options.index_config.module_extensions,
        )

    async def index_instance(
        self,
        instance: InstanceFile | ErrorResult,
        definitions: Mapping[str, CardDefinition],
    ) -> SearchEntryWithErrors:
        """Derive the search entry of one parsed instance."""
        if isinstance(instance, ErrorResult):
            return instance
        resource = instance.resource
        card_id = str(resource["id"])
        deps = {root_module_of(instance.adopts_from), *self._linked_ids(resource, card_id)}
        try:
            definition = await lookup_definition(
                self._realm_url, definitions, self._loader, instance.adopts_from
            )
            if definition is None:
                raise CardError(
                    f"Could not find card type {internal_key_for(instance.adopts_from)}.",
                    status=404,
                    title="Type not found",
                    source=instance.file_url,
                )
            types = await type_keys(self._realm_url, definitions, self._loader, definition)
            attributes = resource.get("attributes")
            search_data = await self._search_data(
                definition, attributes if isinstance(attributes, dict) else {}, definitions
            )
        except CardError as error:
            self._events.emit("instance_error", url=instance.file_url, detail=error.detail)
            payload = error.to_dict()
            payload["deps"] = sorted(deps)
            return ErrorResult(error=payload)
        search_data = {"id": card_id, **search_data}
        return EntryResult(
            entry=SearchEntry(
                resource=resource,
                search_data=search_data,
                types=types,
                deps=frozenset(deps),
            )
        )

    def _linked_ids(self, resource: Mapping[str, object], card_id: str) -> set[str]:
        relationships = resource.get("relationships")
        if not isinstance(relationships, dict):
            return set()
        linked: set[str] = set()
        for relationship in relationships.values():
            links = relationship.get("links") if isinstance(relationship, dict) else None
            target = links.get("self") if isinstance(links, dict) else None
            if isinstance(target, str) and target:
                linked.add(instance_id(resolve_url(target, card_id)))
        return linked

    async def _search_data(
        self,
        definition: CardDefinition,
        attributes: Mapping[str, object],
        definitions: Mapping[str, CardDefinition],
    ) -> dict[str, object]:
        data: dict[str, object] = {}
        for name, field_definition in sorted(definition.fields.items()):
            if name == "id" or name not in attributes:
                continue
            value = attributes[name]
            if field_definition.field_type == "containsMany" and isinstance(value, list):
                data[name] = [
                    await self._field_value(field_definition.field_card, item, definitions)
                    for item in value
                ]
            else:
                data[name] = await self._field_value(
                    field_definition.field_card, value, definitions
                )
        return data

    async def _field_value(
        self,
        field_card: CardRef,
        value: object,
        definitions: Mapping[str, CardDefinition],
    ) -> object:
        key = internal_key_for(field_card)
        if self._loader.is_primitive(key):
            try:
                return self._loader.format_value(key, value)
            except ValueError:
                return value
        if not isinstance(value, dict):
            return value
        try:
            nested = await lookup_definition(self._realm_url, definitions, self._loader, field_card)
        except CardFetchError:
            return value
        if nested is None:
            return value
        return await self._search_data(nested, value, definitions)
