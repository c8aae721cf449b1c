"""Memoized card definition graph built from module syntax."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from realm_index.errors import CardFetchError, DefinitionError
from realm_index.index.models import (
    CardDefinition,
    DefinitionFailure,
    FieldDefinition,
    FieldType,
    ModuleEntry,
    ModuleWithErrors,
)
from realm_index.index.module_syntax import (
    ClassReference,
    ExternalClassRef,
    InternalClassRef,
    ModuleSyntax,
    PossibleCard,
    PossibleField,
)
from realm_index.index.refs import (
    AncestorOfRef,
    CardRef,
    ExportedCardRef,
    FieldOfRef,
    internal_key_for,
    root_module_of,
)
from realm_index.index.walker import trim_extension
from realm_index.loader import FIELD_DECORATOR, FIELD_TYPE_MARKERS, Loader
from realm_index.logging import IndexEventLog
from realm_index.realm.paths import RealmPaths, resolve_url


class DefinitionResolver:
    """Build every definition reachable from a realm's module exports.

    The graph is keyed by `internal_key_for`; a key already present is reused
    and the requested key is aliased to it. Keys under construction are held
    in an in-progress set so circular ancestry fails with DefinitionError
    instead of recursing forever.
    """

    def __init__(
        self,
        realm_url: str,
        modules: Mapping[str, ModuleWithErrors],
        loader: Loader,
        events: IndexEventLog,
        module_extensions: tuple[str, ...],
    ) -> None:
        self._paths = RealmPaths(realm_url)
        self._modules = modules
        self._loader = loader
        self._events = events
        self._extensions = module_extensions
        root = loader.root_definition()
        self.definitions: dict[str, CardDefinition] = {root.key: root}
        self.exported_card_refs: dict[str, tuple[CardRef, ...]] = {}
        self.failures: list[DefinitionFailure] = []
        self._in_progress: set[str] = set()

    def _module_url(self, url: str) -> str:
        return trim_extension(url, self._extensions)

    async def build_all(self) -> None:
        """Resolve every exported name of every parsed module."""
        modules: dict[str, ModuleEntry] = {}
        for module in self._modules.values():
            if isinstance(module, ModuleEntry):
                modules[self._module_url(module.url)] = module
        for module_url in sorted(modules):
            syntax = modules[module_url].syntax
            exported: list[CardRef] = []
            for name in syntax.exported_names:
                ref = ExportedCardRef(module=module_url, name=name)
                export = syntax.lookup_export(name)
                if export is None:
                    continue
                try:
                    definition = await self.resolve(module_url, syntax, export, ref)
                except (DefinitionError, CardFetchError) as error:
                    self._record_failure(module_url, name, error.detail)
                    continue
                if definition is not None:
                    exported.append(ref)
                elif _looks_like_card(syntax, export):
                    self._record_failure(module_url, name, "Unable to resolve super type.")
            if exported:
                self.exported_card_refs[module_url] = tuple(exported)

    async def resolve(
        self,
        module_url: str,
        syntax: ModuleSyntax,
        reference: ClassReference,
        ref: CardRef,
    ) -> CardDefinition | None:
        """Resolve a class reference seen in `module_url`; None when unresolvable."""
        if isinstance(reference, InternalClassRef):
            card = syntax.possible_cards[reference.class_index]
            return await self.build_definition(module_url, syntax, ref, card)

        target_module = self._module_url(resolve_url(reference.module, module_url))
        target = ExportedCardRef(module=target_module, name=reference.name)
        existing = self.definitions.get(internal_key_for(target))
        if existing is None:
            existing = self._loader.builtin_definition(target)
            if existing is not None:
                self.definitions[existing.key] = existing
        if existing is not None:
            self._alias(ref, existing)
            return existing

        definition: CardDefinition | None
        if self._paths.in_realm(target_module):
            module = self._modules.get(target_module)
            if not isinstance(module, ModuleEntry):
                return None
            export = module.syntax.lookup_export(reference.name)
            if export is None:
                return None
            definition = await self.resolve(target_module, module.syntax, export, target)
        else:
            definition = await self._remote_definition(target)
        if definition is not None:
            self._alias(ref, definition)
        return definition

    async def build_definition(
        self,
        module_url: str,
        syntax: ModuleSyntax,
        ref: CardRef,
        card: PossibleCard,
    ) -> CardDefinition | None:
        """Build (or reuse) the definition of one candidate card class."""
        if card.exported_as is not None:
            canonical: CardRef = ExportedCardRef(module=module_url, name=card.exported_as)
        else:
            canonical = ref
        key = internal_key_for(canonical)
        existing = self.definitions.get(key)
        if existing is not None:
            self._alias(ref, existing)
            return existing
        if key in self._in_progress:
            raise DefinitionError(f"Circular ancestry detected for {key}.", source=module_url)
        if card.super is None:
            return None

        self._in_progress.add(key)
        try:
            super_definition = await self.resolve(
                module_url, syntax, card.super, AncestorOfRef(card=canonical)
            )
            if super_definition is None:
                return None
            fields: dict[str, FieldDefinition] = dict(super_definition.fields)
            for name, possible in card.possible_fields.items():
                field_type = self._field_type(module_url, possible)
                if field_type is None:
                    continue
                field_definition = await self.resolve(
                    module_url, syntax, possible.card, FieldOfRef(card=canonical, field=name)
                )
                if field_definition is None:
                    continue
                fields[name] = FieldDefinition(
                    field_type=field_type, field_card=field_definition.id
                )
        finally:
            self._in_progress.discard(key)

        definition = CardDefinition(
            id=canonical,
            key=key,
            super=super_definition.id,
            fields=MappingProxyType(fields),
        )
        self.definitions[key] = definition
        self._alias(ref, definition)
        return definition

    def _field_type(self, module_url: str, possible: PossibleField) -> FieldType | None:
        decorator = possible.decorator
        marker = possible.type
        if not isinstance(decorator, ExternalClassRef) or not isinstance(marker, ExternalClassRef):
            return None
        card_api = self._loader.card_api_url
        if self._module_url(resolve_url(decorator.module, module_url)) != card_api:
            return None
        if self._module_url(resolve_url(marker.module, module_url)) != card_api:
            return None
        if decorator.name != FIELD_DECORATOR:
            return None
        field_type = FIELD_TYPE_MARKERS.get(marker.name)
        if field_type == "contains":
            return "contains"
        if field_type == "containsMany":
            return "containsMany"
        return None

    async def _remote_definition(self, ref: CardRef) -> CardDefinition:
        definition = await self._loader.type_definition(ref)
        self.definitions.setdefault(definition.key, definition)
        current = definition
        seen = {current.key}
        while current.super is not None:
            super_key = internal_key_for(current.super)
            if super_key in self.definitions or super_key in seen:
                break
            current = await self._loader.type_definition(current.super)
            seen.add(current.key)
            self.definitions.setdefault(current.key, current)
        return definition

    def _alias(self, ref: CardRef, definition: CardDefinition) -> None:
        self.definitions.setdefault(internal_key_for(ref), definition)

    def _record_failure(self, module_url: str, name: str, detail: str) -> None:
        self.failures.append(DefinitionFailure(module=module_url, name=name, detail=detail))
        self._events.emit("definition_error", url=module_url, detail=detail, name=name)


def _looks_like_card(syntax: ModuleSyntax, export: ClassReference) -> bool:
    if isinstance(export, InternalClassRef):
        return syntax.possible_cards[export.class_index].super is not None
    return True


async def lookup_definition(
    realm_url: str,
    definitions: Mapping[str, CardDefinition],
    loader: Loader,
    ref: CardRef,
) -> CardDefinition | None:
    """Find a definition locally, falling back to the loader for other realms."""
    definition = definitions.get(internal_key_for(ref))
    if definition is not None:
        return definition
    definition = loader.builtin_definition(ref)
    if definition is not None:
        return definition
    if RealmPaths(realm_url).in_realm(root_module_of(ref)):
        return None
    return await loader.type_definition(ref)


async def type_keys(
    realm_url: str,
    definitions: Mapping[str, CardDefinition],
    loader: Loader,
    definition: CardDefinition,
) -> tuple[str, ...]:
    """Return the keys of a definition and its ancestors, most derived first."""
    keys = [definition.key]
    current: CardDefinition | None = definition
    while current is not None and current.super is not None:
        current = await lookup_definition(realm_url, definitions, loader, current.super)
        if current is None or current.key in keys:
            break
        keys.append(current.key)
    return tuple(keys)
