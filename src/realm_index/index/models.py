"""Typed models for indexing state."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal

from realm_index.errors import SerializedError
from realm_index.index.ignore import CompiledIgnore
from realm_index.index.module_syntax import ModuleSyntax
from realm_index.index.refs import CardRef, card_ref_from_dict, card_ref_to_dict, internal_key_for
from realm_index.realm.reader import Kind

FieldType = Literal["contains", "containsMany"]
CardResource = dict[str, object]


@dataclass(slots=True, frozen=True)
class FieldDefinition:
    """One field of a card definition."""

    field_type: FieldType
    field_card: CardRef


@dataclass(slots=True, frozen=True)
class CardDefinition:
    """Resolved card type: identity, super type and full field table."""

    id: CardRef
    key: str
    super: CardRef | None
    fields: Mapping[str, FieldDefinition]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serializable representation."""
        return {
            "id": card_ref_to_dict(self.id),
            "key": self.key,
            "super": card_ref_to_dict(self.super) if self.super is not None else None,
            "fields": {
                name: {
                    "fieldType": definition.field_type,
                    "fieldCard": card_ref_to_dict(definition.field_card),
                }
                for name, definition in sorted(self.fields.items())
            },
        }


@dataclass(slots=True, frozen=True)
class SearchEntry:
    """Queryable view of one card instance."""

    resource: CardResource
    search_data: dict[str, object]
    types: tuple[str, ...]
    deps: frozenset[str]
    html: str | None = None


@dataclass(slots=True, frozen=True)
class EntryResult:
    """Successfully indexed instance."""

    entry: SearchEntry
    type: Literal["entry"] = "entry"


@dataclass(slots=True, frozen=True)
class ErrorResult:
    """Instance that failed to index."""

    error: SerializedError
    type: Literal["error"] = "error"


SearchEntryWithErrors = EntryResult | ErrorResult


@dataclass(slots=True, frozen=True)
class ModuleEntry:
    """Successfully parsed card module."""

    url: str
    consumes: tuple[str, ...]
    syntax: ModuleSyntax = field(compare=False, repr=False)
    type: Literal["module"] = "module"


@dataclass(slots=True, frozen=True)
class ModuleError:
    """Card module that failed to parse."""

    module_url: str
    error: SerializedError
    type: Literal["error"] = "error"


ModuleWithErrors = ModuleEntry | ModuleError


@dataclass(slots=True, frozen=True)
class DirectoryEntry:
    """One item of a directory listing."""

    name: str
    kind: Kind


@dataclass(slots=True, frozen=True)
class Stats:
    """Counters for one index run."""

    instances_indexed: int = 0
    instance_errors: int = 0
    module_errors: int = 0

    def to_dict(self) -> dict[str, int]:
        """Return the camelCase wire form."""
        return {
            "instancesIndexed": self.instances_indexed,
            "instanceErrors": self.instance_errors,
            "moduleErrors": self.module_errors,
        }


@dataclass(slots=True, frozen=True)
class DefinitionFailure:
    """A card class dropped from the definition graph."""

    module: str
    name: str
    detail: str


@dataclass(slots=True, frozen=True)
class RunState:
    """One immutable snapshot of a realm's index."""

    realm_url: str
    instances: Mapping[str, SearchEntryWithErrors]
    modules: Mapping[str, ModuleWithErrors]
    ignore_map: Mapping[str, CompiledIgnore]
    ignore_data: Mapping[str, str]
    stats: Stats
    invalidations: tuple[str, ...]
    definitions: Mapping[str, CardDefinition]
    exported_card_refs: Mapping[str, tuple[CardRef, ...]]
    directories: Mapping[str, tuple[DirectoryEntry, ...]]
    definition_errors: tuple[DefinitionFailure, ...] = ()

    @classmethod
    def empty(cls, realm_url: str) -> RunState:
        """Return the snapshot a realm starts with before its first run."""
        return freeze_state(
            realm_url=realm_url,
            instances={},
            modules={},
            ignore_map={},
            ignore_data={},
            stats=Stats(),
            invalidations=(),
            definitions={},
            exported_card_refs={},
            directories={},
        )


def freeze_state(
    *,
    realm_url: str,
    instances: Mapping[str, SearchEntryWithErrors],
    modules: Mapping[str, ModuleWithErrors],
    ignore_map: Mapping[str, CompiledIgnore],
    ignore_data: Mapping[str, str],
    stats: Stats,
    invalidations: tuple[str, ...] | list[str],
    definitions: Mapping[str, CardDefinition],
    exported_card_refs: Mapping[str, tuple[CardRef, ...]],
    directories: Mapping[str, tuple[DirectoryEntry, ...]],
    definition_errors: tuple[DefinitionFailure, ...] | list[DefinitionFailure] = (),
) -> RunState:
    """Build a snapshot whose maps are read-only copies of the given ones."""
    return RunState(
        realm_url=realm_url,
        instances=MappingProxyType(dict(instances)),
        modules=MappingProxyType(dict(modules)),
        ignore_map=MappingProxyType(dict(ignore_map)),
        ignore_data=MappingProxyType(dict(ignore_data)),
        stats=stats,
        invalidations=tuple(invalidations),
        definitions=MappingProxyType(dict(definitions)),
        exported_card_refs=MappingProxyType(dict(exported_card_refs)),
        directories=MappingProxyType(dict(directories)),
        definition_errors=tuple(definition_errors),
    )


def definition_to_resource(definition: CardDefinition) -> dict[str, object]:
    """Render a definition as the JSON:API resource served by `_typeOf`."""
    relationships: dict[str, object] = {}
    if definition.super is not None:
        relationships["_super"] = {
            "links": {"related": internal_key_for(definition.super)},
            "meta": {"type": "super", "ref": card_ref_to_dict(definition.super)},
        }
    for name, field_definition in sorted(definition.fields.items()):
        relationships[name] = {
            "links": {"related": internal_key_for(field_definition.field_card)},
            "meta": {
                "type": field_definition.field_type,
                "ref": card_ref_to_dict(field_definition.field_card),
            },
        }
    return {
        "id": definition.key,
        "type": "card-definition",
        "attributes": {"cardRef": card_ref_to_dict(definition.id)},
        "relationships": relationships,
    }


def definition_from_resource(resource: object) -> CardDefinition:
    """Rebuild a definition from a `_typeOf` resource; raises ValueError when malformed."""
    if not isinstance(resource, dict):
        raise ValueError("card definition resource must be an object")
    key = resource.get("id")
    attributes = resource.get("attributes")
    relationships = resource.get("relationships", {})
    if not isinstance(key, str) or not isinstance(attributes, dict):
        raise ValueError("card definition resource requires 'id' and 'attributes'")
    if not isinstance(relationships, dict):
        raise ValueError("card definition relationships must be an object")
    super_ref: CardRef | None = None
    fields: dict[str, FieldDefinition] = {}
    for name, relationship in relationships.items():
        meta = relationship.get("meta") if isinstance(relationship, dict) else None
        if not isinstance(meta, dict):
            raise ValueError(f"relationship {name!r} is missing meta")
        ref = card_ref_from_dict(meta.get("ref"))
        if name == "_super":
            super_ref = ref
            continue
        field_type = meta.get("type")
        if field_type not in ("contains", "containsMany"):
            raise ValueError(f"relationship {name!r} has unknown field type {field_type!r}")
        fields[name] = FieldDefinition(field_type=field_type, field_card=ref)
    return CardDefinition(
        id=card_ref_from_dict(attributes.get("cardRef")),
        key=key,
        super=super_ref,
        fields=MappingProxyType(fields),
    )
