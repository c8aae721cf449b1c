from __future__ import annotations

import asyncio
import json
from pathlib import Path
from types import MappingProxyType

from realm_index.index.models import (
    CardDefinition,
    EntryResult,
    ErrorResult,
    FieldDefinition,
    SearchEntry,
)
from realm_index.index.refs import AncestorOfRef, ExportedCardRef, internal_key_for
from realm_index.loader import Loader
from realm_index.query import Query, QueryEngine
from realm_index.store import INDEX_SCHEMA_VERSION, JsonlIndexer

REALM = "http://localhost/realm/"
OTHER_REALM = "http://localhost/other/"


def _entry(card_id: str) -> EntryResult:
    return EntryResult(
        entry=SearchEntry(
            resource={"id": card_id, "type": "card"},
            search_data={"id": card_id},
            types=("https://cardstack.com/base/card_api/CardDef",),
            deps=frozenset({f"{REALM}pet"}),
        )
    )


async def _no_definitions(ref: object) -> None:
    return None


def test_status_before_and_after_write(tmp_path: Path) -> None:
    indexer = JsonlIndexer(tmp_path)
    assert indexer.status() == {"index_status": "not_indexed", "entry_count": 0, "written_at": None}

    indexer.write(
        REALM,
        {
            f"{REALM}b": _entry(f"{REALM}b"),
            f"{REALM}a": ErrorResult(error={"status": 500, "title": "Parse error", "detail": "x"}),
        },
    )

    status = indexer.status()
    assert status["index_status"] == "ready"
    assert status["entry_count"] == 2
    lines = indexer.entries_path.read_text(encoding="utf-8").splitlines()
    rows = [json.loads(line) for line in lines]
    assert [row["url"] for row in rows] == [f"{REALM}a", f"{REALM}b"]
    assert rows[1]["deps"] == [f"{REALM}pet"]
    assert not list(indexer.entries_path.parent.glob("*.tmp"))


def test_realms_are_rewritten_independently_and_reload_from_disk(tmp_path: Path) -> None:
    indexer = JsonlIndexer(tmp_path)
    indexer.write(REALM, {f"{REALM}a": _entry(f"{REALM}a")})
    indexer.write(OTHER_REALM, {f"{OTHER_REALM}z": _entry(f"{OTHER_REALM}z")})
    indexer.write(REALM, {f"{REALM}b": _entry(f"{REALM}b")})

    reloaded = JsonlIndexer(tmp_path)
    engine = QueryEngine(_no_definitions, Loader())

    assert reloaded.get_card(f"{REALM}a") is None
    found = reloaded.get_card(f"{OTHER_REALM}z")
    assert isinstance(found, EntryResult)
    assert found.entry.deps == frozenset({f"{REALM}pet"})
    results = asyncio.run(reloaded.search(REALM, Query(), engine))
    assert [entry.resource["id"] for entry in results] == [f"{REALM}b"]


def test_schema_mismatch_hides_stored_rows(tmp_path: Path) -> None:
    indexer = JsonlIndexer(tmp_path)
    indexer.write(REALM, {f"{REALM}a": _entry(f"{REALM}a")})
    manifest_path = tmp_path / "index" / "manifest.json"
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    manifest["schema_version"] = INDEX_SCHEMA_VERSION + 1
    manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

    reloaded = JsonlIndexer(tmp_path)

    assert reloaded.status()["index_status"] == "schema_mismatch"
    assert reloaded.get_card(f"{REALM}a") is None


def test_definitions_and_exports_reload_under_every_key(tmp_path: Path) -> None:
    dog = ExportedCardRef(module=f"{REALM}dog", name="Dog")
    pet = ExportedCardRef(module=f"{REALM}pet", name="Pet")
    definition = CardDefinition(
        id=dog,
        key=internal_key_for(dog),
        super=pet,
        fields=MappingProxyType(
            {
                "breed": FieldDefinition(
                    field_type="contains",
                    field_card=ExportedCardRef(
                        module="https://cardstack.com/base/card_api", name="StringField"
                    ),
                )
            }
        ),
    )
    alias = internal_key_for(AncestorOfRef(card=dog))
    indexer = JsonlIndexer(tmp_path)
    indexer.write(
        REALM,
        {f"{REALM}a": _entry(f"{REALM}a")},
        {definition.key: definition, alias: definition},
        {f"{REALM}dog": (dog,)},
    )

    reloaded = JsonlIndexer(tmp_path)
    definitions = reloaded.definitions(REALM)

    assert reloaded.status()["entry_count"] == 1
    assert set(definitions) == {definition.key, alias}
    assert definitions[alias].key == definition.key
    assert definitions[definition.key].super == pet
    assert definitions[definition.key].fields["breed"].field_type == "contains"
    assert reloaded.exported_card_refs(REALM) == {f"{REALM}dog": (dog,)}
    assert reloaded.definitions(OTHER_REALM) == {}
    assert isinstance(reloaded.get_card(f"{REALM}a"), EntryResult)
    assert reloaded.get_card(definition.key) is None
