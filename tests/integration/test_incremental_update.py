from __future__ import annotations

import asyncio
from pathlib import Path

from realm_index.index.refs import ExportedCardRef
from realm_index.realm.reader import FilesystemReader
from realm_index.search_index import SearchIndex


def _ids(document: dict[str, object]) -> list[str]:
    data = document["data"]
    assert isinstance(data, list)
    return [str(resource["id"]) for resource in data]


def test_delete_removes_card_and_reports_dependents(pet_realm: Path, realm_url: str) -> None:
    invalidations: list[list[str]] = []

    async def scenario() -> tuple[list[str], object]:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        (pet_realm / "people" / "hassan.json").unlink()
        await index.update(
            f"{realm_url}people/hassan.json", delete=True, on_invalidation=invalidations.append
        )
        return _ids(await index.search()), await index.card(f"{realm_url}people/hassan")

    ids, deleted = asyncio.run(scenario())

    assert ids == [f"{realm_url}pets/mango", f"{realm_url}pets/vangogh"]
    assert deleted is None
    assert invalidations == [
        [f"{realm_url}people/hassan.json", f"{realm_url}pets/mango.json"],
    ]


def test_instance_update_reindexes_the_changed_card(
    pet_realm: Path, realm_url: str, file_writer, document
) -> None:
    pet = {"module": f"{realm_url}pet", "name": "Pet"}

    async def scenario() -> tuple[list[str], list[str], dict[str, int]]:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        file_writer(
            pet_realm,
            {"pets/vangogh.json": document("../dog", "Dog", {"name": "Van Gogh", "age": 3})},
        )
        captured: list[str] = []

        async def collect(urls: list[str]) -> None:
            captured.extend(urls)

        await index.update(f"{realm_url}pets/vangogh.json", on_invalidation=collect)
        found = _ids(await index.search({"filter": {"on": pet, "eq": {"age": 3}}}))
        return found, captured, index.stats.to_dict()

    found, captured, stats = asyncio.run(scenario())

    assert found == [f"{realm_url}pets/mango", f"{realm_url}pets/vangogh"]
    assert captured == [f"{realm_url}pets/vangogh.json"]
    assert stats["instancesIndexed"] == 3


def test_module_change_invalidates_consumers_and_instances(
    pet_realm: Path, realm_url: str, file_writer
) -> None:
    invalidations: list[list[str]] = []

    async def scenario() -> object:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        file_writer(
            pet_realm,
            {
                "pet.py": (
                    "from base.card_api import CardDef, NumberField, StringField, contains, field\n"
                    "\n\n"
                    "class Pet(CardDef):\n"
                    "    name = field(contains(StringField))\n"
                    "    age = field(contains(NumberField))\n"
                    "    color = field(contains(StringField))\n"
                )
            },
        )
        await index.update(f"{realm_url}pet.py", on_invalidation=invalidations.append)
        return await index.type_of(ExportedCardRef(module=f"{realm_url}dog", name="Dog"))

    dog = asyncio.run(scenario())

    assert invalidations == [
        [
            f"{realm_url}pet.py",
            f"{realm_url}dog.py",
            f"{realm_url}pets/mango.json",
            f"{realm_url}pets/vangogh.json",
        ]
    ]
    assert dog is not None
    assert "color" in dog.fields


def test_new_module_recovers_instances_that_failed_on_a_missing_type(
    pet_realm: Path, realm_url: str, file_writer, document
) -> None:
    file_writer(pet_realm, {"pets/haunted.json": document("../ghost", "Ghost", {"boo": "yes"})})
    invalidations: list[list[str]] = []

    async def scenario() -> tuple[object, object]:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        before = await index.card(f"{realm_url}pets/haunted")
        file_writer(
            pet_realm,
            {
                "ghost.py": (
                    "from base.card_api import CardDef, StringField, contains, field\n"
                    "\n\n"
                    "class Ghost(CardDef):\n"
                    "    boo = field(contains(StringField))\n"
                )
            },
        )
        await index.update(f"{realm_url}ghost.py", on_invalidation=invalidations.append)
        return before, await index.card(f"{realm_url}pets/haunted")

    before, after = asyncio.run(scenario())

    assert isinstance(before, dict) and before["type"] == "error"
    assert isinstance(after, dict) and after["type"] == "doc"
    assert invalidations == [[f"{realm_url}ghost.py", f"{realm_url}pets/haunted.json"]]


def test_ignore_file_change_falls_back_to_a_full_rebuild(
    pet_realm: Path, realm_url: str, file_writer
) -> None:
    invalidations: list[list[str]] = []

    async def scenario() -> tuple[list[str], bool]:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        file_writer(pet_realm, {".gitignore": "pets/vangogh.json\n"})
        await index.update(f"{realm_url}.gitignore", on_invalidation=invalidations.append)
        return _ids(await index.search()), index.is_ignored(f"{realm_url}pets/vangogh.json")

    ids, ignored = asyncio.run(scenario())

    assert ids == [f"{realm_url}people/hassan", f"{realm_url}pets/mango"]
    assert ignored is True
    assert invalidations == [
        [
            f"{realm_url}.gitignore",
            f"{realm_url}people/hassan.json",
            f"{realm_url}pets/mango.json",
            f"{realm_url}pets/vangogh.json",
        ]
    ]


def test_nested_ignore_scope_overrides_the_realm_root(
    pet_realm: Path, realm_url: str, file_writer
) -> None:
    file_writer(
        pet_realm,
        {
            ".gitignore": "*.json\n",
            "pets/.gitignore": "vangogh.json\n",
        },
    )

    async def scenario() -> tuple[list[str], SearchIndex]:
        index = SearchIndex(realm_url, FilesystemReader(pet_realm))
        await index.run()
        return _ids(await index.search()), index

    ids, index = asyncio.run(scenario())

    assert ids == [f"{realm_url}pets/mango"]
    assert index.is_ignored(f"{realm_url}people/hassan.json") is True
    assert index.is_ignored(f"{realm_url}pets/mango.json") is False
    assert index.is_ignored(f"{realm_url}pets/vangogh.json") is True
