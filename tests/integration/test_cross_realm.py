from __future__ import annotations

import asyncio
from pathlib import Path
from types import MappingProxyType

import httpx
import pytest

from realm_index.config import LoaderConfig
from realm_index.errors import CardFetchError
from realm_index.index.models import CardDefinition, FieldDefinition, definition_to_resource
from realm_index.index.refs import ExportedCardRef
from realm_index.loader import Loader
from realm_index.realm.reader import FilesystemReader
from realm_index.search_index import SearchIndex

REMOTE_REALM = "https://remote.example/zoo/"
CARD_API = "https://cardstack.com/base/card_api"

CAT_MODULE = """\
from base.card_api import NumberField, contains, field
from zoo.animal import Animal


class Cat(Animal):
    lives = field(contains(NumberField))
"""


def _animal_definition(extra_fields: tuple[str, ...] = ()) -> CardDefinition:
    ref = ExportedCardRef(module=f"{REMOTE_REALM}animal", name="Animal")
    string_field = ExportedCardRef(module=CARD_API, name="StringField")
    return CardDefinition(
        id=ref,
        key=f"{REMOTE_REALM}animal/Animal",
        super=ExportedCardRef(module=CARD_API, name="CardDef"),
        fields=MappingProxyType(
            {
                name: FieldDefinition(field_type="contains", field_card=string_field)
                for name in ("id", "title", "description", "species", *extra_fields)
            }
        ),
    )


class RemoteRealm:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.version = 1

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/zoo/_typeOf":
            return httpx.Response(
                200,
                json={
                    "data": definition_to_resource(_animal_definition(self.extra_fields())),
                    "meta": {"realmVersion": self.version},
                },
            )
        if request.url.path == "/zoo/keepers/sam":
            return httpx.Response(
                200,
                json={
                    "data": {
                        "id": f"{REMOTE_REALM}keepers/sam",
                        "type": "card",
                        "attributes": {"name": "Sam"},
                        "meta": {"adoptsFrom": {"module": "../keeper", "name": "Keeper"}},
                    },
                    "meta": {"realmVersion": self.version},
                },
            )
        return httpx.Response(404, json={"errors": [{"detail": "not found"}]})

    def extra_fields(self) -> tuple[str, ...]:
        return ("habitat",) if self.version > 1 else ()

    def type_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == "/zoo/_typeOf"]


def _loader(client: httpx.AsyncClient) -> Loader:
    return Loader(
        LoaderConfig(import_map={"zoo": REMOTE_REALM}, known_realms=(REMOTE_REALM,)),
        client=client,
    )


def test_card_type_inherits_from_another_realm(
    tmp_path: Path, realm_url: str, file_writer, document
) -> None:
    file_writer(
        tmp_path,
        {
            "cat.py": CAT_MODULE,
            "cats/tom.json": document("../cat", "Cat", {"species": "cat", "lives": 9}),
        },
    )
    remote = RemoteRealm()

    async def scenario() -> tuple[object, list[str]]:
        transport = httpx.MockTransport(remote.handle)
        async with httpx.AsyncClient(transport=transport) as client:
            index = SearchIndex(realm_url, FilesystemReader(tmp_path), _loader(client))
            await index.run()
            cat = await index.type_of(ExportedCardRef(module=f"{realm_url}cat", name="Cat"))
            animal = {"module": f"{REMOTE_REALM}animal", "name": "Animal"}
            found = await index.search({"filter": {"on": animal, "eq": {"species": "cat"}}})
        return cat, [str(resource["id"]) for resource in found["data"]]

    cat, found = asyncio.run(scenario())

    assert isinstance(cat, CardDefinition)
    assert cat.super == ExportedCardRef(module=f"{REMOTE_REALM}animal", name="Animal")
    assert {"species", "lives"} <= set(cat.fields)
    assert found == [f"{realm_url}cats/tom"]
    type_requests = remote.type_requests()
    assert len(type_requests) == 1
    assert type_requests[0].url.params["module"] == f"{REMOTE_REALM}animal"
    assert type_requests[0].url.params["name"] == "Animal"



def test_new_run_picks_up_a_changed_remote_type(
    tmp_path: Path, realm_url: str, file_writer, document
) -> None:
    file_writer(
        tmp_path,
        {
            "cat.py": CAT_MODULE,
            "cats/tom.json": document("../cat", "Cat", {"species": "cat", "lives": 9}),
        },
    )
    remote = RemoteRealm()
    cat_ref = ExportedCardRef(module=f"{realm_url}cat", name="Cat")

    async def scenario() -> tuple[object, object]:
        transport = httpx.MockTransport(remote.handle)
        async with httpx.AsyncClient(transport=transport) as client:
            index = SearchIndex(realm_url, FilesystemReader(tmp_path), _loader(client))
            await index.run()
            before = await index.type_of(cat_ref)
            remote.version = 2
            await index.run()
            return before, await index.type_of(cat_ref)

    before, after = asyncio.run(scenario())

    assert isinstance(before, CardDefinition) and isinstance(after, CardDefinition)
    assert "habitat" not in before.fields
    assert {"habitat", "species", "lives"} <= set(after.fields)
    assert len(remote.type_requests()) == 2


def test_card_documents_report_the_remote_realm_version() -> None:
    remote = RemoteRealm()
    animal = ExportedCardRef(module=f"{REMOTE_REALM}animal", name="Animal")

    async def scenario() -> None:
        transport = httpx.MockTransport(remote.handle)
        async with httpx.AsyncClient(transport=transport) as client:
            loader = _loader(client)
            await loader.type_definition(animal)
            remote.version = 2
            await loader.fetch_card_document(f"{REMOTE_REALM}keepers/sam")
            assert loader.cached_definition(animal) is None
            refreshed = await loader.type_definition(animal)
            assert "habitat" in refreshed.fields

    asyncio.run(scenario())

    assert len(remote.type_requests()) == 2

def test_card_links_load_local_and_remote_resources(
    pet_realm: Path, realm_url: str, file_writer, document
) -> None:
    file_writer(
        pet_realm,
        {
            "people/hassan.json": document(
                "../person",
                "Person",
                {"firstName": "Hassan"},
                {"bestPet": "../pets/mango", "keeper": f"{REMOTE_REALM}keepers/sam"},
            ),
        },
    )
    remote = RemoteRealm()

    async def scenario() -> object:
        transport = httpx.MockTransport(remote.handle)
        async with httpx.AsyncClient(transport=transport) as client:
            index = SearchIndex(realm_url, FilesystemReader(pet_realm), _loader(client))
            await index.run()
            return await index.card(f"{realm_url}pets/mango", load_links=True)

    found = asyncio.run(scenario())

    assert isinstance(found, dict) and found["type"] == "doc"
    doc = found["doc"]
    data = doc["data"]
    assert data["links"] == {"self": f"{realm_url}pets/mango"}
    assert data["relationships"]["owner"]["data"] == {
        "type": "card",
        "id": f"{realm_url}people/hassan",
    }
    included_ids = [resource["id"] for resource in doc["included"]]
    assert included_ids == [f"{realm_url}people/hassan", f"{REMOTE_REALM}keepers/sam"]
    hassan = doc["included"][0]
    assert hassan["relationships"]["bestPet"]["data"] == {
        "type": "card",
        "id": f"{realm_url}pets/mango",
    }


def test_unreachable_remote_link_raises_fetch_error(
    pet_realm: Path, realm_url: str, file_writer, document
) -> None:
    file_writer(
        pet_realm,
        {
            "people/hassan.json": document(
                "../person",
                "Person",
                {"firstName": "Hassan"},
                {"keeper": f"{REMOTE_REALM}keepers/nobody"},
            ),
        },
    )
    remote = RemoteRealm()

    async def scenario() -> None:
        transport = httpx.MockTransport(remote.handle)
        async with httpx.AsyncClient(transport=transport) as client:
            index = SearchIndex(realm_url, FilesystemReader(pet_realm), _loader(client))
            await index.run()
            await index.card(f"{realm_url}people/hassan", load_links=True)

    with pytest.raises(CardFetchError) as raised:
        asyncio.run(scenario())

    assert raised.value.status == 404
    assert raised.value.detail == "not found"
