from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

REALM_URL = "http://localhost/realm/"

PERSON_MODULE = """\
from base.card_api import CardDef, StringField, contains, field


class Person(CardDef):
    firstName = field(contains(StringField))
"""

PET_MODULE = """\
from base.card_api import CardDef, NumberField, StringField, contains, field


class Pet(CardDef):
    name = field(contains(StringField))
    age = field(contains(NumberField))
"""

DOG_MODULE = """\
from base.card_api import StringField, contains, contains_many, field

from .pet import Pet


class Dog(Pet):
    breed = field(contains(StringField))
    nicknames = field(contains_many(StringField))
"""


def card_document(
    module: str,
    name: str,
    attributes: dict[str, object],
    relationships: dict[str, str] | None = None,
) -> dict[str, object]:
    data: dict[str, object] = {
        "type": "card",
        "attributes": attributes,
        "meta": {"adoptsFrom": {"module": module, "name": name}},
    }
    if relationships:
        data["relationships"] = {
            field_name: {"links": {"self": target}}
            for field_name, target in relationships.items()
        }
    return {"data": data}


PET_REALM_FILES: dict[str, object] = {
    "person.py": PERSON_MODULE,
    "pet.py": PET_MODULE,
    "dog.py": DOG_MODULE,
    "people/hassan.json": card_document("../person", "Person", {"firstName": "Hassan"}),
    "pets/mango.json": card_document(
        "../dog",
        "Dog",
        {"name": "Mango", "age": 3, "breed": "Shiba Inu", "nicknames": ["Mangy", "Bean"]},
        {"owner": "../people/hassan"},
    ),
    "pets/vangogh.json": card_document(
        "../dog",
        "Dog",
        {"name": "Van Gogh", "breed": "Dalmatian", "nicknames": []},
    ),
}


def write_files(root: Path, files: dict[str, object]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        text = content if isinstance(content, str) else json.dumps(content)
        path.write_text(text, encoding="utf-8")


@pytest.fixture
def realm_url() -> str:
    return REALM_URL


@pytest.fixture
def file_writer() -> Callable[[Path, dict[str, object]], None]:
    return write_files


@pytest.fixture
def document() -> Callable[..., dict[str, object]]:
    return card_document


@pytest.fixture
def pet_realm(tmp_path: Path) -> Path:
    root = tmp_path / "realm"
    write_files(root, PET_REALM_FILES)
    return root
