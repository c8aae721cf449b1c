from __future__ import annotations

import pytest

from realm_index.errors import CardParseError
from realm_index.index.module_syntax import (
    ExternalClassRef,
    InternalClassRef,
    module_specifier,
    parse_module,
)

IMPORT_MAP = {"base": "https://cardstack.com/base/"}
CARD_API = "https://cardstack.com/base/card_api"
MODULE_URL = "http://localhost/realm/pets/dog"


def test_classes_fields_and_super_types_are_recorded() -> None:
    syntax = parse_module(
        "\n".join(
            [
                "from base.card_api import StringField, contains, contains_many, field",
                "from ..pet import Pet",
                "",
                "",
                "class Dog(Pet):",
                "    breed = field(contains(StringField))",
                "    nicknames: list = field(contains_many(StringField))",
                "    ignored = 'not a field'",
                "",
                "    def bark(self):",
                "        return 'woof'",
            ]
        ),
        IMPORT_MAP,
    )

    (dog,) = syntax.possible_cards
    assert dog.local_name == "Dog"
    assert dog.exported_as == "Dog"
    assert dog.super == ExternalClassRef(module="../pet", name="Pet")
    assert sorted(dog.possible_fields) == ["breed", "nicknames"]
    nicknames = dog.possible_fields["nicknames"]
    assert nicknames.decorator == ExternalClassRef(module=CARD_API, name="field")
    assert nicknames.type == ExternalClassRef(module=CARD_API, name="contains_many")
    assert nicknames.card == ExternalClassRef(module=CARD_API, name="StringField")
    assert syntax.consumes(MODULE_URL) == ("http://localhost/realm/pet", CARD_API)


def test_exports_follow_all_and_aliases() -> None:
    syntax = parse_module(
        "\n".join(
            [
                "from base.card_api import CardDef, StringField",
                "",
                "",
                "class _Base(CardDef):",
                "    pass",
                "",
                "",
                "class Dog(_Base):",
                "    pass",
                "",
                "",
                "Hound = Dog",
                "__all__ = ['Dog', 'Hound', 'StringField']",
            ]
        ),
        IMPORT_MAP,
    )

    assert syntax.exported_names == ("Dog", "Hound", "StringField")
    assert syntax.lookup_export("Dog") == InternalClassRef(class_index=1)
    assert syntax.lookup_export("Hound") == InternalClassRef(class_index=1)
    assert syntax.lookup_export("StringField") == ExternalClassRef(
        module=CARD_API, name="StringField"
    )
    assert syntax.lookup_export("_Base") is None
    assert syntax.possible_cards[1].super == InternalClassRef(class_index=0)


def test_private_names_are_not_exported_without_all() -> None:
    syntax = parse_module(
        "from base.card_api import CardDef\n\n\nclass _Hidden(CardDef):\n    pass\n",
        IMPORT_MAP,
    )

    assert syntax.exported_names == ()
    assert syntax.possible_cards[0].exported_as is None


def test_module_attribute_references_resolve_through_import_aliases() -> None:
    syntax = parse_module(
        "import base.card_api as api\n\n\nclass Toy(api.CardDef):\n"
        "    name = api.field(api.contains(api.StringField))\n",
        IMPORT_MAP,
    )

    (toy,) = syntax.possible_cards
    assert toy.super == ExternalClassRef(module=CARD_API, name="CardDef")
    assert toy.possible_fields["name"].card == ExternalClassRef(
        module=CARD_API, name="StringField"
    )


def test_unmapped_absolute_imports_are_not_consumed() -> None:
    syntax = parse_module("import json\nfrom os import path\n", IMPORT_MAP)

    assert syntax.consumes(MODULE_URL) == ()


@pytest.mark.parametrize(
    ("module", "level", "expected"),
    [
        ("pet", 1, "./pet"),
        ("shared.pet", 2, "../shared/pet"),
        (None, 1, "./"),
        ("base.card_api", 0, CARD_API),
        ("requests", 0, None),
    ],
)
def test_module_specifier_translation(module: str | None, level: int, expected: str | None) -> None:
    assert module_specifier(module, level, IMPORT_MAP) == expected


def test_syntax_errors_raise_card_parse_error() -> None:
    with pytest.raises(CardParseError) as raised:
        parse_module("class Broken(:\n", IMPORT_MAP, url=MODULE_URL)

    assert raised.value.status == 500
    assert raised.value.source == MODULE_URL
    assert raised.value.detail.startswith("Unable to parse module:")
