"""Card type references and their canonical keys."""

from __future__ import annotations

from dataclasses import dataclass

from realm_index.realm.paths import resolve_url


@dataclass(slots=True, frozen=True)
class ExportedCardRef:
    """A type exported under `name` from `module`."""

    module: str
    name: str


@dataclass(slots=True, frozen=True)
class AncestorOfRef:
    """The (possibly unexported) super type of `card`."""

    card: CardRef


@dataclass(slots=True, frozen=True)
class FieldOfRef:
    """The (possibly unexported) card type of `card`'s field `field`."""

    card: CardRef
    field: str


CardRef = ExportedCardRef | AncestorOfRef | FieldOfRef


def internal_key_for(ref: CardRef, relative_to: str | None = None) -> str:
    """Return a collision-free key; module URLs are made absolute first."""
    if isinstance(ref, ExportedCardRef):
        module = resolve_url(ref.module, relative_to) if relative_to else ref.module
        return f"{module}/{ref.name}"
    if isinstance(ref, AncestorOfRef):
        return f"{internal_key_for(ref.card, relative_to)}/ancestor"
    return f"{internal_key_for(ref.card, relative_to)}/fields/{ref.field}"


def absolutize(ref: CardRef, relative_to: str) -> CardRef:
    """Return the ref with every module URL resolved against `relative_to`."""
    if isinstance(ref, ExportedCardRef):
        return ExportedCardRef(module=resolve_url(ref.module, relative_to), name=ref.name)
    if isinstance(ref, AncestorOfRef):
        return AncestorOfRef(card=absolutize(ref.card, relative_to))
    return FieldOfRef(card=absolutize(ref.card, relative_to), field=ref.field)


def root_module_of(ref: CardRef) -> str:
    """Return the module of the exported card a ref is anchored on."""
    while not isinstance(ref, ExportedCardRef):
        ref = ref.card
    return ref.module


def card_ref_to_dict(ref: CardRef) -> dict[str, object]:
    """Serialize a ref to its JSON form."""
    if isinstance(ref, ExportedCardRef):
        return {"type": "exportedCard", "module": ref.module, "name": ref.name}
    if isinstance(ref, AncestorOfRef):
        return {"type": "ancestorOf", "card": card_ref_to_dict(ref.card)}
    return {"type": "fieldOf", "card": card_ref_to_dict(ref.card), "field": ref.field}


def card_ref_from_dict(value: object) -> CardRef:
    """Parse a JSON ref; a bare {module, name} is an exported-card ref."""
    if not isinstance(value, dict):
        raise ValueError("Card ref must be an object.")
    ref_type = value.get("type", "exportedCard")
    if ref_type == "exportedCard":
        module = value.get("module")
        name = value.get("name")
        if not isinstance(module, str) or not isinstance(name, str):
            raise ValueError("Exported card ref requires string 'module' and 'name'.")
        return ExportedCardRef(module=module, name=name)
    if ref_type == "ancestorOf":
        return AncestorOfRef(card=card_ref_from_dict(value.get("card")))
    if ref_type == "fieldOf":
        field = value.get("field")
        if not isinstance(field, str):
            raise ValueError("Field-of card ref requires a string 'field'.")
        return FieldOfRef(card=card_ref_from_dict(value.get("card")), field=field)
    raise ValueError(f"Unknown card ref type: {ref_type!r}")
