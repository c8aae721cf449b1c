"""Loader collaborator: base types, value formatting and cross-realm fetches.

Card modules are never executed, so the loader stands in for the runtime
type schema. It serves the base realm's root card and primitive field types
from memory, formats query operands and instance values the way each
primitive compares them, and asks other realms for their canonical type
definitions (`_typeOf`) and card documents over HTTP.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime
from types import MappingProxyType

import httpx

from realm_index.config import LoaderConfig
from realm_index.errors import CardFetchError
from realm_index.index.models import (
    CardDefinition,
    CardResource,
    FieldDefinition,
    definition_from_resource,
)
from realm_index.index.refs import (
    CardRef,
    ExportedCardRef,
    card_ref_to_dict,
    internal_key_for,
    root_module_of,
)

CARD_JSON_MIME_TYPE = "application/vnd.card+json"
CARD_API_MODULE = "card_api"
ROOT_CARD_NAME = "CardDef"
FIELD_DECORATOR = "field"
FIELD_TYPE_MARKERS: Mapping[str, str] = MappingProxyType(
    {"contains": "contains", "contains_many": "containsMany"}
)

ValueFormatter = Callable[[object], object]


def _format_string(value: object) -> object:
    if value is None:
        return None
    return str(value)


def _format_number(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return float(value)
    raise ValueError(f"{value!r} is not a number")


def _format_boolean(value: object) -> object:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"{value!r} is not a boolean")


def _format_date(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return date.fromisoformat(value[:10]).isoformat()
    raise ValueError(f"{value!r} is not a date")


def _format_datetime(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value)
    else:
        raise ValueError(f"{value!r} is not a datetime")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.isoformat()


PRIMITIVE_FORMATTERS: Mapping[str, ValueFormatter] = MappingProxyType(
    {
        "StringField": _format_string,
        "NumberField": _format_number,
        "BooleanField": _format_boolean,
        "DateField": _format_date,
        "DatetimeField": _format_datetime,
    }
)


class Loader:
    """Resolve types and documents that do not live in the indexed realm."""

    def __init__(
        self,
        config: LoaderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config or LoaderConfig()
        self._client = client
        self._owns_client = client is None
        self.base_realm_url = self._config.base_realm_url
        self.card_api_url = f"{self.base_realm_url}{CARD_API_MODULE}"
        self.root_ref = ExportedCardRef(module=self.card_api_url, name=ROOT_CARD_NAME)
        self._builtins = self._builtin_definitions()
        self._formatters = {
            internal_key_for(ExportedCardRef(module=self.card_api_url, name=name)): formatter
            for name, formatter in PRIMITIVE_FORMATTERS.items()
        }
        self._type_cache: dict[str, dict[str, CardDefinition]] = {}
        self._realm_versions: dict[str, int] = {}

    @property
    def import_map(self) -> dict[str, str]:
        """Return the package -> realm URL map used to resolve absolute imports."""
        return self._config.effective_import_map()

    @property
    def known_realms(self) -> tuple[str, ...]:
        """Return realm URLs this loader may fetch from, base realm included."""
        realms = {self.base_realm_url, *self._config.known_realms}
        return tuple(sorted(realms))

    def root_definition(self) -> CardDefinition:
        """Return the root card definition that seeds every definition graph."""
        return self._builtins[internal_key_for(self.root_ref)]

    def is_primitive(self, key: str) -> bool:
        """Return True when the definition key names a primitive field type."""
        return key in self._formatters

    def format_value(self, field_card_key: str, value: object) -> object:
        """Format a value with its field type's rule; raises ValueError when invalid."""
        formatter = self._formatters.get(field_card_key)
        if formatter is None:
            return value
        return formatter(value)

    def builtin_definition(self, ref: CardRef) -> CardDefinition | None:
        """Return a base-realm definition served without network access."""
        return self._builtins.get(internal_key_for(ref))

    def owning_realm(self, module_url: str) -> str | None:
        """Return the most specific known realm containing the module URL."""
        matching = [realm for realm in self.known_realms if module_url.startswith(realm)]
        if not matching:
            return None
        return max(matching, key=len)

    def note_realm_version(self, realm_url: str, version: int) -> None:
        """Record a realm's version; a changed version drops its cached types."""
        previous = self._realm_versions.get(realm_url)
        if previous is not None and previous != version:
            self._type_cache.pop(realm_url, None)
        self._realm_versions[realm_url] = version

    def invalidate(self, realm_url: str | None = None) -> None:
        """Drop cached remote types for one realm, or for every realm."""
        if realm_url is None:
            self._type_cache.clear()
            self._realm_versions.clear()
            return
        self._type_cache.pop(realm_url, None)
        self._realm_versions.pop(realm_url, None)

    def cached_definition(self, ref: CardRef) -> CardDefinition | None:
        """Return a builtin or previously fetched definition without fetching."""
        key = internal_key_for(ref)
        builtin = self._builtins.get(key)
        if builtin is not None:
            return builtin
        realm_url = self.owning_realm(root_module_of(ref))
        if realm_url is None:
            return None
        return self._type_cache.get(realm_url, {}).get(key)

    async def type_definition(self, ref: CardRef) -> CardDefinition:
        """Return the canonical definition of a type owned by another realm."""
        cached = self.cached_definition(ref)
        if cached is not None:
            return cached
        module = root_module_of(ref)
        realm_url = self.owning_realm(module)
        if realm_url is None:
            raise CardFetchError(
                f"No known realm owns module {module}.",
                status=404,
                source=internal_key_for(ref),
            )
        payload = await self._get_json(
            f"{realm_url}_typeOf",
            params=_flatten_ref(card_ref_to_dict(ref)),
            accept="application/vnd.api+json",
        )
        self._note_payload_version(realm_url, payload)
        try:
            definition = definition_from_resource(payload.get("data"))
        except ValueError as error:
            raise CardFetchError(
                f"Realm {realm_url} returned an invalid type definition: {error}",
                source=internal_key_for(ref),
            ) from error
        cache = self._type_cache.setdefault(realm_url, {})
        cache[definition.key] = definition
        cache[internal_key_for(ref)] = definition
        return definition

    async def fetch_card_document(self, url: str) -> CardResource:
        """Fetch a single-card document and return its resource with a self link."""
        payload = await self._get_json(url, accept=CARD_JSON_MIME_TYPE)
        data = payload.get("data")
        if not isinstance(data, dict) or not isinstance(data.get("id"), str):
            raise CardFetchError(f"Instance {url} is not a card document.", source=url)
        meta = data.get("meta")
        if not isinstance(meta, dict) or not isinstance(meta.get("adoptsFrom"), dict):
            raise CardFetchError(f"Instance {url} is not a card document.", source=url)
        realm_url = self.owning_realm(url)
        if realm_url is not None:
            self._note_payload_version(realm_url, payload)
        resource: CardResource = dict(data)
        resource["links"] = {"self": data["id"]}
        return resource

    async def aclose(self) -> None:
        """Close the HTTP client when this loader created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _note_payload_version(self, realm_url: str, payload: Mapping[str, object]) -> None:
        meta = payload.get("meta")
        if isinstance(meta, dict) and isinstance(meta.get("realmVersion"), int):
            self.note_realm_version(realm_url, meta["realmVersion"])

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=float(self._config.fetch_timeout_seconds))
        return self._client

    async def _get_json(
        self,
        url: str,
        *,
        accept: str,
        params: dict[str, str] | None = None,
    ) -> dict[str, object]:
        try:
            response = await self._http().get(url, params=params, headers={"Accept": accept})
        except httpx.HTTPError as error:
            raise CardFetchError(f"Unable to fetch {url}: {error}", source=url) from error
        if response.is_error:
            raise CardFetchError(
                _error_detail(response) or f"Fetch of {url} failed.",
                status=response.status_code,
                source=url,
            )
        try:
            payload = response.json()
        except ValueError as error:
            raise CardFetchError(f"Response from {url} is not JSON.", source=url) from error
        if not isinstance(payload, dict):
            raise CardFetchError(f"Response from {url} is not a JSON object.", source=url)
        return payload

    def _builtin_definitions(self) -> dict[str, CardDefinition]:
        definitions: dict[str, CardDefinition] = {}
        string_ref = ExportedCardRef(module=self.card_api_url, name="StringField")
        for name in PRIMITIVE_FORMATTERS:
            ref = ExportedCardRef(module=self.card_api_url, name=name)
            definitions[internal_key_for(ref)] = CardDefinition(
                id=ref,
                key=internal_key_for(ref),
                super=None,
                fields=MappingProxyType({}),
            )
        definitions[internal_key_for(self.root_ref)] = CardDefinition(
            id=self.root_ref,
            key=internal_key_for(self.root_ref),
            super=None,
            fields=MappingProxyType(
                {
                    name: FieldDefinition(field_type="contains", field_card=string_ref)
                    for name in ("id", "title", "description")
                }
            ),
        )
        return definitions


def _flatten_ref(value: Mapping[str, object], prefix: str = "") -> dict[str, str]:
    """Encode a nested ref as bracketed query parameters (card[module]=...)."""
    params: dict[str, str] = {}
    for key, item in value.items():
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(item, Mapping):
            params.update(_flatten_ref(item, name))
        else:
            params[name] = str(item)
    return params


def _error_detail(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        text = response.text.strip()
        return text or None
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            detail = errors[0].get("detail")
            if isinstance(detail, str):
                return detail
    return None
