"""Built-in realm tools exposed by the request server."""

from __future__ import annotations

from collections.abc import Callable

from realm_index.config import RealmConfig
from realm_index.index.refs import card_ref_from_dict, card_ref_to_dict
from realm_index.realm.paths import resolve_url
from realm_index.search_index import SearchIndex
from realm_index.tools.registry import ToolDispatchError, ToolHandler, ToolRegistry

ReadAuditEntries = Callable[[str | None, int], list[dict[str, object]]]


def register_builtin_tools(
    registry: ToolRegistry,
    index: SearchIndex,
    config: RealmConfig,
    read_audit_entries: ReadAuditEntries,
) -> None:
    """Register the realm tool set in a fixed order."""
    registry.register("realm.status", _status_handler(index, config))
    registry.register("realm.run", _run_handler(index))
    registry.register("realm.update", _update_handler(index))
    registry.register("realm.search", _search_handler(index, config))
    registry.register("realm.card", _card_handler(index))
    registry.register("realm.type_of", _type_of_handler(index))
    registry.register("realm.directory", _directory_handler(index))
    registry.register("realm.is_ignored", _is_ignored_handler(index))
    registry.register("realm.audit_log", _audit_log_handler(config, read_audit_entries))


def _status_handler(index: SearchIndex, config: RealmConfig) -> ToolHandler:
    def handler(_: dict[str, object]) -> dict[str, object]:
        return {
            **index.status(),
            "effective_config": config.to_public_dict(),
        }

    return handler


def _run_handler(index: SearchIndex) -> ToolHandler:
    async def handler(_: dict[str, object]) -> dict[str, object]:
        await index.run()
        return index.status()

    return handler


def _update_handler(index: SearchIndex) -> ToolHandler:
    async def handler(arguments: dict[str, object]) -> dict[str, object]:
        url = _required_url(index, arguments, "realm.update")
        delete_value = arguments.get("delete", False)
        if not isinstance(delete_value, bool):
            raise ToolDispatchError(
                code="INVALID_PARAMS", message="realm.update delete must be a boolean."
            )
        invalidations: list[str] = []

        def collect(urls: list[str]) -> None:
            invalidations.extend(urls)

        await index.update(url, delete=delete_value, on_invalidation=collect)
        return {"invalidations": invalidations, "stats": index.stats.to_dict()}

    return handler


def _search_handler(index: SearchIndex, config: RealmConfig) -> ToolHandler:
    async def handler(arguments: dict[str, object]) -> dict[str, object]:
        query_value = arguments.get("query")
        if query_value is not None and not isinstance(query_value, dict):
            raise ToolDispatchError(
                code="INVALID_PARAMS", message="realm.search query must be an object."
            )
        load_links = _optional_bool(arguments, "load_links", "realm.search")
        document = await index.search(query_value, load_links=load_links)
        data = document.get("data")
        max_hits = config.limits.max_search_hits
        if isinstance(data, list) and len(data) > max_hits:
            document["data"] = data[:max_hits]
            document["__warnings__"] = [
                f"Search returned {len(data)} cards; truncated to max_search_hits={max_hits}."
            ]
        return document

    return handler


def _card_handler(index: SearchIndex) -> ToolHandler:
    async def handler(arguments: dict[str, object]) -> dict[str, object]:
        url = _required_url(index, arguments, "realm.card")
        load_links = _optional_bool(arguments, "load_links", "realm.card")
        found = await index.card(url, load_links=load_links)
        if found is None:
            return {"type": "not-found", "url": url}
        return found

    return handler


def _type_of_handler(index: SearchIndex) -> ToolHandler:
    async def handler(arguments: dict[str, object]) -> dict[str, object]:
        try:
            ref = card_ref_from_dict(arguments.get("ref"))
        except ValueError as error:
            raise ToolDispatchError(
                code="INVALID_PARAMS", message=f"realm.type_of ref is invalid: {error}"
            ) from error
        definition = await index.type_of(ref)
        return {
            "ref": card_ref_to_dict(ref),
            "definition": definition.to_dict() if definition is not None else None,
        }

    return handler


def _directory_handler(index: SearchIndex) -> ToolHandler:
    def handler(arguments: dict[str, object]) -> dict[str, object]:
        url_value = arguments.get("url", "")
        if not isinstance(url_value, str):
            raise ToolDispatchError(
                code="INVALID_PARAMS", message="realm.directory url must be a string."
            )
        url = resolve_url(url_value, index.realm_url)
        entries = index.directory(url)
        return {
            "url": url if url.endswith("/") else f"{url}/",
            "found": entries is not None,
            "entries": [{"name": entry.name, "kind": entry.kind} for entry in entries or ()],
        }

    return handler


def _is_ignored_handler(index: SearchIndex) -> ToolHandler:
    def handler(arguments: dict[str, object]) -> dict[str, object]:
        url = _required_url(index, arguments, "realm.is_ignored")
        return {"url": url, "ignored": index.is_ignored(url)}

    return handler


def _audit_log_handler(config: RealmConfig, read_audit_entries: ReadAuditEntries) -> ToolHandler:
    def handler(arguments: dict[str, object]) -> dict[str, object]:
        max_hits = config.limits.max_search_hits
        since_value = arguments.get("since")
        limit_value = arguments.get("limit", max_hits)

        since: str | None = since_value if isinstance(since_value, str) else None
        limit = limit_value if isinstance(limit_value, int) else max_hits
        if limit < 1:
            limit = 1
        if limit > max_hits:
            limit = max_hits

        return {"entries": read_audit_entries(since, limit)}

    return handler


def _required_url(index: SearchIndex, arguments: dict[str, object], tool: str) -> str:
    url_value = arguments.get("url")
    if not isinstance(url_value, str) or not url_value:
        raise ToolDispatchError(
            code="INVALID_PARAMS", message=f"{tool} url must be a non-empty string."
        )
    return resolve_url(url_value, index.realm_url)


def _optional_bool(arguments: dict[str, object], name: str, tool: str) -> bool:
    value = arguments.get(name, False)
    if not isinstance(value, bool):
        raise ToolDispatchError(code="INVALID_PARAMS", message=f"{tool} {name} must be a boolean.")
    return value
