"""Expand JSON:API relationships into included resources."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Collection

from realm_index.config import DEFAULT_MAX_LINK_DEPTH
from realm_index.index.models import CardResource
from realm_index.index.walker import instance_id
from realm_index.loader import Loader
from realm_index.realm.paths import RealmPaths, resolve_url

GetResource = Callable[[str], Awaitable[CardResource | None]]


class LinkResolver:
    """Resolve relationship links locally or through the loader.

    `visited` stops a resolution tree from entering the same resource twice,
    `omit` holds ids the caller already returns as primary data, and nesting
    stops once the chain of resources being expanded exceeds
    `max_link_depth`. A relationship gets `data` once its target is known to
    be satisfiable: inlined in `included`, or already held by the caller.
    """

    def __init__(
        self,
        realm_url: str,
        get_resource: GetResource,
        loader: Loader,
        max_link_depth: int = DEFAULT_MAX_LINK_DEPTH,
    ) -> None:
        self._paths = RealmPaths(realm_url)
        self._get_resource = get_resource
        self._loader = loader
        self._max_link_depth = max_link_depth

    async def load_links(
        self,
        resource: CardResource,
        *,
        omit: Collection[str] = (),
        included: list[CardResource] | None = None,
        visited: set[str] | None = None,
        stack: tuple[str, ...] = (),
    ) -> list[CardResource]:
        """Return `included` extended with every resource reachable from `resource`.

        Relationships of `resource` are rewritten in place, so callers pass
        copies of indexed resources.
        """
        included = included if included is not None else []
        visited = visited if visited is not None else set()
        resource_id = resource.get("id")
        if isinstance(resource_id, str):
            if resource_id in visited:
                return []
            visited.add(resource_id)

        relationships = resource.get("relationships")
        if not isinstance(relationships, dict):
            return included
        base_url = resource_id if isinstance(resource_id, str) else self._paths.url
        for relationship in relationships.values():
            if not isinstance(relationship, dict):
                continue
            links = relationship.get("links")
            self_link = links.get("self") if isinstance(links, dict) else None
            if not isinstance(self_link, str) or not self_link:
                continue

            link_url = resolve_url(self_link, base_url)
            if self._paths.in_realm(link_url):
                link_id = instance_id(link_url)
                linked = await self._get_resource(link_id)
            else:
                link_id = link_url
                linked = await self._loader.fetch_card_document(link_url)

            found_links = False
            if linked is not None and len(stack) <= self._max_link_depth:
                nested_stack = (resource_id, *stack) if isinstance(resource_id, str) else stack
                nested = await self.load_links(
                    linked,
                    omit=omit,
                    included=[*included, linked],
                    visited=visited,
                    stack=nested_stack,
                )
                for nested_resource in nested:
                    found_links = True
                    nested_id = nested_resource.get("id")
                    if nested_id in omit or _contains_id(included, nested_id):
                        continue
                    included.append({**nested_resource, "links": {"self": nested_id}})

            if found_links or link_id in omit or _contains_id(included, link_id):
                relationship["data"] = {"type": "card", "id": link_id}
        return included


def _contains_id(resources: list[CardResource], resource_id: object) -> bool:
    return any(resource.get("id") == resource_id for resource in resources)
