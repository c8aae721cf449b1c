"""Filter parsing, three-valued matching and deterministic sorting.

Matchers return True, False or None. None means the card's schema does not
carry what the filter talks about, which keeps it distinct from a present
value that does not match: `not` leaves None unchanged and only True is
kept when filtering.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Literal

from realm_index.errors import FilterError
from realm_index.index.models import (
    CardDefinition,
    EntryResult,
    FieldDefinition,
    SearchEntry,
    SearchEntryWithErrors,
)
from realm_index.index.refs import CardRef, card_ref_from_dict, internal_key_for
from realm_index.loader import Loader

Direction = Literal["asc", "desc"]
Matcher = Callable[[SearchEntry], bool | None]
ValueMatcher = Callable[[object], bool | None]
DefinitionLookup = Callable[[CardRef], Awaitable[CardDefinition | None]]

_RANGE_OPERATORS = ("gt", "lt", "gte", "lte")


@dataclass(slots=True, frozen=True)
class TypeFilter:
    type: CardRef


@dataclass(slots=True, frozen=True)
class EqFilter:
    values: Mapping[str, object]
    on: CardRef | None = None


@dataclass(slots=True, frozen=True)
class ContainsFilter:
    values: Mapping[str, object]
    on: CardRef | None = None


@dataclass(slots=True, frozen=True)
class RangeBounds:
    gt: object = None
    lt: object = None
    gte: object = None
    lte: object = None


@dataclass(slots=True, frozen=True)
class RangeFilter:
    bounds: Mapping[str, RangeBounds]
    on: CardRef | None = None


@dataclass(slots=True, frozen=True)
class AnyFilter:
    filters: tuple[Filter, ...]
    on: CardRef | None = None


@dataclass(slots=True, frozen=True)
class EveryFilter:
    filters: tuple[Filter, ...]
    on: CardRef | None = None


@dataclass(slots=True, frozen=True)
class NotFilter:
    filter: Filter
    on: CardRef | None = None


Filter = TypeFilter | EqFilter | ContainsFilter | RangeFilter | AnyFilter | EveryFilter | NotFilter


@dataclass(slots=True, frozen=True)
class Sort:
    by: str
    on: CardRef
    direction: Direction = "asc"


@dataclass(slots=True, frozen=True)
class Query:
    filter: Filter | None = None
    sort: tuple[Sort, ...] = ()


def kleene_any(results: Iterable[bool | None]) -> bool | None:
    """Three-valued OR."""
    indeterminate = False
    for result in results:
        if result is True:
            return True
        if result is None:
            indeterminate = True
    return None if indeterminate else False


def kleene_every(results: Iterable[bool | None]) -> bool | None:
    """Three-valued AND."""
    indeterminate = False
    for result in results:
        if result is False:
            return False
        if result is None:
            indeterminate = True
    return None if indeterminate else True


def parse_query(payload: object, root_ref: CardRef) -> Query:
    """Parse a JSON-style query object; raises FilterError when malformed."""
    if payload is None:
        return Query()
    if not isinstance(payload, dict):
        raise FilterError("Query must be an object.")
    unknown = set(payload) - {"filter", "sort"}
    if unknown:
        raise FilterError(f"Unknown query keys: {', '.join(sorted(unknown))}.")
    raw_filter = payload.get("filter")
    raw_sort = payload.get("sort", [])
    if not isinstance(raw_sort, list):
        raise FilterError("Query sort must be a list.")
    return Query(
        filter=parse_filter(raw_filter) if raw_filter is not None else None,
        sort=tuple(_parse_sort(item, root_ref) for item in raw_sort),
    )


def parse_filter(payload: object) -> Filter:
    """Parse one filter node."""
    if not isinstance(payload, dict):
        raise FilterError("Filter must be an object.")
    on = _parse_ref(payload["on"], "on") if "on" in payload else None
    if "type" in payload:
        return TypeFilter(type=_parse_ref(payload["type"], "type"))
    if "eq" in payload:
        return EqFilter(values=_field_values(payload["eq"], "eq"), on=on)
    if "contains" in payload:
        return ContainsFilter(values=_field_values(payload["contains"], "contains"), on=on)
    if "range" in payload:
        raw_range = _field_values(payload["range"], "range")
        bounds: dict[str, RangeBounds] = {}
        for path, raw_bounds in raw_range.items():
            if not isinstance(raw_bounds, dict) or not set(raw_bounds) <= set(_RANGE_OPERATORS):
                raise FilterError(f"Range for '{path}' may only use gt, lt, gte and lte.")
            bounds[path] = RangeBounds(**raw_bounds)
        return RangeFilter(bounds=bounds, on=on)
    if "any" in payload:
        return AnyFilter(filters=_filter_list(payload["any"], "any"), on=on)
    if "every" in payload:
        return EveryFilter(filters=_filter_list(payload["every"], "every"), on=on)
    if "not" in payload:
        return NotFilter(filter=parse_filter(payload["not"]), on=on)
    raise FilterError("Unknown filter.")


def _parse_ref(value: object, name: str) -> CardRef:
    try:
        return card_ref_from_dict(value)
    except ValueError as error:
        raise FilterError(f"Filter '{name}' is not a valid card ref: {error}") from error


def _field_values(value: object, name: str) -> dict[str, object]:
    if not isinstance(value, dict) or not all(isinstance(key, str) for key in value):
        raise FilterError(f"Filter '{name}' must map field paths to values.")
    return dict(value)


def _filter_list(value: object, name: str) -> tuple[Filter, ...]:
    if not isinstance(value, list):
        raise FilterError(f"Filter '{name}' must be a list of filters.")
    return tuple(parse_filter(item) for item in value)


def _parse_sort(value: object, root_ref: CardRef) -> Sort:
    if not isinstance(value, dict) or not isinstance(value.get("by"), str):
        raise FilterError("Sort expressions require a string 'by'.")
    direction = value.get("direction", "asc")
    if direction not in ("asc", "desc"):
        raise FilterError("Sort direction must be 'asc' or 'desc'.")
    on = _parse_ref(value["on"], "on") if "on" in value else root_ref
    return Sort(by=value["by"], on=on, direction=direction)


def field_data(search_data: Mapping[str, object], path: str) -> object:
    """Follow a dotted path through search data; missing segments give None."""
    data: object = search_data
    for segment in path.split("."):
        if not isinstance(data, Mapping):
            return None
        data = data.get(segment)
    return data


class QueryEngine:
    """Compile filters and sorts against a definition lookup."""

    def __init__(self, lookup: DefinitionLookup, loader: Loader) -> None:
        self._lookup = lookup
        self._loader = loader
        self.root_ref = loader.root_ref

    async def execute(
        self, items: Iterable[SearchEntryWithErrors], query: Query
    ) -> list[SearchEntry]:
        """Return matching entries in deterministic order (id breaks ties)."""
        matcher = await self.build_matcher(query.filter, self.root_ref)
        matched = [
            item.entry
            for item in items
            if isinstance(item, EntryResult) and matcher(item.entry) is True
        ]
        sorts = (*query.sort, Sort(by="id", on=self.root_ref))
        return sorted(matched, key=cmp_to_key(self.build_sorter(sorts)))

    async def build_matcher(self, filter_node: Filter | None, on: CardRef) -> Matcher:
        """Compile a filter into a three-valued predicate."""
        if filter_node is None:
            return lambda _entry: True
        if isinstance(filter_node, TypeFilter):
            type_key = internal_key_for(filter_node.type)
            return lambda entry: type_key in entry.types

        scope = filter_node.on or on
        if isinstance(filter_node, AnyFilter):
            any_matchers = [await self.build_matcher(child, scope) for child in filter_node.filters]
            return lambda entry: kleene_any(matcher(entry) for matcher in any_matchers)
        if isinstance(filter_node, EveryFilter):
            every_matchers = [
                await self.build_matcher(child, scope) for child in filter_node.filters
            ]
            return lambda entry: kleene_every(matcher(entry) for matcher in every_matchers)
        if isinstance(filter_node, NotFilter):
            inner = await self.build_matcher(filter_node.filter, scope)

            def negate(entry: SearchEntry) -> bool | None:
                result = inner(entry)
                return None if result is None else not result

            return negate
        if isinstance(filter_node, EqFilter):
            return await self._field_matchers(filter_node.values, scope, _eq_leaf)
        if isinstance(filter_node, ContainsFilter):
            return await self._field_matchers(filter_node.values, scope, _contains_leaf)
        return await self._range_matchers(filter_node, scope)

    def build_sorter(self, sorts: Iterable[Sort]) -> Callable[[SearchEntry, SearchEntry], int]:
        """Chain sort keys into one comparator; ties fall through to the next key."""
        expressions = [(sort, internal_key_for(sort.on)) for sort in sorts]

        def compare(first: SearchEntry, second: SearchEntry) -> int:
            for sort, on_key in expressions:
                result = _compare_on(sort, on_key, first, second)
                if result != 0:
                    return result
            return 0

        return compare

    async def _definition(self, ref: CardRef) -> CardDefinition:
        definition = await self._lookup(ref)
        if definition is None:
            raise FilterError(
                f"Your filter refers to nonexistent type: {internal_key_for(ref)}"
            )
        return definition

    async def _field_chain(self, on: CardRef, path: str) -> list[tuple[str, FieldDefinition]]:
        definition: CardDefinition | None = await self._definition(on)
        chain: list[tuple[str, FieldDefinition]] = []
        segments = path.split(".")
        for index, segment in enumerate(segments):
            field_definition = definition.fields.get(segment) if definition else None
            if field_definition is None:
                owner = definition.key if definition else internal_key_for(on)
                raise FilterError(
                    f'Your filter refers to nonexistent field "{segment}" on type {owner}'
                )
            chain.append((segment, field_definition))
            if index < len(segments) - 1:
                definition = await self._definition(field_definition.field_card)
        return chain

    def _format(self, field_definition: FieldDefinition, value: object) -> object:
        try:
            return self._loader.format_value(internal_key_for(field_definition.field_card), value)
        except ValueError as error:
            raise FilterError(f"Invalid filter value {value!r}: {error}") from error

    async def _field_matchers(
        self,
        values: Mapping[str, object],
        on: CardRef,
        leaf: Callable[[object], ValueMatcher],
    ) -> Matcher:
        matchers: list[ValueMatcher] = []
        for path, raw_value in values.items():
            chain = await self._field_chain(on, path)
            query_value = self._format(chain[-1][1], raw_value)
            matchers.append(_wrap_chain(chain, leaf(query_value), query_value is None))
        return self._scoped(matchers, on)

    async def _range_matchers(self, range_filter: RangeFilter, on: CardRef) -> Matcher:
        matchers: list[ValueMatcher] = []
        for path, bounds in range_filter.bounds.items():
            chain = await self._field_chain(on, path)
            field_definition = chain[-1][1]
            formatted = RangeBounds(
                gt=self._format(field_definition, bounds.gt),
                lt=self._format(field_definition, bounds.lt),
                gte=self._format(field_definition, bounds.gte),
                lte=self._format(field_definition, bounds.lte),
            )
            matchers.append(_wrap_chain(chain, _range_leaf(formatted), False))
        return self._scoped(matchers, on)

    @staticmethod
    def _scoped(matchers: list[ValueMatcher], on: CardRef) -> Matcher:
        on_key = internal_key_for(on)

        def match(entry: SearchEntry) -> bool | None:
            if on_key not in entry.types:
                return None
            return kleene_every(matcher(entry.search_data) for matcher in matchers)

        return match


def _wrap_chain(
    chain: list[tuple[str, FieldDefinition]],
    leaf: ValueMatcher,
    query_is_null: bool,
) -> ValueMatcher:
    matcher = leaf
    for name, field_definition in reversed(chain):
        matcher = _field_step(name, field_definition, matcher, query_is_null)
    return matcher


def _field_step(
    name: str,
    field_definition: FieldDefinition,
    inner: ValueMatcher,
    query_is_null: bool,
) -> ValueMatcher:
    def step(container: object) -> bool | None:
        if container is None:
            return True if query_is_null else None
        if not isinstance(container, Mapping):
            return None
        value = container.get(name)
        if field_definition.field_type == "containsMany" and isinstance(value, list):
            if not value:
                return inner(None)
            return kleene_any(inner(item) for item in value)
        return inner(value)

    return step


def _eq_leaf(query_value: object) -> ValueMatcher:
    def match(value: object) -> bool | None:
        if query_value is None and value is None:
            return True
        if value is None:
            return None
        return value == query_value

    return match


def _contains_leaf(query_value: object) -> ValueMatcher:
    needle = str(query_value).lower() if query_value is not None else None

    def match(value: object) -> bool | None:
        if value is None and needle is None:
            return True
        if value is None or needle is None:
            return None
        return needle in str(value).lower()

    return match


def _range_leaf(bounds: RangeBounds) -> ValueMatcher:
    checks: list[tuple[object, Callable[[object, object], bool]]] = []
    if bounds.gt is not None:
        checks.append((bounds.gt, lambda value, bound: value > bound))  # type: ignore[operator]
    if bounds.lt is not None:
        checks.append((bounds.lt, lambda value, bound: value < bound))  # type: ignore[operator]
    if bounds.gte is not None:
        checks.append((bounds.gte, lambda value, bound: value >= bound))  # type: ignore[operator]
    if bounds.lte is not None:
        checks.append((bounds.lte, lambda value, bound: value <= bound))  # type: ignore[operator]

    def match(value: object) -> bool | None:
        if value is None or not checks:
            return None
        try:
            return all(check(value, bound) for bound, check in checks)
        except TypeError:
            return None

    return match


def _compare_values(first: object, second: object) -> int:
    try:
        if first < second:  # type: ignore[operator]
            return -1
        if first > second:  # type: ignore[operator]
            return 1
        return 0
    except TypeError:
        left = (type(first).__name__, str(first))
        right = (type(second).__name__, str(second))
        return (left > right) - (left < right)


def _compare_on(sort: Sort, on_key: str, first: SearchEntry, second: SearchEntry) -> int:
    descending = sort.direction == "desc"
    first_has = on_key in first.types
    second_has = on_key in second.types
    if not first_has or not second_has:
        if first_has == second_has:
            return 0
        # entries lacking the type go last ascending, first descending
        if not first_has:
            return -1 if descending else 1
        return 1 if descending else -1

    first_value = field_data(first.search_data, sort.by)
    second_value = field_data(second.search_data, sort.by)
    if first_value is None or second_value is None:
        if first_value is None and second_value is None:
            return 0
        if first_value is None:
            return -1 if descending else 1
        return 1 if descending else -1

    result = _compare_values(first_value, second_value)
    return -result if descending else result
