"""Current-snapshot holder with run phase tracking."""

from __future__ import annotations

from enum import StrEnum

from realm_index.index.models import EntryResult, ErrorResult, RunState
from realm_index.logging import utc_timestamp


class RunPhase(StrEnum):
    """Run states: idle, building -> publishing, or revisiting -> merging."""

    IDLE = "idle"
    BUILDING = "building"
    PUBLISHING = "publishing"
    REVISITING = "revisiting"
    MERGING = "merging"


class IndexState:
    """Hold exactly one published snapshot per realm.

    Publishing replaces the reference in one assignment; readers that took
    the previous snapshot keep a consistent view.
    """

    def __init__(self, realm_url: str) -> None:
        self._current = RunState.empty(realm_url)
        self._phase = RunPhase.IDLE
        self._generation = 0
        self._published_at: str | None = None

    @property
    def current(self) -> RunState:
        """Return the published snapshot."""
        return self._current

    @property
    def phase(self) -> RunPhase:
        """Return the phase of the run in progress, if any."""
        return self._phase

    @property
    def generation(self) -> int:
        """Return how many snapshots have been published."""
        return self._generation

    @property
    def published_at(self) -> str | None:
        """Return the UTC time the current snapshot was published."""
        return self._published_at

    def enter(self, phase: RunPhase) -> None:
        """Move to a run phase."""
        self._phase = phase

    def publish(self, state: RunState) -> None:
        """Make `state` the current snapshot."""
        self._current = state
        self._generation += 1
        self._published_at = utc_timestamp()

    def summary(self) -> dict[str, object]:
        """Return a serializable description of the current snapshot."""
        state = self._current
        entries = sum(1 for item in state.instances.values() if isinstance(item, EntryResult))
        errors = sum(1 for item in state.instances.values() if isinstance(item, ErrorResult))
        return {
            "realm_url": state.realm_url,
            "phase": self._phase.value,
            "generation": self._generation,
            "published_at": self._published_at,
            "instance_count": entries,
            "instance_error_count": errors,
            "definition_count": len({definition.key for definition in state.definitions.values()}),
            "definition_error_count": len(state.definition_errors),
            "stats": state.stats.to_dict(),
            "invalidations": list(state.invalidations),
        }
