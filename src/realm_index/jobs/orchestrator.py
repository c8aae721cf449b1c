"""Run orchestration: leasing options, coalescing runs and publishing snapshots."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import replace
from types import MappingProxyType

from realm_index.errors import RunnerNotRegisteredError
from realm_index.index.models import RunState, SearchEntryWithErrors
from realm_index.index.runner import EntrySetter, Operation, RunnerOptions
from realm_index.index.state import IndexState, RunPhase
from realm_index.jobs.dispatch import Dispatcher
from realm_index.jobs.queue import FROM_SCRATCH_JOB, INCREMENTAL_JOB, job_name
from realm_index.jobs.registry import RunnerOptionsRegistry

OptionsFactory = Callable[[EntrySetter, RunState | None], RunnerOptions]
PublishHook = Callable[[RunState], Awaitable[None]]
InvalidationCallback = Callable[[list[str]], object]


class RunOrchestrator:
    """Serialize index runs for one realm and publish their snapshots.

    Concurrent from-scratch requests share the in-flight run; incremental
    runs wait for the realm lock. A run that raises publishes nothing.
    """

    def __init__(
        self,
        realm_url: str,
        state: IndexState,
        registry: RunnerOptionsRegistry,
        dispatcher: Dispatcher | None,
        options_factory: OptionsFactory,
        publish_hook: PublishHook | None = None,
    ) -> None:
        self._realm_url = realm_url
        self._state = state
        self._registry = registry
        self._dispatcher = dispatcher
        self._options_factory = options_factory
        self._publish_hook = publish_hook
        self._lock = asyncio.Lock()
        self._from_scratch: asyncio.Future[RunState] | None = None

    @property
    def registry(self) -> RunnerOptionsRegistry:
        """Return the options registry owned by this orchestrator."""
        return self._registry

    async def run(self) -> RunState:
        """Rebuild from scratch, joining a rebuild already in flight."""
        if self._dispatcher is None:
            raise RunnerNotRegisteredError(job_name(FROM_SCRATCH_JOB, self._realm_url))
        task = self._from_scratch
        if task is None:
            task = asyncio.ensure_future(self._run_from_scratch(self._dispatcher))
            self._from_scratch = task
            task.add_done_callback(self._clear_from_scratch)
        return await asyncio.shield(task)

    async def update(
        self,
        url: str,
        *,
        delete: bool = False,
        on_invalidation: InvalidationCallback | None = None,
    ) -> RunState:
        """Re-index one file and notify the caller of invalidated URLs."""
        if self._dispatcher is None:
            raise RunnerNotRegisteredError(job_name(INCREMENTAL_JOB, self._realm_url))
        operation: Operation = "delete" if delete else "update"
        async with self._lock:
            prior = self._state.current
            staging: dict[str, SearchEntryWithErrors] = {}
            options = self._options_factory(staging.__setitem__, prior)
            self._state.enter(RunPhase.REVISITING)
            try:
                with self._registry.lease(options) as token:
                    result = await self._dispatcher.incremental(token, url, operation)
                self._state.enter(RunPhase.MERGING)
                published = await self._publish(result, staging)
            finally:
                self._state.enter(RunPhase.IDLE)
        if on_invalidation is not None:
            outcome = on_invalidation(list(published.invalidations))
            if inspect.isawaitable(outcome):
                await outcome
        return published

    async def _run_from_scratch(self, dispatcher: Dispatcher) -> RunState:
        async with self._lock:
            staging: dict[str, SearchEntryWithErrors] = {}
            options = self._options_factory(staging.__setitem__, None)
            self._state.enter(RunPhase.BUILDING)
            try:
                with self._registry.lease(options) as token:
                    result = await dispatcher.from_scratch(token)
                self._state.enter(RunPhase.PUBLISHING)
                return await self._publish(result, staging)
            finally:
                self._state.enter(RunPhase.IDLE)

    async def _publish(
        self, result: RunState, staging: dict[str, SearchEntryWithErrors]
    ) -> RunState:
        # the result's instance map replaces the prior one; streamed entries
        # only fill ids the result does not carry
        instances = {**staging, **result.instances}
        published = replace(result, instances=MappingProxyType(instances))
        if self._publish_hook is not None:
            await self._publish_hook(published)
        self._state.publish(published)
        return published

    def _clear_from_scratch(self, task: asyncio.Future[RunState]) -> None:
        if self._from_scratch is task:
            self._from_scratch = None
