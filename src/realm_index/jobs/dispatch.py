"""Run dispatch: execute directly, or publish jobs to a queue worker."""

from __future__ import annotations

from typing import Protocol

from realm_index.index.models import RunState
from realm_index.index.runner import IndexRunner, Operation
from realm_index.jobs.queue import FROM_SCRATCH_JOB, INCREMENTAL_JOB, LocalQueue, Queue, job_name
from realm_index.jobs.registry import RunnerOptionsRegistry


class Dispatcher(Protocol):
    """Start a run whose options are registered under `token`."""

    async def from_scratch(self, token: str) -> RunState:
        """Run a full rebuild."""

    async def incremental(self, token: str, url: str, operation: Operation) -> RunState:
        """Re-visit one file."""


class InProcessDispatcher:
    """Execute runs on the caller's event loop."""

    def __init__(self, registry: RunnerOptionsRegistry) -> None:
        self._registry = registry

    async def from_scratch(self, token: str) -> RunState:
        options = self._registry.get_options(token)
        return await IndexRunner(options).from_scratch()

    async def incremental(self, token: str, url: str, operation: Operation) -> RunState:
        options = self._registry.get_options(token)
        prior = options.prior or RunState.empty(options.realm_url)
        return await IndexRunner(options).incremental(prior, url, operation)


class QueueDispatcher:
    """Publish `from-scratch-index:<realm>` / `incremental-index:<realm>` jobs and await them."""

    def __init__(self, queue: Queue, realm_url: str) -> None:
        self._queue = queue
        self._realm_url = realm_url

    async def from_scratch(self, token: str) -> RunState:
        job = self._queue.publish(job_name(FROM_SCRATCH_JOB, self._realm_url), {"token": token})
        return _as_run_state(await job.done, job.name)

    async def incremental(self, token: str, url: str, operation: Operation) -> RunState:
        job = self._queue.publish(
            job_name(INCREMENTAL_JOB, self._realm_url),
            {"token": token, "url": url, "operation": operation},
        )
        return _as_run_state(await job.done, job.name)


def register_index_jobs(queue: LocalQueue, registry: RunnerOptionsRegistry, realm_url: str) -> None:
    """Register worker handlers that look run options up by token."""
    worker = InProcessDispatcher(registry)

    async def from_scratch_job(args: dict[str, object]) -> RunState:
        return await worker.from_scratch(str(args["token"]))

    async def incremental_job(args: dict[str, object]) -> RunState:
        operation = "delete" if args.get("operation") == "delete" else "update"
        return await worker.incremental(str(args["token"]), str(args["url"]), operation)

    queue.register(job_name(FROM_SCRATCH_JOB, realm_url), from_scratch_job)
    queue.register(job_name(INCREMENTAL_JOB, realm_url), incremental_job)


def _as_run_state(result: object, name: str) -> RunState:
    if not isinstance(result, RunState):
        raise TypeError(f"Job {name} returned {type(result).__name__}, expected RunState.")
    return result
