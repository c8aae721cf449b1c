"""Job queue contract and an in-process asyncio implementation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from realm_index.errors import RunnerNotRegisteredError

JobHandler = Callable[[dict[str, object]], Awaitable[object]]

FROM_SCRATCH_JOB = "from-scratch-index"
INCREMENTAL_JOB = "incremental-index"


def job_name(kind: str, realm_url: str) -> str:
    """Return the queue job name for a run kind and realm."""
    return f"{kind}:{realm_url}"


@dataclass(slots=True)
class Job:
    """A published job; `done` resolves to the handler's result."""

    id: int
    name: str
    args: dict[str, object]
    done: asyncio.Future[object] = field(repr=False)


class Queue(Protocol):
    """Publish jobs to workers."""

    def publish(self, name: str, args: dict[str, object]) -> Job:
        """Publish a job and return its handle."""


class LocalQueue:
    """Run job handlers as tasks on the current event loop."""

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._next_id = 0

    def register(self, name: str, handler: JobHandler) -> None:
        """Register the worker handler for a job name."""
        self._handlers[name] = handler

    def publish(self, name: str, args: dict[str, object]) -> Job:
        """Schedule a job; raises RunnerNotRegisteredError without a handler."""
        handler = self._handlers.get(name)
        if handler is None:
            raise RunnerNotRegisteredError(name)
        self._next_id += 1
        loop = asyncio.get_running_loop()
        job = Job(id=self._next_id, name=name, args=dict(args), done=loop.create_future())
        task = loop.create_task(self._execute(job, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    @staticmethod
    async def _execute(job: Job, handler: JobHandler) -> None:
        try:
            result = await handler(job.args)
        except Exception as error:
            if not job.done.cancelled():
                job.done.set_exception(error)
            return
        if not job.done.cancelled():
            job.done.set_result(result)
