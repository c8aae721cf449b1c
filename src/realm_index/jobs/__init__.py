"""Run orchestration, job dispatch and the runner options registry."""

from .dispatch import Dispatcher, InProcessDispatcher, QueueDispatcher, register_index_jobs
from .orchestrator import RunOrchestrator
from .queue import FROM_SCRATCH_JOB, INCREMENTAL_JOB, Job, LocalQueue, Queue, job_name
from .registry import RunnerOptionsRegistry

__all__ = [
    "FROM_SCRATCH_JOB",
    "INCREMENTAL_JOB",
    "Dispatcher",
    "InProcessDispatcher",
    "Job",
    "LocalQueue",
    "Queue",
    "QueueDispatcher",
    "RunOrchestrator",
    "RunnerOptionsRegistry",
    "job_name",
    "register_index_jobs",
]
