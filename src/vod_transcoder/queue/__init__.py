"""Durable job queue and the worker pool that drains it."""

from .backends import QueueBackend
from .models import (
    QUEUE_NAME,
    EnqueueOptions,
    Job,
    JobPayload,
    JobResult,
    JobState,
    StateTransition,
)
from .sqlite_backend import SQLiteQueue
from .worker import JobPipeline, TranscodeWorkerPool

__all__ = [
    "QUEUE_NAME",
    "QueueBackend",
    "EnqueueOptions",
    "Job",
    "JobPayload",
    "JobResult",
    "JobState",
    "StateTransition",
    "SQLiteQueue",
    "JobPipeline",
    "TranscodeWorkerPool",
]
