from __future__ import annotations

"""Abstract base class for job queue backends.

The worker pool and the submission service depend only on this interface.
The shipped implementation is SQLite (``sqlite_backend.SQLiteQueue``); any
durable store that can claim a row atomically and expire leases satisfies it.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .models import EnqueueOptions, Job, JobPayload, JobResult, StateTransition


class QueueBackend(ABC):
    """Durable, at-least-once FIFO work queue.

    Implementations must provide:
    - Atomic dequeue (two workers never claim the same job)
    - Lease-based redelivery of jobs whose worker disappeared
    - Exponential backoff between attempts
    - Bounded retention of completed and failed jobs
    """

    @abstractmethod
    def enqueue(self, payload: "JobPayload", options: Optional["EnqueueOptions"] = None) -> str:
        """Add a job in state 'waiting'.

        Returns:
            The new job id
        """

    @abstractmethod
    def dequeue(self, worker_id: str, timeout: Optional[float] = None) -> Optional["Job"]:
        """Claim the oldest deliverable job.

        Args:
            worker_id: Identifier of the claiming worker
            timeout: Seconds to wait for a job (None = indefinitely, 0 = no wait)

        Returns:
            The claimed job (state 'active', attempts incremented, progress 0)
            or None if nothing became available in time

        Implementation notes:
        - MUST be safe under concurrent callers
        - Only jobs whose available_at has passed are deliverable
        - Must set a lease; an expired lease makes the job redeliverable
        """

    @abstractmethod
    def ack(
        self,
        job_id: str,
        result: "JobResult",
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> None:
        """Mark an active job completed and store its result.

        With ``worker_id`` (and optionally ``attempt``) the call is fenced: it
        raises LeaseLostError unless that worker still holds that attempt.
        """

    @abstractmethod
    def nack(
        self,
        job_id: str,
        error: str,
        retry: bool = True,
        result: Optional["JobResult"] = None,
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> "Job":
        """Record a failed attempt.

        If retry is True and attempts < max_attempts the job goes back to
        'waiting' after base * 2^(attempts-1) seconds; otherwise it becomes
        'failed'. A result, if given, is kept on the job row for operators.
        Fenced by ``worker_id``/``attempt`` like ack. Returns the updated job.
        """

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Point read of a job snapshot, None if unknown."""

    @abstractmethod
    def update_progress(self, job_id: str, percent: int, worker_id: Optional[str] = None) -> None:
        """Set progress of an active job (clamped 0-100, never decreasing).

        With ``worker_id`` only the lease holder's update applies.
        """

    @abstractmethod
    def extend_lease(self, job_id: str, worker_id: str) -> bool:
        """Heartbeat: push the lease of an active job forward.

        Returns False if the job is no longer held by this worker.
        """

    @abstractmethod
    def reclaim_expired(self) -> List["Job"]:
        """Crash recovery for active jobs whose lease expired.

        Jobs with attempts left return to 'waiting'; exhausted ones become
        'failed' and are returned so the caller can surface the failure.
        """

    @abstractmethod
    def find_inflight(self, video_id: str) -> Optional["Job"]:
        """Return a waiting or active job for the video, if any."""

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Number of jobs per state."""

    @abstractmethod
    def list_jobs(self, state: Optional[str] = None, limit: int = 100) -> List["Job"]:
        """Most recently submitted jobs, optionally filtered by state."""

    @abstractmethod
    def get_transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail of a job, oldest first."""

    def close(self) -> None:
        """Release connections."""
