"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
All models use Pydantic for validation and serialization.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import Rendition, VariantDescriptor, validate_ladder

QUEUE_NAME = "video-processing"


class JobState(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        waiting → active      (worker dequeues; attempts += 1, progress = 0)
        active → completed    (all variants, manifest and persistence succeeded)
        active → waiting      (nack with attempts left, after backoff; or lease expired)
        active → failed       (nack on the last attempt, or a permanent error)
    """

    WAITING = "waiting"  # Queued, possibly delayed by backoff
    ACTIVE = "active"  # Claimed by a worker under a lease
    COMPLETED = "completed"  # Terminal success
    FAILED = "failed"  # Terminal failure


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)


class JobPayload(BaseModel):
    """What to transcode and for whom."""

    source_path: str = Field(..., description="Uploaded source file")
    video_id: str = Field(..., min_length=1, description="Video record to publish")
    uploader_id: str = Field(..., min_length=1, description="Progress channel owner")
    ladder: List[Rendition] = Field(..., min_length=1, description="Resolutions to produce")
    title: Optional[str] = Field(default=None, description="Video title (status display only)")

    @field_validator("ladder")
    @classmethod
    def ladder_labels_unique(cls, v: List[Rendition]) -> List[Rendition]:
        return validate_ladder(v)


class EnqueueOptions(BaseModel):
    """Per-job retry policy."""

    attempts: int = Field(default=3, ge=1, description="Max execution attempts")
    backoff_base_s: float = Field(
        default=5.0, ge=0.0, description="Retry delay base: base * 2^(attempts-1)"
    )
    job_id: Optional[str] = Field(default=None, description="Explicit job id (default: UUID)")
    unique_per_video: bool = Field(
        default=True, description="Reject if the video already has a waiting/active job"
    )


class JobResult(BaseModel):
    """Outcome of a successful attempt."""

    video_id: str
    variants: List[VariantDescriptor] = Field(default_factory=list)
    manifest_path: str
    manifest_url: str
    duration_s: float = Field(default=0.0, ge=0.0)


class Job(BaseModel):
    """Snapshot of one queued unit of work."""

    job_id: str
    queue_name: str = QUEUE_NAME
    payload: JobPayload
    state: JobState = JobState.WAITING
    attempts: int = Field(default=0, ge=0, description="Execution attempts started")
    max_attempts: int = Field(default=3, ge=1)
    backoff_base_s: float = Field(default=5.0, ge=0.0)
    progress: int = Field(default=0, ge=0, le=100)
    result: Optional[JobResult] = None
    last_error: Optional[str] = None
    submitted_at: datetime
    last_attempted_at: Optional[datetime] = None
    available_at: datetime
    lease_expires_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def retry_delay_s(self) -> float:
        """Backoff before the next attempt, given the attempts made so far."""
        return self.backoff_base_s * (2 ** max(self.attempts - 1, 0))


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = None
    job_id: str
    from_state: Optional[str] = None
    to_state: str
    timestamp: datetime
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = None
