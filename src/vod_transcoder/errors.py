"""Exception hierarchy for the transcoding pipeline.

The worker decides retry behaviour from the exception type:

- SourceValidationError: permanent, the job fails without retry
- EncodeError, ManifestError, OSError: transient, retried per queue policy
- PersistenceError: the encode is not re-run, the job fails
- LeaseLostError: another worker owns the job now, the attempt is abandoned
"""

from typing import List, Optional


class TranscodeError(Exception):
    """Base class for pipeline errors."""


class SourceValidationError(TranscodeError):
    """Source file missing, unreadable or empty."""


class EncodeError(TranscodeError):
    """The external encoder could not be started or exited non-zero."""

    def __init__(
        self,
        message: str,
        label: Optional[str] = None,
        returncode: Optional[int] = None,
        stderr_tail: Optional[List[str]] = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.label = label
        self.returncode = returncode
        self.stderr_tail = stderr_tail or []
        self.timed_out = timed_out


class ManifestError(TranscodeError):
    """Master playlist could not be assembled."""


class PersistenceError(TranscodeError):
    """The video record could not be updated."""


class JobNotFoundError(TranscodeError):
    """No job with the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class DuplicateJobError(TranscodeError):
    """A job for the same video is already waiting or active."""

    def __init__(self, video_id: str, job_id: str):
        super().__init__(f"Video {video_id} already has an in-flight job {job_id}")
        self.video_id = video_id
        self.job_id = job_id


class LeaseLostError(TranscodeError):
    """The caller no longer holds the job's lease (expired and reclaimed)."""

    def __init__(self, job_id: str, worker_id: Optional[str], attempt: Optional[int] = None):
        super().__init__(f"Worker {worker_id} no longer holds the lease of job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id
        self.attempt = attempt
