"""Worker pool implementation using threads.

This module turns claimed jobs into published HLS ladders:
- A fixed number of worker threads, each running one job at a time
- Per-job ThreadPoolExecutor running one encoder process per resolution
- Heartbeat threads that extend the lease of long-running jobs
- A reaper thread that redelivers jobs whose worker disappeared
- Error classification (permanent vs transient vs persistence)
- Graceful shutdown handling

Threads rather than processes: the heavy lifting happens inside the external
encoder processes, the Python side only waits on pipes and the database.

An attempt owns its staging directory and may only finish the job while it
still holds the lease. A worker that loses its lease stops its encoders,
discards its staging directory and leaves the job to the new holder.
"""

import os
import shutil
import signal
import socket
import threading
import uuid
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog

from ..encoder import EncodeRunner
from ..errors import LeaseLostError, PersistenceError, SourceValidationError, TranscodeError
from ..events import (
    ProcessingComplete,
    ProcessingFailed,
    ProcessingProgress,
    ProgressPublisher,
    ReadyResolution,
    VideoReady,
)
from ..manifest import MASTER_PLAYLIST_NAME, build_master_playlist
from ..models import Rendition, VariantDescriptor
from ..persistence import ResultPersistence
from ..progress import ProgressUpdate
from .backends import QueueBackend
from .models import Job, JobResult, JobState

logger = structlog.get_logger(__name__)

STAGING_DIRNAME = ".staging"


def validate_source(source_path: str) -> int:
    """Check the uploaded file exists, is readable and non-empty.

    Returns:
        Size in bytes

    Raises:
        SourceValidationError: permanent, retrying cannot fix it
    """
    path = Path(source_path)
    if not path.is_file():
        raise SourceValidationError(f"Source file not found: {source_path}")
    if not os.access(str(path), os.R_OK):
        raise SourceValidationError(f"Cannot read source file: {source_path}")
    size = path.stat().st_size
    if size == 0:
        raise SourceValidationError(f"Source file is empty: {source_path}")
    return size


class _Heartbeat:
    """Extends a job's lease until stopped.

    When the queue reports the lease gone, ``lost`` is set and ``on_lost``
    is called once.
    """

    def __init__(
        self,
        queue: QueueBackend,
        job_id: str,
        worker_id: str,
        interval_s: float,
        on_lost: Optional[Callable[[], None]] = None,
    ):
        self.queue = queue
        self.job_id = job_id
        self.worker_id = worker_id
        self.interval_s = interval_s
        self.on_lost = on_lost
        self.lost = threading.Event()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, name=f"heartbeat-{job_id[:8]}", daemon=True
        )

    def start(self) -> "_Heartbeat":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=5)

    def mark_lost(self) -> None:
        if self.lost.is_set():
            return
        self.lost.set()
        logger.warning("lease_lost", job_id=self.job_id, worker_id=self.worker_id)
        if self.on_lost:
            self.on_lost()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                if not self.queue.extend_lease(self.job_id, self.worker_id):
                    self.mark_lost()
                    return
            except Exception:
                # Log but don't crash thread; the next beat may succeed
                logger.warning("heartbeat_failed", job_id=self.job_id, exc_info=True)


class _LadderProgress:
    """Aggregates per-variant percents into the job's progress."""

    def __init__(self, labels: List[str]):
        self._percents: Dict[str, int] = {label: 0 for label in labels}
        self._lock = threading.Lock()

    def update(self, label: str, percent: int) -> int:
        with self._lock:
            self._percents[label] = max(self._percents[label], percent)
            return int(sum(self._percents.values()) / len(self._percents))


class JobPipeline:
    """Runs one attempt of a transcode job from claimed to acked/nacked.

    Per attempt:
    1. Validate the source (permanent failure if missing/unreadable/empty)
    2. Create the attempt's own staging directory
    3. Encode every ladder rung concurrently, reporting progress; the first
       failure stops the remaining encoders
    4. Build the master playlist in staging
    5. Confirm the lease, then publish staging to ``<output_root>/<videoId>/``
       with a rename
    6. Persist the video record, ack, announce, delete the source

    Queue writes carry the worker id and attempt number, so an attempt whose
    lease was reclaimed cannot finish the job under its new holder.

    Instances hold no per-job state and are shared by all worker threads.
    """

    def __init__(
        self,
        queue: QueueBackend,
        runner: EncodeRunner,
        publisher: ProgressPublisher,
        persistence: ResultPersistence,
        output_root: str,
        public_url_prefix: str = "/videos",
        max_parallel_encodes: Optional[int] = None,
        heartbeat_interval_s: float = 60,
        use_declared_bitrate: bool = False,
    ):
        self.queue = queue
        self.runner = runner
        self.publisher = publisher
        self.persistence = persistence
        self.output_root = Path(output_root)
        self.public_url_prefix = public_url_prefix.rstrip("/")
        self.max_parallel_encodes = max_parallel_encodes or os.cpu_count() or 1
        self.heartbeat_interval_s = heartbeat_interval_s
        self.use_declared_bitrate = use_declared_bitrate

    def staging_dir(self, job_id: str, attempt: int) -> Path:
        return self.output_root / STAGING_DIRNAME / f"{job_id}-{attempt}"

    def published_dir(self, video_id: str) -> Path:
        return self.output_root / video_id

    def public_url(self, video_id: str, filename: str) -> str:
        return f"{self.public_url_prefix}/{video_id}/{filename}"

    def run(self, job: Job, worker_id: str) -> Optional[JobResult]:
        """Process a claimed job. Returns the result on success, None otherwise.

        Every outcome is recorded on the queue (ack or nack) before returning,
        unless the lease was lost, in which case the attempt is dropped.
        """
        payload = job.payload
        log = logger.bind(job_id=job.job_id, video_id=payload.video_id, attempt=job.attempts)
        log.info("job_started", resolutions=[r.label for r in payload.ladder])

        try:
            validate_source(payload.source_path)
        except SourceValidationError as e:
            self.fail(job, str(e), retry=False, worker_id=worker_id)
            return None

        cancel = threading.Event()
        heartbeat = _Heartbeat(
            self.queue, job.job_id, worker_id, self.heartbeat_interval_s, on_lost=cancel.set
        )
        heartbeat.start()
        try:
            try:
                staging = self._prepare_staging(job)
                variants = self._encode_ladder(job, staging, worker_id, cancel)
                build_master_playlist(str(staging), variants, self.use_declared_bitrate)
                if not self.queue.extend_lease(job.job_id, worker_id):
                    heartbeat.mark_lost()
                    raise LeaseLostError(job.job_id, worker_id, job.attempts)
                published = self._publish_directory(staging, payload.video_id)
            except Exception as e:
                if heartbeat.lost.is_set():
                    self._abandon(job, worker_id)
                    return None
                if isinstance(e, (TranscodeError, OSError)):
                    log.warning("attempt_failed", error=str(e))
                    self.fail(job, str(e), retry=True, worker_id=worker_id)
                else:
                    # Unknown failure - retry (might be transient)
                    log.exception("attempt_crashed")
                    self.fail(job, f"{type(e).__name__}: {e}", retry=True, worker_id=worker_id)
                return None

            result = self._build_result(payload.video_id, published, variants)

            try:
                self.persistence.persist_success(
                    payload.video_id, result.manifest_url, result.variants, result.duration_s
                )
            except PersistenceError as e:
                # Encode is done and published; re-running it would not help
                log.error("persist_success_failed", error=str(e))
                try:
                    self.queue.nack(
                        job.job_id, str(e), retry=False, result=result,
                        worker_id=worker_id, attempt=job.attempts,
                    )
                except LeaseLostError:
                    self._abandon(job, worker_id)
                    return None
                self._publish_failed(job, str(e))
                return None

            try:
                self.queue.ack(job.job_id, result, worker_id=worker_id, attempt=job.attempts)
            except LeaseLostError:
                # The new holder re-runs the job and republishes over this one
                self._abandon(job, worker_id)
                return None
        finally:
            heartbeat.stop()

        self.publisher.publish(
            payload.uploader_id,
            VideoReady(
                videoId=payload.video_id,
                resolutions=[
                    ReadyResolution(label=v.label, url=v.url, width=v.width, height=v.height)
                    for v in result.variants
                ],
            ),
        )
        self._delete_source(payload.source_path)
        log.info("job_completed", manifest_url=result.manifest_url)
        return result

    def fail(
        self, job: Job, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> Optional[Job]:
        """Nack the attempt; on a terminal failure mark the video and notify.

        A retried attempt's staging directory is removed; the last attempt's
        is kept for inspection. Returns None if the lease was already lost.
        """
        try:
            updated = self.queue.nack(
                job.job_id, error, retry=retry, worker_id=worker_id, attempt=job.attempts
            )
        except LeaseLostError:
            self._abandon(job, worker_id)
            return None
        if updated.state == JobState.FAILED:
            self.handle_terminal_failure(updated, error)
        else:
            self._discard_staging(job)
        return updated

    def handle_terminal_failure(self, job: Job, error: str) -> None:
        """Best-effort: mark the video failed and tell the uploader."""
        try:
            self.persistence.persist_failure(job.payload.video_id)
        except PersistenceError as e:
            logger.error(
                "persist_failure_failed", job_id=job.job_id, video_id=job.payload.video_id,
                error=str(e),
            )
        self._publish_failed(job, error)

    def _abandon(self, job: Job, worker_id: Optional[str]) -> None:
        logger.warning(
            "attempt_abandoned", job_id=job.job_id, worker_id=worker_id, attempt=job.attempts
        )
        self._discard_staging(job)

    def _publish_failed(self, job: Job, error: str) -> None:
        self.publisher.publish(
            job.payload.uploader_id,
            ProcessingFailed(videoId=job.payload.video_id, message=error),
        )

    def _prepare_staging(self, job: Job) -> Path:
        staging = self.staging_dir(job.job_id, job.attempts)
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        return staging

    def _discard_staging(self, job: Job) -> None:
        shutil.rmtree(self.staging_dir(job.job_id, job.attempts), ignore_errors=True)

    def _encode_ladder(
        self, job: Job, staging: Path, worker_id: str, cancel: threading.Event
    ) -> List[VariantDescriptor]:
        """Encode all rungs concurrently; the first failure is raised.

        On the first failure ``cancel`` is set: rungs not yet started are
        dropped and running encoders are stopped, so the attempt ends without
        waiting for the slowest rung.
        """
        ladder = job.payload.ladder
        progress = _LadderProgress([r.label for r in ladder])
        workers = max(1, min(len(ladder), self.max_parallel_encodes))

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="encode")
        try:
            futures = {
                r.label: executor.submit(
                    self._encode_variant, job, staging, r, progress, worker_id, cancel
                )
                for r in ladder
            }
            done, pending = wait(futures.values(), return_when=FIRST_EXCEPTION)
            failed = [
                futures[r.label]
                for r in ladder
                if futures[r.label] in done and futures[r.label].exception() is not None
            ]
            if failed:
                cancel.set()
                for future in pending:
                    future.cancel()
        finally:
            executor.shutdown(wait=True)

        if failed:
            raise failed[0].exception()
        return [futures[r.label].result() for r in ladder]

    def _encode_variant(
        self,
        job: Job,
        staging: Path,
        rendition: Rendition,
        progress: _LadderProgress,
        worker_id: str,
        cancel: threading.Event,
    ) -> VariantDescriptor:
        payload = job.payload

        def on_progress(update: ProgressUpdate) -> None:
            overall = progress.update(rendition.label, update.percent)
            self.queue.update_progress(job.job_id, overall, worker_id=worker_id)
            self.publisher.publish(
                payload.uploader_id,
                ProcessingProgress(
                    videoId=payload.video_id,
                    resolution=rendition.label,
                    percent=update.percent,
                    eta=update.eta_s,
                ),
            )

        variant = self.runner.run(
            payload.source_path, str(staging), rendition, on_progress, cancel=cancel
        )
        self.queue.update_progress(
            job.job_id, progress.update(rendition.label, 100), worker_id=worker_id
        )

        url = self.public_url(payload.video_id, Path(variant.playlist_path).name)
        self.publisher.publish(
            payload.uploader_id,
            ProcessingComplete(videoId=payload.video_id, resolution=rendition.label, url=url),
        )
        return variant.model_copy(update={"url": url})

    def _publish_directory(self, staging: Path, video_id: str) -> Path:
        """Move staging into place; a previous rendition set is swapped out."""
        target = self.published_dir(video_id)
        previous = None
        if target.exists():
            previous = staging.parent / f"{video_id}.replaced-{uuid.uuid4().hex[:8]}"
            os.replace(target, previous)
        os.replace(staging, target)
        if previous is not None:
            shutil.rmtree(previous, ignore_errors=True)
        logger.info("rendition_set_published", video_id=video_id, path=str(target))
        return target

    def _build_result(
        self, video_id: str, published: Path, variants: List[VariantDescriptor]
    ) -> JobResult:
        moved = [
            v.model_copy(update={"playlist_path": str(published / Path(v.playlist_path).name)})
            for v in variants
        ]
        durations = [v.duration_s for v in variants if v.duration_s]
        return JobResult(
            video_id=video_id,
            variants=moved,
            manifest_path=str(published / MASTER_PLAYLIST_NAME),
            manifest_url=self.public_url(video_id, MASTER_PLAYLIST_NAME),
            duration_s=max(durations) if durations else 0.0,
        )

    @staticmethod
    def _delete_source(source_path: str) -> None:
        try:
            Path(source_path).unlink()
        except OSError as e:
            logger.warning("source_delete_failed", path=source_path, error=str(e))


class TranscodeWorkerPool:
    """Fixed set of worker threads draining the queue.

    Features:
    - ``concurrency`` jobs in flight at most
    - Reaper thread for expired leases (crash recovery)
    - Context manager for graceful shutdown: stop claiming, finish in-flight

    Example:
        >>> with TranscodeWorkerPool(queue, pipeline, concurrency=2):
        ...     time.sleep(60)
    """

    def __init__(
        self,
        queue: QueueBackend,
        pipeline: JobPipeline,
        concurrency: int = 1,
        reclaim_interval_s: float = 30,
        poll_timeout_s: float = 1.0,
        name: Optional[str] = None,
    ):
        self.queue = queue
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.reclaim_interval_s = reclaim_interval_s
        self.poll_timeout_s = poll_timeout_s
        self.name = name or f"{socket.gethostname()}-{os.getpid()}"
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def __enter__(self) -> "TranscodeWorkerPool":
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop(wait=True)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._work_loop, args=(f"{self.name}-{i}",), name=f"worker-{i}", daemon=True
            )
            for i in range(self.concurrency)
        ]
        self._threads.append(
            threading.Thread(target=self._reap_loop, name="lease-reaper", daemon=True)
        )
        for thread in self._threads:
            thread.start()
        logger.info("worker_pool_started", workers=self.concurrency, name=self.name)

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop claiming new jobs; with wait, block until in-flight jobs finish."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        logger.info("worker_pool_stopped", name=self.name)

    def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM (main thread only)."""

        def _handle_signal(signum, frame):
            logger.info("shutdown_requested", signal=signum)
            self._stop.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        self.start()
        while not self._stop.wait(1.0):
            pass
        self.stop(wait=True)

    def reclaim_once(self) -> List[Job]:
        """Redeliver expired leases; surface jobs that ran out of attempts."""
        failed = self.queue.reclaim_expired()
        for job in failed:
            self.pipeline.handle_terminal_failure(job, job.last_error or "Worker lost")
        return failed

    def _work_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.queue.dequeue(worker_id, timeout=self.poll_timeout_s)
            except Exception:
                logger.exception("dequeue_failed", worker_id=worker_id)
                self._stop.wait(self.poll_timeout_s)
                continue
            if job is None:
                continue
            try:
                self.pipeline.run(job, worker_id)
            except Exception:
                # Job stays active; its lease expiry hands it back to the queue
                logger.exception("job_crashed", job_id=job.job_id, worker_id=worker_id)

    def _reap_loop(self) -> None:
        while True:
            try:
                self.reclaim_once()
            except Exception:
                logger.exception("reclaim_failed")
            if self._stop.wait(self.reclaim_interval_s):
                return
