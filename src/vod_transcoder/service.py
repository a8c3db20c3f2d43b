"""Job submission, status lookup and service wiring.

``build_services`` constructs the queue, encoder, publisher, persistence and
worker pipeline once from a resolved config; the API, the CLI and the worker
process all receive that container instead of reaching for globals.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .encoder import EncodeRunner, FfmpegRunner
from .errors import JobNotFoundError
from .events import ProgressPublisher, build_publisher
from .models import PipelineConfig, Rendition
from .persistence import ResultPersistence, VideoRepository, create_db_engine
from .queue.backends import QueueBackend
from .queue.models import EnqueueOptions, Job, JobPayload
from .queue.sqlite_backend import SQLiteQueue
from .queue.worker import JobPipeline, TranscodeWorkerPool

logger = structlog.get_logger(__name__)


class TranscodeService:
    """Enqueues transcode jobs and reports their status."""

    def __init__(
        self,
        queue: QueueBackend,
        ladder: List[Rendition],
        attempts: int = 3,
        backoff_base_s: float = 5.0,
    ):
        self.queue = queue
        self.ladder = ladder
        self.attempts = attempts
        self.backoff_base_s = backoff_base_s

    def submit(
        self,
        source_path: str,
        video_id: str,
        uploader_id: str,
        ladder: Optional[List[Rendition]] = None,
        title: Optional[str] = None,
    ) -> str:
        """Enqueue a transcode of ``source_path`` for ``video_id``.

        Raises:
            DuplicateJobError: the video already has a waiting or active job
        """
        payload = JobPayload(
            source_path=str(source_path),
            video_id=video_id,
            uploader_id=uploader_id,
            ladder=list(ladder or self.ladder),
            title=title,
        )
        options = EnqueueOptions(attempts=self.attempts, backoff_base_s=self.backoff_base_s)
        job_id = self.queue.enqueue(payload, options)
        logger.info("transcode_submitted", job_id=job_id, video_id=video_id)
        return job_id

    def get_job(self, job_id: str) -> Job:
        job = self.queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Status payload of a job.

        ``progress`` is the mean percent over the ladder for the current
        attempt. It never decreases within an attempt but starts again from 0
        when a failed job is retried.

        Raises:
            JobNotFoundError: unknown (or already trimmed) job id
        """
        job = self.get_job(job_id)
        return {
            "jobId": job.job_id,
            "state": job.state.value,
            "progress": job.progress,
            "data": {
                "title": job.payload.title,
                "userId": job.payload.uploader_id,
                "videoId": job.payload.video_id,
            },
            "result": job.result.model_dump(mode="json") if job.result else None,
            "error": job.last_error,
            "attempts": job.attempts,
            "createdAt": job.submitted_at.isoformat(),
        }

    def stats(self) -> Dict[str, int]:
        return self.queue.counts()


@dataclass
class Services:
    """Everything a process needs, built once and passed by reference."""

    config: PipelineConfig
    queue: QueueBackend
    runner: EncodeRunner
    publisher: ProgressPublisher
    videos: VideoRepository
    persistence: ResultPersistence
    pipeline: JobPipeline
    transcoder: TranscodeService

    def worker_pool(self, concurrency: Optional[int] = None) -> TranscodeWorkerPool:
        cfg = self.config.queue
        return TranscodeWorkerPool(
            self.queue,
            self.pipeline,
            concurrency=concurrency or cfg.concurrency,
            reclaim_interval_s=cfg.reclaim_interval_s,
            poll_timeout_s=cfg.poll_interval_s,
        )

    def close(self) -> None:
        self.publisher.close()
        self.queue.close()
        self.videos.engine.dispose()


def build_services(
    config: PipelineConfig,
    runner: Optional[EncodeRunner] = None,
    publisher: Optional[ProgressPublisher] = None,
) -> Services:
    """Wire the pipeline from config. ``runner`` and ``publisher`` may be injected."""
    qcfg = config.queue
    queue = SQLiteQueue(
        qcfg.db_path,
        keep_completed=qcfg.keep_completed,
        keep_failed=qcfg.keep_failed,
        visibility_timeout_s=qcfg.visibility_timeout_s,
        poll_interval_s=qcfg.poll_interval_s,
    )
    runner = runner or FfmpegRunner(config.encoder)
    if publisher is None:
        publisher = build_publisher(
            config.events.redis_url, config.events.channel_prefix, config.events.buffer_size
        )
    videos = VideoRepository(create_db_engine(config.storage.database_url))
    persistence = ResultPersistence(videos)
    pipeline = JobPipeline(
        queue,
        runner,
        publisher,
        persistence,
        output_root=config.storage.output_root,
        public_url_prefix=config.storage.public_url_prefix,
        max_parallel_encodes=qcfg.max_parallel_encodes,
        heartbeat_interval_s=qcfg.heartbeat_interval_s,
        use_declared_bitrate=config.use_declared_bitrate,
    )
    transcoder = TranscodeService(
        queue, config.ladder, attempts=qcfg.attempts, backoff_base_s=qcfg.backoff_base_s
    )
    return Services(
        config=config,
        queue=queue,
        runner=runner,
        publisher=publisher,
        videos=videos,
        persistence=persistence,
        pipeline=pipeline,
        transcoder=transcoder,
    )
