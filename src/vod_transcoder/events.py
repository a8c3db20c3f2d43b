"""Pipeline lifecycle events and the publishers that fan them out.

Events go to a per-uploader pub/sub channel (``video-processing:<uploaderId>``)
consumed by the real-time transport. Publishing is fire-and-forget: it never
blocks the pipeline and never raises.
"""

import queue
import threading
from abc import ABC, abstractmethod
from typing import List, Literal, Optional, Union

import redis
import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)


class ProcessingProgress(BaseModel):
    type: Literal["processing-progress"] = "processing-progress"
    videoId: str  # noqa: N815
    resolution: str
    percent: int = Field(..., ge=0, le=100)
    eta: int = Field(..., ge=0, description="Estimated seconds remaining")


class ProcessingComplete(BaseModel):
    type: Literal["processing-complete"] = "processing-complete"
    videoId: str  # noqa: N815
    resolution: str
    url: str


class ReadyResolution(BaseModel):
    label: str
    url: str
    width: int
    height: int


class VideoReady(BaseModel):
    type: Literal["video-ready"] = "video-ready"
    videoId: str  # noqa: N815
    resolutions: List[ReadyResolution] = Field(default_factory=list)


class ProcessingFailed(BaseModel):
    type: Literal["processing-failed"] = "processing-failed"
    videoId: str  # noqa: N815
    message: str


PipelineEvent = Union[ProcessingProgress, ProcessingComplete, VideoReady, ProcessingFailed]


class ProgressPublisher(ABC):
    """Best-effort event sink. Implementations must never raise from publish()."""

    @abstractmethod
    def publish(self, uploader_id: str, event: PipelineEvent) -> None:
        pass

    def close(self, timeout: float = 5.0) -> None:
        """Flush pending events and release resources."""


class NullPublisher(ProgressPublisher):
    """Logs events instead of delivering them (no transport configured)."""

    def publish(self, uploader_id: str, event: PipelineEvent) -> None:
        logger.debug("progress_event", uploader_id=uploader_id, event=event.type)


_STOP = object()


class RedisProgressPublisher(ProgressPublisher):
    """Redis PUBLISH on ``<prefix>:<uploaderId>`` from a background thread.

    publish() only enqueues into a bounded buffer; a single dispatcher thread
    sends in order, so events of one variant reach the channel in the order
    they were produced. A full buffer drops the event, a transport error is
    logged and the event is lost. Neither reaches the caller.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        channel_prefix: str = "video-processing",
        buffer_size: int = 1000,
        client: Optional[redis.Redis] = None,
    ):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = redis.Redis.from_url(
                redis_url,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                socket_keepalive=True,
            )
        self._client = client
        self.channel_prefix = channel_prefix
        self._queue: "queue.Queue" = queue.Queue(maxsize=buffer_size)
        self._closed = threading.Event()
        self._thread = threading.Thread(
            target=self._dispatch_loop, name="progress-publisher", daemon=True
        )
        self._thread.start()

    def channel_for(self, uploader_id: str) -> str:
        return f"{self.channel_prefix}:{uploader_id}"

    def publish(self, uploader_id: str, event: PipelineEvent) -> None:
        channel = self.channel_for(uploader_id)
        if self._closed.is_set():
            logger.warning("progress_event_after_close", channel=channel, event=event.type)
            return
        try:
            self._queue.put_nowait((channel, event.model_dump_json()))
        except queue.Full:
            logger.warning("progress_event_dropped", channel=channel, event=event.type)

    def close(self, timeout: float = 5.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("progress_publisher_close_timeout")
        self._thread.join(timeout=timeout)
        try:
            self._client.close()
        except redis.RedisError:
            logger.warning("redis_close_failed", exc_info=True)

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            channel, message = item
            try:
                self._client.publish(channel, message)
            except (redis.RedisError, OSError) as e:
                logger.warning("progress_publish_failed", channel=channel, error=str(e))
            except Exception:
                logger.exception("progress_publish_error", channel=channel)


def build_publisher(redis_url: Optional[str], channel_prefix: str, buffer_size: int) -> ProgressPublisher:
    """Redis publisher when a URL is configured, otherwise a logging no-op."""
    if redis_url:
        return RedisProgressPublisher(
            redis_url=redis_url, channel_prefix=channel_prefix, buffer_size=buffer_size
        )
    logger.info("progress_publisher_disabled", reason="no redis_url configured")
    return NullPublisher()
