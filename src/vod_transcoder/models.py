"""Pydantic models for configuration and media descriptors."""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Rendition(BaseModel):
    """One rung of the resolution ladder."""

    label: str = Field(..., min_length=1, description="Variant label, e.g. '720p'")
    width: int = Field(..., gt=0, description="Output width in pixels")
    height: int = Field(..., gt=0, description="Output height in pixels")
    bitrate_kbps: int = Field(..., gt=0, description="Target video bitrate in kbit/s")

    @field_validator("label")
    @classmethod
    def label_is_filename_safe(cls, v: str) -> str:
        """Labels become playlist file names, so no path separators."""
        if "/" in v or "\\" in v or v.startswith("."):
            raise ValueError(f"label {v!r} is not a safe file name")
        return v


def validate_ladder(ladder: List[Rendition]) -> List[Rendition]:
    """Reject an empty ladder or repeated labels.

    Two rungs with the same label would overwrite each other's playlist.
    """
    if not ladder:
        raise ValueError("ladder must not be empty")
    labels = [r.label for r in ladder]
    if len(labels) != len(set(labels)):
        raise ValueError(f"duplicate ladder labels: {labels}")
    return ladder


DEFAULT_LADDER: List[Rendition] = [
    Rendition(label="144p", width=256, height=144, bitrate_kbps=200),
    Rendition(label="240p", width=426, height=240, bitrate_kbps=400),
    Rendition(label="360p", width=640, height=360, bitrate_kbps=800),
    Rendition(label="480p", width=854, height=480, bitrate_kbps=1200),
    Rendition(label="720p", width=1280, height=720, bitrate_kbps=2500),
    Rendition(label="1080p", width=1920, height=1080, bitrate_kbps=5000),
]


class VariantDescriptor(BaseModel):
    """One encoded resolution, produced by an encode runner."""

    label: str
    width: int
    height: int
    bitrate_kbps: Optional[int] = None
    playlist_path: str = Field(..., description="Playlist path on disk")
    url: Optional[str] = Field(default=None, description="Public playlist URL")
    duration_s: Optional[float] = Field(
        default=None, ge=0.0, description="Source duration reported by the encoder"
    )


class EncoderConfig(BaseModel):
    """External encoder invocation settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="Encoder binary (None = bundled imageio-ffmpeg binary)"
    )
    video_codec: str = Field(default="libx264", description="Video codec")
    preset: str = Field(default="veryfast", description="Encoder speed preset")
    audio_codec: str = Field(default="aac", description="Audio codec")
    audio_sample_rate: int = Field(default=48000, gt=0, description="Audio sample rate in Hz")
    segment_duration_s: int = Field(default=6, gt=0, description="HLS segment duration")
    progress_interval_s: float = Field(
        default=0.3, ge=0.0, description="Minimum wall time between progress callbacks"
    )
    global_timeout_s: Optional[int] = Field(
        default=None, gt=0, description="Kill the encoder after N seconds (None = no limit)"
    )
    no_progress_timeout_s: Optional[int] = Field(
        default=300, gt=0, description="Kill the encoder if it stalls for N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    loglevel: str = Field(default="info", description="Encoder log level")


class QueueConfig(BaseModel):
    """Job queue and worker pool settings."""

    db_path: str = Field(default="data/queue.db", description="SQLite queue database")
    attempts: int = Field(default=3, ge=1, description="Max execution attempts per job")
    backoff_base_s: float = Field(
        default=5.0, ge=0.0, description="Exponential backoff base delay in seconds"
    )
    concurrency: int = Field(default=1, ge=1, description="Concurrent jobs per worker process")
    keep_completed: int = Field(default=100, ge=0, description="Completed jobs retained")
    keep_failed: int = Field(default=500, ge=0, description="Failed jobs retained")
    visibility_timeout_s: int = Field(
        default=600, gt=0, description="Lease length before an unacknowledged job is redelivered"
    )
    heartbeat_interval_s: int = Field(default=60, gt=0, description="Lease extension period")
    reclaim_interval_s: int = Field(default=30, gt=0, description="Expired lease scan period")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Dequeue polling period")
    max_parallel_encodes: Optional[int] = Field(
        default=None, ge=1, description="Per-job encode parallelism cap (None = CPU count)"
    )


class StorageConfig(BaseModel):
    """Where uploads and renditions live."""

    upload_dir: str = Field(default="uploads", description="Uploaded source files")
    output_root: str = Field(default="public/videos", description="Published HLS output root")
    public_url_prefix: str = Field(default="/videos", description="URL prefix of output_root")
    database_url: str = Field(
        default="sqlite:///data/videos.db", description="SQLAlchemy URL of the video records"
    )


class EventsConfig(BaseModel):
    """Progress channel settings."""

    redis_url: Optional[str] = Field(default=None, description="Redis URL (None = log only)")
    channel_prefix: str = Field(default="video-processing", description="Channel name prefix")
    buffer_size: int = Field(default=1000, gt=0, description="Pending events before dropping")


class LoggingConfig(BaseModel):
    """structlog settings."""

    level: str = Field(default="INFO", description="Log level")
    json_output: bool = Field(default=True, description="JSON lines instead of console output")


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    ladder: List[Rendition] = Field(default_factory=lambda: list(DEFAULT_LADDER))
    use_declared_bitrate: bool = Field(
        default=False, description="Advertise rendition bitrates instead of the label heuristic"
    )
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("ladder")
    @classmethod
    def ladder_labels_unique(cls, v: List[Rendition]) -> List[Rendition]:
        return validate_ladder(v)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("concurrency") is not None:
            config_dict["queue"]["concurrency"] = cli_args["concurrency"]
        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("output_root") is not None:
            config_dict["storage"]["output_root"] = cli_args["output_root"]
        if cli_args.get("database_url") is not None:
            config_dict["storage"]["database_url"] = cli_args["database_url"]
        if cli_args.get("redis_url") is not None:
            config_dict["events"]["redis_url"] = cli_args["redis_url"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)
