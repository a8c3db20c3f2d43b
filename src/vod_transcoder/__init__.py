"""HLS adaptive bitrate transcoding: job queue, worker pool and status API."""

__version__ = "0.1.0"
