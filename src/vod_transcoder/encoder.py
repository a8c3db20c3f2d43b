"""Encoder runners that turn a source file into one HLS variant.

The pipeline only depends on the ``EncodeRunner`` interface. ``FfmpegRunner``
is the production implementation: it drives one ffmpeg process per variant
and adds what a bare subprocess call lacks:

- Progress parsing from ffmpeg's ``-progress`` output on stderr
- Throttled progress callbacks with an ETA
- Global and no-progress (stall) timeouts
- Cooperative cancellation when a sibling encode of the same job failed
- Process tree cleanup with psutil so timed out encoders leave no orphans
"""

import re
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import psutil
import structlog

from .errors import EncodeError
from .models import EncoderConfig, Rendition, VariantDescriptor
from .progress import ProgressThrottle, ProgressUpdate

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
_OUT_TIME_RE = re.compile(r"^out_time=(\d+):(\d+):(\d+(?:\.\d+)?)")
_PROGRESS_KV_RE = re.compile(r"^[a-z_0-9]+=\S*$")


def _hms_to_seconds(h: str, m: str, s: str) -> float:
    return int(h) * 3600 + int(m) * 60 + float(s)


class EncodeRunner(ABC):
    """Produces one resolution variant from a source file."""

    @abstractmethod
    def run(
        self,
        source_path: str,
        output_dir: str,
        rendition: Rendition,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> VariantDescriptor:
        """Encode ``source_path`` into ``output_dir/<label>.m3u8`` plus segments.

        Setting ``cancel`` asks a running encode to stop early.

        Raises:
            EncodeError: encoder could not start, exited non-zero, timed out
                or was cancelled
        """


class FfmpegProgressParser:
    """Parses ffmpeg stderr line by line.

    ffmpeg prints the input ``Duration:`` header once, then with
    ``-progress pipe:2`` a block of key=value lines roughly every half second:

        frame=123
        out_time=00:00:05.123456
        speed=2.5x
        progress=continue
    """

    def __init__(
        self,
        on_progress: Optional[ProgressCallback] = None,
        min_interval_s: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
        tail_lines: int = 20,
    ):
        self.on_progress = on_progress
        self._clock = clock
        self._throttle = ProgressThrottle(min_interval_s=min_interval_s, clock=clock)
        self.duration_s: float = 0.0
        self.position_s: float = 0.0
        self.last_advance: float = clock()
        self.tail: deque = deque(maxlen=tail_lines)

    @property
    def percent(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return max(0.0, min(100.0, self.position_s / self.duration_s * 100.0))

    def feed(self, line: str) -> None:
        line = line.strip()
        if not line:
            return

        if self.duration_s <= 0:
            match = _DURATION_RE.search(line)
            if match:
                self.duration_s = _hms_to_seconds(*match.groups())
                return

        match = _OUT_TIME_RE.match(line)
        if match:
            position = _hms_to_seconds(*match.groups())
            if position > self.position_s:
                self.position_s = position
                self.last_advance = self._clock()
                self._emit()
            return

        if not _PROGRESS_KV_RE.match(line):
            self.tail.append(line)

    def consume(self, stream: Iterable[str]) -> None:
        for line in stream:
            self.feed(line)

    def _emit(self) -> None:
        if self.on_progress is None or self.duration_s <= 0:
            return
        update = self._throttle.observe(self.percent)
        if update is None:
            return
        try:
            self.on_progress(update)
        except Exception:
            # A broken listener must not kill the reader thread
            logger.warning("progress_callback_failed", exc_info=True)


@dataclass
class EncodeOutcome:
    """What one finished encoder process reported."""

    returncode: int
    elapsed_s: float
    duration_s: float
    stderr_tail: List[str] = field(default_factory=list)
    timed_out: Optional[str] = None  # "global" or "no_progress"
    cancelled: bool = False


class FfmpegRunner(EncodeRunner):
    """ffmpeg-backed runner producing VOD HLS playlists.

    Example:
        >>> runner = FfmpegRunner(EncoderConfig(segment_duration_s=6))
        >>> variant = runner.run(
        ...     "uploads/source.mp4",
        ...     "public/videos/.staging/job-1",
        ...     Rendition(label="720p", width=1280, height=720, bitrate_kbps=2500),
        ...     on_progress=lambda u: print(u.percent, u.eta_s),
        ... )
        >>> variant.playlist_path
        'public/videos/.staging/job-1/720p.m3u8'

    Instances hold no per-encode state and can be shared by concurrent encodes.
    """

    def __init__(self, config: Optional[EncoderConfig] = None):
        self.config = config or EncoderConfig()

    def build_command(self, source_path: str, output_dir: str, rendition: Rendition) -> List[str]:
        out = Path(output_dir)
        cfg = self.config
        return [
            self.get_ffmpeg_exe(),
            "-hide_banner",
            "-nostats",
            "-y",
            "-i", str(source_path),
            "-vf", f"scale={rendition.width}:{rendition.height}",
            "-c:v", cfg.video_codec,
            "-preset", cfg.preset,
            "-b:v", f"{rendition.bitrate_kbps}k",
            "-c:a", cfg.audio_codec,
            "-ar", str(cfg.audio_sample_rate),
            "-f", "hls",
            "-hls_time", str(cfg.segment_duration_s),
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(out / f"{rendition.label}_%03d.ts"),
            "-progress", "pipe:2",
            "-loglevel", cfg.loglevel,
            str(out / f"{rendition.label}.m3u8"),
        ]

    def run(
        self,
        source_path: str,
        output_dir: str,
        rendition: Rendition,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> VariantDescriptor:
        if cancel is not None and cancel.is_set():
            raise EncodeError(f"Encode of {rendition.label} cancelled", label=rendition.label)
        Path(output_dir).mkdir(parents=True, exist_ok=True)
        playlist = Path(output_dir) / f"{rendition.label}.m3u8"
        try:
            cmd = self.build_command(source_path, output_dir, rendition)
        except RuntimeError as e:
            # imageio-ffmpeg raises RuntimeError when no binary is available
            raise EncodeError(str(e), label=rendition.label) from e

        log = logger.bind(resolution=rendition.label, source=str(source_path))
        log.info("encode_started")

        try:
            outcome = self._run_ffmpeg(cmd, on_progress, cancel)
        except EncodeError as e:
            e.label = e.label or rendition.label
            raise

        if outcome.cancelled:
            raise EncodeError(
                f"Encode of {rendition.label} cancelled",
                label=rendition.label,
                returncode=outcome.returncode,
                stderr_tail=outcome.stderr_tail,
            )
        if outcome.timed_out:
            raise EncodeError(
                f"Encoder timed out ({outcome.timed_out}) for {rendition.label}",
                label=rendition.label,
                returncode=outcome.returncode,
                stderr_tail=outcome.stderr_tail,
                timed_out=True,
            )
        if outcome.returncode != 0:
            detail = outcome.stderr_tail[-1] if outcome.stderr_tail else "no output"
            raise EncodeError(
                f"Encoder failed for {rendition.label} "
                f"(exit {outcome.returncode}): {detail}",
                label=rendition.label,
                returncode=outcome.returncode,
                stderr_tail=outcome.stderr_tail,
            )
        if not playlist.exists():
            raise EncodeError(
                f"Encoder exited cleanly but wrote no playlist for {rendition.label}",
                label=rendition.label,
                returncode=outcome.returncode,
                stderr_tail=outcome.stderr_tail,
            )

        log.info("encode_finished", elapsed_s=round(outcome.elapsed_s, 2))
        return VariantDescriptor(
            label=rendition.label,
            width=rendition.width,
            height=rendition.height,
            bitrate_kbps=rendition.bitrate_kbps,
            playlist_path=str(playlist),
            duration_s=outcome.duration_s or None,
        )

    def _run_ffmpeg(
        self,
        cmd: List[str],
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> EncodeOutcome:
        """Execute the encoder with timeout enforcement and progress monitoring.

        Raises:
            EncodeError: if the process cannot be started
        """
        cfg = self.config
        start = time.monotonic()
        parser = FfmpegProgressParser(
            on_progress=on_progress, min_interval_s=cfg.progress_interval_s
        )

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                errors="replace",
            )
        except OSError as e:
            raise EncodeError(f"Could not start encoder {cmd[0]}: {e}") from e

        reader = threading.Thread(target=parser.consume, args=(process.stderr,), daemon=True)
        reader.start()

        timed_out = None
        cancelled = False
        try:
            while True:
                try:
                    returncode = process.wait(timeout=0.5)
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        logger.info("encoder_cancelled", pid=process.pid)
                        self._kill_process_tree(process)
                        returncode = process.wait()
                        cancelled = True
                        break
                    now = time.monotonic()
                    if cfg.global_timeout_s and now - start > cfg.global_timeout_s:
                        timed_out = "global"
                    elif (
                        cfg.no_progress_timeout_s
                        and now - parser.last_advance > cfg.no_progress_timeout_s
                    ):
                        timed_out = "no_progress"
                    if timed_out:
                        logger.warning("encoder_timeout", kind=timed_out, pid=process.pid)
                        self._kill_process_tree(process)
                        returncode = process.wait()
                        break
        except BaseException:
            self._kill_process_tree(process)
            raise
        finally:
            reader.join(timeout=2)
            if process.stderr:
                process.stderr.close()

        return EncodeOutcome(
            returncode=returncode,
            elapsed_s=time.monotonic() - start,
            duration_s=parser.duration_s,
            stderr_tail=list(parser.tail),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Terminate the encoder and its children, then kill survivors.

        Kill sequence:
        1. SIGTERM to every process in the tree
        2. Wait ``kill_grace_period_s``
        3. SIGKILL whatever is still alive
        """
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.config.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

    def get_ffmpeg_exe(self) -> str:
        """Get encoder executable path."""
        if self.config.ffmpeg_path:
            return self.config.ffmpeg_path
        import imageio_ffmpeg

        return imageio_ffmpeg.get_ffmpeg_exe()


def check_encoder(config: Optional[EncoderConfig] = None) -> bool:
    """Return True if the configured encoder binary runs."""
    try:
        exe = FfmpegRunner(config).get_ffmpeg_exe()
        result = subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=10,
        )
    except (OSError, RuntimeError, subprocess.SubprocessError):
        return False
    return result.returncode == 0
