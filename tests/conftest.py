import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from vod_transcoder.encoder import EncodeRunner
from vod_transcoder.errors import EncodeError
from vod_transcoder.events import ProgressPublisher
from vod_transcoder.models import Rendition, VariantDescriptor
from vod_transcoder.persistence import ResultPersistence, VideoRepository, create_db_engine
from vod_transcoder.progress import ProgressUpdate
from vod_transcoder.queue.sqlite_backend import SQLiteQueue
from vod_transcoder.queue.worker import JobPipeline

SMALL_LADDER = [
    Rendition(label="240p", width=426, height=240, bitrate_kbps=400),
    Rendition(label="480p", width=854, height=480, bitrate_kbps=1200),
    Rendition(label="720p", width=1280, height=720, bitrate_kbps=2500),
]


class FakeClock:
    """Manually advanced UTC clock for lease and backoff tests."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRunner(EncodeRunner):
    """Writes real playlist and segment files instead of running an encoder.

    ``failures`` maps a label to the number of times it should fail before
    succeeding (use a large number for "always"). ``delays`` maps a label to
    seconds of simulated encoding, cut short when the cancel event is set.
    """

    def __init__(self, failures=None, duration_s=12.5, delays=None):
        self.failures = dict(failures or {})
        self.duration_s = duration_s
        self.delays = dict(delays or {})
        self.calls = []
        self.cancelled = []
        self.max_active = 0
        self._active = 0
        self._lock = threading.Lock()

    def run(self, source_path, output_dir, rendition, on_progress=None, cancel=None):
        with self._lock:
            self.calls.append((rendition.label, output_dir))
            self._active += 1
            self.max_active = max(self.max_active, self._active)
            fail = self.failures.get(rendition.label, 0) > 0
            if fail:
                self.failures[rendition.label] -= 1
        try:
            if on_progress:
                on_progress(ProgressUpdate(percent=50, eta_s=3))
            delay = self.delays.get(rendition.label, 0)
            if delay:
                if cancel is not None and cancel.wait(delay):
                    with self._lock:
                        self.cancelled.append(rendition.label)
                    raise EncodeError(f"Encode of {rendition.label} cancelled", label=rendition.label)
                if cancel is None:
                    time.sleep(delay)
            if fail:
                raise EncodeError(
                    f"Encoder failed for {rendition.label} (exit 1): boom",
                    label=rendition.label,
                    returncode=1,
                )
            out = Path(output_dir)
            playlist = out / f"{rendition.label}.m3u8"
            (out / f"{rendition.label}_000.ts").write_bytes(b"\x47" * 188)
            playlist.write_text(
                "#EXTM3U\n#EXT-X-PLAYLIST-TYPE:VOD\n#EXTINF:6.0,\n"
                f"{rendition.label}_000.ts\n#EXT-X-ENDLIST\n"
            )
            if on_progress:
                on_progress(ProgressUpdate(percent=100, eta_s=0))
            return VariantDescriptor(
                label=rendition.label,
                width=rendition.width,
                height=rendition.height,
                bitrate_kbps=rendition.bitrate_kbps,
                playlist_path=str(playlist),
                duration_s=self.duration_s,
            )
        finally:
            with self._lock:
                self._active -= 1

    def labels(self):
        return [label for label, _ in self.calls]


class RecordingPublisher(ProgressPublisher):
    """Keeps every published (uploader_id, event) pair."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def publish(self, uploader_id, event):
        with self._lock:
            self.events.append((uploader_id, event))

    def of_type(self, event_type):
        return [e for _, e in self.events if e.type == event_type]

    def types(self):
        return [e.type for _, e in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(tmp_path, clock):
    q = SQLiteQueue(str(tmp_path / "queue.db"), clock=clock, poll_interval_s=0.01)
    yield q
    q.close()


@pytest.fixture
def videos(tmp_path):
    repo = VideoRepository(create_db_engine(f"sqlite:///{tmp_path / 'videos.db'}"))
    yield repo
    repo.engine.dispose()


@pytest.fixture
def persistence(videos):
    return ResultPersistence(videos)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def output_root(tmp_path):
    root = tmp_path / "public" / "videos"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "uploads" / "source.mp4"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"fake video content" * 1000)
    return path


@pytest.fixture
def pipeline(queue, runner, publisher, persistence, output_root):
    return JobPipeline(
        queue,
        runner,
        publisher,
        persistence,
        output_root=str(output_root),
        heartbeat_interval_s=60,
    )
