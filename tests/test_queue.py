"""Unit tests for queue system.

Tests cover:
- Job enqueue/dequeue operations
- Atomic state transitions
- Exponential backoff scheduling
- Lease expiry crash recovery
- Retention trimming
- Concurrent dequeue safety
"""

import threading

import pytest

from vod_transcoder.errors import DuplicateJobError, JobNotFoundError, LeaseLostError
from vod_transcoder.queue import (
    QUEUE_NAME,
    EnqueueOptions,
    JobPayload,
    JobResult,
    JobState,
    SQLiteQueue,
)

from conftest import SMALL_LADDER


def make_payload(video_id="video-1", source="/tmp/source.mp4"):
    return JobPayload(
        source_path=source,
        video_id=video_id,
        uploader_id="user-1",
        ladder=SMALL_LADDER,
        title="My clip",
    )


def make_result(video_id="video-1"):
    return JobResult(
        video_id=video_id,
        variants=[],
        manifest_path=f"/srv/videos/{video_id}/index.m3u8",
        manifest_url=f"/videos/{video_id}/index.m3u8",
        duration_s=12.5,
    )


class TestEnqueueDequeue:
    """Test basic queue operations."""

    def test_enqueue_creates_waiting_job(self, queue):
        """A new job is waiting with no attempts and zero progress."""
        job_id = queue.enqueue(make_payload())

        job = queue.get_job(job_id)
        assert job is not None
        assert job.state == JobState.WAITING
        assert job.queue_name == QUEUE_NAME
        assert job.attempts == 0
        assert job.progress == 0
        assert job.payload.video_id == "video-1"
        assert [r.label for r in job.payload.ladder] == ["240p", "480p", "720p"]

    def test_explicit_job_id(self, queue):
        job_id = queue.enqueue(make_payload(), EnqueueOptions(job_id="job-42"))
        assert job_id == "job-42"
        assert queue.get_job("job-42") is not None

    def test_get_unknown_job(self, queue):
        assert queue.get_job("missing") is None

    def test_dequeue_claims_job(self, queue, clock):
        """Dequeue sets active, increments attempts, stamps the lease."""
        job_id = queue.enqueue(make_payload())

        job = queue.dequeue("worker-1", timeout=0)

        assert job is not None
        assert job.job_id == job_id
        assert job.state == JobState.ACTIVE
        assert job.attempts == 1
        assert job.worker_id == "worker-1"
        assert job.last_attempted_at == clock.now
        assert (job.lease_expires_at - clock.now).total_seconds() == queue.visibility_timeout_s

    def test_dequeue_empty_queue(self, queue):
        """Non-blocking dequeue on an empty queue returns None."""
        assert queue.dequeue("worker-1", timeout=0) is None

    def test_dequeue_waits_for_timeout(self, queue):
        """Blocking dequeue gives up after the timeout."""
        assert queue.dequeue("worker-1", timeout=0.05) is None

    def test_fifo_order(self, queue):
        """Jobs are delivered in submission order."""
        ids = [queue.enqueue(make_payload(video_id=f"video-{i}")) for i in range(3)]

        claimed = [queue.dequeue("worker-1", timeout=0).job_id for _ in range(3)]

        assert claimed == ids

    def test_active_job_not_redelivered(self, queue):
        queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        assert queue.dequeue("worker-2", timeout=0) is None


class TestAckNack:
    """Test completion and failure handling."""

    def test_ack_completes_job(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        queue.ack(job_id, make_result())

        job = queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.progress == 100
        assert job.result.manifest_url == "/videos/video-1/index.m3u8"
        assert job.finished_at is not None

    def test_ack_twice_rejected(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)
        queue.ack(job_id, make_result())

        with pytest.raises(ValueError):
            queue.ack(job_id, make_result())

    def test_ack_unknown_job(self, queue):
        with pytest.raises(JobNotFoundError):
            queue.ack("missing", make_result())

    def test_nack_without_retry_fails_job(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        job = queue.nack(job_id, "Source file not found", retry=False)

        assert job.state == JobState.FAILED
        assert job.last_error == "Source file not found"
        assert job.attempts == 1

    def test_nack_unknown_job(self, queue):
        with pytest.raises(JobNotFoundError):
            queue.nack("missing", "boom")

    def test_error_truncated(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        job = queue.nack(job_id, "x" * 2000, retry=False)

        assert len(job.last_error) == 500

    def test_nack_keeps_result(self, queue):
        """A result passed to a terminal nack stays on the job row."""
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        job = queue.nack(job_id, "database down", retry=False, result=make_result())

        assert job.state == JobState.FAILED
        assert job.result is not None
        assert job.result.manifest_url == "/videos/video-1/index.m3u8"


class TestBackoff:
    """Test exponential backoff between attempts."""

    def test_backoff_doubles(self, queue, clock):
        """Delays are base, 2*base, then the job fails on its last attempt."""
        job_id = queue.enqueue(make_payload(), EnqueueOptions(attempts=3, backoff_base_s=5.0))

        delays = []
        for _ in range(2):
            job = queue.dequeue("worker-1", timeout=0)
            failed_at = clock.now
            retried = queue.nack(job.job_id, "encoder exited 1")
            assert retried.state == JobState.WAITING
            delays.append((retried.available_at - failed_at).total_seconds())

            # Not deliverable before the backoff has elapsed
            assert queue.dequeue("worker-1", timeout=0) is None
            clock.advance(delays[-1])

        assert delays == [5.0, 10.0]

        job = queue.dequeue("worker-1", timeout=0)
        assert job.attempts == 3
        final = queue.nack(job_id, "encoder exited 1")
        assert final.state == JobState.FAILED
        assert final.finished_at is not None

    def test_retry_resets_progress(self, queue, clock):
        job_id = queue.enqueue(make_payload(), EnqueueOptions(backoff_base_s=0))
        queue.dequeue("worker-1", timeout=0)
        queue.update_progress(job_id, 60)
        queue.nack(job_id, "boom")

        job = queue.dequeue("worker-1", timeout=0)

        assert job.attempts == 2
        assert job.progress == 0


class TestProgress:
    """Test progress updates."""

    def test_progress_is_monotone(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        queue.update_progress(job_id, 40)
        queue.update_progress(job_id, 20)

        assert queue.get_job(job_id).progress == 40

    def test_progress_clamped(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        queue.update_progress(job_id, 250)

        assert queue.get_job(job_id).progress == 100

    def test_progress_ignored_when_not_active(self, queue):
        job_id = queue.enqueue(make_payload())

        queue.update_progress(job_id, 50)

        assert queue.get_job(job_id).progress == 0


class TestLeases:
    """Test crash recovery via lease expiry."""

    def test_extend_lease(self, queue, clock):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)
        clock.advance(100)

        assert queue.extend_lease(job_id, "worker-1") is True
        job = queue.get_job(job_id)
        assert (job.lease_expires_at - clock.now).total_seconds() == queue.visibility_timeout_s

    def test_extend_lease_other_worker(self, queue):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)

        assert queue.extend_lease(job_id, "worker-2") is False

    def test_reclaim_expired_requeues(self, queue, clock):
        """An expired lease puts the job back without counting an attempt."""
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)
        clock.advance(queue.visibility_timeout_s + 1)

        failed = queue.reclaim_expired()

        assert failed == []
        job = queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.attempts == 1
        assert job.worker_id is None

        redelivered = queue.dequeue("worker-2", timeout=0)
        assert redelivered.job_id == job_id
        assert redelivered.attempts == 2

    def test_reclaim_unexpired_untouched(self, queue, clock):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)
        clock.advance(queue.visibility_timeout_s - 1)

        assert queue.reclaim_expired() == []
        assert queue.get_job(job_id).state == JobState.ACTIVE

    def test_reclaim_last_attempt_fails(self, queue, clock):
        job_id = queue.enqueue(make_payload(), EnqueueOptions(attempts=1))
        queue.dequeue("worker-1", timeout=0)
        clock.advance(queue.visibility_timeout_s + 1)

        failed = queue.reclaim_expired()

        assert [job.job_id for job in failed] == [job_id]
        assert failed[0].state == JobState.FAILED
        assert queue.get_job(job_id).state == JobState.FAILED


class TestLeaseFencing:
    """Only the current lease holder can finish or advance a job."""

    def redeliver(self, queue, clock):
        """worker-A claims attempt 1, loses its lease, worker-B claims attempt 2."""
        job_id = queue.enqueue(make_payload())
        stale = queue.dequeue("worker-A", timeout=0)
        clock.advance(queue.visibility_timeout_s + 1)
        queue.reclaim_expired()
        current = queue.dequeue("worker-B", timeout=0)
        assert current.job_id == job_id
        return stale, current

    def test_stale_nack_rejected(self, queue, clock):
        stale, current = self.redeliver(queue, clock)

        with pytest.raises(LeaseLostError):
            queue.nack(stale.job_id, "boom", worker_id="worker-A", attempt=stale.attempts)

        job = queue.get_job(current.job_id)
        assert job.state == JobState.ACTIVE
        assert job.worker_id == "worker-B"
        assert job.attempts == 2

    def test_stale_ack_rejected(self, queue, clock):
        stale, current = self.redeliver(queue, clock)

        with pytest.raises(LeaseLostError):
            queue.ack(stale.job_id, make_result(), worker_id="worker-A", attempt=stale.attempts)

        job = queue.get_job(current.job_id)
        assert job.state == JobState.ACTIVE
        assert job.result is None

    def test_same_worker_older_attempt_rejected(self, queue, clock):
        job_id = queue.enqueue(make_payload())
        queue.dequeue("worker-A", timeout=0)
        clock.advance(queue.visibility_timeout_s + 1)
        queue.reclaim_expired()
        queue.dequeue("worker-A", timeout=0)

        with pytest.raises(LeaseLostError):
            queue.ack(job_id, make_result(), worker_id="worker-A", attempt=1)

    def test_holder_can_finish(self, queue, clock):
        stale, current = self.redeliver(queue, clock)

        queue.ack(current.job_id, make_result(), worker_id="worker-B", attempt=current.attempts)

        assert queue.get_job(current.job_id).state == JobState.COMPLETED
        with pytest.raises(LeaseLostError):
            queue.nack(current.job_id, "late", worker_id="worker-B", attempt=current.attempts)

    def test_stale_progress_ignored(self, queue, clock):
        stale, current = self.redeliver(queue, clock)

        queue.update_progress(stale.job_id, 90, worker_id="worker-A")
        assert queue.get_job(current.job_id).progress == 0

        queue.update_progress(current.job_id, 30, worker_id="worker-B")
        assert queue.get_job(current.job_id).progress == 30


class TestDuplicates:
    """Test per-video in-flight uniqueness."""

    def test_duplicate_in_flight_rejected(self, queue):
        first = queue.enqueue(make_payload())

        with pytest.raises(DuplicateJobError) as exc_info:
            queue.enqueue(make_payload())

        assert exc_info.value.job_id == first
        assert queue.counts()["waiting"] == 1

    def test_resubmit_after_completion(self, queue):
        first = queue.enqueue(make_payload())
        queue.dequeue("worker-1", timeout=0)
        queue.ack(first, make_result())

        second = queue.enqueue(make_payload())

        assert second != first
        assert queue.find_inflight("video-1").job_id == second

    def test_uniqueness_can_be_disabled(self, queue):
        queue.enqueue(make_payload())
        queue.enqueue(make_payload(), EnqueueOptions(unique_per_video=False))

        assert queue.counts()["waiting"] == 2


class TestRetention:
    """Test bounded history of terminal jobs."""

    def test_completed_trimmed_oldest_first(self, tmp_path, clock):
        queue = SQLiteQueue(str(tmp_path / "q.db"), keep_completed=2, clock=clock)
        ids = []
        for i in range(3):
            job_id = queue.enqueue(make_payload(video_id=f"video-{i}"))
            queue.dequeue("worker-1", timeout=0)
            queue.ack(job_id, make_result(f"video-{i}"))
            ids.append(job_id)
            clock.advance(1)

        assert queue.get_job(ids[0]) is None
        assert queue.get_job(ids[1]) is not None
        assert queue.get_job(ids[2]) is not None
        assert queue.get_transitions(ids[0]) == []
        assert queue.counts()["completed"] == 2
        queue.close()

    def test_failed_trimmed(self, tmp_path, clock):
        queue = SQLiteQueue(str(tmp_path / "q.db"), keep_failed=1, clock=clock)
        ids = []
        for i in range(2):
            job_id = queue.enqueue(make_payload(video_id=f"video-{i}"))
            queue.dequeue("worker-1", timeout=0)
            queue.nack(job_id, "bad input", retry=False)
            ids.append(job_id)
            clock.advance(1)

        assert queue.get_job(ids[0]) is None
        assert queue.get_job(ids[1]).state == JobState.FAILED
        queue.close()


class TestInspection:
    """Test stats, listings and the audit trail."""

    def test_counts(self, queue):
        queue.enqueue(make_payload(video_id="a"))
        queue.enqueue(make_payload(video_id="b"))
        queue.dequeue("worker-1", timeout=0)

        assert queue.counts() == {"waiting": 1, "active": 1, "completed": 0, "failed": 0}

    def test_list_jobs_by_state(self, queue):
        queue.enqueue(make_payload(video_id="a"))
        second = queue.enqueue(make_payload(video_id="b"))

        jobs = queue.list_jobs(state="waiting")

        assert [job.job_id for job in jobs][0] == second
        assert len(jobs) == 2
        assert queue.list_jobs(state="failed") == []

    def test_transitions_logged(self, queue, clock):
        job_id = queue.enqueue(make_payload(), EnqueueOptions(backoff_base_s=0))
        queue.dequeue("worker-1", timeout=0)
        queue.nack(job_id, "boom")
        queue.dequeue("worker-1", timeout=0)
        queue.ack(job_id, make_result())

        transitions = queue.get_transitions(job_id)

        assert [(t.from_state, t.to_state) for t in transitions] == [
            (None, "waiting"),
            ("waiting", "active"),
            ("active", "waiting"),
            ("waiting", "active"),
            ("active", "completed"),
        ]
        assert transitions[2].error_snippet == "boom"
        assert transitions[1].worker_id == "worker-1"


class TestConcurrency:
    """Test concurrent dequeue safety."""

    def test_no_double_claims(self, tmp_path):
        """Threads racing on the same queue never claim a job twice."""
        queue = SQLiteQueue(str(tmp_path / "race.db"), poll_interval_s=0.01)
        for i in range(20):
            queue.enqueue(make_payload(video_id=f"video-{i}"))

        claimed = []
        lock = threading.Lock()

        def drain(worker_id):
            while True:
                job = queue.dequeue(worker_id, timeout=0)
                if job is None:
                    return
                with lock:
                    claimed.append(job.job_id)

        threads = [threading.Thread(target=drain, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(claimed) == 20
        assert len(set(claimed)) == 20
        assert queue.counts()["active"] == 20
        queue.close()
