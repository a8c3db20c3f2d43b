"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and reads
- WAL mode so status reads do not block workers
- BEGIN IMMEDIATE transactions for atomic claims and state changes
- Exponential backoff retry when the database is locked
- Leases (lease_expires_at) for redelivery after a worker crash

One connection per thread: sqlite3 connections must not be shared between
threads, and the worker pool, heartbeat threads and API handlers all touch
the queue concurrently. A job is always read with a single-row SELECT, so a
reader sees the row either before or after a mutation, never a mix.
"""

import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog
from sqlite_utils import Database

from ..errors import DuplicateJobError, JobNotFoundError, LeaseLostError
from .backends import QueueBackend
from .models import (
    QUEUE_NAME,
    EnqueueOptions,
    Job,
    JobPayload,
    JobResult,
    JobState,
    StateTransition,
)

logger = structlog.get_logger(__name__)

# Stored error messages are truncated to this length
MAX_ERROR_LENGTH = 500

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    queue_name TEXT NOT NULL,
    video_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    backoff_base_s REAL NOT NULL DEFAULT 5.0,
    progress INTEGER NOT NULL DEFAULT 0,
    result TEXT,
    last_error TEXT,
    submitted_at TEXT NOT NULL,
    last_attempted_at TEXT,
    available_at TEXT NOT NULL,
    lease_expires_at TEXT,
    worker_id TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_deliverable ON jobs(state, available_at);
CREATE INDEX IF NOT EXISTS idx_jobs_video ON jobs(video_id, state);
CREATE INDEX IF NOT EXISTS idx_jobs_finished ON jobs(state, finished_at);

-- State transition log (audit trail)
CREATE TABLE IF NOT EXISTS state_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    worker_id TEXT,
    error_snippet TEXT
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON state_transitions(job_id, id);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    # Fixed width so ISO strings compare in time order inside SQL
    return dt.isoformat(timespec="microseconds") if dt else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _truncate(error: Optional[str], limit: int = MAX_ERROR_LENGTH) -> Optional[str]:
    return error[:limit] if error else error


class SQLiteQueue(QueueBackend):
    """SQLite-based job queue with atomic claims and lease redelivery.

    Features:
    - Atomic dequeue via UPDATE...RETURNING inside BEGIN IMMEDIATE
    - Backoff scheduling through available_at
    - Lease expiry crash recovery via reclaim_expired()
    - Retention trimming of completed/failed jobs
    - Automatic state transition logging

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never select the same waiting row
    - Exponential backoff handles transient lock contention

    ``db_path`` must be a file: every thread opens its own connection.
    """

    def __init__(
        self,
        db_path: str,
        keep_completed: int = 100,
        keep_failed: int = 500,
        visibility_timeout_s: float = 600,
        poll_interval_s: float = 1.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.visibility_timeout_s = visibility_timeout_s
        self.poll_interval_s = poll_interval_s
        self._clock = clock or _utcnow

        self._local = threading.local()
        self._connections: List[Tuple[threading.Thread, sqlite3.Connection]] = []
        self._connections_lock = threading.Lock()

        db = self.db
        db.conn.execute("PRAGMA journal_mode=WAL")
        db.conn.execute("PRAGMA synchronous=NORMAL")  # Faster writes, still crash-safe
        db.executescript(SCHEMA_SQL)

    @property
    def db(self) -> Database:
        """sqlite-utils Database bound to the calling thread."""
        db = getattr(self._local, "db", None)
        if db is None:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                isolation_level=None,  # explicit BEGIN/COMMIT only
                check_same_thread=False,
            )
            with self._connections_lock:
                self._prune_dead_connections()
                self._connections.append((threading.current_thread(), conn))
            db = Database(conn)
            self._local.db = db
        return db

    def close(self) -> None:
        with self._connections_lock:
            for _, conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    def _prune_dead_connections(self) -> None:
        # Encode and heartbeat threads are short-lived; close what they left
        alive = []
        for thread, conn in self._connections:
            if thread.is_alive():
                alive.append((thread, conn))
            else:
                conn.close()
        self._connections = alive

    def _now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _transaction(self, max_retries: int = 3) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms delays
        """
        conn = self.db.conn
        for attempt in range(max_retries):
            try:
                conn.execute("BEGIN IMMEDIATE")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    # --- writes ---

    def enqueue(self, payload: JobPayload, options: Optional[EnqueueOptions] = None) -> str:
        """Insert a waiting job, deliverable immediately.

        Raises:
            DuplicateJobError: options.unique_per_video and the video already
                has a waiting or active job
        """
        options = options or EnqueueOptions()
        job_id = options.job_id or str(uuid.uuid4())
        now = _ts(self._now())

        with self._transaction() as conn:
            if options.unique_per_video:
                existing = conn.execute(
                    "SELECT job_id FROM jobs WHERE video_id = ? AND state IN (?, ?) LIMIT 1",
                    (payload.video_id, JobState.WAITING.value, JobState.ACTIVE.value),
                ).fetchall()
                if existing:
                    raise DuplicateJobError(payload.video_id, existing[0][0])

            conn.execute(
                """
                INSERT INTO jobs (
                    job_id, queue_name, video_id, payload, state, attempts,
                    max_attempts, backoff_base_s, progress, submitted_at, available_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?, ?, 0, ?, ?)
                """,
                (
                    job_id,
                    QUEUE_NAME,
                    payload.video_id,
                    payload.model_dump_json(),
                    JobState.WAITING.value,
                    options.attempts,
                    options.backoff_base_s,
                    now,
                    now,
                ),
            )
            self._log_transition(conn, job_id, None, JobState.WAITING.value)

        logger.info("job_enqueued", job_id=job_id, video_id=payload.video_id)
        return job_id

    def dequeue(self, worker_id: str, timeout: Optional[float] = None) -> Optional[Job]:
        """Claim the next job, polling every poll_interval_s until timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self._claim_next(worker_id)
            if job is not None:
                return job
            if deadline is None:
                time.sleep(self.poll_interval_s)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_s, remaining))

    def _claim_next(self, worker_id: str) -> Optional[Job]:
        now = self._now()
        lease = now + timedelta(seconds=self.visibility_timeout_s)

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE jobs
                SET state = ?,
                    attempts = attempts + 1,
                    progress = 0,
                    worker_id = ?,
                    last_attempted_at = ?,
                    lease_expires_at = ?
                WHERE job_id = (
                    SELECT job_id FROM jobs
                    WHERE state = ? AND available_at <= ?
                    ORDER BY available_at ASC, rowid ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (
                    JobState.ACTIVE.value,
                    worker_id,
                    _ts(now),
                    _ts(lease),
                    JobState.WAITING.value,
                    _ts(now),
                ),
            )
            rows = self._fetch_dicts(cursor)
            if not rows:
                return None
            job = self._row_to_job(rows[0])
            self._log_transition(
                conn, job.job_id, JobState.WAITING.value, JobState.ACTIVE.value, worker_id
            )

        logger.info(
            "job_claimed",
            job_id=job.job_id,
            worker_id=worker_id,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
        )
        return job

    def ack(
        self,
        job_id: str,
        result: JobResult,
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> None:
        with self._transaction() as conn:
            job = self._fetch_job(conn, job_id)
            self._check_holder(job, job_id, worker_id, attempt)
            current = job.state.value

            conn.execute(
                """
                UPDATE jobs
                SET state = ?,
                    progress = 100,
                    result = ?,
                    last_error = NULL,
                    finished_at = ?,
                    lease_expires_at = NULL
                WHERE job_id = ?
                """,
                (JobState.COMPLETED.value, result.model_dump_json(), _ts(self._now()), job_id),
            )
            self._log_transition(conn, job_id, current, JobState.COMPLETED.value, job.worker_id)
            self._trim_history(conn, JobState.COMPLETED.value, self.keep_completed)

    def nack(
        self,
        job_id: str,
        error: str,
        retry: bool = True,
        result: Optional[JobResult] = None,
        worker_id: Optional[str] = None,
        attempt: Optional[int] = None,
    ) -> Job:
        error_snippet = _truncate(error)
        result_json = result.model_dump_json() if result else None
        now = self._now()

        with self._transaction() as conn:
            job = self._fetch_job(conn, job_id)
            self._check_holder(job, job_id, worker_id, attempt)

            if retry and job.attempts < job.max_attempts:
                # Retry: back to waiting after base * 2^(attempts-1)
                available_at = now + timedelta(seconds=job.retry_delay_s())
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        available_at = ?,
                        last_error = ?,
                        worker_id = NULL,
                        lease_expires_at = NULL
                    WHERE job_id = ?
                    """,
                    (JobState.WAITING.value, _ts(available_at), error_snippet, job_id),
                )
                to_state = JobState.WAITING.value
            else:
                # Failed: terminal state
                conn.execute(
                    """
                    UPDATE jobs
                    SET state = ?,
                        last_error = ?,
                        result = COALESCE(?, result),
                        finished_at = ?,
                        lease_expires_at = NULL
                    WHERE job_id = ?
                    """,
                    (JobState.FAILED.value, error_snippet, result_json, _ts(now), job_id),
                )
                to_state = JobState.FAILED.value

            self._log_transition(
                conn, job_id, job.state.value, to_state, job.worker_id, error_snippet
            )
            updated = self._fetch_job(conn, job_id)
            if to_state == JobState.FAILED.value:
                self._trim_history(conn, JobState.FAILED.value, self.keep_failed)

        if to_state == JobState.WAITING.value:
            logger.warning(
                "job_retry_scheduled",
                job_id=job_id,
                attempt=job.attempts,
                delay_s=job.retry_delay_s(),
                error=error_snippet,
            )
        else:
            logger.error("job_failed", job_id=job_id, attempts=job.attempts, error=error_snippet)
        return updated

    def update_progress(self, job_id: str, percent: int, worker_id: Optional[str] = None) -> None:
        percent = max(0, min(100, int(percent)))
        sql = "UPDATE jobs SET progress = MAX(progress, ?) WHERE job_id = ? AND state = ?"
        params = [percent, job_id, JobState.ACTIVE.value]
        if worker_id is not None:
            sql += " AND worker_id = ?"
            params.append(worker_id)
        self.db.execute(sql, params)

    def extend_lease(self, job_id: str, worker_id: str) -> bool:
        lease = self._now() + timedelta(seconds=self.visibility_timeout_s)
        cursor = self.db.execute(
            """
            UPDATE jobs SET lease_expires_at = ?
            WHERE job_id = ? AND state = ? AND worker_id = ?
            """,
            [_ts(lease), job_id, JobState.ACTIVE.value, worker_id],
        )
        return cursor.rowcount > 0

    def reclaim_expired(self) -> List[Job]:
        """Crash recovery: return jobs with an expired lease to the queue.

        Attempts are not incremented here; the next claim counts the new
        attempt. A job that already used its last attempt becomes 'failed'.
        """
        now = self._now()
        failed_ids = []
        reclaimed = 0

        with self._transaction() as conn:
            rows = self._fetch_dicts(
                conn.execute(
                    "SELECT * FROM jobs WHERE state = ? AND lease_expires_at < ?",
                    (JobState.ACTIVE.value, _ts(now)),
                )
            )
            for row in rows:
                job = self._row_to_job(row)
                if job.attempts < job.max_attempts:
                    error = "Lease expired (worker lost), redelivering"
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, available_at = ?, worker_id = NULL,
                            lease_expires_at = NULL, last_error = ?
                        WHERE job_id = ?
                        """,
                        (JobState.WAITING.value, _ts(now), error, job.job_id),
                    )
                    to_state = JobState.WAITING.value
                    reclaimed += 1
                else:
                    error = "Worker lost during final attempt"
                    conn.execute(
                        """
                        UPDATE jobs
                        SET state = ?, finished_at = ?, lease_expires_at = NULL, last_error = ?
                        WHERE job_id = ?
                        """,
                        (JobState.FAILED.value, _ts(now), error, job.job_id),
                    )
                    to_state = JobState.FAILED.value
                    failed_ids.append(job.job_id)
                self._log_transition(
                    conn, job.job_id, JobState.ACTIVE.value, to_state, job.worker_id, error
                )
            failed = [self._fetch_job(conn, job_id) for job_id in failed_ids]
            if failed:
                self._trim_history(conn, JobState.FAILED.value, self.keep_failed)

        if reclaimed or failed:
            logger.warning("expired_leases_reclaimed", requeued=reclaimed, failed=len(failed))
        return [job for job in failed if job is not None]

    # --- reads ---

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(self.db["jobs"].rows_where("job_id = ?", [job_id]))
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def find_inflight(self, video_id: str) -> Optional[Job]:
        rows = list(
            self.db["jobs"].rows_where(
                "video_id = ? AND state IN (?, ?)",
                [video_id, JobState.WAITING.value, JobState.ACTIVE.value],
                order_by="rowid DESC",
                limit=1,
            )
        )
        return self._row_to_job(rows[0]) if rows else None

    def counts(self) -> Dict[str, int]:
        stats = {state.value: 0 for state in JobState}
        for state, count in self.db.execute(
            "SELECT state, COUNT(*) FROM jobs GROUP BY state"
        ).fetchall():
            stats[state] = count
        return stats

    def list_jobs(self, state: Optional[str] = None, limit: int = 100) -> List[Job]:
        if state:
            rows = self.db["jobs"].rows_where(
                "state = ?", [state], order_by="rowid DESC", limit=limit
            )
        else:
            rows = self.db["jobs"].rows_where(order_by="rowid DESC", limit=limit)
        return [self._row_to_job(row) for row in rows]

    def get_transitions(self, job_id: str) -> List[StateTransition]:
        rows = self.db["state_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        return [
            StateTransition(
                id=row["id"],
                job_id=row["job_id"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                timestamp=_parse_ts(row["timestamp"]),
                worker_id=row["worker_id"],
                error_snippet=row["error_snippet"],
            )
            for row in rows
        ]

    # --- helpers ---

    @staticmethod
    def _fetch_dicts(cursor: sqlite3.Cursor) -> List[Dict[str, Any]]:
        # fetchall() so RETURNING statements finish before COMMIT
        rows = cursor.fetchall()
        columns = [d[0] for d in cursor.description] if cursor.description else []
        return [dict(zip(columns, row)) for row in rows]

    def _fetch_job(self, conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
        rows = self._fetch_dicts(conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)))
        return self._row_to_job(rows[0]) if rows else None

    @staticmethod
    def _check_holder(
        job: Optional[Job], job_id: str, worker_id: Optional[str], attempt: Optional[int]
    ) -> None:
        """Reject finishing a job that is unknown, terminal or held by someone else.

        Without a worker id (operator tools) only the state is checked.
        """
        if job is None:
            raise JobNotFoundError(job_id)
        if worker_id is not None:
            if (
                job.state != JobState.ACTIVE
                or job.worker_id != worker_id
                or (attempt is not None and job.attempts != attempt)
            ):
                raise LeaseLostError(job_id, worker_id, attempt)
        elif job.is_terminal:
            raise ValueError(f"Job {job_id} is already {job.state.value}")

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> Job:
        return Job(
            job_id=row["job_id"],
            queue_name=row["queue_name"],
            payload=JobPayload.model_validate_json(row["payload"]),
            state=JobState(row["state"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff_base_s=row["backoff_base_s"],
            progress=row["progress"],
            result=JobResult.model_validate_json(row["result"]) if row["result"] else None,
            last_error=row["last_error"],
            submitted_at=_parse_ts(row["submitted_at"]),
            last_attempted_at=_parse_ts(row["last_attempted_at"]),
            available_at=_parse_ts(row["available_at"]),
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
            worker_id=row["worker_id"],
            finished_at=_parse_ts(row["finished_at"]),
        )

    def _trim_history(self, conn: sqlite3.Connection, state: str, keep: int) -> None:
        """Delete the oldest terminal jobs beyond the retention count."""
        doomed = """
            SELECT job_id FROM jobs
            WHERE state = ? AND job_id NOT IN (
                SELECT job_id FROM jobs WHERE state = ?
                ORDER BY finished_at DESC, rowid DESC
                LIMIT ?
            )
        """
        conn.execute(
            f"DELETE FROM state_transitions WHERE job_id IN ({doomed})", (state, state, keep)
        )
        cursor = conn.execute(f"DELETE FROM jobs WHERE job_id IN ({doomed})", (state, state, keep))
        if cursor.rowcount:
            logger.debug("job_history_trimmed", state=state, removed=cursor.rowcount)

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO state_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _ts(self._now()), worker_id, _truncate(error, 200)),
        )
