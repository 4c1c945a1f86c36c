"""PostgreSQL-backed queue backend with a SQLite fallback for tests."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ...domain.models import Job, JobStatus, ProviderId, QueueCounts, StartRateLimit
from ...errors import QueueUnavailableError
from .base import QueueBackend
from .memory import InMemoryQueueBackend


@dataclass(slots=True)
class QueueBackendConfig:
    """Connection settings for the durable queue."""

    dsn: str
    statement_timeout_ms: int = 5_000


_COLUMNS = (
    "id",
    "provider",
    "payload",
    "status",
    "attempts",
    "max_attempts",
    "backoff_seconds",
    "retain_completed_seconds",
    "retain_failed_seconds",
    "progress",
    "provider_job_id",
    "result_url",
    "thumbnail_url",
    "error_message",
    "error_kind",
    "claimed_by",
    "created_at",
    "updated_at",
    "available_at",
    "started_at",
    "completed_at",
    "evict_after",
    "lease_expires_at",
    "recorded",
)
_MUTABLE_COLUMNS = tuple(column for column in _COLUMNS if column not in ("id", "created_at"))
_DATETIME_COLUMNS = (
    "created_at",
    "updated_at",
    "available_at",
    "started_at",
    "completed_at",
    "evict_after",
    "lease_expires_at",
)
# Serialises rate-limited claims across every worker process.
_CLAIM_LOG_LOCK_KEY = 0x7669646A
# Columns added after the first schema version, created on existing tables at startup.
_SQLITE_ADDED_COLUMNS = (
    ("lease_expires_at", "TEXT"),
    ("recorded", "INTEGER NOT NULL DEFAULT 1"),
)
_POSTGRES_ADDED_COLUMNS = (
    ("lease_expires_at", "TIMESTAMPTZ"),
    ("recorded", "BOOLEAN NOT NULL DEFAULT TRUE"),
)


def build_queue_backend(config: QueueBackendConfig) -> QueueBackend:
    """Select a backend implementation from the DSN scheme."""

    dsn = config.dsn
    if dsn.startswith("memory://"):
        return InMemoryQueueBackend()
    if dsn == ":memory:" or dsn.startswith("sqlite://") or dsn.startswith("file:"):
        return SQLiteQueueBackend(config)
    return PostgresQueueBackend(config)


def _job_to_params(job: Job, encode_datetime: Callable[[datetime], Any], encode_payload) -> dict[str, Any]:
    params: dict[str, Any] = {
        "id": job.id,
        "provider": job.provider.value,
        "payload": encode_payload(job.payload),
        "status": job.status.value,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "backoff_seconds": job.backoff_seconds,
        "retain_completed_seconds": job.retain_completed_seconds,
        "retain_failed_seconds": job.retain_failed_seconds,
        "progress": job.progress,
        "provider_job_id": job.provider_job_id,
        "result_url": job.result_url,
        "thumbnail_url": job.thumbnail_url,
        "error_message": job.error_message,
        "error_kind": job.error_kind,
        "claimed_by": job.claimed_by,
        "recorded": job.recorded,
    }
    for column in _DATETIME_COLUMNS:
        value = getattr(job, column)
        params[column] = encode_datetime(value) if value is not None else None
    return params


def _row_to_job(
    row: Mapping[str, Any],
    decode_datetime: Callable[[Any], datetime],
    decode_payload: Callable[[Any], dict[str, Any]],
) -> Job:
    def _optional(column: str) -> datetime | None:
        value = row[column]
        return decode_datetime(value) if value is not None else None

    return Job(
        id=row["id"],
        provider=ProviderId(row["provider"]),
        payload=decode_payload(row["payload"]),
        status=JobStatus(row["status"]),
        attempts=int(row["attempts"]),
        max_attempts=int(row["max_attempts"]),
        backoff_seconds=float(row["backoff_seconds"]),
        retain_completed_seconds=float(row["retain_completed_seconds"]),
        retain_failed_seconds=float(row["retain_failed_seconds"]),
        progress=float(row["progress"]),
        provider_job_id=row["provider_job_id"],
        result_url=row["result_url"],
        thumbnail_url=row["thumbnail_url"],
        error_message=row["error_message"],
        error_kind=row["error_kind"],
        claimed_by=row["claimed_by"],
        created_at=decode_datetime(row["created_at"]),
        updated_at=decode_datetime(row["updated_at"]),
        available_at=decode_datetime(row["available_at"]),
        started_at=_optional("started_at"),
        completed_at=_optional("completed_at"),
        evict_after=_optional("evict_after"),
        lease_expires_at=_optional("lease_expires_at"),
        recorded=bool(row["recorded"]),
    )


class SQLiteQueueBackend(QueueBackend):
    """SQLite implementation used in unit tests and offline environments."""

    def __init__(self, config: QueueBackendConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._conn = self._connect(config.dsn)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # Queue operations ---------------------------------------------------

    def insert(self, job: Job) -> tuple[Job, bool]:
        placeholders = ", ".join(f":{column}" for column in _COLUMNS)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"""
                    INSERT INTO jobs ({", ".join(_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT(id) DO NOTHING
                    """,
                    self._serialize_job(job),
                )
                created = cursor.rowcount == 1
                stored = self._fetch(conn, job.id)
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to enqueue job") from exc
        if stored is None:  # pragma: no cover
            raise QueueUnavailableError(f"job {job.id} missing after insert")
        return stored, created

    def get(self, job_id: str) -> Job | None:
        try:
            with self._transaction() as conn:
                return self._fetch(conn, job_id)
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to load job") from exc

    def claim_next(
        self,
        *,
        now: datetime,
        worker_id: str,
        lease_until: datetime | None = None,
        rate_limit: StartRateLimit | None = None,
    ) -> Job | None:
        moment = self._serialize_datetime(now)
        try:
            with self._transaction() as conn:
                if rate_limit is not None:
                    conn.execute(
                        "DELETE FROM job_claims WHERE claimed_at <= :cutoff",
                        {"cutoff": self._serialize_datetime(rate_limit.window_start(now))},
                    )
                    claimed = conn.execute("SELECT COUNT(*) AS cnt FROM job_claims").fetchone()
                    if claimed["cnt"] >= rate_limit.max_jobs:
                        return None
                row = conn.execute(
                    """
                    SELECT id
                    FROM jobs
                    WHERE status = :pending
                      AND available_at <= :now
                      AND attempts < max_attempts
                    ORDER BY available_at, created_at, id
                    LIMIT 1
                    """,
                    {"pending": JobStatus.PENDING.value, "now": moment},
                ).fetchone()
                if row is None:
                    return None
                conn.execute(
                    """
                    UPDATE jobs
                    SET status = :processing,
                        attempts = attempts + 1,
                        claimed_by = :worker_id,
                        started_at = :now,
                        updated_at = :now,
                        provider_job_id = NULL,
                        progress = 0,
                        lease_expires_at = :lease_until
                    WHERE id = :id
                      AND status = :pending
                    """,
                    {
                        "processing": JobStatus.PROCESSING.value,
                        "pending": JobStatus.PENDING.value,
                        "worker_id": worker_id,
                        "now": moment,
                        "lease_until": (
                            self._serialize_datetime(lease_until) if lease_until is not None else None
                        ),
                        "id": row["id"],
                    },
                )
                if rate_limit is not None:
                    conn.execute(
                        "INSERT INTO job_claims (job_id, claimed_at) VALUES (:id, :now)",
                        {"id": row["id"], "now": moment},
                    )
                return self._fetch(conn, row["id"])
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to claim job") from exc

    def save(
        self,
        job: Job,
        *,
        expected_status: JobStatus,
        expected_owner: str | None,
    ) -> bool:
        assignments = ",\n".join(f"{column} = :{column}" for column in _MUTABLE_COLUMNS)
        params = self._serialize_job(job)
        params.update(expected_status=expected_status.value, expected_owner=expected_owner)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"""
                    UPDATE jobs
                    SET {assignments}
                    WHERE id = :id
                      AND status = :expected_status
                      AND claimed_by IS :expected_owner
                    """,
                    params,
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to update job") from exc

    def delete_pending(self, job_id: str) -> bool:
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    "DELETE FROM jobs WHERE id = :id AND status = :pending",
                    {"id": job_id, "pending": JobStatus.PENDING.value},
                )
                return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to delete job") from exc

    def list_stalled(self, *, now: datetime, limit: int) -> list[Job]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM jobs
                    WHERE status = :processing
                      AND lease_expires_at IS NOT NULL
                      AND lease_expires_at <= :now
                    ORDER BY lease_expires_at, id
                    LIMIT :limit
                    """,
                    {
                        "processing": JobStatus.PROCESSING.value,
                        "now": self._serialize_datetime(now),
                        "limit": max(0, limit),
                    },
                ).fetchall()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to list stalled jobs") from exc
        return [self._deserialize_job(row) for row in rows]

    def list_unrecorded(self, *, limit: int) -> list[Job]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM jobs
                    WHERE status IN (:completed, :failed)
                      AND recorded = 0
                    ORDER BY COALESCE(completed_at, updated_at), id
                    LIMIT :limit
                    """,
                    {
                        "completed": JobStatus.COMPLETED.value,
                        "failed": JobStatus.FAILED.value,
                        "limit": max(0, limit),
                    },
                ).fetchall()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to list unrecorded jobs") from exc
        return [self._deserialize_job(row) for row in rows]

    def mark_recorded(self, job_id: str) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    UPDATE jobs
                    SET recorded = 1
                    WHERE id = :id
                      AND status IN (:completed, :failed)
                    """,
                    {
                        "id": job_id,
                        "completed": JobStatus.COMPLETED.value,
                        "failed": JobStatus.FAILED.value,
                    },
                )
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to mark job recorded") from exc

    def evict(
        self,
        *,
        statuses: Iterable[JobStatus],
        finished_before: datetime,
        limit: int,
    ) -> list[str]:
        wanted = [status.value for status in statuses]
        if not wanted or limit <= 0:
            return []
        marks = ", ".join(f":s{index}" for index in range(len(wanted)))
        params: dict[str, Any] = {f"s{index}": value for index, value in enumerate(wanted)}
        params.update(cutoff=self._serialize_datetime(finished_before), limit=limit)
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    f"""
                    SELECT id
                    FROM jobs
                    WHERE status IN ({marks})
                      AND recorded = 1
                      AND completed_at IS NOT NULL
                      AND completed_at < :cutoff
                    ORDER BY completed_at
                    LIMIT :limit
                    """,
                    params,
                ).fetchall()
                return self._delete_ids(conn, [row["id"] for row in rows])
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to evict jobs") from exc

    def evict_expired(self, *, now: datetime) -> list[str]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT id
                    FROM jobs
                    WHERE status IN (:completed, :failed)
                      AND recorded = 1
                      AND evict_after IS NOT NULL
                      AND evict_after <= :now
                    """,
                    {
                        "completed": JobStatus.COMPLETED.value,
                        "failed": JobStatus.FAILED.value,
                        "now": self._serialize_datetime(now),
                    },
                ).fetchall()
                return self._delete_ids(conn, [row["id"] for row in rows])
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to evict expired jobs") from exc

    def trim(self, *, status: JobStatus, keep: int) -> list[str]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT id
                    FROM (
                        SELECT id, recorded
                        FROM jobs
                        WHERE status = :status
                        ORDER BY COALESCE(completed_at, updated_at) DESC
                        LIMIT -1 OFFSET :keep
                    )
                    WHERE recorded = 1
                    """,
                    {"status": status.value, "keep": max(0, keep)},
                ).fetchall()
                return self._delete_ids(conn, [row["id"] for row in rows])
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to trim jobs") from exc

    # Monitoring ---------------------------------------------------------

    def counts(self, *, now: datetime) -> QueueCounts:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    """
                    SELECT
                        SUM(CASE WHEN status = 'pending' AND available_at <= :now THEN 1 ELSE 0 END) AS waiting,
                        SUM(CASE WHEN status = 'pending' AND available_at > :now THEN 1 ELSE 0 END) AS delayed,
                        SUM(CASE WHEN status = 'processing' THEN 1 ELSE 0 END) AS active,
                        SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                        SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed
                    FROM jobs
                    """,
                    {"now": self._serialize_datetime(now)},
                ).fetchone()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to count jobs") from exc
        return QueueCounts(
            waiting=row["waiting"] or 0,
            active=row["active"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
            delayed=row["delayed"] or 0,
        )

    def list_failed(self, *, limit: int) -> list[Job]:
        try:
            with self._transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT *
                    FROM jobs
                    WHERE status = :failed
                    ORDER BY COALESCE(completed_at, updated_at) DESC
                    LIMIT :limit
                    """,
                    {"failed": JobStatus.FAILED.value, "limit": max(0, limit)},
                ).fetchall()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to list failed jobs") from exc
        return [self._deserialize_job(row) for row in rows]

    def heartbeat(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease_until: datetime | None = None,
    ) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO worker_heartbeats (worker_id, seen_at)
                    VALUES (:worker_id, :seen_at)
                    ON CONFLICT(worker_id) DO UPDATE SET seen_at = excluded.seen_at
                    """,
                    {"worker_id": worker_id, "seen_at": self._serialize_datetime(now)},
                )
                if lease_until is not None:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET lease_expires_at = :lease_until
                        WHERE status = :processing
                          AND claimed_by = :worker_id
                        """,
                        {
                            "lease_until": self._serialize_datetime(lease_until),
                            "processing": JobStatus.PROCESSING.value,
                            "worker_id": worker_id,
                        },
                    )
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to record heartbeat") from exc

    def count_workers(self, *, seen_since: datetime) -> int:
        try:
            with self._transaction() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM worker_heartbeats WHERE seen_at >= :since",
                    {"since": self._serialize_datetime(seen_since)},
                ).fetchone()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("failed to count workers") from exc
        return int(row["cnt"])

    def ping(self) -> None:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            raise QueueUnavailableError("queue database unreachable") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Internal utilities -------------------------------------------------

    def _connect(self, dsn: str) -> sqlite3.Connection:
        if dsn.startswith("sqlite:///"):
            path = dsn[len("sqlite:///"):] or ":memory:"
        elif dsn.startswith("sqlite://"):
            path = dsn[len("sqlite://"):] or ":memory:"
        else:
            path = dsn
        return sqlite3.connect(
            path,
            isolation_level=None,
            check_same_thread=False,
            uri=path.startswith("file:"),
        )

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _ensure_schema(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    backoff_seconds REAL NOT NULL,
                    retain_completed_seconds REAL NOT NULL,
                    retain_failed_seconds REAL NOT NULL,
                    progress REAL NOT NULL DEFAULT 0,
                    provider_job_id TEXT,
                    result_url TEXT,
                    thumbnail_url TEXT,
                    error_message TEXT,
                    error_kind TEXT,
                    claimed_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    available_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    evict_after TEXT,
                    lease_expires_at TEXT,
                    recorded INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            existing = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)").fetchall()}
            for column, ddl in _SQLITE_ADDED_COLUMNS:
                if column not in existing:
                    conn.execute(f"ALTER TABLE jobs ADD COLUMN {column} {ddl}")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_heartbeats (
                    worker_id TEXT PRIMARY KEY,
                    seen_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    claimed_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_jobs_claimable
                    ON jobs(status, available_at, created_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_job_claims_claimed_at
                    ON job_claims(claimed_at)
                """
            )

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> Job | None:
        row = conn.execute("SELECT * FROM jobs WHERE id = :id", {"id": job_id}).fetchone()
        return self._deserialize_job(row) if row is not None else None

    @staticmethod
    def _delete_ids(conn: sqlite3.Connection, job_ids: list[str]) -> list[str]:
        for job_id in job_ids:
            conn.execute("DELETE FROM jobs WHERE id = :id", {"id": job_id})
        return job_ids

    @staticmethod
    def _serialize_datetime(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds")

    def _serialize_job(self, job: Job) -> dict[str, Any]:
        return _job_to_params(job, self._serialize_datetime, json.dumps)

    @staticmethod
    def _deserialize_job(row: sqlite3.Row) -> Job:
        return _row_to_job(
            {key: row[key] for key in row.keys()},
            datetime.fromisoformat,
            json.loads,
        )


class PostgresQueueBackend(QueueBackend):
    """PostgreSQL implementation relying on psycopg for real deployments.

    Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` so concurrent workers,
    including workers in other processes, never receive the same job.
    """

    def __init__(self, config: QueueBackendConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        try:
            self._conn = psycopg.connect(config.dsn, autocommit=False, row_factory=dict_row)
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to connect to queue database") from exc
        self._set_statement_timeout()
        self._ensure_schema()

    # Queue operations ---------------------------------------------------

    def insert(self, job: Job) -> tuple[Job, bool]:
        placeholders = ", ".join(f"%({column})s" for column in _COLUMNS)
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO jobs ({", ".join(_COLUMNS)})
                    VALUES ({placeholders})
                    ON CONFLICT (id) DO NOTHING
                    """,
                    self._serialize_job(job),
                )
                created = cur.rowcount == 1
                cur.execute("SELECT * FROM jobs WHERE id = %(id)s", {"id": job.id})
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to enqueue job") from exc
        if row is None:  # pragma: no cover
            raise QueueUnavailableError(f"job {job.id} missing after insert")
        return self._deserialize_job(row), created

    def get(self, job_id: str) -> Job | None:
        try:
            with self._transaction() as cur:
                cur.execute("SELECT * FROM jobs WHERE id = %(id)s", {"id": job_id})
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to load job") from exc
        return self._deserialize_job(row) if row is not None else None

    def claim_next(
        self,
        *,
        now: datetime,
        worker_id: str,
        lease_until: datetime | None = None,
        rate_limit: StartRateLimit | None = None,
    ) -> Job | None:
        try:
            with self._transaction() as cur:
                if rate_limit is not None:
                    cur.execute("SELECT pg_advisory_xact_lock(%(key)s)", {"key": _CLAIM_LOG_LOCK_KEY})
                    cur.execute(
                        "DELETE FROM job_claims WHERE claimed_at <= %(cutoff)s",
                        {"cutoff": rate_limit.window_start(now)},
                    )
                    cur.execute("SELECT COUNT(*) AS cnt FROM job_claims")
                    if cur.fetchone()["cnt"] >= rate_limit.max_jobs:
                        return None
                cur.execute(
                    """
                    UPDATE jobs
                    SET status = %(processing)s,
                        attempts = attempts + 1,
                        claimed_by = %(worker_id)s,
                        started_at = %(now)s,
                        updated_at = %(now)s,
                        provider_job_id = NULL,
                        progress = 0,
                        lease_expires_at = %(lease_until)s
                    WHERE id = (
                        SELECT id
                        FROM jobs
                        WHERE status = %(pending)s
                          AND available_at <= %(now)s
                          AND attempts < max_attempts
                        ORDER BY available_at, created_at, id
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING *
                    """,
                    {
                        "processing": JobStatus.PROCESSING.value,
                        "pending": JobStatus.PENDING.value,
                        "worker_id": worker_id,
                        "now": now,
                        "lease_until": lease_until,
                    },
                )
                row = cur.fetchone()
                if row is not None and rate_limit is not None:
                    cur.execute(
                        "INSERT INTO job_claims (job_id, claimed_at) VALUES (%(id)s, %(now)s)",
                        {"id": row["id"], "now": now},
                    )
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to claim job") from exc
        return self._deserialize_job(row) if row is not None else None

    def save(
        self,
        job: Job,
        *,
        expected_status: JobStatus,
        expected_owner: str | None,
    ) -> bool:
        assignments = ",\n".join(f"{column} = %({column})s" for column in _MUTABLE_COLUMNS)
        params = self._serialize_job(job)
        params.update(expected_status=expected_status.value, expected_owner=expected_owner)
        try:
            with self._transaction() as cur:
                cur.execute(
                    f"""
                    UPDATE jobs
                    SET {assignments}
                    WHERE id = %(id)s
                      AND status = %(expected_status)s
                      AND claimed_by IS NOT DISTINCT FROM %(expected_owner)s
                    """,
                    params,
                )
                return cur.rowcount == 1
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to update job") from exc

    def delete_pending(self, job_id: str) -> bool:
        try:
            with self._transaction() as cur:
                cur.execute(
                    "DELETE FROM jobs WHERE id = %(id)s AND status = %(pending)s",
                    {"id": job_id, "pending": JobStatus.PENDING.value},
                )
                return cur.rowcount == 1
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to delete job") from exc

    def list_stalled(self, *, now: datetime, limit: int) -> list[Job]:
        return self._select_jobs(
            """
            SELECT *
            FROM jobs
            WHERE status = %(processing)s
              AND lease_expires_at IS NOT NULL
              AND lease_expires_at <= %(now)s
            ORDER BY lease_expires_at, id
            LIMIT %(limit)s
            """,
            {"processing": JobStatus.PROCESSING.value, "now": now, "limit": max(0, limit)},
            "failed to list stalled jobs",
        )

    def list_unrecorded(self, *, limit: int) -> list[Job]:
        return self._select_jobs(
            """
            SELECT *
            FROM jobs
            WHERE status IN (%(completed)s, %(failed)s)
              AND NOT recorded
            ORDER BY COALESCE(completed_at, updated_at), id
            LIMIT %(limit)s
            """,
            {
                "completed": JobStatus.COMPLETED.value,
                "failed": JobStatus.FAILED.value,
                "limit": max(0, limit),
            },
            "failed to list unrecorded jobs",
        )

    def mark_recorded(self, job_id: str) -> None:
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    UPDATE jobs
                    SET recorded = TRUE
                    WHERE id = %(id)s
                      AND status IN (%(completed)s, %(failed)s)
                    """,
                    {
                        "id": job_id,
                        "completed": JobStatus.COMPLETED.value,
                        "failed": JobStatus.FAILED.value,
                    },
                )
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to mark job recorded") from exc

    def evict(
        self,
        *,
        statuses: Iterable[JobStatus],
        finished_before: datetime,
        limit: int,
    ) -> list[str]:
        wanted = [status.value for status in statuses]
        if not wanted or limit <= 0:
            return []
        return self._delete_returning(
            """
            DELETE FROM jobs
            WHERE id IN (
                SELECT id
                FROM jobs
                WHERE status = ANY(%(statuses)s)
                  AND recorded
                  AND completed_at IS NOT NULL
                  AND completed_at < %(cutoff)s
                ORDER BY completed_at
                LIMIT %(limit)s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING id
            """,
            {"statuses": wanted, "cutoff": finished_before, "limit": limit},
            "failed to evict jobs",
        )

    def evict_expired(self, *, now: datetime) -> list[str]:
        return self._delete_returning(
            """
            DELETE FROM jobs
            WHERE status IN (%(completed)s, %(failed)s)
              AND recorded
              AND evict_after IS NOT NULL
              AND evict_after <= %(now)s
            RETURNING id
            """,
            {
                "completed": JobStatus.COMPLETED.value,
                "failed": JobStatus.FAILED.value,
                "now": now,
            },
            "failed to evict expired jobs",
        )

    def trim(self, *, status: JobStatus, keep: int) -> list[str]:
        return self._delete_returning(
            """
            DELETE FROM jobs
            WHERE id IN (
                SELECT id
                FROM jobs
                WHERE status = %(status)s
                ORDER BY COALESCE(completed_at, updated_at) DESC
                OFFSET %(keep)s
            )
              AND recorded
            RETURNING id
            """,
            {"status": status.value, "keep": max(0, keep)},
            "failed to trim jobs",
        )

    # Monitoring ---------------------------------------------------------

    def counts(self, *, now: datetime) -> QueueCounts:
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    SELECT
                        COUNT(*) FILTER (WHERE status = 'pending' AND available_at <= %(now)s) AS waiting,
                        COUNT(*) FILTER (WHERE status = 'pending' AND available_at > %(now)s) AS delayed,
                        COUNT(*) FILTER (WHERE status = 'processing') AS active,
                        COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                        COUNT(*) FILTER (WHERE status = 'failed') AS failed
                    FROM jobs
                    """,
                    {"now": now},
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to count jobs") from exc
        return QueueCounts(
            waiting=row["waiting"],
            active=row["active"],
            completed=row["completed"],
            failed=row["failed"],
            delayed=row["delayed"],
        )

    def list_failed(self, *, limit: int) -> list[Job]:
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    SELECT *
                    FROM jobs
                    WHERE status = %(failed)s
                    ORDER BY COALESCE(completed_at, updated_at) DESC
                    LIMIT %(limit)s
                    """,
                    {"failed": JobStatus.FAILED.value, "limit": max(0, limit)},
                )
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to list failed jobs") from exc
        return [self._deserialize_job(row) for row in rows]

    def heartbeat(
        self,
        worker_id: str,
        *,
        now: datetime,
        lease_until: datetime | None = None,
    ) -> None:
        try:
            with self._transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO worker_heartbeats (worker_id, seen_at)
                    VALUES (%(worker_id)s, %(seen_at)s)
                    ON CONFLICT (worker_id) DO UPDATE SET seen_at = EXCLUDED.seen_at
                    """,
                    {"worker_id": worker_id, "seen_at": now},
                )
                if lease_until is not None:
                    cur.execute(
                        """
                        UPDATE jobs
                        SET lease_expires_at = %(lease_until)s
                        WHERE status = %(processing)s
                          AND claimed_by = %(worker_id)s
                        """,
                        {
                            "lease_until": lease_until,
                            "processing": JobStatus.PROCESSING.value,
                            "worker_id": worker_id,
                        },
                    )
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to record heartbeat") from exc

    def count_workers(self, *, seen_since: datetime) -> int:
        try:
            with self._transaction() as cur:
                cur.execute(
                    "SELECT COUNT(*) AS cnt FROM worker_heartbeats WHERE seen_at >= %(since)s",
                    {"since": seen_since},
                )
                row = cur.fetchone()
        except psycopg.Error as exc:
            raise QueueUnavailableError("failed to count workers") from exc
        return int(row["cnt"])

    def ping(self) -> None:
        try:
            with self._transaction() as cur:
                cur.execute("SELECT 1")
        except psycopg.Error as exc:
            raise QueueUnavailableError("queue database unreachable") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Internal utilities -------------------------------------------------

    @contextmanager
    def _transaction(self):
        with self._lock, self._conn.cursor() as cur:
            try:
                yield cur
            except Exception:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    def _select_jobs(self, sql: str, params: Mapping[str, Any], failure: str) -> list[Job]:
        try:
            with self._transaction() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise QueueUnavailableError(failure) from exc
        return [self._deserialize_job(row) for row in rows]

    def _delete_returning(self, sql: str, params: Mapping[str, Any], failure: str) -> list[str]:
        try:
            with self._transaction() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        except psycopg.Error as exc:
            raise QueueUnavailableError(failure) from exc
        return [row["id"] for row in rows]

    def _set_statement_timeout(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT set_config('statement_timeout', %(timeout)s, false)",
                {"timeout": f"{self.config.statement_timeout_ms}ms"},
            )

    def _ensure_schema(self) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    provider TEXT NOT NULL,
                    payload JSONB NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    backoff_seconds DOUBLE PRECISION NOT NULL,
                    retain_completed_seconds DOUBLE PRECISION NOT NULL,
                    retain_failed_seconds DOUBLE PRECISION NOT NULL,
                    progress DOUBLE PRECISION NOT NULL DEFAULT 0,
                    provider_job_id TEXT,
                    result_url TEXT,
                    thumbnail_url TEXT,
                    error_message TEXT,
                    error_kind TEXT,
                    claimed_by TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    available_at TIMESTAMPTZ NOT NULL,
                    started_at TIMESTAMPTZ,
                    completed_at TIMESTAMPTZ,
                    evict_after TIMESTAMPTZ,
                    lease_expires_at TIMESTAMPTZ,
                    recorded BOOLEAN NOT NULL DEFAULT TRUE
                )
                """
            )
            for column, ddl in _POSTGRES_ADDED_COLUMNS:
                cur.execute(f"ALTER TABLE jobs ADD COLUMN IF NOT EXISTS {column} {ddl}")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS worker_heartbeats (
                    worker_id TEXT PRIMARY KEY,
                    seen_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS job_claims (
                    id BIGSERIAL PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    claimed_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_jobs_claimable
                    ON jobs(status, available_at, created_at)
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_job_claims_claimed_at
                    ON job_claims(claimed_at)
                """
            )

    @staticmethod
    def _serialize_datetime(value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _serialize_job(self, job: Job) -> dict[str, Any]:
        return _job_to_params(job, self._serialize_datetime, Jsonb)

    @staticmethod
    def _deserialize_job(row: Mapping[str, Any]) -> Job:
        return _row_to_job(row, lambda value: value, lambda value: dict(value or {}))


__all__ = [
    "PostgresQueueBackend",
    "QueueBackendConfig",
    "SQLiteQueueBackend",
    "build_queue_backend",
]
