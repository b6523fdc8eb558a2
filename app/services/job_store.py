"""SQLite job registry and processing queue."""

import json
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from app.config import get_settings
from app.services.errors import JobStateError
from app.services.utils import format_file_size


class JobStatus(Enum):
    """Status of an upload job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(Enum):
    """Status of a processing queue item."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Completed and failed share the top rank: neither can replace the other
JOB_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


def _now() -> datetime:
    return datetime.now(UTC)


def _ts(dt: datetime) -> str:
    # Fixed-width so stored timestamps compare correctly as strings
    return dt.isoformat(timespec="microseconds")


@dataclass
class UploadJob:
    """A persisted upload job."""

    id: str
    owner_id: str
    file_name: str
    file_size: int
    upload_path: str
    status: JobStatus = JobStatus.PENDING
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "UploadJob":
        return cls(
            id=row["id"],
            owner_id=row["owner_id"],
            file_name=row["file_name"],
            file_size=row["file_size"],
            upload_path=row["upload_path"],
            status=JobStatus(row["status"]),
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_size_formatted": format_file_size(self.file_size),
            "upload_path": self.upload_path,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class QueueItem:
    """A reassembly request for a fully uploaded job."""

    id: str
    job_id: str
    upload_path: str
    total_chunks: int
    metadata: dict[str, Any] = field(default_factory=dict)
    status: QueueStatus = QueueStatus.QUEUED
    attempts: int = 0
    merged_chunks: int = 0
    last_attempt_at: str | None = None
    lease_expires_at: str | None = None
    artifact_path: str | None = None
    error: str | None = None
    created_at: str = ""
    processed_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueueItem":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            upload_path=row["upload_path"],
            total_chunks=row["total_chunks"],
            metadata=json.loads(row["metadata"] or "{}"),
            status=QueueStatus(row["status"]),
            attempts=row["attempts"],
            merged_chunks=row["merged_chunks"],
            last_attempt_at=row["last_attempt_at"],
            lease_expires_at=row["lease_expires_at"],
            artifact_path=row["artifact_path"],
            error=row["error"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "upload_path": self.upload_path,
            "total_chunks": self.total_chunks,
            "metadata": self.metadata,
            "status": self.status.value,
            "attempts": self.attempts,
            "merged_chunks": self.merged_chunks,
            "last_attempt_at": self.last_attempt_at,
            "lease_expires_at": self.lease_expires_at,
            "artifact_path": self.artifact_path,
            "error": self.error,
            "created_at": self.created_at,
            "processed_at": self.processed_at,
        }


class JobStore:
    """Job registry and processing queue with thread-safe SQLite access.

    Every state change is a single conditional UPDATE, so concurrent writers
    (upload threads, cancellation, reassembler workers) cannot regress a
    job's status or claim the same queue item twice.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        """Initialize the database.

        Args:
            db_path: SQLite file (default: settings.database_path)
        """
        self._db_path = Path(db_path) if db_path else get_settings().database_path
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.connection.row_factory = sqlite3.Row
        conn: sqlite3.Connection = self._local.connection
        return conn

    def _init_db(self) -> None:
        """Initialize the database schema."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_connection()
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS upload_jobs (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                file_name TEXT NOT NULL,
                file_size INTEGER NOT NULL,
                upload_path TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                status_rank INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processing_queue (
                id TEXT PRIMARY KEY,
                job_id TEXT NOT NULL REFERENCES upload_jobs(id),
                upload_path TEXT NOT NULL,
                total_chunks INTEGER NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'queued',
                attempts INTEGER NOT NULL DEFAULT 0,
                merged_chunks INTEGER NOT NULL DEFAULT 0,
                last_attempt_at TEXT,
                lease_expires_at TEXT,
                artifact_path TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                processed_at TEXT
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_queue_status ON processing_queue(status, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_queue_job ON processing_queue(job_id)
        """)

        conn.commit()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(
        self,
        file_name: str,
        file_size: int,
        upload_path: str,
        owner_id: str,
    ) -> str:
        """Insert a new pending job.

        Returns:
            The new job id
        """
        job_id = str(uuid.uuid4())
        now = _ts(_now())
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO upload_jobs
                (id, owner_id, file_name, file_size, upload_path, status, status_rank,
                 created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                owner_id,
                file_name,
                file_size,
                upload_path,
                JobStatus.PENDING.value,
                JOB_STATUS_RANK[JobStatus.PENDING],
                now,
                now,
            ),
        )
        conn.commit()
        return job_id

    def get_job(self, job_id: str) -> UploadJob | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM upload_jobs WHERE id = ?", (job_id,)).fetchone()
        return UploadJob.from_row(row) if row else None

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: str | None = None,
    ) -> bool:
        """Move a job forward to status.

        The write only happens if the stored status ranks strictly lower,
        so transitions never go backwards and terminal states are final.

        Returns:
            True if the row changed, False if the update was a no-op
        """
        rank = JOB_STATUS_RANK[status]
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE upload_jobs
            SET status = ?, status_rank = ?, error = COALESCE(?, error), updated_at = ?
            WHERE id = ? AND status_rank < ?
            """,
            (status.value, rank, error, _ts(_now()), job_id, rank),
        )
        conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Processing queue
    # ------------------------------------------------------------------

    def enqueue_processing(
        self,
        job_id: str,
        upload_path: str,
        total_chunks: int,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Register a fully uploaded job for reassembly.

        Returns:
            The new queue item id

        Raises:
            JobStateError: If the job does not exist or already finished
        """
        item_id = str(uuid.uuid4())
        conn = self._get_connection()
        # Single statement: the job check and the insert cannot interleave
        # with a concurrent cancellation
        cursor = conn.execute(
            """
            INSERT INTO processing_queue
                (id, job_id, upload_path, total_chunks, metadata, status, created_at)
            SELECT ?, ?, ?, ?, ?, ?, ?
            WHERE EXISTS (
                SELECT 1 FROM upload_jobs WHERE id = ? AND status NOT IN ('failed', 'completed')
            )
            """,
            (
                item_id,
                job_id,
                upload_path,
                total_chunks,
                json.dumps(metadata or {}),
                QueueStatus.QUEUED.value,
                _ts(_now()),
                job_id,
            ),
        )
        conn.commit()
        if cursor.rowcount != 1:
            job = self.get_job(job_id)
            if job is None:
                raise JobStateError(f"Unknown job {job_id}")
            raise JobStateError(f"Job {job_id} is {job.status.value}; refusing to enqueue")
        return item_id

    def claim_queue_item(
        self,
        lease_seconds: int = 900,
        max_attempts: int | None = None,
    ) -> QueueItem | None:
        """Claim the oldest claimable item for this caller.

        Claimable means queued, or processing with an expired lease (a worker
        that died mid-merge). The claim is a conditional UPDATE, so exactly
        one of several racing callers wins a given item.

        An expired item that has already used max_attempts claims is not
        handed out again: it and its job are marked failed instead.

        The returned item's attempts value is the claim token. Every later
        write for this claim must pass it back, and is rejected once another
        claim has superseded it.

        Returns:
            The claimed item (attempts already incremented), or None
        """
        conn = self._get_connection()
        while True:
            now = _now()
            now_ts = _ts(now)
            row = conn.execute(
                """
                SELECT id, job_id, status, attempts FROM processing_queue
                WHERE status = 'queued'
                   OR (status = 'processing' AND lease_expires_at < ?)
                ORDER BY created_at, rowid
                LIMIT 1
                """,
                (now_ts,),
            ).fetchone()
            if row is None:
                return None

            if (
                row["status"] == QueueStatus.PROCESSING.value
                and max_attempts is not None
                and row["attempts"] >= max_attempts
            ):
                self._abandon_expired(row["id"], row["job_id"], row["attempts"], now_ts)
                continue

            cursor = conn.execute(
                """
                UPDATE processing_queue
                SET status = 'processing',
                    attempts = attempts + 1,
                    merged_chunks = 0,
                    last_attempt_at = ?,
                    lease_expires_at = ?
                WHERE id = ? AND attempts = ?
                  AND (status = 'queued' OR (status = 'processing' AND lease_expires_at < ?))
                """,
                (
                    now_ts,
                    _ts(now + timedelta(seconds=lease_seconds)),
                    row["id"],
                    row["attempts"],
                    now_ts,
                ),
            )
            conn.commit()
            if cursor.rowcount == 1:
                return self.get_queue_item(row["id"])
            # Lost the race for this item; look for another

    def _abandon_expired(self, item_id: str, job_id: str, attempts: int, now_ts: str) -> None:
        """Fail an item whose last permitted claim expired without finishing."""
        error = f"Reassembly abandoned after {attempts} attempts (lease expired)"
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue
            SET status = 'failed', error = ?, lease_expires_at = NULL, processed_at = ?
            WHERE id = ? AND attempts = ? AND status = 'processing' AND lease_expires_at < ?
            """,
            (error, now_ts, item_id, attempts, now_ts),
        )
        conn.commit()
        if cursor.rowcount == 1:
            self.update_job_status(job_id, JobStatus.FAILED, error)

    def get_queue_item(self, item_id: str) -> QueueItem | None:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM processing_queue WHERE id = ?", (item_id,)).fetchone()
        return QueueItem.from_row(row) if row else None

    def list_queue_items(
        self,
        status: QueueStatus | None = None,
        limit: int = 100,
    ) -> list[QueueItem]:
        """List queue items, oldest first, optionally filtered by status."""
        conn = self._get_connection()
        if status:
            rows = conn.execute(
                """
                SELECT * FROM processing_queue WHERE status = ?
                ORDER BY created_at, rowid LIMIT ?
                """,
                (status.value, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM processing_queue ORDER BY created_at, rowid LIMIT ?",
                (limit,),
            ).fetchall()
        return [QueueItem.from_row(r) for r in rows]


    def renew_lease(self, item_id: str, attempt: int, lease_seconds: int = 900) -> bool:
        """Push the lease of a live claim forward.

        Returns:
            False if the claim identified by attempt no longer holds the item
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue SET lease_expires_at = ?
            WHERE id = ? AND attempts = ? AND status = 'processing'
            """,
            (_ts(_now() + timedelta(seconds=lease_seconds)), item_id, attempt),
        )
        conn.commit()
        return cursor.rowcount == 1

    def record_merge_progress(
        self,
        item_id: str,
        merged_chunks: int,
        attempt: int,
        lease_seconds: int = 900,
    ) -> bool:
        """Persist how many chunks the current attempt has merged.

        Also extends the lease, so a long merge that keeps making progress
        is not mistaken for a dead worker.

        Returns:
            False if the claim identified by attempt no longer holds the item
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue SET merged_chunks = ?, lease_expires_at = ?
            WHERE id = ? AND attempts = ? AND status = 'processing'
            """,
            (merged_chunks, _ts(_now() + timedelta(seconds=lease_seconds)), item_id, attempt),
        )
        conn.commit()
        return cursor.rowcount == 1

    def mark_published(self, item_id: str, artifact_path: str, attempt: int) -> bool:
        """Record that the merged artifact is in place at artifact_path.

        The marker survives later claims, letting a retry that finds the
        artifact intact skip straight to chunk cleanup.

        Returns:
            False if the claim identified by attempt no longer holds the item
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue SET artifact_path = ?
            WHERE id = ? AND attempts = ? AND status = 'processing'
            """,
            (artifact_path, item_id, attempt),
        )
        conn.commit()
        return cursor.rowcount == 1

    def complete_queue_item(self, item_id: str, artifact_path: str, attempt: int) -> bool:
        """Mark a processing item completed with its published artifact key.

        Returns:
            False if the claim identified by attempt no longer holds the item
        """
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue
            SET status = 'completed', artifact_path = ?, processed_at = ?,
                lease_expires_at = NULL, error = NULL
            WHERE id = ? AND attempts = ? AND status = 'processing'
            """,
            (artifact_path, _ts(_now()), item_id, attempt),
        )
        conn.commit()
        return cursor.rowcount == 1

    def fail_queue_item(
        self,
        item_id: str,
        error: str,
        max_attempts: int,
        attempt: int,
    ) -> QueueStatus | None:
        """Record a failed attempt.

        The item returns to the queue while attempts remain; otherwise it and
        its job become failed.

        Returns:
            The item's resulting status, or None if the claim identified by
            attempt no longer holds the item (nothing was written)

        Raises:
            JobStateError: If the item does not exist
        """
        item = self.get_queue_item(item_id)
        if item is None:
            raise JobStateError(f"Unknown queue item {item_id}")

        exhausted = attempt >= max_attempts
        new_status = QueueStatus.FAILED if exhausted else QueueStatus.QUEUED
        conn = self._get_connection()
        cursor = conn.execute(
            """
            UPDATE processing_queue
            SET status = ?, error = ?, lease_expires_at = NULL,
                processed_at = CASE WHEN ? = 'failed' THEN ? ELSE processed_at END
            WHERE id = ? AND attempts = ? AND status = 'processing'
            """,
            (new_status.value, error, new_status.value, _ts(_now()), item_id, attempt),
        )
        conn.commit()
        if cursor.rowcount != 1:
            return None

        if exhausted:
            self.update_job_status(item.job_id, JobStatus.FAILED, error)
        return new_status

    def close(self) -> None:
        """Close the database connection for the current thread."""
        if hasattr(self._local, "connection") and self._local.connection is not None:
            self._local.connection.close()
            self._local.connection = None


# Global job store instance
_job_store: JobStore | None = None


def get_job_store() -> JobStore:
    """Get the global job store instance."""
    global _job_store
    if _job_store is None:
        _job_store = JobStore()
    return _job_store
