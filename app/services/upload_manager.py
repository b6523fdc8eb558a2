"""Upload manager: the client entry point for chunked uploads."""

import logging
import mimetypes
import shutil
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mypy_boto3_s3 import S3Client

from app.config import get_settings
from app.services import s3_service
from app.services.chunk_planner import DEFAULT_CHUNK_PREFIX, Chunk, plan_chunks
from app.services.chunk_transport import DEFAULT_RETRY_DELAYS, ChunkTransport
from app.services.errors import UploadCancelledError, ValidationError
from app.services.job_store import JobStatus, JobStore, get_job_store
from app.services.log_service import get_log_service
from app.services.progress_tracker import ProgressSnapshot, ProgressTracker
from app.services.upload_scheduler import ScheduleResult, UploadScheduler
from app.services.utils import format_file_size

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Upload cancelled"


@dataclass
class UploadSession:
    """In-memory state of one upload, owned by the UploadManager."""

    job_id: str
    owner_id: str
    local_path: str
    file_name: str
    file_size: int
    upload_path: str
    content_type: str
    chunks: list[Chunk]
    tracker: ProgressTracker
    cancel_event: threading.Event = field(default_factory=threading.Event)
    cancelled: bool = False
    committed: bool = False  # Past the point where cancellation applies
    item_id: str | None = None
    error: str = ""
    result: ScheduleResult | None = None
    cleanup_path: str | None = None  # Temp dir removed when the upload ends
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.completed_at is None and not self.cancelled and not self.committed

    @property
    def ended_at(self) -> datetime | None:
        """When the session stopped doing work, or None while it is still live."""
        return self.completed_at or self.cancelled_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "job_id": self.job_id,
            "owner_id": self.owner_id,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "file_size_formatted": format_file_size(self.file_size),
            "upload_path": self.upload_path,
            "total_chunks": len(self.chunks),
            "cancelled": self.cancelled,
            "item_id": self.item_id,
            "error": self.error,
            "progress": self.tracker.snapshot().to_dict(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class UploadManager:
    """Validates, chunks and uploads files, then hands them to the processing queue."""

    def __init__(
        self,
        store: JobStore,
        bucket: str,
        client: S3Client | None = None,
        chunk_size: int = 50 * 1024 * 1024,
        chunk_prefix: str = DEFAULT_CHUNK_PREFIX,
        max_concurrent: int = 3,
        retry_delays: list[float] | None = None,
        inter_batch_delay: float = 0.0,
        requeue_limit: int = 1,
        max_file_size: int = 5 * 1024 * 1024 * 1024,
        aws_profile: str = "default",
        aws_region: str = "us-west-2",
        upload_timeout: float | None = None,
        session_retention: float = 300.0,
    ) -> None:
        self.store = store
        self.bucket = bucket
        self.chunk_size = chunk_size
        self.chunk_prefix = chunk_prefix
        self.max_concurrent = max_concurrent
        self.retry_delays = (
            list(retry_delays) if retry_delays is not None else list(DEFAULT_RETRY_DELAYS)
        )
        self.inter_batch_delay = inter_batch_delay
        self.requeue_limit = requeue_limit
        self.max_file_size = max_file_size
        self.aws_profile = aws_profile
        self.aws_region = aws_region
        self.upload_timeout = upload_timeout
        self.session_retention = session_retention
        self.sessions: dict[str, UploadSession] = {}
        self._client = client
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        store: JobStore | None = None,
        client: S3Client | None = None,
    ) -> "UploadManager":
        """Build a manager from the application settings."""
        settings = get_settings()
        return cls(
            store=store or get_job_store(),
            bucket=settings.s3_bucket,
            client=client,
            chunk_size=settings.chunk_size,
            chunk_prefix=settings.chunk_prefix,
            max_concurrent=settings.max_concurrent_uploads,
            retry_delays=settings.retry_delays,
            inter_batch_delay=settings.inter_batch_delay,
            requeue_limit=settings.chunk_requeue_limit,
            max_file_size=settings.max_file_size,
            aws_profile=settings.aws_profile,
            aws_region=settings.aws_region,
            upload_timeout=settings.upload_timeout,
            session_retention=settings.session_retention_seconds,
        )

    def _get_client(self) -> S3Client:
        with self._lock:
            if self._client is None:
                self._client = s3_service.create_s3_client(
                    self.aws_profile, self.aws_region, timeout=self.upload_timeout
                )
            return self._client

    def _validate(self, local_path: str, owner_id: str | None) -> Path:
        if not owner_id:
            raise ValidationError("Authentication required")
        path = Path(local_path)
        if not path.is_file():
            raise ValidationError(f"File not found: {local_path}")
        file_size = path.stat().st_size
        if file_size > self.max_file_size:
            raise ValidationError(
                f"File is {format_file_size(file_size)}; "
                f"the limit is {format_file_size(self.max_file_size)}"
            )
        return path

    def prepare_upload(
        self,
        local_path: str,
        owner_id: str | None,
        progress_callback: Callable[[ProgressSnapshot], None] | None = None,
        file_name: str | None = None,
        cleanup_path: str | None = None,
    ) -> UploadSession:
        """Validate the file, supersede other uploads and create the job.

        Args:
            local_path: File to upload
            owner_id: Authenticated owner; required
            progress_callback: Receives every ProgressSnapshot in order
            file_name: Name to publish under (default: the local file name)
            cleanup_path: Temp directory to delete once the upload ends

        Returns:
            The new session, with its job in pending state

        Raises:
            ValidationError: Nothing was created
        """
        path = self._validate(local_path, owner_id)
        owner_id = str(owner_id)

        # A new upload supersedes every upload still in flight
        for other in self.get_active_sessions():
            self.cancel_upload(other.job_id)

        name = file_name or path.name
        file_size = path.stat().st_size
        upload_path = f"{owner_id}/{uuid.uuid4()}"
        content_type = mimetypes.guess_type(name)[0] or "application/octet-stream"

        job_id = self.store.create_job(name, file_size, upload_path, owner_id)
        chunks = plan_chunks(file_size, self.chunk_size, upload_path, self.chunk_prefix)
        session = UploadSession(
            job_id=job_id,
            owner_id=owner_id,
            local_path=str(path.absolute()),
            file_name=name,
            file_size=file_size,
            upload_path=upload_path,
            content_type=content_type,
            chunks=chunks,
            tracker=ProgressTracker(file_size, len(chunks), progress_callback),
            cleanup_path=cleanup_path,
        )
        with self._lock:
            self._prune_sessions()
            self.sessions[job_id] = session

        get_log_service().info(
            "upload",
            "upload_job_created",
            f"Created upload job for {name} ({format_file_size(file_size)}, {len(chunks)} chunks)",
            {
                "job_id": job_id,
                "owner_id": owner_id,
                "file_name": name,
                "file_size": file_size,
                "total_chunks": len(chunks),
                "upload_path": upload_path,
            },
        )
        return session

    def run_upload(self, session: UploadSession) -> str:
        """Upload every chunk of a prepared session and enqueue it for reassembly.

        Returns:
            The job id

        Raises:
            TerminalTransportError: A chunk could not be uploaded; job is failed
            UploadCancelledError: The session was cancelled; nothing more was written
        """
        log = get_log_service()
        job_id = session.job_id
        log.info(
            "upload",
            "upload_started",
            f"Uploading {session.file_name}",
            {"job_id": job_id, "total_chunks": len(session.chunks)},
        )

        try:
            session.tracker.start()
            transport = ChunkTransport(
                self._get_client(),
                self.bucket,
                retry_delays=self.retry_delays,
                content_type="application/octet-stream",
            )
            scheduler = UploadScheduler(
                transport,
                max_concurrent=self.max_concurrent,
                inter_batch_delay=self.inter_batch_delay,
                requeue_limit=self.requeue_limit,
            )
            session.result = scheduler.run(
                session.chunks, session.local_path, session.tracker, session.cancel_event
            )
            with self._lock:
                if session.cancelled or session.cancel_event.is_set():
                    raise UploadCancelledError(CANCELLED_MESSAGE)
                session.committed = True

            self.store.update_job_status(job_id, JobStatus.PROCESSING)
            session.item_id = self.store.enqueue_processing(
                job_id,
                session.upload_path,
                len(session.chunks),
                {
                    "file_name": session.file_name,
                    "file_size": session.file_size,
                    "content_type": session.content_type,
                    "chunk_size": self.chunk_size,
                },
            )
            session.tracker.complete()
            log.info(
                "upload",
                "upload_completed",
                f"Uploaded {session.file_name}; queued for reassembly",
                {
                    "job_id": job_id,
                    "item_id": session.item_id,
                    **(session.result.to_dict() if session.result else {}),
                },
            )
        except UploadCancelledError:
            logger.info("Upload %s stopped after cancellation", job_id)
            raise
        except Exception as e:
            if session.cancelled:
                # Cancellation won the race; cancel_upload already recorded it
                raise UploadCancelledError(CANCELLED_MESSAGE) from e
            session.error = str(e)
            session.tracker.fail(session.error)
            self.store.update_job_status(job_id, JobStatus.FAILED, session.error)
            log.error(
                "upload",
                "upload_failed",
                f"Upload of {session.file_name} failed: {e}",
                {
                    "job_id": job_id,
                    "error": session.error,
                    "error_type": type(e).__name__,
                    "chunk_index": getattr(e, "chunk_index", None),
                },
            )
            raise
        finally:
            self.cleanup_temp_dir(session)
            self._save_summary(session)
            # Set last: observers treat it as "nothing more will happen"
            session.completed_at = datetime.now(UTC)

        return job_id

    def upload_file(
        self,
        local_path: str,
        owner_id: str | None,
        progress_callback: Callable[[ProgressSnapshot], None] | None = None,
    ) -> str:
        """Validate, upload and enqueue a file in one call.

        Returns:
            The job id
        """
        session = self.prepare_upload(local_path, owner_id, progress_callback)
        return self.run_upload(session)

    def cancel_upload(self, job_id: str) -> bool:
        """Cancel an in-flight upload.

        The job is marked failed exactly once; the session's tracker is
        frozen and the uploading thread writes nothing further.

        Returns:
            True if an active session was cancelled
        """
        with self._lock:
            session = self.sessions.get(job_id)
            if session is None or not session.active:
                return False
            session.cancelled = True
            session.cancelled_at = datetime.now(UTC)

        session.cancel_event.set()
        session.tracker.cancel()
        self.store.update_job_status(job_id, JobStatus.FAILED, CANCELLED_MESSAGE)

        get_log_service().warning(
            "upload",
            "upload_cancelled",
            f"Upload job {job_id} cancelled",
            {"job_id": job_id},
        )
        return True

    def get_session(self, job_id: str) -> UploadSession | None:
        """Get a session by job ID."""
        with self._lock:
            return self.sessions.get(job_id)

    def get_progress(self, job_id: str) -> ProgressSnapshot | None:
        session = self.get_session(job_id)
        return session.tracker.snapshot() if session else None

    def get_active_sessions(self) -> list[UploadSession]:
        """Get all sessions still uploading."""
        with self._lock:
            return [s for s in self.sessions.values() if s.active]

    def _prune_sessions(self) -> int:
        """Forget sessions that ended more than session_retention seconds ago.

        Their jobs stay queryable through the JobStore. Caller holds _lock.

        Returns:
            Number of sessions dropped
        """
        now = datetime.now(UTC)
        expired = [
            job_id
            for job_id, s in self.sessions.items()
            if s.ended_at is not None
            and (now - s.ended_at).total_seconds() >= self.session_retention
        ]
        for job_id in expired:
            del self.sessions[job_id]
        if expired:
            logger.debug("Dropped %d finished upload sessions", len(expired))
        return len(expired)

    def cleanup_temp_dir(self, session: UploadSession) -> bool:
        """Remove the temp directory a route saved the upload into.

        Returns:
            True if a directory was removed
        """
        if not session.cleanup_path:
            return False
        try:
            shutil.rmtree(session.cleanup_path, ignore_errors=True)
            logger.info("Cleaned up temp directory: %s", session.cleanup_path)
            return True
        finally:
            session.cleanup_path = None

    def _save_summary(self, session: UploadSession) -> None:
        job = self.store.get_job(session.job_id)
        try:
            get_log_service().save_job_summary(
                session.job_id,
                {
                    "timestamp": datetime.now(UTC).isoformat(),
                    "event": "upload_job_finished",
                    "job_id": session.job_id,
                    "status": job.status.value if job else None,
                    "cancelled": session.cancelled,
                    "file_name": session.file_name,
                    "file_size": session.file_size,
                    "total_chunks": len(session.chunks),
                    "item_id": session.item_id,
                    "error": session.error or None,
                    **(session.result.to_dict() if session.result else {}),
                },
            )
        except Exception:
            logger.warning("Failed to save job summary", exc_info=True)


# Global upload manager instance
_upload_manager: UploadManager | None = None


def get_upload_manager() -> UploadManager:
    """Get the global upload manager instance."""
    global _upload_manager
    if _upload_manager is None:
        _upload_manager = UploadManager.from_settings()
    return _upload_manager


def reset_upload_manager() -> bool:
    """Drop the global instance so the next call picks up new settings.

    Kept while uploads are in flight so they can still be cancelled.

    Returns:
        True if the instance was dropped
    """
    global _upload_manager
    if _upload_manager is not None and _upload_manager.get_active_sessions():
        return False
    _upload_manager = None
    return True
