"""Server-side reassembly of uploaded chunks into the published artifact."""

import logging
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, BinaryIO

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3 import S3Client

from app.config import get_settings
from app.services import s3_service
from app.services.chunk_planner import DEFAULT_CHUNK_PREFIX, chunk_path
from app.services.errors import FinalizeError, LeaseLostError, ReassemblyError
from app.services.job_store import JobStatus, JobStore, QueueItem, QueueStatus, get_job_store
from app.services.log_service import get_log_service

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_PREFIX = "media"
STAGING_SUFFIX = ".partial"


def artifact_path(upload_path: str, file_name: str, prefix: str = DEFAULT_MEDIA_PREFIX) -> str:
    """Canonical key of the reassembled file, e.g. "media/<owner>/<uuid>/clip.mp4"."""
    base = upload_path.strip("/")
    if prefix:
        base = f"{prefix.strip('/')}/{base}"
    return f"{base}/{file_name}"


class ChunkReassembler:
    """Claims queue items and merges their chunks in index order.

    Chunks are only deleted after the artifact has been published, so any
    failed or interrupted attempt can start over from chunk 0.
    """

    def __init__(
        self,
        store: JobStore,
        client: S3Client,
        bucket: str,
        chunk_prefix: str = DEFAULT_CHUNK_PREFIX,
        media_prefix: str = DEFAULT_MEDIA_PREFIX,
        max_attempts: int = 3,
        lease_seconds: int = 900,
        work_dir: str | None = None,
        read_size: int = s3_service.DEFAULT_READ_SIZE,
    ) -> None:
        self.store = store
        self.client = client
        self.bucket = bucket
        self.chunk_prefix = chunk_prefix
        self.media_prefix = media_prefix
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.work_dir = work_dir
        self.read_size = read_size

    @classmethod
    def from_settings(
        cls,
        store: JobStore | None = None,
        client: S3Client | None = None,
    ) -> "ChunkReassembler":
        """Build a reassembler from the application settings."""
        settings = get_settings()
        if client is None:
            client = s3_service.create_s3_client(settings.aws_profile, settings.aws_region)
        return cls(
            store=store or get_job_store(),
            client=client,
            bucket=settings.s3_bucket,
            chunk_prefix=settings.chunk_prefix,
            media_prefix=settings.media_prefix,
            max_attempts=settings.reassembly_max_attempts,
            lease_seconds=settings.reassembly_lease_seconds,
            work_dir=settings.work_directory,
        )

    def _chunk_keys(self, item: QueueItem) -> list[str]:
        return [
            chunk_path(item.upload_path, i, self.chunk_prefix) for i in range(item.total_chunks)
        ]

    def process_next(self) -> dict[str, Any] | None:
        """Claim and process one queue item.

        Returns:
            Result dict for the processed item, or None if nothing was claimable
        """
        item = self.store.claim_queue_item(self.lease_seconds, self.max_attempts)
        if item is None:
            return None
        return self.process_item(item)

    def process_item(self, item: QueueItem) -> dict[str, Any]:
        """Merge, publish and clean up one claimed item.

        item.attempts is the claim token: once another worker re-claims the
        item, every store write from this call is rejected and the call
        stops without touching the chunks.

        Returns:
            Dictionary with the outcome. On failure the item has already been
            re-queued or failed in the store.
        """
        log = get_log_service()
        file_name = str(item.metadata.get("file_name") or "artifact")
        content_type = str(item.metadata.get("content_type") or "application/octet-stream")
        target = artifact_path(item.upload_path, file_name, self.media_prefix)
        meta = {"job_id": item.job_id, "item_id": item.id, "attempt": item.attempts}
        started_at = datetime.now(UTC)

        log.info(
            "reassembly",
            "reassembly_started",
            f"Reassembling {item.total_chunks} chunks into {target} (attempt {item.attempts})",
            {**meta, "total_chunks": item.total_chunks, "artifact_path": target},
        )

        try:
            merged_bytes = self._publish(item, target, content_type)
        except LeaseLostError as e:
            return self._lease_lost(item, e)
        except (ReassemblyError, FinalizeError, ClientError, BotoCoreError) as e:
            return self._fail(item, e)
        except Exception as e:
            logger.exception("Unexpected error reassembling job %s", item.job_id)
            return self._fail(item, e)

        self._cleanup(item)
        if not self.store.complete_queue_item(item.id, target, item.attempts):
            return self._lease_lost(item, LeaseLostError(item.id, item.attempts))
        self.store.update_job_status(item.job_id, JobStatus.COMPLETED)

        duration = (datetime.now(UTC) - started_at).total_seconds()
        log.info(
            "reassembly",
            "reassembly_completed",
            f"Published {target}",
            {**meta, "artifact_path": target, "bytes": merged_bytes, "duration_seconds": duration},
        )
        return {
            "success": True,
            "item_id": item.id,
            "job_id": item.job_id,
            "status": QueueStatus.COMPLETED.value,
            "artifact_path": target,
            "bytes": merged_bytes,
            "error": None,
        }

    def _fail(self, item: QueueItem, error: Exception) -> dict[str, Any]:
        """Hand a failed attempt back to the store and report it."""
        status = self.store.fail_queue_item(item.id, str(error), self.max_attempts, item.attempts)
        if status is None:
            return self._lease_lost(item, LeaseLostError(item.id, item.attempts))

        get_log_service().error(
            "reassembly",
            "reassembly_failed",
            f"Reassembly of job {item.job_id} failed: {error}",
            {
                "job_id": item.job_id,
                "item_id": item.id,
                "attempt": item.attempts,
                "error": str(error),
                "error_type": type(error).__name__,
                "chunk_index": getattr(error, "chunk_index", None),
                "queue_status": status.value,
            },
        )
        return {
            "success": False,
            "item_id": item.id,
            "job_id": item.job_id,
            "status": status.value,
            "error": str(error),
        }

    def _lease_lost(self, item: QueueItem, error: LeaseLostError) -> dict[str, Any]:
        """Report an attempt that was superseded; the newer claim owns the item now."""
        get_log_service().warning(
            "reassembly",
            "reassembly_lease_lost",
            f"Abandoning attempt {item.attempts} of job {item.job_id}: {error}",
            {"job_id": item.job_id, "item_id": item.id, "attempt": item.attempts},
        )
        return {
            "success": False,
            "item_id": item.id,
            "job_id": item.job_id,
            "status": None,
            "error": str(error),
        }

    def _check_lease(self, held: bool, item: QueueItem) -> None:
        if not held:
            raise LeaseLostError(item.id, item.attempts)

    def _publish(self, item: QueueItem, target: str, content_type: str) -> int | None:
        """Make sure target holds the merged artifact and record that it does.

        Returns:
            Merged byte count, or None when an earlier attempt had already
            published an intact artifact
        """
        if item.artifact_path == target and self._artifact_intact(item, target):
            # An earlier attempt published and recorded the artifact, then
            # died during cleanup
            logger.info("Artifact %s already published, skipping merge", target)
            return None

        merged = self._merge_and_publish(item, target, content_type)
        self._check_lease(self.store.mark_published(item.id, target, item.attempts), item)
        return merged

    def _artifact_intact(self, item: QueueItem, target: str) -> bool:
        expected = item.metadata.get("file_size")
        if expected is None:
            return False
        size = s3_service.get_object_size(self.client, self.bucket, target)
        return size is not None and size == int(expected)

    def _merge_and_publish(self, item: QueueItem, target: str, content_type: str) -> int:
        fd, tmp_path = tempfile.mkstemp(prefix="reassembly-", suffix=".part", dir=self.work_dir)
        try:
            with os.fdopen(fd, "wb") as out:
                merged = self._merge(item, out)
            self._check_lease(
                self.store.renew_lease(item.id, item.attempts, self.lease_seconds), item
            )
            self._finalize(tmp_path, target, content_type)
            return merged
        finally:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass

    def _merge(self, item: QueueItem, out: BinaryIO) -> int:
        """Append every chunk to out, strictly in ascending index order.

        Raises:
            ReassemblyError: A chunk is missing or unreadable, or the merged
                size does not match the uploaded file size
            LeaseLostError: Another claim took over the item mid-merge
        """
        merged = 0
        for index, key in enumerate(self._chunk_keys(item)):
            try:
                merged += s3_service.download_to_stream(
                    self.client, self.bucket, key, out, self.read_size
                )
                out.flush()
            except (ClientError, BotoCoreError, OSError) as e:
                raise ReassemblyError(f"Failed to merge chunk {index} ({key}): {e}", index) from e
            self._check_lease(
                self.store.record_merge_progress(
                    item.id, index + 1, item.attempts, self.lease_seconds
                ),
                item,
            )

        expected = item.metadata.get("file_size")
        if expected is not None and merged != int(expected):
            raise ReassemblyError(f"Merged size {merged} does not match file size {expected}")
        return merged

    def _finalize(self, local_path: str, target: str, content_type: str) -> None:
        """Publish the merged file so target only ever holds a complete artifact.

        Raises:
            FinalizeError: The staging upload or the move to target failed
        """
        staging = f"{target}{STAGING_SUFFIX}"
        result = s3_service.upload_file(self.client, local_path, self.bucket, staging, content_type)
        if not result["success"]:
            raise FinalizeError(f"Failed to upload {staging}: {result['error']}")

        moved = s3_service.move_object(self.client, self.bucket, staging, target)
        if not moved["success"]:
            raise FinalizeError(f"Failed to publish {target}: {moved['error']}")

    def _cleanup(self, item: QueueItem) -> None:
        """Delete the item's chunk objects. Failure here is logged, not raised."""
        result = s3_service.delete_objects(self.client, self.bucket, self._chunk_keys(item))
        if not result["success"]:
            get_log_service().warning(
                "reassembly",
                "chunk_cleanup_failed",
                f"Could not delete {len(result['errors'])} chunks for job {item.job_id}",
                {"job_id": item.job_id, "item_id": item.id, "errors": result["errors"][:10]},
            )

    def run_worker(self, stop_event: threading.Event, poll_interval: float = 5.0) -> None:
        """Process items until stop_event is set, polling when the queue is empty."""
        while not stop_event.is_set():
            try:
                result = self.process_next()
            except Exception:
                # The claimed item keeps its lease and is re-claimed once it expires
                logger.exception("Reassembly worker error")
                result = None
            if result is None:
                stop_event.wait(poll_interval)

    def run_workers(
        self,
        count: int,
        stop_event: threading.Event,
        poll_interval: float = 5.0,
    ) -> None:
        """Run count workers in parallel until stop_event is set."""
        with ThreadPoolExecutor(max_workers=count, thread_name_prefix="reassembler") as executor:
            for _ in range(count):
                executor.submit(self.run_worker, stop_event, poll_interval)

    def drain(self, count: int = 1) -> list[dict[str, Any]]:
        """Process claimable items with count workers until none remain.

        Returns:
            One result dict per processed item
        """
        results: list[dict[str, Any]] = []
        lock = threading.Lock()

        def _worker() -> None:
            while True:
                result = self.process_next()
                if result is None:
                    return
                with lock:
                    results.append(result)

        with ThreadPoolExecutor(max_workers=count, thread_name_prefix="reassembler") as executor:
            futures = [executor.submit(_worker) for _ in range(count)]
            for future in futures:
                future.result()
        return results


def start_background_workers(stop_event: threading.Event | None = None) -> threading.Event:
    """Start reassembler workers on a daemon thread using the current settings.

    Returns:
        The event that stops the workers when set
    """
    settings = get_settings()
    stop_event = stop_event or threading.Event()
    reassembler = ChunkReassembler.from_settings()
    thread = threading.Thread(
        target=reassembler.run_workers,
        args=(settings.reassembler_workers, stop_event, settings.reassembler_poll_interval),
        name="reassembler-pool",
        daemon=True,
    )
    thread.start()
    return stop_event
