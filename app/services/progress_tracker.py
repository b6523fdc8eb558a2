"""Progress aggregation for a single chunked upload."""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.services.utils import format_file_size


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of an upload's progress."""

    bytes_uploaded: int
    total_bytes: int
    percentage: float
    current_chunk: int
    total_chunks: int
    status: str
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "bytes_uploaded": self.bytes_uploaded,
            "bytes_uploaded_formatted": format_file_size(self.bytes_uploaded),
            "total_bytes": self.total_bytes,
            "total_bytes_formatted": format_file_size(self.total_bytes),
            "percentage": self.percentage,
            "current_chunk": self.current_chunk,
            "total_chunks": self.total_chunks,
            "status": self.status,
            "error": self.error,
        }


class ProgressTracker:
    """Single-writer accumulator for chunk completions.

    Every mutation happens under one lock and the callback is invoked while
    that lock is held, so observers receive snapshots in the order they were
    produced. After fail() or cancel() the tracker is frozen: later
    completions are ignored and nothing more is delivered.
    """

    def __init__(
        self,
        total_bytes: int,
        total_chunks: int,
        callback: Callable[[ProgressSnapshot], None] | None = None,
    ) -> None:
        self.total_bytes = total_bytes
        self.total_chunks = total_chunks
        self._callback = callback
        self._lock = threading.Lock()
        self._bytes_uploaded = 0
        self._current_chunk = 0
        self._status = "pending"
        self._error = ""
        self._frozen = False

    def _percentage(self) -> float:
        if self.total_bytes == 0:
            return 100.0 if self._status == "completed" else 0.0
        return round(min(self._bytes_uploaded / self.total_bytes, 1.0) * 100, 2)

    def _snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            bytes_uploaded=self._bytes_uploaded,
            total_bytes=self.total_bytes,
            percentage=self._percentage(),
            current_chunk=self._current_chunk,
            total_chunks=self.total_chunks,
            status=self._status,
            error=self._error,
        )

    def _emit(self) -> ProgressSnapshot:
        snapshot = self._snapshot()
        if self._callback:
            self._callback(snapshot)
        return snapshot

    def snapshot(self) -> ProgressSnapshot:
        """Current progress without notifying the callback."""
        with self._lock:
            return self._snapshot()

    @property
    def frozen(self) -> bool:
        with self._lock:
            return self._frozen

    def start(self) -> ProgressSnapshot | None:
        """Mark the upload as in progress."""
        with self._lock:
            if self._frozen:
                return None
            self._status = "uploading"
            return self._emit()

    def record_chunk(self, nbytes: int) -> ProgressSnapshot | None:
        """Account for one completed chunk of nbytes bytes."""
        with self._lock:
            if self._frozen:
                return None
            self._bytes_uploaded += nbytes
            self._current_chunk += 1
            self._status = "uploading"
            return self._emit()

    def complete(self) -> ProgressSnapshot | None:
        """Report the upload as fully transferred."""
        with self._lock:
            if self._frozen:
                return None
            self._status = "completed"
            self._frozen = True
            return self._emit()

    def fail(self, error: str) -> ProgressSnapshot | None:
        """Report an error state and stop accepting updates."""
        with self._lock:
            if self._frozen:
                return None
            self._status = "error"
            self._error = error
            self._frozen = True
            return self._emit()

    def cancel(self) -> None:
        """Stop accepting updates without notifying anyone."""
        with self._lock:
            self._status = "cancelled"
            self._frozen = True
