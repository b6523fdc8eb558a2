"""Bounded-concurrency scheduling of chunk uploads."""

import logging
import threading
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from app.services.chunk_planner import Chunk, read_chunk
from app.services.chunk_transport import ChunkTransport
from app.services.errors import TerminalTransportError, UploadCancelledError
from app.services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    """Outcome of a fully successful scheduling run."""

    uploaded_chunks: list[int] = field(default_factory=list)
    bytes_uploaded: int = 0
    requeued: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "uploaded_chunks": len(self.uploaded_chunks),
            "bytes_uploaded": self.bytes_uploaded,
            "requeued": self.requeued,
            "duration_seconds": self.duration_seconds,
        }


class UploadScheduler:
    """Runs chunk transfers through a fixed-size worker pool.

    At most max_concurrent transfers are in flight; a pending chunk is
    dispatched only when a slot frees up. Chunks may finish in any order.
    """

    def __init__(
        self,
        transport: ChunkTransport,
        max_concurrent: int = 3,
        inter_batch_delay: float = 0.0,
        requeue_limit: int = 0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.transport = transport
        self.max_concurrent = max_concurrent
        self.inter_batch_delay = inter_batch_delay
        self.requeue_limit = requeue_limit

    def _upload_one(
        self,
        chunk: Chunk,
        source_path: str,
        cancel_event: threading.Event,
    ) -> dict[str, Any]:
        # Payload is read inside the worker so only in-flight chunks are in memory
        payload = read_chunk(source_path, chunk)
        return self.transport.send(chunk, payload, cancel_event)

    def run(
        self,
        chunks: list[Chunk],
        source_path: str | Path,
        tracker: ProgressTracker,
        cancel_event: threading.Event,
    ) -> ScheduleResult:
        """Upload every chunk, or abort the whole job on the first terminal failure.

        Args:
            chunks: Ordered chunk list from plan_chunks()
            source_path: Local file the chunks are read from
            tracker: Progress tracker fed one record_chunk() per completion
            cancel_event: Shared cancellation signal; also set here on abort

        Returns:
            ScheduleResult when every chunk was confirmed uploaded

        Raises:
            TerminalTransportError: A chunk exhausted its retry and requeue budget
            UploadCancelledError: cancel_event was set externally
        """
        result = ScheduleResult()
        pending: deque[Chunk] = deque(chunks)
        requeues: dict[int, int] = {}
        in_flight: dict[Future[dict[str, Any]], Chunk] = {}
        failure: TerminalTransportError | None = None
        dispatched = 0
        source = str(source_path)

        with ThreadPoolExecutor(
            max_workers=self.max_concurrent, thread_name_prefix="chunk-upload"
        ) as executor:
            while pending or in_flight:
                while (
                    pending
                    and len(in_flight) < self.max_concurrent
                    and failure is None
                    and not cancel_event.is_set()
                ):
                    if (
                        self.inter_batch_delay > 0
                        and dispatched > 0
                        and dispatched % self.max_concurrent == 0
                        and cancel_event.wait(self.inter_batch_delay)
                    ):
                        break
                    chunk = pending.popleft()
                    future = executor.submit(self._upload_one, chunk, source, cancel_event)
                    in_flight[future] = chunk
                    dispatched += 1

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    chunk = in_flight.pop(future)
                    try:
                        future.result()
                    except UploadCancelledError:
                        continue
                    except TerminalTransportError as e:
                        count = requeues.get(chunk.index, 0)
                        if failure is None and count < self.requeue_limit and not cancel_event.is_set():
                            requeues[chunk.index] = count + 1
                            result.requeued += 1
                            pending.appendleft(chunk)
                            logger.warning(
                                "Requeued chunk %d (%d/%d): %s",
                                chunk.index,
                                count + 1,
                                self.requeue_limit,
                                e,
                            )
                            continue
                        if failure is None:
                            failure = e
                            cancel_event.set()
                        continue
                    except Exception as e:
                        if failure is None:
                            failure = TerminalTransportError(
                                f"Chunk {chunk.index} failed: {e}", chunk.index, 0
                            )
                            failure.__cause__ = e
                            cancel_event.set()
                        continue

                    result.uploaded_chunks.append(chunk.index)
                    result.bytes_uploaded += chunk.size
                    tracker.record_chunk(chunk.size)

                if failure is not None or cancel_event.is_set():
                    # Stop admitting work; let in-flight transfers drain
                    pending.clear()

        if failure is not None:
            raise failure
        if cancel_event.is_set() or len(result.uploaded_chunks) != len(chunks):
            raise UploadCancelledError("Upload cancelled before all chunks were sent")

        result.completed_at = datetime.now(UTC)
        return result
