"""Chunk transport: PUT one chunk with a timeout and bounded backoff retry."""

import logging
import threading
import time
from collections.abc import Sequence
from typing import Any

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from botocore.exceptions import ConnectionError as BotoConnectionError
from mypy_boto3_s3 import S3Client

from app.services import s3_service
from app.services.chunk_planner import Chunk
from app.services.errors import (
    TerminalTransportError,
    TransientTransportError,
    UploadCancelledError,
)
from app.services.log_service import get_log_service

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0)

# S3 error codes worth retrying
TRANSIENT_ERROR_CODES = frozenset(
    {
        "BadDigest",
        "InternalError",
        "InvalidDigest",
        "RequestTimeout",
        "RequestTimeoutException",
        "ServiceUnavailable",
        "SlowDown",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
    }
)

TRANSIENT_CONNECTION_ERRORS = (
    BotoConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def is_transient(error: Exception) -> bool:
    """Whether a failed PUT should be retried."""
    if isinstance(error, TRANSIENT_CONNECTION_ERRORS):
        return True
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
        return code in TRANSIENT_ERROR_CODES or int(status) >= 500 or code.startswith("5")
    return False


class ChunkTransport:
    """Uploads single chunks to S3, retrying transient failures.

    The client should be built with create_s3_client(timeout=...) so every
    attempt is bounded by the per-request timeout; botocore's own retries are
    off there, so this class is the only retry layer.
    """

    def __init__(
        self,
        client: S3Client,
        bucket: str,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        max_attempts: int | None = None,
        content_type: str = "application/octet-stream",
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.retry_delays = list(retry_delays)
        self.max_attempts = max_attempts or len(self.retry_delays) + 1
        self.content_type = content_type

    def _attempt(self, chunk: Chunk, payload: bytes) -> dict[str, Any]:
        try:
            return s3_service.put_object(
                self.client, self.bucket, chunk.path, payload, self.content_type
            )
        except Exception as e:
            if is_transient(e):
                raise TransientTransportError(str(e), chunk.index) from e
            raise

    def send(
        self,
        chunk: Chunk,
        payload: bytes,
        cancel_event: threading.Event | None = None,
    ) -> dict[str, Any]:
        """Upload one chunk to chunk.path.

        Args:
            chunk: The chunk being sent (its path is the destination key)
            payload: Exactly the chunk's bytes
            cancel_event: When set, no further attempts or backoff waits happen

        Returns:
            Result dict from s3_service.put_object() plus the attempt count

        Raises:
            TerminalTransportError: Retries exhausted or a non-retryable error
            UploadCancelledError: cancel_event was set before the chunk landed
        """
        if len(payload) != chunk.size:
            raise ValueError(
                f"Payload for chunk {chunk.index} is {len(payload)} bytes, expected {chunk.size}"
            )

        log = get_log_service()
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise UploadCancelledError(f"Upload of chunk {chunk.index} cancelled")

            attempt += 1
            try:
                result = self._attempt(chunk, payload)
            except TransientTransportError as e:
                if attempt >= self.max_attempts:
                    log.error(
                        "transport",
                        "chunk_retries_exhausted",
                        f"Chunk {chunk.index} failed after {attempt} attempts: {e}",
                        {"chunk_index": chunk.index, "key": chunk.path, "attempts": attempt},
                    )
                    raise TerminalTransportError(
                        f"Chunk {chunk.index} failed after {attempt} attempts: {e}",
                        chunk.index,
                        attempt,
                    ) from e

                delay = (
                    self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]
                    if self.retry_delays
                    else 0.0
                )
                logger.info(
                    "Retrying chunk %d in %.1fs (attempt %d/%d): %s",
                    chunk.index,
                    delay,
                    attempt + 1,
                    self.max_attempts,
                    e,
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise UploadCancelledError(
                            f"Upload of chunk {chunk.index} cancelled"
                        ) from e
                else:
                    time.sleep(delay)
                continue
            except Exception as e:
                log.error(
                    "transport",
                    "chunk_upload_rejected",
                    f"Chunk {chunk.index} rejected: {e}",
                    {"chunk_index": chunk.index, "key": chunk.path, "error": str(e)},
                )
                raise TerminalTransportError(
                    f"Chunk {chunk.index} rejected: {e}", chunk.index, attempt
                ) from e

            result["attempts"] = attempt
            result["chunk_index"] = chunk.index
            return result
