"""Tests for the chunk transport retry policy."""

import threading
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError
from mypy_boto3_s3 import S3Client

from app.services.chunk_planner import Chunk, plan_chunks
from app.services.chunk_transport import ChunkTransport, is_transient
from app.services.errors import TerminalTransportError, UploadCancelledError

BUCKET = "test-bucket"
CHUNK = Chunk(index=0, start=0, end=4, path="chunks/u/1/chunk_0")
PAYLOAD = b"data"


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "PutObject",
    )


def _ok() -> dict[str, Any]:
    return {"ETag": '"8d777f385d3dfec8815d20f7496026dc"'}


class TestIsTransient:
    """Tests for is_transient classification."""

    @pytest.mark.parametrize(
        "error",
        [
            _client_error("InternalError", 500),
            _client_error("ServiceUnavailable", 503),
            _client_error("SlowDown", 503),
            _client_error("BadDigest", 400),
            _client_error("RequestTimeout", 400),
            EndpointConnectionError(endpoint_url="https://s3.example"),
            ReadTimeoutError(endpoint_url="https://s3.example"),
        ],
    )
    def test_retryable(self, error: Exception) -> None:
        assert is_transient(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            _client_error("AccessDenied", 403),
            _client_error("NoSuchBucket", 404),
            ValueError("boom"),
        ],
    )
    def test_not_retryable(self, error: Exception) -> None:
        assert is_transient(error) is False


class TestChunkTransportSend:
    """Tests for ChunkTransport.send with a mocked client."""

    def test_first_attempt_success(self) -> None:
        client = MagicMock()
        client.put_object.return_value = _ok()
        transport = ChunkTransport(client, BUCKET, retry_delays=[0, 0])

        result = transport.send(CHUNK, PAYLOAD)

        assert result["success"] is True
        assert result["attempts"] == 1
        assert result["chunk_index"] == 0
        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Key"] == CHUNK.path
        assert kwargs["Body"] == PAYLOAD
        assert "ContentMD5" in kwargs

    def test_transient_errors_are_retried(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = [
            _client_error("InternalError", 500),
            EndpointConnectionError(endpoint_url="https://s3.example"),
            _ok(),
        ]
        transport = ChunkTransport(client, BUCKET, retry_delays=[0, 0, 0])

        result = transport.send(CHUNK, PAYLOAD)

        assert result["attempts"] == 3
        assert client.put_object.call_count == 3

    def test_retries_exhausted_raises_terminal(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = _client_error("ServiceUnavailable", 503)
        transport = ChunkTransport(client, BUCKET, retry_delays=[0, 0, 0])

        with pytest.raises(TerminalTransportError) as exc_info:
            transport.send(CHUNK, PAYLOAD)

        assert exc_info.value.attempts == 4
        assert exc_info.value.chunk_index == 0
        assert client.put_object.call_count == 4

    def test_non_transient_error_fails_immediately(self) -> None:
        client = MagicMock()
        client.put_object.side_effect = _client_error("AccessDenied", 403)
        transport = ChunkTransport(client, BUCKET, retry_delays=[0, 0, 0])

        with pytest.raises(TerminalTransportError) as exc_info:
            transport.send(CHUNK, PAYLOAD)

        assert exc_info.value.attempts == 1
        assert client.put_object.call_count == 1

    @patch("app.services.chunk_transport.time.sleep")
    def test_backoff_follows_retry_delays(self, mock_sleep: MagicMock) -> None:
        client = MagicMock()
        client.put_object.side_effect = [
            _client_error("SlowDown", 503),
            _client_error("SlowDown", 503),
            _ok(),
        ]
        transport = ChunkTransport(client, BUCKET, retry_delays=[1, 2, 4, 8])

        transport.send(CHUNK, PAYLOAD)

        assert [c.args[0] for c in mock_sleep.call_args_list] == [1, 2]

    def test_cancelled_before_start(self) -> None:
        client = MagicMock()
        cancel = threading.Event()
        cancel.set()
        transport = ChunkTransport(client, BUCKET)

        with pytest.raises(UploadCancelledError):
            transport.send(CHUNK, PAYLOAD, cancel)

        client.put_object.assert_not_called()

    def test_cancel_interrupts_backoff(self) -> None:
        cancel = threading.Event()
        client = MagicMock()

        def fail_and_cancel(**_: Any) -> None:
            cancel.set()
            raise _client_error("InternalError", 500)

        client.put_object.side_effect = fail_and_cancel
        # A long delay proves the wait is interrupted rather than slept through
        transport = ChunkTransport(client, BUCKET, retry_delays=[60])

        with pytest.raises(UploadCancelledError):
            transport.send(CHUNK, PAYLOAD, cancel)

        assert client.put_object.call_count == 1

    def test_payload_size_mismatch(self) -> None:
        transport = ChunkTransport(MagicMock(), BUCKET)
        with pytest.raises(ValueError):
            transport.send(CHUNK, b"too long")


class TestChunkTransportWithS3:
    """Tests against a moto bucket."""

    def test_chunk_lands_at_its_path(self, s3_client: S3Client) -> None:
        chunk = plan_chunks(4, 4, "owner/abc")[0]
        transport = ChunkTransport(s3_client, BUCKET, retry_delays=[0])

        transport.send(chunk, PAYLOAD)

        body = s3_client.get_object(Bucket=BUCKET, Key=chunk.path)["Body"].read()
        assert body == PAYLOAD

    def test_resend_is_idempotent(self, s3_client: S3Client) -> None:
        chunk = plan_chunks(4, 4, "owner/abc")[0]
        transport = ChunkTransport(s3_client, BUCKET, retry_delays=[0])

        first = transport.send(chunk, PAYLOAD)
        second = transport.send(chunk, PAYLOAD)

        listed = s3_client.list_objects_v2(Bucket=BUCKET, Prefix="chunks/")
        assert listed["KeyCount"] == 1
        assert first["etag"] == second["etag"]
        body = s3_client.get_object(Bucket=BUCKET, Key=chunk.path)["Body"].read()
        assert body == PAYLOAD

    def test_missing_bucket_is_terminal(self, s3_client: S3Client) -> None:
        transport = ChunkTransport(s3_client, "no-such-bucket", retry_delays=[0, 0])

        with pytest.raises(TerminalTransportError) as exc_info:
            transport.send(CHUNK, PAYLOAD)

        assert exc_info.value.attempts == 1
