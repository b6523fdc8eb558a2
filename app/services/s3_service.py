"""S3 service: the object storage backend for chunks and published artifacts."""

import base64
import hashlib
from pathlib import Path
from typing import Any, BinaryIO

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from mypy_boto3_s3 import S3Client

DEFAULT_READ_SIZE = 8 * 1024 * 1024  # 8 MB per streamed read
DELETE_BATCH_SIZE = 1000  # S3 DeleteObjects limit


def create_s3_client(
    profile: str,
    region: str = "us-west-2",
    timeout: float | None = None,
) -> S3Client:
    """Create an S3 client using the specified AWS profile.

    Botocore's own retries are disabled; callers that need retries
    (ChunkTransport) apply their own backoff schedule.

    Args:
        profile: AWS profile name from ~/.aws/credentials or ~/.aws/config
        region: AWS region (default: us-west-2)
        timeout: Per-request connect/read timeout in seconds

    Returns:
        Configured S3 client

    Raises:
        NoCredentialsError: If credentials are not found
    """
    config_kwargs: dict[str, Any] = {"retries": {"total_max_attempts": 1, "mode": "standard"}}
    if timeout is not None:
        config_kwargs["connect_timeout"] = timeout
        config_kwargs["read_timeout"] = timeout

    session = boto3.Session(profile_name=profile, region_name=region)
    client: S3Client = session.client("s3", config=Config(**config_kwargs))
    return client


def content_md5(data: bytes) -> str:
    """Base64-encoded MD5 digest, as expected by the Content-MD5 header."""
    return base64.b64encode(hashlib.md5(data).digest()).decode("ascii")


def get_object_size(client: S3Client, bucket: str, key: str) -> int | None:
    """Look up the stored size of an object.

    Args:
        client: S3 client
        bucket: S3 bucket name
        key: S3 object key

    Returns:
        ContentLength in bytes, or None if the object does not exist
    """
    try:
        response = client.head_object(Bucket=bucket, Key=key)
    except ClientError as e:
        if e.response["Error"]["Code"] in ("404", "NoSuchKey", "NotFound"):
            return None
        raise
    return int(response["ContentLength"])


def put_object(
    client: S3Client,
    bucket: str,
    key: str,
    body: bytes,
    content_type: str = "application/octet-stream",
    verify_md5: bool = True,
) -> dict[str, Any]:
    """Write an object, overwriting whatever is stored at the key.

    Overwrite semantics make repeated PUTs of the same bytes idempotent.

    Raises:
        ClientError: On S3 errors (including BadDigest on a corrupted body)
        BotoCoreError: On connection errors and timeouts
    """
    kwargs: dict[str, Any] = {
        "Bucket": bucket,
        "Key": key,
        "Body": body,
        "ContentType": content_type,
    }
    if verify_md5:
        kwargs["ContentMD5"] = content_md5(body)

    response = client.put_object(**kwargs)
    return {
        "success": True,
        "bucket": bucket,
        "key": key,
        "size": len(body),
        "etag": response.get("ETag", "").strip('"'),
        "error": None,
    }


def download_to_stream(
    client: S3Client,
    bucket: str,
    key: str,
    stream: BinaryIO,
    read_size: int = DEFAULT_READ_SIZE,
) -> int:
    """Stream an object's body into an open binary file.

    Memory use is bounded by read_size regardless of object size.

    Returns:
        Number of bytes written

    Raises:
        ClientError: If the object is missing or unreadable
        BotoCoreError: On connection errors and timeouts
    """
    response = client.get_object(Bucket=bucket, Key=key)
    body = response["Body"]
    written = 0
    try:
        for block in body.iter_chunks(chunk_size=read_size):
            stream.write(block)
            written += len(block)
    finally:
        body.close()
    return written


def upload_file(
    client: S3Client,
    path: str,
    bucket: str,
    key: str,
    content_type: str = "application/octet-stream",
) -> dict[str, Any]:
    """Upload a local file with the managed (multipart-capable) transfer.

    Returns:
        Dictionary with upload result information
    """
    file_size = Path(path).stat().st_size
    try:
        client.upload_file(
            Filename=str(path),
            Bucket=bucket,
            Key=key,
            ExtraArgs={"ContentType": content_type},
        )
        return {
            "success": True,
            "bucket": bucket,
            "key": key,
            "size": file_size,
            "error": None,
        }
    except (ClientError, BotoCoreError, S3UploadFailedError) as e:
        return {
            "success": False,
            "bucket": bucket,
            "key": key,
            "size": file_size,
            "error": str(e),
        }


def move_object(client: S3Client, bucket: str, src: str, dst: str) -> dict[str, Any]:
    """Move an object within a bucket (server-side copy, then delete the source).

    The destination key only becomes visible once the copy has completed,
    so readers never observe a partially written object at dst.

    Returns:
        Dictionary with move result information
    """
    try:
        client.copy({"Bucket": bucket, "Key": src}, bucket, dst)
        client.delete_object(Bucket=bucket, Key=src)
        return {"success": True, "bucket": bucket, "src": src, "dst": dst, "error": None}
    except (ClientError, BotoCoreError) as e:
        return {"success": False, "bucket": bucket, "src": src, "dst": dst, "error": str(e)}


def delete_objects(client: S3Client, bucket: str, keys: list[str]) -> dict[str, Any]:
    """Delete objects in batches of up to 1000 keys.

    Returns:
        Dictionary with deleted keys and per-key errors
    """
    deleted: list[str] = []
    errors: list[str] = []

    for i in range(0, len(keys), DELETE_BATCH_SIZE):
        batch = keys[i : i + DELETE_BATCH_SIZE]
        try:
            response = client.delete_objects(
                Bucket=bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": False},
            )
        except ClientError as e:
            errors.extend(f"{k}: {e}" for k in batch)
            continue

        deleted.extend(d.get("Key", "") for d in response.get("Deleted", []))
        for err in response.get("Errors", []):
            errors.append(f"{err.get('Key', '')}: {err.get('Message', err.get('Code', ''))}")

    return {
        "success": len(errors) == 0,
        "bucket": bucket,
        "deleted": deleted,
        "errors": errors,
    }


def validate_bucket_access(client: S3Client, bucket: str) -> dict[str, Any]:
    """Validate that we can access the specified S3 bucket.

    Args:
        client: S3 client
        bucket: S3 bucket name

    Returns:
        Dictionary with validation result
    """
    try:
        client.head_bucket(Bucket=bucket)
        return {
            "success": True,
            "bucket": bucket,
            "error": None,
        }
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code == "404":
            error_msg = f"Bucket '{bucket}' does not exist"
        elif error_code == "403":
            error_msg = f"Access denied to bucket '{bucket}'"
        else:
            error_msg = str(e)
        return {
            "success": False,
            "bucket": bucket,
            "error": error_msg,
        }
    except NoCredentialsError:
        return {
            "success": False,
            "bucket": bucket,
            "error": "AWS credentials not found",
        }
