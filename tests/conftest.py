"""Pytest configuration and fixtures for the media_upload tests."""

from collections.abc import Generator
from pathlib import Path

import boto3
import pytest
from flask import Flask
from flask.testing import FlaskClient
from moto import mock_aws
from mypy_boto3_s3 import S3Client

from app.config import Settings
from app.services import job_store, log_service, upload_manager
from app.services.job_store import JobStore

BUCKET = "test-bucket"
REGION = "us-west-2"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Point settings, database and logs at a per-test directory.

    Resets every module-level singleton so no state leaks between tests.
    """
    monkeypatch.setattr("app.config.SETTINGS_FILE", tmp_path / "settings.json")
    monkeypatch.setattr("app.config.SETTINGS_DEFAULT_FILE", tmp_path / "settings.default.json")
    monkeypatch.setenv("MEDIA_UPLOAD_S3_BUCKET", BUCKET)
    monkeypatch.setenv("MEDIA_UPLOAD_AWS_REGION", REGION)
    monkeypatch.setenv("MEDIA_UPLOAD_DATABASE_PATH", str(tmp_path / "media_upload.db"))
    monkeypatch.setenv("MEDIA_UPLOAD_LOG_DIRECTORY", str(tmp_path / "logs"))
    monkeypatch.setenv("MEDIA_UPLOAD_RETRY_DELAYS", "0,0")

    # Fake credentials so nothing can reach a real account
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)

    monkeypatch.setattr(Settings, "_instance", None)
    monkeypatch.setattr(job_store, "_job_store", None)
    monkeypatch.setattr(log_service, "_log_service", None)
    monkeypatch.setattr(upload_manager, "_upload_manager", None)

    yield tmp_path


@pytest.fixture
def s3_client() -> Generator[S3Client, None, None]:
    """Mocked S3 client with an empty test bucket."""
    with mock_aws():
        client: S3Client = boto3.client("s3", region_name=REGION)
        client.create_bucket(
            Bucket=BUCKET,
            CreateBucketConfiguration={"LocationConstraint": REGION},
        )
        yield client


@pytest.fixture
def store(tmp_path: Path) -> Generator[JobStore, None, None]:
    """Job store backed by a temporary SQLite file."""
    s = JobStore(tmp_path / "jobs.db")
    yield s
    s.close()


@pytest.fixture
def make_file(tmp_path: Path):  # type: ignore[no-untyped-def]
    """Factory writing a file of deterministic, non-repeating bytes."""

    def _make(size: int, name: str = "clip.mp4") -> Path:
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(bytes(i % 251 for i in range(size)))
        return path

    return _make


@pytest.fixture
def app() -> Generator[Flask, None, None]:
    """Create application for testing."""
    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
