"""Tests for the JSONL log service."""

import json
import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from app.services.log_service import LogService, get_log_service


@pytest.fixture
def log_service() -> LogService:
    """Fresh log service writing under the per-test log directory."""
    return LogService()


@pytest.fixture
def log_dir(isolated_settings: Path) -> Path:
    return isolated_settings / "logs"


def _find_event_files(log_dir: Path) -> list[Path]:
    """Find all events.jsonl files under the hive-partitioned json/ directory."""
    json_dir = log_dir / "json"
    if not json_dir.exists():
        return []
    return list(json_dir.rglob("events.jsonl"))


class TestLogServiceWrite:
    """Tests for writing log entries."""

    def test_log_creates_file(self, log_service: LogService, log_dir: Path) -> None:
        """Test that log() creates a JSONL file in hive-partitioned structure."""
        log_service.log("INFO", "app", "app_started", "Started")

        files = _find_event_files(log_dir)
        assert len(files) == 1
        assert "year=" in str(files[0])

    def test_log_entry_format(self, log_service: LogService, log_dir: Path) -> None:
        """Test that log entries have the correct JSON schema."""
        log_service.log(
            "INFO", "upload", "upload_started", "Uploading clip.mp4", {"job_id": "j1"}
        )

        entry = json.loads(_find_event_files(log_dir)[0].read_text().strip())

        assert "timestamp" in entry
        assert entry["level"] == "INFO"
        assert entry["category"] == "upload"
        assert entry["event"] == "upload_started"
        assert entry["message"] == "Uploading clip.mp4"
        assert entry["metadata"] == {"job_id": "j1"}

    @pytest.mark.parametrize("method,level", [("info", "INFO"), ("warning", "WARNING"), ("error", "ERROR")])
    def test_level_helpers(
        self, log_service: LogService, log_dir: Path, method: str, level: str
    ) -> None:
        getattr(log_service, method)("app", "evt", "msg")

        entry = json.loads(_find_event_files(log_dir)[0].read_text().strip())
        assert entry["level"] == level

    def test_no_metadata_omits_field(self, log_service: LogService, log_dir: Path) -> None:
        log_service.info("app", "evt", "msg")

        entry = json.loads(_find_event_files(log_dir)[0].read_text().strip())
        assert "metadata" not in entry

    def test_concurrent_appends_are_whole_lines(
        self, log_service: LogService, log_dir: Path
    ) -> None:
        def worker(n: int) -> None:
            for i in range(25):
                log_service.info("transport", "chunk_uploaded", f"{n}-{i}", {"pad": "x" * 200})

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        lines = _find_event_files(log_dir)[0].read_text().splitlines()
        assert len(lines) == 100
        assert all(json.loads(line)["event"] == "chunk_uploaded" for line in lines)

    def test_save_job_summary(self, log_service: LogService) -> None:
        path = log_service.save_job_summary("job-1", {"job_id": "job-1", "status": "processing"})

        assert path.name == "job-1.jsonl"
        assert json.loads(path.read_text())["status"] == "processing"


class TestLogServiceRead:
    """Tests for reading log entries."""

    def test_read_entries_newest_first(self, log_service: LogService) -> None:
        log_service.info("app", "first", "1")
        log_service.info("app", "second", "2")

        result = log_service.read_log_entries()

        assert result["total"] == 2
        assert [e["event"] for e in result["entries"]] == ["second", "first"]

    def test_filter_by_level(self, log_service: LogService) -> None:
        log_service.info("app", "a", "a")
        log_service.error("app", "b", "b")

        result = log_service.read_log_entries(level="error")

        assert [e["event"] for e in result["entries"]] == ["b"]

    def test_filter_by_category(self, log_service: LogService) -> None:
        log_service.info("upload", "a", "a")
        log_service.info("reassembly", "b", "b")

        result = log_service.read_log_entries(category="reassembly")

        assert [e["event"] for e in result["entries"]] == ["b"]

    def test_filter_by_job_id(self, log_service: LogService) -> None:
        log_service.info("upload", "a", "a", {"job_id": "j1"})
        log_service.info("upload", "b", "b", {"job_id": "j2"})
        log_service.info("app", "c", "c")

        result = log_service.read_log_entries(job_id="j2")

        assert [e["event"] for e in result["entries"]] == ["b"]

    def test_pagination(self, log_service: LogService) -> None:
        for i in range(5):
            log_service.info("app", f"e{i}", "m")

        result = log_service.read_log_entries(offset=1, limit=2)

        assert result["total"] == 5
        assert [e["event"] for e in result["entries"]] == ["e3", "e2"]

    def test_date_filter(self, log_service: LogService) -> None:
        log_service.info("app", "today", "m")
        today = datetime.now(UTC).strftime("%Y-%m-%d")

        assert log_service.read_log_entries(date=today)["total"] == 1
        assert log_service.read_log_entries(date="2001-01-01")["total"] == 0

    def test_invalid_date(self, log_service: LogService) -> None:
        log_service.info("app", "today", "m")

        assert log_service.read_log_entries(date="not-a-date")["entries"] == []

    def test_skips_corrupt_lines(self, log_service: LogService, log_dir: Path) -> None:
        log_service.info("app", "good", "m")
        with open(_find_event_files(log_dir)[0], "a", encoding="utf-8") as f:
            f.write("{not json\n\n")

        assert log_service.read_log_entries()["total"] == 1


class TestLogServiceStats:
    """Tests for aggregated statistics."""

    def test_get_stats(self, log_service: LogService) -> None:
        log_service.info("upload", "a", "a")
        log_service.error("upload", "b", "b")
        log_service.warning("reassembly", "c", "c")

        stats = log_service.get_log_stats()

        assert stats["total_entries"] == 3
        assert stats["level_counts"] == {"INFO": 1, "ERROR": 1, "WARNING": 1}
        assert stats["category_counts"] == {"upload": 2, "reassembly": 1}
        assert stats["file_count"] == 1
        today = datetime.now(UTC).strftime("%Y-%m-%d")
        assert stats["date_range"] == {"earliest": today, "latest": today}

    def test_empty_stats(self, log_service: LogService) -> None:
        stats = log_service.get_log_stats()

        assert stats["total_entries"] == 0
        assert stats["date_range"]["earliest"] is None


class TestHivePartitioning:
    """Tests for the year=/month=/day= layout."""

    def test_extract_date_from_hive_path(self) -> None:
        path = Path("/logs/json/year=2026/month=03/day=07/events.jsonl")
        assert LogService._date_from_path(path) == "2026-03-07"

    def test_extract_date_from_non_hive_path(self) -> None:
        assert LogService._date_from_path(Path("/logs/events.jsonl")) is None

    def test_singleton(self) -> None:
        assert get_log_service() is get_log_service()
