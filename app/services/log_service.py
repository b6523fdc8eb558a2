"""JSONL event log for upload and reassembly activity.

Events are appended one JSON object per line to hive-partitioned daily files:
logs/json/year=YYYY/month=MM/day=DD/events.jsonl
Per-job summaries are written beside them as <job_id>.jsonl.
"""

import json
import logging
import re
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from app.config import get_settings

logger = logging.getLogger(__name__)

_LEVELS = {
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class LogService:
    """JSONL event log with thread-safe appends."""

    def __init__(self) -> None:
        self._write_lock = threading.Lock()

    def _get_log_dir(self) -> Path:
        """Get the configured log directory, creating it if needed."""
        log_dir = get_settings().log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir

    def _get_day_dir(self, dt: datetime) -> Path:
        """Return (and create) logs/json/year=YYYY/month=MM/day=DD for dt."""
        day_dir = (
            self._get_log_dir()
            / "json"
            / f"year={dt.year:04d}"
            / f"month={dt.month:02d}"
            / f"day={dt.day:02d}"
        )
        day_dir.mkdir(parents=True, exist_ok=True)
        return day_dir

    @staticmethod
    def _date_from_path(path: Path) -> str | None:
        """Extract YYYY-MM-DD from a hive-partitioned path."""
        match = re.search(r"year=(\d{4})/month=(\d{2})/day=(\d{2})", path.as_posix())
        if match:
            return f"{match.group(1)}-{match.group(2)}-{match.group(3)}"
        return None

    def log(
        self,
        level: str,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an event to today's events.jsonl and mirror it to stdlib logging.

        Args:
            level: INFO, WARNING or ERROR
            category: app, upload, transport, reassembly or settings
            event: Machine-readable event name (snake_case)
            message: Human-readable message
            metadata: Optional additional data
        """
        level = level.upper()
        now = datetime.now(UTC)
        entry: dict[str, Any] = {
            "timestamp": now.isoformat(),
            "level": level,
            "category": category,
            "event": event,
            "message": message,
        }
        if metadata:
            entry["metadata"] = metadata

        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s: %s", category, event, message)

        line = json.dumps(entry, default=str)
        with self._write_lock:
            log_file = self._get_day_dir(now) / "events.jsonl"
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def info(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("INFO", category, event, message, metadata)

    def warning(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("WARNING", category, event, message, metadata)

    def error(
        self,
        category: str,
        event: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.log("ERROR", category, event, message, metadata)

    def save_job_summary(self, job_id: str, summary: dict[str, Any]) -> Path:
        """Write a one-line JSONL summary for a finished upload job.

        Returns:
            Path to the written file
        """
        out_path = self._get_day_dir(datetime.now(UTC)) / f"{job_id}.jsonl"
        line = json.dumps(summary, default=str)
        with self._write_lock:
            with open(out_path, "w", encoding="utf-8") as f:
                f.write(line + "\n")
        return out_path

    def _event_files(self, date: str | None) -> list[Path]:
        json_dir = self._get_log_dir() / "json"
        if date:
            try:
                dt = datetime.strptime(date, "%Y-%m-%d")
            except ValueError:
                return []
            path = (
                json_dir
                / f"year={dt.year:04d}"
                / f"month={dt.month:02d}"
                / f"day={dt.day:02d}"
                / "events.jsonl"
            )
            return [path] if path.exists() else []
        if not json_dir.exists():
            return []
        return sorted(json_dir.rglob("events.jsonl"), reverse=True)

    @staticmethod
    def _iter_entries(log_file: Path) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        try:
            with open(log_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entries.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue
        except OSError:
            logger.warning("Could not read log file %s", log_file, exc_info=True)
        return entries

    def read_log_entries(
        self,
        date: str | None = None,
        level: str | None = None,
        category: str | None = None,
        job_id: str | None = None,
        offset: int = 0,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Read and filter log entries, newest first, with pagination.

        Args:
            date: Filter by date (YYYY-MM-DD). None = all dates.
            level: Filter by level (INFO/WARNING/ERROR)
            category: Filter by category
            job_id: Only entries whose metadata carries this job_id
            offset: Number of entries to skip
            limit: Maximum entries to return

        Returns:
            Dict with entries, total count, offset, limit
        """
        matches: list[dict[str, Any]] = []
        for log_file in self._event_files(date):
            # Newest line first so equal timestamps keep append order after the sort
            for entry in reversed(self._iter_entries(log_file)):
                if level and entry.get("level", "").upper() != level.upper():
                    continue
                if category and entry.get("category") != category:
                    continue
                if job_id and entry.get("metadata", {}).get("job_id") != job_id:
                    continue
                matches.append(entry)

        matches.sort(key=lambda e: e.get("timestamp", ""), reverse=True)

        return {
            "entries": matches[offset : offset + limit],
            "total": len(matches),
            "offset": offset,
            "limit": limit,
        }

    def get_log_stats(self) -> dict[str, Any]:
        """Aggregate counts by level and category across all event files."""
        level_counts: dict[str, int] = {}
        category_counts: dict[str, int] = {}
        dates: list[str] = []
        total = 0

        files = self._event_files(None)
        for log_file in files:
            date_str = self._date_from_path(log_file)
            if date_str:
                dates.append(date_str)
            for entry in self._iter_entries(log_file):
                total += 1
                lvl = entry.get("level", "UNKNOWN")
                level_counts[lvl] = level_counts.get(lvl, 0) + 1
                cat = entry.get("category", "unknown")
                category_counts[cat] = category_counts.get(cat, 0) + 1

        dates.sort()
        return {
            "total_entries": total,
            "level_counts": level_counts,
            "category_counts": category_counts,
            "date_range": {
                "earliest": dates[0] if dates else None,
                "latest": dates[-1] if dates else None,
            },
            "file_count": len(files),
        }


# Module-level singleton accessor
_log_service: LogService | None = None


def get_log_service() -> LogService:
    """Get the singleton LogService instance."""
    global _log_service
    if _log_service is None:
        _log_service = LogService()
    return _log_service
