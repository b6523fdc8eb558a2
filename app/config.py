"""Configuration management for media_upload"""

import json
import os
import tomllib
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Base directory for the project
BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
ENV_FILE = BASE_DIR / ".env"
load_dotenv(ENV_FILE)

# Settings file paths
SETTINGS_FILE = BASE_DIR / "settings.json"
SETTINGS_DEFAULT_FILE = BASE_DIR / "settings.default.json"
PYPROJECT_FILE = BASE_DIR / "pyproject.toml"

# Environment variables are MEDIA_UPLOAD_<KEY> for every key in DEFAULT_SETTINGS
ENV_PREFIX = "MEDIA_UPLOAD_"

MB = 1024 * 1024
GB = 1024 * MB

DEFAULT_SETTINGS: dict[str, Any] = {
    "aws_profile": "default",
    "aws_region": "us-west-2",
    "s3_bucket": "",
    "chunk_prefix": "chunks",
    "media_prefix": "media",
    "chunk_size": 50 * MB,
    "max_concurrent_uploads": 3,
    "retry_delays": [1.0, 2.0, 4.0, 8.0],
    "upload_timeout": 300.0,
    "max_file_size": 5 * GB,
    "inter_batch_delay": 0.0,
    "chunk_requeue_limit": 1,
    "session_retention_seconds": 300,
    "reassembly_max_attempts": 3,
    "reassembly_lease_seconds": 900,
    "reassembler_workers": 2,
    "reassembler_enabled": False,
    "reassembler_poll_interval": 5.0,
    "database_path": str(BASE_DIR / "media_upload.db"),
    "log_directory": str(BASE_DIR / "logs"),
    "work_directory": "",
}


def get_package_version() -> str:
    """Get the package version from pyproject.toml."""
    try:
        with open(PYPROJECT_FILE, "rb") as f:
            pyproject = tomllib.load(f)
        return str(pyproject.get("project", {}).get("version", "0.0.0"))
    except Exception:
        return "0.0.0"


def _coerce(raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the default value."""
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [float(part) for part in raw.split(",") if part.strip()]
    return raw


class Settings:
    """Manages application settings stored in JSON format."""

    _instance: "Settings | None" = None
    _settings: dict[str, Any]

    def __new__(cls) -> "Settings":
        """Singleton pattern to ensure only one settings instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._load_settings()
        return cls._instance

    def _load_settings(self) -> None:
        """Load settings from file, with environment variables taking precedence.

        Priority order (highest to lowest):
        1. Environment variables (from .env file or system)
        2. settings.json (user-saved settings)
        3. settings.default.json (template defaults)
        4. Hardcoded defaults
        """
        settings = dict(DEFAULT_SETTINGS)

        if SETTINGS_DEFAULT_FILE.exists():
            with open(SETTINGS_DEFAULT_FILE, encoding="utf-8") as f:
                settings.update(json.load(f))

        if SETTINGS_FILE.exists():
            with open(SETTINGS_FILE, encoding="utf-8") as f:
                settings.update(json.load(f))

        for key, default in DEFAULT_SETTINGS.items():
            raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
            if raw is not None:
                settings[key] = _coerce(raw, default)

        self._settings = settings

        if not SETTINGS_FILE.exists():
            self._save_settings()

    def _save_settings(self) -> None:
        """Save current settings to file."""
        with open(SETTINGS_FILE, "w", encoding="utf-8") as f:
            json.dump(self._settings, f, indent=4)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a setting value by key."""
        return self._settings.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a setting value and save to file."""
        self._settings[key] = value
        self._save_settings()

    def update(self, data: dict[str, Any]) -> None:
        """Update multiple settings at once."""
        self._settings.update(data)
        self._save_settings()

    def all(self) -> dict[str, Any]:
        """Get all settings as a dictionary."""
        return self._settings.copy()

    def reload(self) -> None:
        """Reload settings from file."""
        self._load_settings()

    @property
    def aws_profile(self) -> str:
        return str(self._settings.get("aws_profile", "default"))

    @property
    def aws_region(self) -> str:
        return str(self._settings.get("aws_region", "us-west-2"))

    @property
    def s3_bucket(self) -> str:
        return str(self._settings.get("s3_bucket", ""))

    @property
    def chunk_prefix(self) -> str:
        return str(self._settings.get("chunk_prefix", "chunks"))

    @property
    def media_prefix(self) -> str:
        return str(self._settings.get("media_prefix", "media"))

    @property
    def chunk_size(self) -> int:
        """Chunk size in bytes (CHUNK_SIZE)."""
        return int(self._settings.get("chunk_size", DEFAULT_SETTINGS["chunk_size"]))

    @property
    def max_concurrent_uploads(self) -> int:
        """Worker pool size for chunk transfers (MAX_CONCURRENT_UPLOADS)."""
        return int(self._settings.get("max_concurrent_uploads", 3))

    @property
    def retry_delays(self) -> list[float]:
        """Backoff schedule in seconds between chunk PUT attempts (RETRY_DELAYS)."""
        delays = self._settings.get("retry_delays", DEFAULT_SETTINGS["retry_delays"])
        return [float(d) for d in delays]

    @property
    def upload_timeout(self) -> float:
        """Per-chunk request timeout in seconds (UPLOAD_TIMEOUT)."""
        return float(self._settings.get("upload_timeout", 300.0))

    @property
    def max_file_size(self) -> int:
        """Largest accepted source file in bytes (MAX_FILE_SIZE)."""
        return int(self._settings.get("max_file_size", DEFAULT_SETTINGS["max_file_size"]))

    @property
    def inter_batch_delay(self) -> float:
        return float(self._settings.get("inter_batch_delay", 0.0))

    @property
    def chunk_requeue_limit(self) -> int:
        return int(self._settings.get("chunk_requeue_limit", 1))

    @property
    def session_retention_seconds(self) -> float:
        """How long a finished upload session stays in memory (SESSION_RETENTION_SECONDS)."""
        return float(self._settings.get("session_retention_seconds", 300))

    @property
    def reassembly_max_attempts(self) -> int:
        return int(self._settings.get("reassembly_max_attempts", 3))

    @property
    def reassembly_lease_seconds(self) -> int:
        return int(self._settings.get("reassembly_lease_seconds", 900))

    @property
    def reassembler_workers(self) -> int:
        return int(self._settings.get("reassembler_workers", 2))

    @property
    def reassembler_enabled(self) -> bool:
        return bool(self._settings.get("reassembler_enabled", False))

    @property
    def reassembler_poll_interval(self) -> float:
        return float(self._settings.get("reassembler_poll_interval", 5.0))

    @property
    def database_path(self) -> Path:
        """Path of the SQLite job/queue database."""
        return Path(str(self._settings.get("database_path", DEFAULT_SETTINGS["database_path"])))

    @property
    def log_directory(self) -> Path:
        """Directory for JSONL event logs."""
        return Path(str(self._settings.get("log_directory", DEFAULT_SETTINGS["log_directory"])))

    @property
    def work_directory(self) -> str | None:
        """Scratch directory for reassembly temp files (None = system temp)."""
        value = str(self._settings.get("work_directory", "") or "")
        return value or None


def get_settings() -> Settings:
    """Get the singleton Settings instance."""
    return Settings()
