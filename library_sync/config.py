from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _default_data_dir() -> Path:
    return Path(
        os.getenv("LIBRARY_SYNC_DATA", Path.home() / ".local" / "share" / "soundcloud-library-sync")
    ).expanduser()


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class AppConfig:
    """Static configuration for the service."""

    host: str = field(default_factory=lambda: os.getenv("LIBRARY_SYNC_HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("LIBRARY_SYNC_PORT", 8765))
    data_dir: Path = field(default_factory=_default_data_dir)
    workers_per_provider: int = field(default_factory=lambda: _env_int("LIBRARY_SYNC_WORKERS", 2))
    lookup_timeout_seconds: float = field(default_factory=lambda: _env_float("LIBRARY_SYNC_LOOKUP_TIMEOUT", 20.0))
    max_attempts: int = field(default_factory=lambda: _env_int("LIBRARY_SYNC_MAX_ATTEMPTS", 3))
    backoff_base_seconds: float = field(default_factory=lambda: _env_float("LIBRARY_SYNC_BACKOFF_BASE", 2.0))
    backoff_max_seconds: float = field(default_factory=lambda: _env_float("LIBRARY_SYNC_BACKOFF_MAX", 60.0))
    job_retention_seconds: float = field(default_factory=lambda: _env_float("LIBRARY_SYNC_JOB_RETENTION", 10.0))
    auto_accept_threshold: float = field(
        default_factory=lambda: _env_float("LIBRARY_SYNC_AUTO_ACCEPT_THRESHOLD", 85.0)
    )
    auto_accept_margin: float = field(default_factory=lambda: _env_float("LIBRARY_SYNC_AUTO_ACCEPT_MARGIN", 10.0))
    event_history: int = field(default_factory=lambda: _env_int("LIBRARY_SYNC_EVENT_HISTORY", 500))
    log_level: str = field(default_factory=lambda: os.getenv("LIBRARY_SYNC_LOG_LEVEL", "INFO"))

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @property
    def state_path(self) -> Path:
        return self.data_dir / "library.json"


@dataclass
class CatalogCredentials:
    """Catalog credentials provided by the user."""

    discogs_token: str | None = None
    discogs_user_agent: str | None = None
    musicbrainz_app_name: str = "soundcloud-library-sync"
    musicbrainz_app_version: str = "0.1.0"
    musicbrainz_contact: str = "https://github.com/soundcloud-library-sync"
    musicbrainz_token: str | None = None

    @classmethod
    def from_env(cls) -> "CatalogCredentials":
        defaults = cls()

        def _value(name: str, default: str | None) -> str | None:
            value = os.getenv(name)
            return value.strip() if value and value.strip() else default

        return cls(
            discogs_token=_value("DISCOGS_TOKEN", None),
            discogs_user_agent=_value("DISCOGS_USER_AGENT", None),
            musicbrainz_app_name=_value("MUSICBRAINZ_APP_NAME", defaults.musicbrainz_app_name),
            musicbrainz_app_version=_value("MUSICBRAINZ_APP_VERSION", defaults.musicbrainz_app_version),
            musicbrainz_contact=_value("MUSICBRAINZ_APP_CONTACT", defaults.musicbrainz_contact),
            musicbrainz_token=_value("MUSICBRAINZ_TOKEN", None),
        )
