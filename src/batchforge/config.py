"""Runtime configuration for fission, workers and the reclaimer."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_BACKENDS = ("echo", "http")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class FissionSettings:
    """Limits applied when a request is expanded into units."""

    max_batch_size: int = 50
    batch_warning_threshold: int = 500
    default_variant_count: int = 3
    include_base_style: bool = True
    styles_path: Path | None = None


@dataclass(slots=True)
class WorkerSettings:
    """Claim, lease and retry policy for unit workers."""

    worker_id: str = field(default_factory=lambda: f"worker-{socket.gethostname()}-{os.getpid()}")
    concurrency: int = 1
    lease_seconds: int = 300
    max_retry_attempts: int = 3
    poll_interval_seconds: float = 1.0


@dataclass(slots=True)
class ReclaimSettings:
    """Expired-lease sweep settings."""

    interval_seconds: float = 60.0
    max_reclaims: int = 5


@dataclass(slots=True)
class BackendSettings:
    """Generation backend selection."""

    kind: str = "echo"
    url: str | None = None
    api_key: str | None = None
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".batchforge.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    fission: FissionSettings = field(default_factory=FissionSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    reclaim: ReclaimSettings = field(default_factory=ReclaimSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        styles_path = os.getenv("BATCHFORGE_STYLES_PATH", "").strip()
        worker_id = os.getenv("BATCHFORGE_WORKER_ID", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("BATCHFORGE_DB_PATH", ".batchforge.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BATCHFORGE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("BATCHFORGE_LOG_LEVEL", "WARNING").strip().upper(),
            fission=FissionSettings(
                max_batch_size=int(os.getenv("BATCHFORGE_MAX_BATCH_SIZE", "50")),
                batch_warning_threshold=int(
                    os.getenv("BATCHFORGE_BATCH_WARNING_THRESHOLD", "500"),
                ),
                default_variant_count=int(os.getenv("BATCHFORGE_DEFAULT_VARIANT_COUNT", "3")),
                include_base_style=_env_bool("BATCHFORGE_INCLUDE_BASE_STYLE", default=True),
                styles_path=Path(styles_path) if styles_path else None,
            ),
            worker=WorkerSettings(
                concurrency=int(os.getenv("BATCHFORGE_WORKER_CONCURRENCY", "1")),
                lease_seconds=int(os.getenv("BATCHFORGE_LEASE_SECONDS", "300")),
                max_retry_attempts=int(os.getenv("BATCHFORGE_MAX_RETRY_ATTEMPTS", "3")),
                poll_interval_seconds=float(
                    os.getenv("BATCHFORGE_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                **({"worker_id": worker_id} if worker_id else {}),
            ),
            reclaim=ReclaimSettings(
                interval_seconds=float(os.getenv("BATCHFORGE_RECLAIM_INTERVAL_SECONDS", "60")),
                max_reclaims=int(os.getenv("BATCHFORGE_MAX_RECLAIMS", "5")),
            ),
            backend=BackendSettings(
                kind=os.getenv("BATCHFORGE_BACKEND", "echo").strip().lower(),
                url=os.getenv("BATCHFORGE_BACKEND_URL") or None,
                api_key=os.getenv("BATCHFORGE_BACKEND_API_KEY") or None,
                timeout_seconds=float(os.getenv("BATCHFORGE_BACKEND_TIMEOUT_SECONDS", "120")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BATCHFORGE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"BATCHFORGE_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.fission.max_batch_size <= 0:
            raise ValueError("BATCHFORGE_MAX_BATCH_SIZE must be > 0.")
        if self.fission.batch_warning_threshold < 0:
            raise ValueError("BATCHFORGE_BATCH_WARNING_THRESHOLD must be >= 0.")
        if self.fission.default_variant_count <= 0:
            raise ValueError("BATCHFORGE_DEFAULT_VARIANT_COUNT must be > 0.")
        if self.fission.styles_path is not None and not self.fission.styles_path.is_file():
            raise ValueError(f"BATCHFORGE_STYLES_PATH does not exist: {self.fission.styles_path}")
        if self.worker.concurrency <= 0:
            raise ValueError("BATCHFORGE_WORKER_CONCURRENCY must be > 0.")
        if self.worker.lease_seconds <= 0:
            raise ValueError("BATCHFORGE_LEASE_SECONDS must be > 0.")
        if self.worker.max_retry_attempts <= 0:
            raise ValueError("BATCHFORGE_MAX_RETRY_ATTEMPTS must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("BATCHFORGE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.reclaim.interval_seconds <= 0:
            raise ValueError("BATCHFORGE_RECLAIM_INTERVAL_SECONDS must be > 0.")
        if self.reclaim.max_reclaims < 0:
            raise ValueError("BATCHFORGE_MAX_RECLAIMS must be >= 0.")
        if self.backend.kind not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"BATCHFORGE_BACKEND must be one of {', '.join(SUPPORTED_BACKENDS)}, "
                f"got {self.backend.kind!r}.",
            )
        if self.backend.kind == "http":
            _validate_backend_url(self.backend.url)
        if self.backend.timeout_seconds <= 0:
            raise ValueError("BATCHFORGE_BACKEND_TIMEOUT_SECONDS must be > 0.")


def _validate_backend_url(value: str | None) -> None:
    if not value:
        raise ValueError("BATCHFORGE_BACKEND_URL is required when BATCHFORGE_BACKEND=http.")
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid BATCHFORGE_BACKEND_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
