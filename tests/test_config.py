from __future__ import annotations

from pathlib import Path

import allure
import pytest

from batchforge.config import BackendSettings, ReclaimSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".batchforge.db")
    assert settings.fission.max_batch_size == 50
    assert settings.fission.batch_warning_threshold == 500
    assert settings.fission.include_base_style is True
    assert settings.worker.lease_seconds == 300
    assert settings.worker.max_retry_attempts == 3
    assert settings.reclaim.max_reclaims == 5
    assert settings.backend.kind == "echo"
    assert settings.worker.worker_id.startswith("worker-")


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    styles = tmp_path / "styles.json"
    styles.write_text("[]", encoding="utf-8")
    monkeypatch.setenv("BATCHFORGE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("BATCHFORGE_MAX_BATCH_SIZE", "10")
    monkeypatch.setenv("BATCHFORGE_INCLUDE_BASE_STYLE", "off")
    monkeypatch.setenv("BATCHFORGE_STYLES_PATH", str(styles))
    monkeypatch.setenv("BATCHFORGE_WORKER_ID", "render-box-1")
    monkeypatch.setenv("BATCHFORGE_WORKER_CONCURRENCY", "4")
    monkeypatch.setenv("BATCHFORGE_LEASE_SECONDS", "90")
    monkeypatch.setenv("BATCHFORGE_MAX_RECLAIMS", "0")
    monkeypatch.setenv("BATCHFORGE_BACKEND", "HTTP")
    monkeypatch.setenv("BATCHFORGE_BACKEND_URL", "https://images.example.com/api")
    monkeypatch.setenv("BATCHFORGE_LOG_LEVEL", "debug")

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.fission.max_batch_size == 10
    assert settings.fission.include_base_style is False
    assert settings.fission.styles_path == styles
    assert settings.worker.worker_id == "render-box-1"
    assert settings.worker.concurrency == 4
    assert settings.worker.lease_seconds == 90
    assert settings.reclaim.max_reclaims == 0
    assert settings.backend.kind == "http"
    assert settings.log_level == "DEBUG"


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCHFORGE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("BATCHFORGE_INCLUDE_BASE_STYLE", "maybe")

    with pytest.raises(ValueError, match="BATCHFORGE_INCLUDE_BASE_STYLE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(worker=WorkerSettings(lease_seconds=0)), "BATCHFORGE_LEASE_SECONDS"),
        (Settings(worker=WorkerSettings(concurrency=0)), "BATCHFORGE_WORKER_CONCURRENCY"),
        (Settings(reclaim=ReclaimSettings(max_reclaims=-1)), "BATCHFORGE_MAX_RECLAIMS"),
        (Settings(backend=BackendSettings(kind="grpc")), "BATCHFORGE_BACKEND must be one of"),
        (Settings(backend=BackendSettings(kind="http")), "BATCHFORGE_BACKEND_URL is required"),
        (
            Settings(backend=BackendSettings(kind="http", url="ftp://images.example.com")),
            "Invalid BATCHFORGE_BACKEND_URL",
        ),
        (Settings(log_level="TRACE"), "BATCHFORGE_LOG_LEVEL"),
    ],
)
def test_validate_names_offending_variable(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_missing_styles_file_is_rejected(tmp_path: Path) -> None:
    settings = Settings()
    settings.fission.styles_path = tmp_path / "missing.json"

    with pytest.raises(ValueError, match="BATCHFORGE_STYLES_PATH"):
        settings.validate()
