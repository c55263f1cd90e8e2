from __future__ import annotations

import importlib
from pathlib import Path

import pytest

from formqueue import settings


@pytest.fixture
def reload_settings(monkeypatch):
    yield lambda: importlib.reload(settings)
    monkeypatch.undo()
    importlib.reload(settings)


def test_data_and_logs_dirs_follow_environment(tmp_path: Path, monkeypatch, reload_settings) -> None:
    """An installed package must not write data or logs next to its own source."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOGS_DIR", str(tmp_path / "nested" / "logs"))
    monkeypatch.delenv("DATABASE_URL", raising=False)

    reload_settings()

    assert settings.DATA_DIR == tmp_path / "data"
    assert settings.LOGS_DIR == tmp_path / "nested" / "logs"
    assert settings.LOGS_DIR.is_dir()
    assert settings.DATABASE_URL == f"sqlite:///{tmp_path / 'data' / 'queue.sqlite3'}"


def test_dirs_default_to_project_root(monkeypatch, reload_settings) -> None:
    monkeypatch.delenv("DATA_DIR", raising=False)
    monkeypatch.delenv("LOGS_DIR", raising=False)

    reload_settings()

    assert settings.DATA_DIR == settings.BASE_DIR / "data"
    assert settings.LOGS_DIR == settings.BASE_DIR / "logs"


def test_validate_config_reports_every_problem(monkeypatch) -> None:
    monkeypatch.setattr(settings, "API_BASE_URL", "ftp://example.com")
    monkeypatch.setattr(settings, "MAX_RETRIES", 0)

    with pytest.raises(ValueError) as excinfo:
        settings.validate_config()

    assert "API_BASE_URL" in str(excinfo.value)
    assert "MAX_RETRIES" in str(excinfo.value)
