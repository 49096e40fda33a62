"""
Tests for settings loading, saving and validation.
"""

import json
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from barkcron.config import (
    ENV_CONFIG_PATH,
    ENV_DATA_DIR,
    ENV_DB_PATH,
    ENV_LOG_DIR,
    Settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (ENV_CONFIG_PATH, ENV_DATA_DIR, ENV_DB_PATH, ENV_LOG_DIR):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    settings = Settings(config_path=str(tmp_path / "missing.json"))

    assert settings.execution.timeout_seconds == 600
    assert settings.execution.max_workers == 10
    assert settings.retention.max_logs_per_task == 5000
    assert settings.retention.max_total_logs == 50000
    assert settings.retention.max_notification_records == 50000
    assert settings.retry.max_attempts == 15
    assert settings.logging.level == "INFO"
    assert settings.validate() == []
    assert settings.tzinfo() is None


def test_data_dir_env_moves_default_paths(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_DATA_DIR, str(tmp_path / "data"))
    settings = Settings()

    assert settings.config_path == tmp_path / "data" / "config.json"
    assert Path(settings.database_path) == tmp_path / "data" / "barkcron.db"
    assert Path(settings.logging.file) == tmp_path / "data" / "logs" / "barkcron.log"


def test_specific_env_vars_win(tmp_path, monkeypatch):
    monkeypatch.setenv(ENV_DATA_DIR, str(tmp_path / "data"))
    monkeypatch.setenv(ENV_CONFIG_PATH, str(tmp_path / "elsewhere.json"))
    monkeypatch.setenv(ENV_DB_PATH, str(tmp_path / "tasks.db"))
    monkeypatch.setenv(ENV_LOG_DIR, str(tmp_path / "logs"))

    settings = Settings()

    assert settings.config_path == tmp_path / "elsewhere.json"
    assert settings.database_path == str(tmp_path / "tasks.db")
    assert Path(settings.logging.file) == tmp_path / "logs" / "barkcron.log"


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config.json"
    settings = Settings(config_path=str(path))
    settings.database_path = str(tmp_path / "custom.db")
    settings.execution.timeout_seconds = 120
    settings.execution.timezone = "Asia/Shanghai"
    settings.retention.max_logs_per_task = 10
    settings.save()

    assert json.loads(path.read_text())['execution']['timeout_seconds'] == 120

    loaded = Settings(config_path=str(path))
    assert loaded.database_path == str(tmp_path / "custom.db")
    assert loaded.execution.timeout_seconds == 120
    assert loaded.retention.max_logs_per_task == 10
    assert loaded.tzinfo().key == "Asia/Shanghai"


def test_partial_file_keeps_other_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"retention": {"max_total_logs": 100, "max_logs_per_task": 50}}))

    settings = Settings(config_path=str(path))

    assert settings.retention.max_total_logs == 100
    assert settings.retention.max_notification_records == 50000
    assert settings.execution.timeout_seconds == 600


def test_unknown_key_in_section_fails_to_load(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"execution": {"threads": 4}}))
    with pytest.raises(TypeError):
        Settings(config_path=str(path))


def test_validate_reports_each_problem(tmp_path):
    settings = Settings(config_path=str(tmp_path / "missing.json"))
    settings.execution.timeout_seconds = 0
    settings.retry.max_attempts = 0
    settings.retention.max_logs_per_task = 100
    settings.retention.max_total_logs = 10
    settings.execution.timezone = "Mars/Olympus_Mons"

    errors = settings.validate()

    assert any("timeout_seconds" in e for e in errors)
    assert any("max_attempts" in e for e in errors)
    assert any("cannot exceed" in e for e in errors)
    assert any("timezone" in e for e in errors)


def test_tzinfo(tmp_path):
    settings = Settings(config_path=str(tmp_path / "missing.json"))
    settings.execution.timezone = "Asia/Shanghai"
    assert settings.tzinfo().utcoffset(datetime(2024, 1, 1)) == timedelta(hours=8)
