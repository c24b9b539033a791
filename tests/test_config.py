"""Tests for environment configuration and logging setup."""

import logging
import os

import pytest

from taskscope.config import MonitorConfig, configure_logging


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("TASKSCOPE_"):
            monkeypatch.delenv(key)


def test_defaults():
    """Test defaults match the documented intervals and limits."""
    config = MonitorConfig.from_env()

    assert config.capture_interval == 2.0
    assert config.compaction_interval == 120.0
    assert config.session_refresh_interval == 900.0
    assert config.max_rows == 12
    assert config.temperature == 1.0
    assert config.top_k == 3
    assert config.max_output_tokens == 10
    assert config.session_timeout_seconds == 30
    assert config.retry_truncate_chars == 50
    assert config.use_remote is False
    assert config.remote_models == [config.remote_model]


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("TASKSCOPE_CAPTURE_INTERVAL", "0.5")
    monkeypatch.setenv("TASKSCOPE_MAX_ROWS", "20")
    monkeypatch.setenv("TASKSCOPE_TOP_K", "5")
    monkeypatch.setenv("TASKSCOPE_USE_REMOTE", "yes")
    monkeypatch.setenv("TASKSCOPE_STORE_PATH", "/tmp/taskscope.json")

    config = MonitorConfig.from_env()

    assert config.capture_interval == 0.5
    assert config.max_rows == 20
    assert config.top_k == 5
    assert config.use_remote is True
    assert config.store_path == "/tmp/taskscope.json"


def test_remote_model_list(monkeypatch):
    """Test the selected model is always part of the model list."""
    monkeypatch.setenv("TASKSCOPE_REMOTE_MODEL", "gemini-1.5-pro")
    monkeypatch.setenv("TASKSCOPE_REMOTE_MODELS", "gemini-1.5-flash, gemini-1.0-pro")

    config = MonitorConfig.from_env()

    assert config.remote_models == ["gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro"]


def test_session_config():
    config = MonitorConfig(temperature=0.3, top_k=2, session_timeout_seconds=5)
    session = config.session_config()
    assert session.temperature == 0.3
    assert session.top_k == 2
    assert session.timeout_seconds == 5


def test_invalid_session_values_rejected():
    with pytest.raises(ValueError):
        MonitorConfig(top_k=99).session_config()


class TestConfigureLogging:
    """Tests for root logger setup."""

    def test_file_logging(self, tmp_path):
        log_file = tmp_path / "taskscope.log"
        root = logging.getLogger()
        saved = (root.handlers[:], root.level)
        try:
            configure_logging("DEBUG", str(log_file))
            logging.getLogger("taskscope.test").debug("hello from test")
            for handler in root.handlers:
                handler.flush()

            assert root.level == logging.DEBUG
            assert "hello from test" in log_file.read_text()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:], root.level = saved[0], saved[1]

    def test_without_file_logs_nowhere(self):
        root = logging.getLogger()
        saved = (root.handlers[:], root.level)
        try:
            configure_logging("info")
            assert root.level == logging.INFO
            assert isinstance(root.handlers[0], logging.NullHandler)
        finally:
            root.handlers[:], root.level = saved[0], saved[1]
