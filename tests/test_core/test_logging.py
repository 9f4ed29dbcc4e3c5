"""
Tests for logging and environment helpers

Tests for panelforge/core/logging_config.py and panelforge/core/env_loader.py
"""

import pytest

from panelforge.core.env_loader import get_api_key
from panelforge.core.logging_config import (
    LogLevel,
    create_session_log,
    get_logger,
    session_scope,
    setup_logging,
    truncate_error,
)


@pytest.fixture
def log_file(temp_dir):
    path = create_session_log(temp_dir / "logs")
    setup_logging(LogLevel.INFO, log_file=path, console_output=False)
    yield path
    setup_logging(LogLevel.WARNING)


class TestLogging:
    """Tests for logger setup."""

    def test_logger_names(self):
        assert get_logger("storage.persistence").name == "panelforge.storage.persistence"
        assert get_logger("panelforge.api").name == "panelforge.api"

    def test_records_carry_session(self, log_file):
        """Test that records name the session they were emitted for."""
        logger = get_logger("test")

        logger.info("outside")
        with session_scope("alice"):
            logger.info("inside")

        lines = log_file.read_text(encoding='utf-8').splitlines()
        assert "| - | panelforge.test | outside" in lines[-2]
        assert "| alice | panelforge.test | inside" in lines[-1]

    def test_level_by_name(self, log_file):
        setup_logging("error", log_file=log_file, console_output=False)
        get_logger("test").warning("dropped")

        assert "dropped" not in log_file.read_text(encoding='utf-8')

    def test_truncate_error(self):
        text = truncate_error(ValueError("line one\nline two " + "x" * 500), limit=50)

        assert len(text) == 50
        assert text.startswith("ValueError: line one line two")
        assert text.endswith("...")


class TestApiKeys:
    """Tests for API key lookup."""

    def test_fallback_names(self, monkeypatch):
        monkeypatch.setenv("PANELFORGE_TEST_PRIMARY", "  ")
        monkeypatch.setenv("PANELFORGE_TEST_SECONDARY", "secret")

        assert get_api_key("PANELFORGE_TEST_PRIMARY", ["PANELFORGE_TEST_SECONDARY"]) == "secret"

    def test_missing(self, monkeypatch):
        monkeypatch.delenv("PANELFORGE_TEST_PRIMARY", raising=False)

        assert get_api_key("PANELFORGE_TEST_PRIMARY") is None
