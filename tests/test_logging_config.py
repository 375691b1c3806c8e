"""Unit tests for logging setup."""

from __future__ import annotations

import logging

from deeplook.logging_config import ColoredFormatter, get_logger, setup_logging


def test_setup_logging_is_idempotent():
    """Test that repeated setup does not stack handlers."""
    logger = setup_logging("deeplook.test_idempotent")
    again = setup_logging("deeplook.test_idempotent")

    assert logger is again
    assert len(logger.handlers) == 1
    assert not logger.propagate


def test_level_from_environment(monkeypatch):
    """Test that DEEPLOOK_LOG_LEVEL sets the default level."""
    monkeypatch.setenv("DEEPLOOK_LOG_LEVEL", "debug")
    assert get_logger("deeplook.test_env_level").level == logging.DEBUG

    monkeypatch.setenv("DEEPLOOK_LOG_LEVEL", "chatty")
    assert get_logger("deeplook.test_env_fallback").level == logging.INFO


def test_explicit_level_and_file(tmp_path):
    """Test an explicit level plus a plain-text log file."""
    log_file = tmp_path / "deeplook.log"
    logger = setup_logging("deeplook.test_file", level="WARNING", log_file=str(log_file))

    logger.info("hidden")
    logger.warning("visible")
    for handler in logger.handlers:
        handler.flush()

    content = log_file.read_text()
    assert "visible" in content
    assert "hidden" not in content
    assert "\033[" not in content


def test_colored_formatter_leaves_record_untouched():
    """Test that coloring does not leak into other handlers."""
    formatter = ColoredFormatter("%(levelname)s %(name)s %(message)s", use_color=True)
    record = logging.LogRecord("deeplook.x", logging.INFO, __file__, 1, "hello", None, None)

    colored = formatter.format(record)

    assert "\033[" in colored
    assert record.levelname == "INFO"
    assert record.name == "deeplook.x"


def test_colored_formatter_plain():
    """Test that colors can be switched off."""
    formatter = ColoredFormatter("%(levelname)s %(message)s", use_color=False)
    record = logging.LogRecord("deeplook.x", logging.ERROR, __file__, 1, "oops", None, None)

    assert formatter.format(record) == "ERROR oops"
