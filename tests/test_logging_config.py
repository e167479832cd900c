"""Tests for logging_config.py - logging setup and configuration."""

import logging
import sys
from unittest.mock import MagicMock, patch

from dictate_tools.logging_config import LOG_FILE, setup_logging


def mock_logger(handlers=None):
    logger = MagicMock(spec=logging.Logger)
    logger.handlers = handlers or []
    return logger


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_uses_package_logger(self, tmp_path):
        """Test that the dictate_tools logger is configured and returned."""
        logger = mock_logger()
        with patch("dictate_tools.logging_config.logging.getLogger", return_value=logger) as mock_get, patch(
            "dictate_tools.logging_config.logging.FileHandler"
        ):
            result = setup_logging(log_file=tmp_path / "app.log")

        assert result is logger
        mock_get.assert_any_call("dictate_tools")
        logger.setLevel.assert_any_call(logging.DEBUG)

    def test_console_handler_uses_requested_level(self, tmp_path):
        """Test that the stderr handler gets the requested level and short format."""
        logger = mock_logger()
        with patch("dictate_tools.logging_config.logging.getLogger", return_value=logger), patch(
            "dictate_tools.logging_config.logging.StreamHandler"
        ) as mock_stream, patch("dictate_tools.logging_config.logging.FileHandler"):
            console = MagicMock()
            mock_stream.return_value = console
            setup_logging(level=logging.WARNING, log_file=tmp_path / "app.log")

        mock_stream.assert_called_once_with(sys.stderr)
        console.setLevel.assert_called_once_with(logging.WARNING)
        formatter = console.setFormatter.call_args[0][0]
        assert formatter._fmt == "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        assert formatter.datefmt == "%H:%M:%S"
        logger.addHandler.assert_any_call(console)

    def test_file_handler_at_default_location(self):
        """Test that the file handler logs DEBUG to the default log file."""
        logger = mock_logger()
        with patch("dictate_tools.logging_config.logging.getLogger", return_value=logger), patch(
            "dictate_tools.logging_config.Path.mkdir"
        ), patch("dictate_tools.logging_config.logging.FileHandler") as mock_file:
            file_handler = MagicMock()
            mock_file.return_value = file_handler
            setup_logging()

        mock_file.assert_called_once_with(LOG_FILE, encoding="utf-8")
        file_handler.setLevel.assert_called_once_with(logging.DEBUG)
        formatter = file_handler.setFormatter.call_args[0][0]
        assert formatter._fmt == "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
        logger.addHandler.assert_any_call(file_handler)

    def test_file_handler_error_keeps_console(self, tmp_path):
        """Test that a failing file handler only logs a warning."""
        logger = mock_logger()
        with patch("dictate_tools.logging_config.logging.getLogger", return_value=logger), patch(
            "dictate_tools.logging_config.logging.FileHandler", side_effect=PermissionError("Permission denied")
        ):
            result = setup_logging(log_file=tmp_path / "app.log")

        assert result is logger
        logger.warning.assert_called_once()
        assert "Could not set up file logging" in logger.warning.call_args[0][0]
        assert logger.addHandler.call_count == 1

    def test_skips_handlers_if_already_configured(self):
        """Test that repeated setup does not duplicate handlers."""
        logger = mock_logger(handlers=[MagicMock()])
        with patch("dictate_tools.logging_config.logging.getLogger", return_value=logger), patch(
            "dictate_tools.logging_config.logging.StreamHandler"
        ) as mock_stream, patch("dictate_tools.logging_config.logging.FileHandler") as mock_file:
            result = setup_logging()

        assert result is logger
        mock_stream.assert_not_called()
        mock_file.assert_not_called()
        logger.addHandler.assert_not_called()

    def test_writes_to_real_file(self, tmp_path):
        """Test end to end that messages reach the log file."""
        log_file = tmp_path / "logs" / "dictate_tools.log"
        logger = logging.getLogger("dictate_tools")
        saved_handlers = logger.handlers[:]
        logger.handlers = []
        try:
            setup_logging(level=logging.WARNING, log_file=log_file)
            logging.getLogger("dictate_tools.orchestrator").debug("tool registry rebuilt")
            for handler in logger.handlers:
                handler.flush()
            assert "tool registry rebuilt" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in logger.handlers:
                handler.close()
            logger.handlers = saved_handlers
