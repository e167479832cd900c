"""Logging configuration for dictate-tools."""

import logging
import sys
from pathlib import Path

LOG_DIR = Path.home() / ".dictate_tools" / "logs"
LOG_FILE = LOG_DIR / "dictate_tools.log"

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "mcp")


def setup_logging(level: int = logging.INFO, log_file: Path | None = None) -> logging.Logger:
    """
    Set up the ``dictate_tools`` logger with console and file output.

    Args:
        level: Console logging level (default: INFO)
        log_file: Override for the log file location

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger("dictate_tools")
    logger.setLevel(min(level, logging.DEBUG))

    # Avoid adding handlers multiple times
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
    )
    logger.addHandler(console_handler)

    path = log_file or LOG_FILE
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
    except OSError as e:
        logger.warning(f"Could not set up file logging: {e}")

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
