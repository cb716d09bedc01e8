"""Logging for the meta-ralph orchestrator."""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

LOGGER_NAME = "meta_ralph"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
_FLAG_VALUES = ("1", "true", "yes", "on")

# Global logger instance (singleton)
_logger: Optional[logging.Logger] = None


def get_logger() -> logging.Logger:
    """Get or create the meta-ralph logger."""
    global _logger
    if _logger is None:
        _logger = _setup_logger()
    return _logger


def _log_path(log_env: str) -> Path:
    if log_env.lower() in _FLAG_VALUES:
        return Path.cwd() / "logs" / f"ralph_{datetime.now().strftime('%Y-%m-%d')}.log"
    return Path(log_env)


def _level_from_env() -> int:
    name = os.environ.get("RALPH_LOG_LEVEL", "DEBUG").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.DEBUG


def _setup_logger() -> logging.Logger:
    """Setup logging.

    Nothing is written anywhere unless RALPH_LOG_FILE is set:
    - a file path logs to that file (parent directories are created);
    - "1", "true", "yes" or "on" logs to ./logs/ralph_<date>.log.
    RALPH_LOG_LEVEL sets the level (default DEBUG).
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_level_from_env())

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    log_env = os.environ.get("RALPH_LOG_FILE")
    if not log_env:
        return logger

    log_path = _log_path(log_env)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_path, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    except OSError as e:
        # Fall back to stderr if the file cannot be opened
        handler = logging.StreamHandler()
        reason = str(e).replace("%", "%%")
        handler.setFormatter(logging.Formatter(f"Failed to setup log file {reason} | {LOG_FORMAT}"))
    logger.addHandler(handler)

    return logger
