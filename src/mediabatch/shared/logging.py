"""Centralized logging utilities."""

import logging
import sys
from pathlib import Path
from typing import List, Optional, Union

ROOT_LOGGER = "mediabatch"
DEFAULT_FORMAT = '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s'


def parse_level(level: Union[int, str, None], default: int = logging.INFO) -> int:
    """Turn 'debug', 'INFO', 20 or None into a logging level."""
    if level is None or level == "":
        return default
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else default


def setup_logger(
    name: str = ROOT_LOGGER,
    level: Union[int, str] = logging.INFO,
    log_file: Optional[Path] = None,
    format_string: Optional[str] = None
) -> logging.Logger:
    """
    Set up a logger with console and optional file output.

    Args:
        name: Logger name (the package root by default, so every module inherits it)
        level: Logging level, as int or name
        log_file: Optional file to write logs to
        format_string: Custom format string

    Returns:
        Configured logger instance
    """
    level = parse_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(level)
    # Reconfiguring replaces handlers instead of duplicating output
    logger.handlers.clear()

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = logging.Formatter(format_string or DEFAULT_FORMAT, datefmt="%H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module.

    Loggers under the package root propagate to the handlers installed by
    setup_logger; anything else gets its own console handler on first use.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logger
    if not logger.handlers:
        return setup_logger(name)
    return logger
