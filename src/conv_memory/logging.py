"""Logging for conv-memory.

Every module logs through a child of the ``conv_memory`` package logger.
Entry points call setup_logging() once, which attaches a file handler
(<log_dir>/<component>.log) and optionally a stderr handler to the package
logger.
"""

import logging
import sys
from pathlib import Path

DEFAULT_LOG_DIR = Path.home() / "conv-memory" / "logs"

PACKAGE_LOGGER = "conv_memory"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    name: str,
    log_dir: Path | None = None,
    level: int = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """Configure the package logger for a conv-memory component.

    Calling this again only changes the level; handlers are attached once
    per process.

    Args:
        name: Component name, used for the log filename
        log_dir: Directory for log files (defaults to ~/conv-memory/logs/)
        level: Logging level (defaults to INFO)
        console: Whether to also log to stderr

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8"),
    ]
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get the logger for a conv-memory module, e.g. ``conv_memory.pipeline``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")
