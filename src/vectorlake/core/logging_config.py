"""
VectorLake Logging Configuration
================================
Centralized logging configuration using loguru.

Usage:
    from vectorlake.core.logging_config import configure_logging, get_logger

    # At application startup:
    configure_logging(level="INFO", json_format=False)

    # In modules:
    logger = get_logger(__name__)
    logger.info("Message")
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from loguru import logger

_CONFIGURED = False


class InterceptHandler(logging.Handler):
    """Route stdlib logging records (e.g. from pyarrow or sqlite helpers) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_level = logger.level(record.levelname).name
        except ValueError:
            log_level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            log_level, record.getMessage()
        )


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    *,
    sink: Optional[str] = None,
) -> None:
    """
    Configure loguru logging for VectorLake.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            If None, LOG_LEVEL env var is used (default INFO).
        json_format: If True, emit serialized JSON records. If None, check LOG_FORMAT env var.
        sink: Optional file path for log output. If None, logs to stderr.
    """
    global _CONFIGURED

    if json_format is None:
        json_format = os.environ.get("LOG_FORMAT", "").lower() == "json"

    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO")

    logger.remove()

    log_sink = sink if sink else sys.stderr

    if json_format:
        logger.add(
            log_sink,
            level=level.upper(),
            serialize=True,
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )
    else:
        format_str = (
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        )
        logger.add(
            log_sink,
            level=level.upper(),
            format=format_str,
            colorize=sink is None,
            enqueue=True,
            backtrace=True,
            diagnose=True,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("pyarrow", "asyncio"):
        logging.getLogger(noisy).setLevel(level.upper())

    _CONFIGURED = True
    logger.debug(f"Logging configured: level={level}, json_format={json_format}")


def configure_logging_from_config(config=None) -> None:
    """Apply the ``observability`` section of a VectorLakeConfig (global config by default)."""
    from vectorlake.core.config import get_config

    obs = (config or get_config()).observability
    configure_logging(level=obs.log_level, json_format=obs.structured_logging)


def get_logger(name: str = __name__):
    """
    Get a logger instance bound to the specified module name.

    Args:
        name: Module name (typically __name__).

    Returns:
        A loguru logger instance bound to the module.
    """
    if not _CONFIGURED:
        configure_logging()

    return logger.bind(name=name)


__all__ = ["configure_logging", "configure_logging_from_config", "get_logger", "InterceptHandler", "logger"]
