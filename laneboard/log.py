"""Logging utilities for laneboard.

All operations log warnings instead of raising exceptions for non-fatal errors.
"""

from __future__ import annotations

import logging
import sys

from collections.abc import Mapping
from typing import Any


DEFAULT_FORMAT = "%(name)s - %(levelname)s - %(message)s"


class _LoggerHolder:
    """Holder for the global logger instance."""

    instance: logging.Logger | None = None


def get_logger() -> logging.Logger:
    """Get the laneboard logger instance.

    Returns
    -------
    logging.Logger
        The laneboard logger configured with a stream handler.
    """
    if _LoggerHolder.instance is None:
        logger = logging.getLogger("laneboard")
        logger.setLevel(logging.WARNING)

        # Only add handler if none exists
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setLevel(logging.DEBUG)
            handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
            logger.addHandler(handler)

        _LoggerHolder.instance = logger

    return _LoggerHolder.instance


def format_detail(msg: str, detail: Mapping[str, Any] | None = None) -> str:
    """Append a structured detail mapping to a log message.

    Parameters
    ----------
    msg : str
        The message text.
    detail : Mapping or None
        Extra key/value pairs (record counts, tokens, lane keys).

    Returns
    -------
    str
        ``msg`` alone, or ``"msg {key=value, ...}"`` when detail is non-empty.
    """
    if not detail:
        return msg
    rendered = ", ".join(f"{k}={v!r}" for k, v in detail.items())
    return f"{msg} {{{rendered}}}"


def debug(msg: str, detail: Mapping[str, Any] | None = None) -> None:
    """Log a debug message.

    Parameters
    ----------
    msg : str
        The message to log.
    detail : Mapping or None
        Optional structured detail.
    """
    logger = get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(format_detail(msg, detail))


def info(msg: str, detail: Mapping[str, Any] | None = None) -> None:
    """Log an info message.

    Parameters
    ----------
    msg : str
        The message to log.
    detail : Mapping or None
        Optional structured detail.
    """
    get_logger().info(format_detail(msg, detail))


def warn(msg: str, detail: Mapping[str, Any] | None = None) -> None:
    """Log a warning message. Never raises exceptions.

    Parameters
    ----------
    msg : str
        The warning message to log.
    detail : Mapping or None
        Optional structured detail.
    """
    get_logger().warning(format_detail(msg, detail))


def error(msg: str, detail: Mapping[str, Any] | None = None) -> None:
    """Log an error message. Never raises exceptions.

    Parameters
    ----------
    msg : str
        The error message to log.
    detail : Mapping or None
        Optional structured detail.
    """
    get_logger().error(format_detail(msg, detail))


def set_level(level: int | str) -> None:
    """Set the logging level.

    Parameters
    ----------
    level : int or str
        The logging level (e.g., logging.DEBUG, "DEBUG").
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    get_logger().setLevel(level)


def set_format(fmt: str) -> None:
    """Replace the formatter on every handler of the laneboard logger."""
    for handler in get_logger().handlers:
        handler.setFormatter(logging.Formatter(fmt))


def exception(msg: str) -> None:
    """Log an exception with full traceback.

    Call this from within an except block to log the exception
    message along with the full stack trace.

    Parameters
    ----------
    msg : str
        The error message to log alongside the traceback.
    """
    get_logger().exception(msg)


def log_move_error(record_id: str, target_lane_key: str, exc: BaseException) -> None:
    """Log a failed card move with standardized format.

    Parameters
    ----------
    record_id : str
        The record whose grouping value could not be committed.
    target_lane_key : str
        The lane the card was dropped on.
    exc : BaseException
        The exception that was raised.
    """
    get_logger().error(
        f"Move failed for record '{record_id}' into lane '{target_lane_key}': {exc}",
        exc_info=exc,
    )


def enable_debug() -> None:
    """Enable debug mode for verbose board logging.

    This will show all debug messages including:
    - Fetch requests and record counts
    - Lane rebuild timings
    - Cache invalidations
    """
    set_level(logging.DEBUG)
