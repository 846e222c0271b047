"""
Logging helpers for the librarian service.

This module provides:
1. ContextAwareLogger, which renders ``extra`` attributes into the message as
   pipe-delimited ``key=value`` pairs so they survive any formatter
2. CorrelationIdFilter, which stamps the current correlation ID on records
3. configure_logging/get_logger for console logging setup
"""

import logging
import sys
from typing import Optional, Union

from ..config import get_config

_service_logger = None


class ContextAwareLogger:
    """
    Logger wrapper that formats extra attributes in message while preserving them.
    """

    def __init__(self, logger):
        """Initialize with an existing logger."""
        self.logger = logger

    def _log_with_formatted_extra(self, level, msg, **kwargs):
        """
        Log with extra data formatted into the message.

        Args:
            level: Logging level method to use
            msg: Log message
            **kwargs: Additional arguments including 'extra'
        """
        extra = kwargs.pop("extra", {})

        if extra:
            extra_str = " | ".join([f"{k}={v}" for k, v in extra.items()])
            full_msg = f"{msg} | {extra_str}"
        else:
            full_msg = msg

        log_method = getattr(self.logger, level)
        log_method(full_msg, extra=extra)

    def set_level(self, level):
        """Set the logging level of the underlying logger."""
        self.logger.setLevel(level)

    def info(self, msg, **kwargs):
        """Log at INFO level with formatted extra."""
        self._log_with_formatted_extra("info", msg, **kwargs)

    def error(self, msg, **kwargs):
        """Log at ERROR level with formatted extra."""
        self._log_with_formatted_extra("error", msg, **kwargs)

    def warning(self, msg, **kwargs):
        """Log at WARNING level with formatted extra."""
        self._log_with_formatted_extra("warning", msg, **kwargs)

    def debug(self, msg, **kwargs):
        """Log at DEBUG level with formatted extra."""
        self._log_with_formatted_extra("debug", msg, **kwargs)

    def exception(self, msg, **kwargs):
        """Log exception with formatted extra."""
        self._log_with_formatted_extra("exception", msg, **kwargs)


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter that adds the current correlation ID to log records.
    """

    def filter(self, record):
        """
        Add correlation_id to the log record if one is set for this thread.

        Args:
            record: LogRecord to modify

        Returns:
            True to include the record in the log output
        """
        # Lazy import to avoid circular dependency
        from ..exceptions import get_correlation_id

        correlation_id = get_correlation_id()
        if correlation_id and not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id

        return True


def _coerce_level(log_level: Union[int, str]) -> int:
    if isinstance(log_level, str):
        return getattr(logging, log_level.upper(), logging.INFO)
    return log_level


def configure_logging(
    service_name: str,
    log_level: Optional[Union[int, str]] = None,
    stream=None,
) -> ContextAwareLogger:
    """
    Configure console logging for the service.

    Args:
        service_name: Name of the service, used as ``librarian.<service_name>``
        log_level: Logging level (default: from config.logging.level)
        stream: Output stream (default: stdout)

    Returns:
        The configured logger wrapped with ContextAwareLogger
    """
    global _service_logger

    app_config = get_config()
    if log_level is None:
        log_level = app_config.logging.level
    level = _coerce_level(log_level)

    logger = logging.getLogger(f"librarian.{service_name}")
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(app_config.logging.format))
    console_handler.addFilter(CorrelationIdFilter())
    logger.addHandler(console_handler)

    wrapped_logger = ContextAwareLogger(logger)
    wrapped_logger.info(
        "Service logger configured",
        extra={"service_name": service_name, "log_level": logging.getLevelName(level)},
    )
    _service_logger = wrapped_logger
    return wrapped_logger


def get_logger(
    log_level: Optional[Union[int, str]] = None,
) -> ContextAwareLogger:
    """
    Get the service logger.

    Args:
        log_level: Optional log level to set on the fallback logger

    Returns:
        Logger instance
    """
    if _service_logger is not None:
        return _service_logger

    logger = logging.getLogger("librarian")

    if log_level is None:
        log_level = get_config().logging.level
    logger.setLevel(_coerce_level(log_level))

    return ContextAwareLogger(logger)


def reset_logging() -> None:
    """Forget the configured service logger."""
    global _service_logger
    _service_logger = None
