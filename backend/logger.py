"""
Logging configuration for the Inference Management API.
"""
import logging
import sys
from typing import Optional
from contextvars import ContextVar
import uuid

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')

LOGGER_NAME = "inference_mgmt"


class RequestIdFilter(logging.Filter):
    """Stamp every record with the request ID of the current context."""

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        return True


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Set up application logging with structured format.

    Component loggers obtained through ``get_logger`` are children of the
    application logger and share its handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Create logger
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # Create console handler with formatting
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)s - [%(request_id)s] %(name)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a component logger under the application logger."""
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Optional request ID. If not provided, generates a new UUID.

    Returns:
        The request ID that was set
    """
    rid = request_id or str(uuid.uuid4())[:8]
    request_id_var.set(rid)
    return rid


def get_request_id() -> str:
    """
    Get the current request ID from context.

    Returns:
        Current request ID or empty string
    """
    return request_id_var.get()
