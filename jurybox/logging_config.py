"""Structured logging configuration for JuryBox.

JSON output for production, human-readable output for local development.
Log records carry the evaluation and topic currently being processed.

Environment Variables:
    LOG_FORMAT: Set to "json" for JSON output, anything else for human-readable.
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Defaults to INFO.
"""

import copy
import logging
import os
import sys
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger import jsonlogger

# Context variables for evaluation-scoped data
_evaluation_id: ContextVar[str | None] = ContextVar("evaluation_id", default=None)
_topic_id: ContextVar[str | None] = ContextVar("topic_id", default=None)

# Environment configuration
LOG_FORMAT = os.getenv("LOG_FORMAT", "").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def get_evaluation_id() -> str | None:
    """Get the current evaluation ID from context."""
    return _evaluation_id.get()


def get_topic_id() -> str | None:
    """Get the current topic ID from context."""
    return _topic_id.get()


def set_evaluation_context(
    evaluation_id: str | None, topic_id: str | None = None
) -> None:
    """Set the evaluation (and optionally topic) for log records in this context."""
    _evaluation_id.set(evaluation_id)
    _topic_id.set(topic_id)


def set_topic_id(topic_id: str | None) -> None:
    """Set the topic ID in context."""
    _topic_id.set(topic_id)


class ContextAwareJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that includes evaluation and topic ids."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add standard fields and context to log record."""
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["message"] = record.getMessage()

        evaluation_id = get_evaluation_id()
        if evaluation_id:
            log_record["evaluation_id"] = evaluation_id

        topic_id = get_topic_id()
        if topic_id:
            log_record["topic_id"] = topic_id

        if hasattr(record, "extra_fields"):
            log_record.update(record.extra_fields)


class ContextAwareFormatter(logging.Formatter):
    """Human-readable formatter that prefixes evaluation and topic ids."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with context information."""
        record = copy.copy(record)

        context_parts = []

        evaluation_id = get_evaluation_id()
        if evaluation_id:
            context_parts.append(f"[{evaluation_id[:8]}]")

        topic_id = get_topic_id()
        if topic_id:
            context_parts.append(f"[{topic_id}]")

        context_prefix = " ".join(context_parts)
        if context_prefix:
            context_prefix += " "

        # Prepend context to message (on copy, not original)
        original_msg = record.getMessage()
        record.msg = f"{context_prefix}{original_msg}"
        record.args = ()

        return super().format(record)


def setup_logging() -> None:
    """Configure structured logging based on environment.

    Call once at startup before any logging occurs.
    """
    level = getattr(logging, LOG_LEVEL, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    if LOG_FORMAT == "json":
        formatter = ContextAwareJsonFormatter(
            fmt="%(timestamp)s %(level)s %(logger)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
        )
    else:
        formatter = ContextAwareFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging configured. Format: %s, Level: %s",
        "json" if LOG_FORMAT == "json" else "human-readable",
        LOG_LEVEL,
    )
