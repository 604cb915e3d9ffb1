"""Centralized logging configuration for the Lark record bridge."""

import json
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Any


# Configure logger
logger = logging.getLogger("larkbridge")
handler = logging.StreamHandler()
formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
handler.setFormatter(formatter)
logger.addHandler(handler)
logger.setLevel(logging.INFO)
logger.propagate = False


def enable_file_logging(log_dir: str, prefix: str = "server", retention_days: int = 7) -> logging.Handler:
    """
    Attach a daily-rotating file handler to the package logger.

    Args:
        log_dir (str): Directory that receives the log files.
        prefix (str): Base file name, rotated files get a date suffix.
        retention_days (int): Number of rotated files kept on disk.

    Returns:
        logging.Handler: The handler that was attached.
    """
    os.makedirs(log_dir, exist_ok=True)
    for existing in logger.handlers:
        if isinstance(existing, TimedRotatingFileHandler) and existing.baseFilename == os.path.abspath(
            os.path.join(log_dir, f"{prefix}.log")
        ):
            return existing

    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, f"{prefix}.log"),
        when="midnight",
        backupCount=retention_days,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return file_handler


def log_event(
    component: str,
    subject_id: str,
    event: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Log a structured event.

    Args:
        component (str): Emitting component (e.g. "watcher", "orchestrator").
        subject_id (str): Identifier the event is about, usually a record id.
        event (str): Event description.
        details (dict[str, Any] | None): Additional event details.
    """
    payload = {
        "component": component,
        "subject_id": subject_id,
        "event": event,
        "details": details or {},
    }
    logger.info(json.dumps(payload, ensure_ascii=False, default=str))


def log_error(
    component: str,
    subject_id: str,
    error: Exception,
    context: dict[str, Any] | None = None,
) -> None:
    """
    Log an error with context.

    Args:
        component (str): Component where the error occurred.
        subject_id (str): Identifier the error is about.
        error (Exception): The exception that was raised.
        context (dict[str, Any] | None): Additional context about the error.
    """
    payload = {
        "component": component,
        "subject_id": subject_id,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "context": context or {},
    }
    logger.error(json.dumps(payload, ensure_ascii=False, default=str))


def set_log_level(level: str) -> None:
    """
    Set the logging level.

    Args:
        level (str): Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {level}")
    logger.setLevel(numeric_level)
