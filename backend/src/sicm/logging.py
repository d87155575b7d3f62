"""Logging setup for SICM.

Production processes write one JSON object per line; development processes
write aligned text. Case lifecycle events go through the ``log_*`` helpers
at the bottom so that every event carries the same structured fields.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .config import get_settings

# Attributes present on every LogRecord; anything else was passed via ``extra``.
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

_QUIET_LOGGERS = ("sqlalchemy.engine", "asyncpg", "aiosqlite", "celery", "kombu")


class JSONFormatter(logging.Formatter):
    """Renders a record and its ``extra`` fields as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """One aligned line per record, for terminals."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )


def setup_logging() -> None:
    """Install a stdout handler on the root logger according to the settings."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if settings.log_format == "json" else TextFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    get_logger(__name__).debug(
        "Logging configured",
        extra={
            "environment": settings.environment,
            "log_format": settings.log_format,
        },
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class ContextAdapter(logging.LoggerAdapter):
    """Merges fixed context into the ``extra`` of every call."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_context_logger(name: str, **context: Any) -> ContextAdapter:
    """Get a logger that adds ``context`` to every record.

    Usage:
        logger = get_context_logger(__name__, wiki_id="enwiki")
        logger.info("Dispatching auto-close")  # record carries wiki_id
    """
    return ContextAdapter(get_logger(name), context)


# =========================
# Case events
# =========================


def log_case_created(case_id: int, signal_names: list[str], user_ids: list[int]) -> None:
    get_logger("sicm.cases").info(
        f"Created case {case_id}",
        extra={
            "event": "case_created",
            "case_id": case_id,
            "signal_names": signal_names,
            "user_ids": user_ids,
        },
    )


def log_case_merged(case_id: int, signal_names: list[str], user_ids: list[int]) -> None:
    """Log users and signals being merged into an existing open case."""
    get_logger("sicm.cases").info(
        f"Merged signal match into open case {case_id}",
        extra={
            "event": "case_merged",
            "case_id": case_id,
            "signal_names": signal_names,
            "user_ids": user_ids,
        },
    )


def log_case_status_change(
    case_id: int,
    old_status: str,
    new_status: str,
    performer_user_id: int | None = None,
) -> None:
    """Log a case changing status.

    Args:
        case_id: The case that changed
        old_status: Status label before the change
        new_status: Status label after the change
        performer_user_id: Investigator who made the change, None for automatic changes
    """
    get_logger("sicm.cases").info(
        f"Case {case_id} status changed from {old_status} to {new_status}",
        extra={
            "event": "case_status_change",
            "case_id": case_id,
            "old_status": old_status,
            "new_status": new_status,
            "performer_user_id": performer_user_id,
        },
    )


def log_autoclose_skipped(case_id: int, unblocked_user_ids: list[int]) -> None:
    """Log that a case stays open because some of its users are not indefinitely blocked."""
    user_list = ", ".join(str(user_id) for user_id in unblocked_user_ids)
    get_logger("sicm.autoclose").info(
        f"Users {user_list} are not indefinitely blocked, skipping auto-close for case {case_id}",
        extra={
            "event": "autoclose_skipped",
            "case_id": case_id,
            "unblocked_user_ids": unblocked_user_ids,
        },
    )


def log_dispatch_failure(wiki_id: str, username: str, error: str) -> None:
    get_logger("sicm.dispatch").warning(
        f"Failed to push cross-wiki auto-close job to wiki {wiki_id}: {error}",
        extra={
            "event": "dispatch_failure",
            "wiki_id": wiki_id,
            "username": username,
            "error": error,
        },
    )
