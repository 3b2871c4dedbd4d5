"""Logging and time helpers shared across the pipeline."""

import dataclasses
import datetime as dt
import json
import logging
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log a structured ``event=... key=value`` line."""
    parts = [f"event={event}"]
    for key, value in fields.items():
        parts.append(f"{key}={value}")
    logger.log(level, " ".join(parts))


def configure_logging(logger_name: str = "cvesentry", default_level: str = "INFO") -> logging.Logger:
    """Configure root logging once and return the named logger.

    Honours ``CVESENTRY_LOG_LEVEL`` and ``CVESENTRY_LOG_FILE``. Calling it
    more than once does not stack handlers.
    """
    level_name = os.environ.get("CVESENTRY_LOG_LEVEL", default_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    _ensure_stdout_handler(level)
    _maybe_add_file_handler(level)
    return logging.getLogger(logger_name)


def _ensure_stdout_handler(level: int) -> None:
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


def _maybe_add_file_handler(level: int) -> None:
    log_path = os.environ.get("CVESENTRY_LOG_FILE")
    if not log_path:
        return
    root = logging.getLogger()
    target = os.path.abspath(log_path)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    Path(target).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(target)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)


# ─── Time ────────────────────────────────────────────────────────────────────
# All timestamps inside the pipeline are naive datetimes in UTC, which is
# what SQLite hands back and what the feed sends.


def utc_now() -> dt.datetime:
    """Current time as a naive UTC datetime."""
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> dt.datetime | None:
    """Parse an ISO 8601 timestamp from the feed.

    Accepts ``Z`` suffixes, explicit offsets and offset-less values
    (taken as UTC).

    Args:
        value: Timestamp string or ``datetime``.

    Returns:
        Naive UTC ``datetime``, or ``None`` if ``value`` is empty or
        cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return to_naive_utc(value)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def isoformat_utc(value: dt.datetime) -> str:
    """Format a naive UTC datetime the way the NVD API expects it."""
    return to_naive_utc(value).strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}"


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    return str(value)
