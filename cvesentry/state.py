"""Durable pipeline state.

The feed watermark (maximum ``updated_at`` fully processed) lives in the
``pipeline_state`` table so a restart resumes where the last successful
cycle stopped instead of re-scanning the feed history.  The last cycle
summary is kept beside it for ``cvesentry status``.

Outcomes still owed evidence or a notification wait in
``pending_outcomes`` (queued by the Upsert Engine) until a cycle settles
them.
"""

import datetime as dt
import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select

from .database import Database
from .models import PendingOutcome, PipelineState, Vulnerability
from .upsert import Outcome, OutcomeKind
from .utils import json_dumps, log_event, parse_timestamp, utc_now

log = logging.getLogger(__name__)

WATERMARK_KEY = "feed.watermark"
LAST_SUMMARY_KEY = "cycle.last_summary"


def _get(db: Database, key: str) -> str | None:
    with db.session_scope() as session:
        row = session.get(PipelineState, key)
        return row.value if row is not None else None


def _put(db: Database, key: str, value: str) -> None:
    with db.session_scope() as session:
        row = session.get(PipelineState, key)
        if row is None:
            session.add(PipelineState(key=key, value=value, updated_at=utc_now()))
        else:
            row.value = value
            row.updated_at = utc_now()


def max_observed_updated_at(db: Database) -> dt.datetime | None:
    """Largest feed timestamp stored for any vulnerability."""
    with db.session_scope() as session:
        return session.execute(select(func.max(Vulnerability.updated_at))).scalar()


def stored_watermark(db: Database) -> dt.datetime | None:
    """The persisted watermark, without any fallback."""
    return parse_timestamp(_get(db, WATERMARK_KEY))


def load_watermark(db: Database, lookback_days: int = 7) -> dt.datetime:
    """Return the ``since`` timestamp for the next cycle.

    Order of preference: the persisted watermark, the store's maximum
    ``updated_at``, then ``lookback_days`` before now for an empty store.

    Args:
        db: Store handle.
        lookback_days: Window used when nothing has been ingested yet.

    Returns:
        Naive UTC ``datetime``.
    """
    persisted = stored_watermark(db)
    if persisted is not None:
        return persisted
    observed = max_observed_updated_at(db)
    if observed is not None:
        log_event(log, logging.INFO, "watermark_from_store", watermark=observed.isoformat())
        return observed
    start = utc_now() - dt.timedelta(days=lookback_days)
    log_event(log, logging.INFO, "watermark_initial", watermark=start.isoformat(), lookback_days=lookback_days)
    return start


def save_watermark(db: Database, value: dt.datetime) -> dt.datetime:
    """Persist ``value`` unless it would move the watermark backwards.

    Returns:
        The watermark now stored.
    """
    current = stored_watermark(db)
    if current is not None and value <= current:
        return current
    _put(db, WATERMARK_KEY, value.isoformat())
    log_event(log, logging.INFO, "watermark_advanced", previous=current.isoformat() if current else None, watermark=value.isoformat())
    return value


def save_summary(db: Database, summary: dict[str, Any]) -> None:
    _put(db, LAST_SUMMARY_KEY, json_dumps(summary))


def load_summary(db: Database) -> dict[str, Any] | None:
    raw = _get(db, LAST_SUMMARY_KEY)
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        log_event(log, logging.WARNING, "summary_unreadable", key=LAST_SUMMARY_KEY)
        return None


@dataclass(frozen=True)
class PendingWork:
    """A queued outcome and which of its stages are still owed."""

    outcome: Outcome
    needs_evidence: bool
    needs_notify: bool


def load_pending(db: Database) -> list[PendingWork]:
    """All queued outcomes, oldest first."""
    with db.session_scope() as session:
        rows = session.execute(select(PendingOutcome).order_by(PendingOutcome.queued_at, PendingOutcome.cve_id)).scalars()
        return [
            PendingWork(
                outcome=Outcome(
                    kind=OutcomeKind(row.kind),
                    cve_id=row.cve_id,
                    updated_at=row.updated_at,
                    changed_fields=frozenset(row.changed_fields or ()),
                    has_components=bool(row.has_components),
                ),
                needs_evidence=bool(row.needs_evidence),
                needs_notify=bool(row.needs_notify),
            )
            for row in rows
        ]


def settle_pending(db: Database, outcome: Outcome, evidence_done: bool, notify_done: bool) -> bool:
    """Record which stages are still owed for ``outcome``; drop the row once none are.

    A row re-queued by a newer upsert since it was loaded is left alone.

    Returns:
        ``True`` if the row was removed.
    """
    with db.session_scope() as session:
        row = session.get(PendingOutcome, outcome.cve_id)
        if row is None or row.updated_at != outcome.updated_at:
            return False
        row.needs_evidence = not evidence_done
        row.needs_notify = not notify_done
        if row.needs_evidence or row.needs_notify:
            log_event(
                log,
                logging.INFO,
                "pending_kept",
                cve_id=outcome.cve_id,
                evidence=row.needs_evidence,
                notify=row.needs_notify,
            )
            return False
        session.delete(row)
        return True
