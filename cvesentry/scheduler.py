"""Scheduler/Orchestrator.

Drives one cycle at a time through the stages

    Idle → Fetching → Normalizing → Upserting → Enriching → Notifying → Idle

Feed pages are consumed in order; each page is normalized and upserted
before the next one is fetched, so a page's records are durable before
the cycle moves on.  Every Inserted or Updated outcome is queued in the
store together with its upsert; once every page has been upserted the
Enriching and Notifying stages drain that queue, which keeps "upsert
before enrich before notify" true for each vulnerability.  Queue entries
left behind by an aborted cycle, or whose evidence was skipped because
the search source was rate limited or down, are drained by the next
cycle.

The watermark is read at the start of every cycle and advanced only when
the cycle succeeded without skipping a page or a record it could have
stored later.  Every stage is idempotent, so an aborted cycle is simply
repeated from the same watermark by the next one.
"""

import asyncio
import datetime as dt
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import AppConfig
from .database import Database
from .errors import CycleAborted, FeedError, RecordInvalid, RecordRetracted, StoreConflict, StoreError, StoreUnavailable
from .evidence import EvidenceMatcher, EvidenceReport
from .feed import FeedClient
from .notifications import NotificationProvider, load_providers
from .notifier import ChangeNotifier
from .parsers import NormalizedRecord, normalize_record
from .search import SearchClient
from .state import PendingWork, load_pending, load_watermark, save_summary, save_watermark, settle_pending
from .upsert import Outcome, OutcomeKind, UpsertEngine
from .utils import log_event, utc_now

log = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    UPSERTING = "upserting"
    ENRICHING = "enriching"
    NOTIFYING = "notifying"


@dataclass
class CycleSummary:
    """Operator-facing result of one cycle."""

    started_at: dt.datetime
    finished_at: dt.datetime | None = None
    status: str = "running"  # running | succeeded | failed | cancelled
    records_seen: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    evidence_matches: int = 0
    notifications_sent: int = 0
    errors: Counter = field(default_factory=Counter)
    watermark_before: dt.datetime | None = None
    watermark_after: dt.datetime | None = None
    window_truncated: bool = False
    failed_stage: str | None = None
    error: str | None = None

    def count_error(self, kind: str, n: int = 1) -> None:
        self.errors[kind] += n

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "records_seen": self.records_seen,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "evidence_matches": self.evidence_matches,
            "notifications_sent": self.notifications_sent,
            "errors": dict(self.errors),
            "watermark_before": self.watermark_before.isoformat() if self.watermark_before else None,
            "watermark_after": self.watermark_after.isoformat() if self.watermark_after else None,
            "window_truncated": self.window_truncated,
            "failed_stage": self.failed_stage,
            "error": self.error,
        }


class Orchestrator:
    """Runs ingestion cycles.

    Args:
        config: Application configuration.
        db: Store handle.
        feed: Feed Client.
        search: Search-source client used by the Evidence Matcher.
        providers: Delivery providers; built from ``config.notify`` when
            omitted.
    """

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        feed: FeedClient,
        search: SearchClient,
        providers: list[NotificationProvider] | None = None,
    ):
        self.config = config
        self.db = db
        self.feed = feed
        self.upsert = UpsertEngine(db, config.store.conflict_retries)
        self.matcher = EvidenceMatcher(db, search, config.search, config.store.conflict_retries)
        self.notifier = ChangeNotifier(
            db,
            load_providers(config.notify) if providers is None else providers,
            config.notify.notify_on,
        )
        self.state = CycleState.IDLE
        self.last_summary: CycleSummary | None = None
        self._current: asyncio.Task | None = None
        self._cancel_requested = False
        self._wakeup: asyncio.Event | None = None
        self._stopping = False

    # ─── Control ─────────────────────────────────────────────────────────────

    @property
    def active(self) -> bool:
        return self._current is not None and not self._current.done()

    def _event(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def trigger(self) -> None:
        """Request a cycle.  Repeated requests while one is pending collapse."""
        self._event().set()

    def cancel(self) -> None:
        """Cancel the in-flight cycle, if any."""
        if self.active:
            self._cancel_requested = True
            self._current.cancel()

    def stop(self) -> None:
        """Make ``run_forever`` return after cancelling the in-flight cycle."""
        self._stopping = True
        self._event().set()
        self.cancel()

    def _set_state(self, state: CycleState) -> None:
        if state is not self.state:
            log_event(log, logging.DEBUG, "cycle_state", previous=self.state.value, state=state.value)
            self.state = state

    # ─── Cycles ──────────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleSummary | None:
        """Run one cycle to completion.

        If a cycle is already active the request is coalesced into a
        trigger for the next one and ``None`` is returned.

        Returns:
            ``CycleSummary`` of the cycle.
        """
        if self.active:
            self.trigger()
            log_event(log, logging.INFO, "cycle_coalesced")
            return None

        summary = CycleSummary(started_at=utc_now())
        self._cancel_requested = False
        self._current = asyncio.ensure_future(self._run(summary))
        try:
            await self._current
            summary.status = "succeeded"
        except CycleAborted as exc:
            summary.status = "failed"
            summary.failed_stage = exc.stage
            summary.error = str(exc)
            summary.count_error(getattr(exc.cause, "kind", exc.kind))
            log_event(log, logging.ERROR, "cycle_aborted", stage=exc.stage, error=exc)
        except asyncio.CancelledError:
            if not self._cancel_requested:
                raise
            summary.status = "cancelled"
            log_event(log, logging.WARNING, "cycle_cancelled", stage=self.state.value)
        finally:
            self._current = None
            summary.finished_at = utc_now()
            self._set_state(CycleState.IDLE)
            self.last_summary = summary

        self._persist_summary(summary)
        log_event(
            log,
            logging.INFO if summary.succeeded else logging.ERROR,
            "cycle_done",
            status=summary.status,
            seen=summary.records_seen,
            inserted=summary.inserted,
            updated=summary.updated,
            unchanged=summary.unchanged,
            evidence=summary.evidence_matches,
            notified=summary.notifications_sent,
            errors=dict(summary.errors) or None,
            watermark=summary.watermark_after.isoformat() if summary.watermark_after else None,
        )
        return summary

    def _persist_summary(self, summary: CycleSummary) -> None:
        try:
            save_summary(self.db, summary.to_dict())
        except StoreError as exc:
            log_event(log, logging.ERROR, "summary_not_saved", error=exc)

    async def _run(self, summary: CycleSummary) -> None:
        try:
            await self._stages(summary)
        except (StoreUnavailable, FeedError) as exc:
            raise CycleAborted(f"{self.state.value} failed: {exc}", stage=self.state.value, cause=exc) from exc

    async def _stages(self, summary: CycleSummary) -> None:
        self._set_state(CycleState.FETCHING)
        since = load_watermark(self.db, self.config.scheduler.initial_lookback_days)
        summary.watermark_before = since
        log_event(log, logging.INFO, "cycle_start", since=since.isoformat())

        max_seen: dt.datetime | None = None
        window_end: dt.datetime | None = None
        complete = True

        async for page in self.feed.iter_pages(since):
            window_end = page.window_end
            summary.window_truncated = page.window_truncated
            if page.error is not None:
                summary.count_error(page.error.kind)
                complete = False
                continue
            summary.records_seen += len(page.records)

            self._set_state(CycleState.NORMALIZING)
            records = self._normalize(page.records, summary)

            self._set_state(CycleState.UPSERTING)
            for record in records:
                outcome = self._upsert(record, summary)
                if outcome is None:
                    complete = False
                    continue
                if max_seen is None or record.vulnerability.updated_at > max_seen:
                    max_seen = record.vulnerability.updated_at
            self._set_state(CycleState.FETCHING)

        self._set_state(CycleState.ENRICHING)
        pending = load_pending(self.db)
        if pending:
            log_event(log, logging.INFO, "pending_loaded", count=len(pending))
        reports = await self.matcher.run_all(w.outcome for w in pending if w.needs_evidence)
        for report in reports.values():
            summary.evidence_matches += report.matches
            if report.skipped is not None:
                summary.count_error(report.skipped.kind)

        self._set_state(CycleState.NOTIFYING)
        self._notify(pending, reports, summary)

        summary.watermark_after = self._advance(since, max_seen, window_end, summary.window_truncated, complete)

    def _normalize(self, raws: list[dict[str, Any]], summary: CycleSummary) -> list[NormalizedRecord]:
        records: list[NormalizedRecord] = []
        for raw in raws:
            try:
                records.append(normalize_record(raw))
            except RecordRetracted as exc:
                summary.count_error(exc.kind)
                log_event(log, logging.INFO, "record_retracted", cve_id=exc.cve_id)
            except RecordInvalid as exc:
                summary.count_error(exc.kind)
                log_event(log, logging.WARNING, "record_invalid", cve_id=exc.cve_id, error=exc)
        return records

    def _upsert(self, record: NormalizedRecord, summary: CycleSummary) -> Outcome | None:
        try:
            outcome = self.upsert.apply(record)
        except StoreConflict as exc:
            summary.count_error(exc.kind)
            log_event(log, logging.WARNING, "upsert_gave_up", cve_id=record.cve_id, error=exc)
            return None
        if outcome.kind is OutcomeKind.INSERTED:
            summary.inserted += 1
        elif outcome.kind is OutcomeKind.UPDATED:
            summary.updated += 1
        else:
            summary.unchanged += 1
        return outcome

    def _notify(self, pending: list[PendingWork], reports: dict[str, EvidenceReport], summary: CycleSummary) -> None:
        for work in pending:
            outcome = work.outcome
            report = reports.get(outcome.cve_id)
            evidence_done = not work.needs_evidence or report is None or report.skipped is None
            notify_done = True
            # Evidence retried from an earlier cycle can still turn up an exploit.
            if work.needs_notify or (report is not None and report.exploit_appeared):
                try:
                    result = self.notifier.notify(outcome, report)
                except StoreConflict as exc:
                    summary.count_error(exc.kind)
                    notify_done = False
                else:
                    summary.notifications_sent += result.sent
                    for error in result.errors:
                        summary.count_error(error.kind)
            try:
                settle_pending(self.db, outcome, evidence_done, notify_done)
            except StoreConflict as exc:
                # Left queued; the next cycle repeats it and the markers dedupe.
                summary.count_error(exc.kind)
                log_event(log, logging.WARNING, "pending_not_settled", cve_id=outcome.cve_id, error=exc)

    def _advance(
        self,
        since: dt.datetime,
        max_seen: dt.datetime | None,
        window_end: dt.datetime | None,
        truncated: bool,
        complete: bool,
    ) -> dt.datetime:
        if not complete:
            log_event(log, logging.WARNING, "watermark_held", watermark=since.isoformat())
            return since
        target = max_seen
        if truncated and window_end is not None and (target is None or window_end > target):
            target = window_end
        if target is None or target <= since:
            return since
        return save_watermark(self.db, target)

    async def run_forever(self) -> None:
        """Run cycles every ``interval_seconds`` or when triggered, until ``stop``."""
        interval = self.config.scheduler.interval_seconds
        wakeup = self._event()
        self._stopping = False
        while not self._stopping:
            summary = await self.run_cycle()
            if self._stopping:
                break
            if summary is not None and summary.window_truncated and summary.succeeded:
                # More feed history is waiting beyond the clamped window.
                continue
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            wakeup.clear()
        log_event(log, logging.INFO, "scheduler_stopped")

