"""Unit tests for cvesentry.state — watermark and summary persistence."""

import datetime as dt
from unittest.mock import patch

from cvesentry.models import PendingOutcome, PipelineState
from cvesentry.parsers import normalize_record
from cvesentry.state import (
    LAST_SUMMARY_KEY,
    load_pending,
    load_summary,
    load_watermark,
    max_observed_updated_at,
    save_summary,
    save_watermark,
    settle_pending,
    stored_watermark,
)
from cvesentry.upsert import OutcomeKind, UpsertEngine


class TestLoadWatermark:
    def test_empty_store_uses_lookback(self, db):
        now = dt.datetime(2024, 3, 10, 12, 0, 0)
        with patch("cvesentry.state.utc_now", return_value=now):
            assert load_watermark(db, lookback_days=7) == dt.datetime(2024, 3, 3, 12, 0, 0)

    def test_falls_back_to_store_maximum(self, db, nvd_item):
        engine = UpsertEngine(db)
        engine.apply(normalize_record(nvd_item(cve_id="CVE-2024-0001", last_modified="2024-03-01T00:00:00.000")))
        engine.apply(normalize_record(nvd_item(cve_id="CVE-2024-0002", last_modified="2024-03-04T00:00:00.000")))
        assert max_observed_updated_at(db) == dt.datetime(2024, 3, 4)
        assert load_watermark(db) == dt.datetime(2024, 3, 4)

    def test_persisted_value_wins(self, db, nvd_item):
        UpsertEngine(db).apply(normalize_record(nvd_item(last_modified="2024-03-04T00:00:00.000")))
        save_watermark(db, dt.datetime(2024, 3, 2))
        assert load_watermark(db) == dt.datetime(2024, 3, 2)


class TestSaveWatermark:
    def test_first_save(self, db):
        assert stored_watermark(db) is None
        assert save_watermark(db, dt.datetime(2024, 3, 1)) == dt.datetime(2024, 3, 1)
        assert stored_watermark(db) == dt.datetime(2024, 3, 1)

    def test_advances(self, db):
        save_watermark(db, dt.datetime(2024, 3, 1))
        save_watermark(db, dt.datetime(2024, 3, 2, 8, 30))
        assert stored_watermark(db) == dt.datetime(2024, 3, 2, 8, 30)

    def test_never_moves_backwards(self, db):
        save_watermark(db, dt.datetime(2024, 3, 5))
        assert save_watermark(db, dt.datetime(2024, 3, 1)) == dt.datetime(2024, 3, 5)
        assert stored_watermark(db) == dt.datetime(2024, 3, 5)

    def test_equal_value_is_a_noop(self, db):
        save_watermark(db, dt.datetime(2024, 3, 5))
        with db.session_scope() as session:
            before = session.get(PipelineState, "feed.watermark").updated_at
        save_watermark(db, dt.datetime(2024, 3, 5))
        with db.session_scope() as session:
            assert session.get(PipelineState, "feed.watermark").updated_at == before


class TestSummary:
    def test_round_trip(self, db):
        save_summary(db, {"status": "succeeded", "errors": {"record_invalid": 2}})
        assert load_summary(db) == {"errors": {"record_invalid": 2}, "status": "succeeded"}

    def test_missing(self, db):
        assert load_summary(db) is None

    def test_unreadable(self, db):
        with db.session_scope() as session:
            session.add(PipelineState(key=LAST_SUMMARY_KEY, value="{broken"))
        assert load_summary(db) is None


class TestPendingWork:
    def test_load_rebuilds_outcomes(self, db, nvd_item):
        engine = UpsertEngine(db)
        engine.apply(normalize_record(nvd_item(cve_id="CVE-2024-0001")))
        engine.apply(normalize_record(nvd_item(cve_id="CVE-2024-0002", cpes=())))
        pending = load_pending(db)
        assert [w.outcome.cve_id for w in pending] == ["CVE-2024-0001", "CVE-2024-0002"]
        first = pending[0]
        assert first.outcome.kind is OutcomeKind.INSERTED
        assert first.outcome.updated_at == dt.datetime(2024, 3, 1, 10, 0, 0)
        assert first.outcome.has_components is True
        assert pending[1].outcome.has_components is False
        assert (first.needs_evidence, first.needs_notify) == (True, True)

    def test_settle_keeps_owed_stage(self, db, nvd_item):
        outcome = UpsertEngine(db).apply(normalize_record(nvd_item()))
        assert settle_pending(db, outcome, evidence_done=False, notify_done=True) is False
        [work] = load_pending(db)
        assert (work.needs_evidence, work.needs_notify) == (True, False)

    def test_settle_removes_finished_row(self, db, nvd_item):
        outcome = UpsertEngine(db).apply(normalize_record(nvd_item()))
        assert settle_pending(db, outcome, evidence_done=True, notify_done=True) is True
        assert load_pending(db) == []

    def test_failed_notify_is_owed_again(self, db, nvd_item):
        outcome = UpsertEngine(db).apply(normalize_record(nvd_item()))
        settle_pending(db, outcome, evidence_done=False, notify_done=True)
        settle_pending(db, outcome, evidence_done=False, notify_done=False)
        [work] = load_pending(db)
        assert work.needs_notify is True

    def test_newer_upsert_is_not_settled(self, db, nvd_item):
        engine = UpsertEngine(db)
        stale = engine.apply(normalize_record(nvd_item(last_modified="2024-03-01T00:00:00.000")))
        engine.apply(normalize_record(nvd_item(last_modified="2024-03-02T00:00:00.000")))
        assert settle_pending(db, stale, evidence_done=True, notify_done=True) is False
        with db.session_scope() as session:
            assert session.get(PendingOutcome, "CVE-2024-0001").updated_at == dt.datetime(2024, 3, 2)
