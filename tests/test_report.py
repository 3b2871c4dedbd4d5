"""Unit tests for cvesentry.report — Jinja2 template rendering."""

import datetime as dt

from cvesentry.report import render_cycle_summary, render_template
from cvesentry.scheduler import CycleSummary


def _summary(**overrides) -> CycleSummary:
    s = CycleSummary(
        started_at=dt.datetime(2024, 3, 1, 10, 0),
        finished_at=dt.datetime(2024, 3, 1, 10, 2),
        status="succeeded",
        records_seen=4,
        inserted=2,
        updated=1,
        unchanged=1,
        evidence_matches=5,
        notifications_sent=6,
        watermark_before=dt.datetime(2024, 2, 29),
        watermark_after=dt.datetime(2024, 3, 1, 9, 59),
    )
    for key, value in overrides.items():
        setattr(s, key, value)
    return s


class TestRenderCycleSummary:
    def test_counts(self):
        md = render_cycle_summary(_summary())
        assert md.startswith("## CVE Sentry cycle: succeeded")
        assert "| Records seen | 4 |" in md
        assert "| Evidence matches | 5 |" in md
        assert "| Notifications sent | 6 |" in md
        assert "| Watermark after | 2024-03-01T09:59:00 |" in md
        assert "No errors." in md
        assert "clamped" not in md

    def test_errors_sorted_by_count(self):
        s = _summary()
        s.count_error("record_invalid")
        s.count_error("feed_malformed", 3)
        md = render_cycle_summary(s)
        assert md.index("`feed_malformed`: 3") < md.index("`record_invalid`: 1")
        assert "No errors." not in md

    def test_aborted(self):
        s = _summary(status="failed", failed_stage="fetching", error="fetching failed: feed returned HTTP 503")
        md = render_cycle_summary(s)
        assert "**Aborted in fetching:** fetching failed: feed returned HTTP 503" in md

    def test_truncated_window(self):
        assert "clamped, more history pending" in render_cycle_summary(_summary(window_truncated=True))

    def test_stored_dict_form(self):
        data = _summary().to_dict()
        data["errors"] = {"search_rate_limited": 2}
        md = render_cycle_summary(data)
        assert "| Inserted | 2 |" in md
        assert "`search_rate_limited`: 2" in md

    def test_markdown_is_not_escaped(self):
        s = _summary(status="failed", failed_stage="upserting", error="a < b")
        assert "a < b" in render_cycle_summary(s)


class TestRenderTemplate:
    def test_html_is_escaped(self):
        html = render_template(
            "telegram_message.html.j2",
            cve_id="CVE-2024-0001",
            description="<script>alert(1)</script>",
            severity="HIGH",
            has_exploit=False,
            link=None,
        )
        assert "&lt;script&gt;" in html
        assert "⚠️" in html
