"""Unit tests for cvesentry.cli — argument handling and subcommands."""

import datetime as dt
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from cvesentry.cli import EXIT_CANCELLED, EXIT_CONFIG, EXIT_FAILED, EXIT_OK, _build_parser, main
from cvesentry.database import Database
from cvesentry.scheduler import CycleSummary
from cvesentry.state import save_summary, save_watermark


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CVESENTRY_CONFIG", raising=False)
    monkeypatch.delenv("CVESENTRY_DATABASE_URL", raising=False)
    return tmp_path


@pytest.fixture
def db_url(workdir: Path) -> str:
    return f"sqlite:///{workdir / 'data' / 'cvesentry.db'}"


def _summary(status: str) -> CycleSummary:
    s = CycleSummary(started_at=dt.datetime(2024, 3, 1, 10, 0), finished_at=dt.datetime(2024, 3, 1, 10, 5), status=status)
    s.inserted = 3
    return s


# ── Parser ───────────────────────────────────────────────────────────────────


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])

    def test_global_options(self):
        args = _build_parser().parse_args(["--config", "c.yaml", "--database-url", "sqlite://", "run"])
        assert args.config == Path("c.yaml")
        assert args.database_url == "sqlite://"
        assert args.command == "run"

    def test_unknown_command(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["explode"])


# ── Configuration errors ─────────────────────────────────────────────────────


class TestConfigErrors:
    def test_invalid_file(self, workdir: Path, capsys):
        path = workdir / "bad.yaml"
        path.write_text("search:\n  concurrency: 0\n")
        assert main(["--config", str(path), "status"]) == EXIT_CONFIG
        assert "Invalid configuration" in capsys.readouterr().err

    def test_missing_file(self, workdir: Path):
        assert main(["--config", str(workdir / "nope.yaml"), "status"]) == EXIT_CONFIG

    def test_unparseable_yaml(self, workdir: Path):
        path = workdir / "broken.yaml"
        path.write_text("feed: [unclosed\n")
        assert main(["--config", str(path), "status"]) == EXIT_CONFIG


# ── Subcommands ──────────────────────────────────────────────────────────────


class TestInitDb:
    def test_creates_schema(self, db_url: str, workdir: Path, capsys):
        assert main(["--database-url", db_url, "init-db"]) == EXIT_OK
        assert (workdir / "data" / "cvesentry.db").exists()
        assert "Initialised schema" in capsys.readouterr().out


class TestStatus:
    def test_fresh_store(self, db_url: str, capsys):
        assert main(["--database-url", db_url, "status"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Watermark: not set" in out
        assert "No cycle has completed yet." in out

    def test_after_a_cycle(self, db_url: str, capsys):
        db = Database(db_url)
        db.init_db()
        save_watermark(db, dt.datetime(2024, 3, 1, 10, 0))
        save_summary(db, _summary("succeeded").to_dict())
        db.dispose()

        assert main(["--database-url", db_url, "status"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Watermark: 2024-03-01T10:00:00" in out
        assert "## CVE Sentry cycle: succeeded" in out
        assert "| Inserted | 3 |" in out

    def test_database_url_from_config_file(self, workdir: Path, capsys):
        (workdir / "cvesentry.yaml").write_text(f"store:\n  database_url: sqlite:///{workdir / 'from-file.db'}\n")
        assert main(["status"]) == EXIT_OK
        assert (workdir / "from-file.db").exists()


class TestRun:
    @pytest.mark.parametrize(
        "status,code",
        [("succeeded", EXIT_OK), ("failed", EXIT_FAILED), ("cancelled", EXIT_CANCELLED)],
    )
    def test_exit_codes(self, db_url: str, status: str, code: int, capsys):
        with patch("cvesentry.cli._run_pipeline", new=AsyncMock(return_value=_summary(status))) as run:
            assert main(["--database-url", db_url, "run"]) == code
        run.assert_awaited_once()
        assert run.call_args.kwargs["forever"] is False
        assert f"## CVE Sentry cycle: {status}" in capsys.readouterr().out

    def test_coalesced(self, db_url: str):
        with patch("cvesentry.cli._run_pipeline", new=AsyncMock(return_value=None)):
            assert main(["--database-url", db_url, "run"]) == EXIT_FAILED


class TestServe:
    def test_runs_forever_until_stopped(self, db_url: str):
        with patch("cvesentry.cli._run_pipeline", new=AsyncMock(return_value=None)) as run:
            assert main(["--database-url", db_url, "serve"]) == EXIT_OK
        assert run.call_args.kwargs["forever"] is True
