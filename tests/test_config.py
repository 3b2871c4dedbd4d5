"""Unit tests for cvesentry.config — Pydantic configuration models."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from pydantic import ValidationError

from cvesentry.config import (
    AppConfig,
    FeedConfig,
    NotifyConfig,
    SearchConfig,
    find_config,
    load_config,
    resolve_env,
)

# ── Models ───────────────────────────────────────────────────────────────────


class TestFeedConfig:
    def test_defaults(self):
        f = FeedConfig()
        assert f.base_url.endswith("/rest/json/cves/2.0")
        assert f.results_per_page == 2000
        assert f.max_window_days == 120
        assert f.api_key is None

    def test_window_cannot_exceed_feed_limit(self):
        with pytest.raises(ValidationError):
            FeedConfig(max_window_days=121)

    def test_page_size_bounds(self):
        with pytest.raises(ValidationError):
            FeedConfig(results_per_page=0)


class TestSearchConfig:
    def test_default_pool_is_small(self):
        assert SearchConfig().concurrency == 4

    def test_concurrency_bounds(self):
        with pytest.raises(ValidationError):
            SearchConfig(concurrency=0)


class TestNotifyConfig:
    def test_default_notify_on(self):
        assert NotifyConfig().notify_on == {"severity", "exploit"}

    def test_normalises_names(self):
        cfg = NotifyConfig(notify_on=[" Severity ", "SCORE", "published at"])
        assert cfg.notify_on == {"severity", "score", "published_at"}

    def test_single_string(self):
        assert NotifyConfig(notify_on="exploit").notify_on == {"exploit"}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            NotifyConfig(notify_on=["epss"])

    def test_empty(self):
        assert NotifyConfig(notify_on=[]).notify_on == set()


# ── resolve_env ──────────────────────────────────────────────────────────────


class TestResolveEnv:
    @patch.dict(os.environ, {"MY_TOKEN": "s3cret"})
    def test_reference(self):
        assert resolve_env("$MY_TOKEN") == "s3cret"

    def test_unset_reference(self):
        with patch.dict(os.environ, {}, clear=True):
            assert resolve_env("$NOPE") is None

    def test_literal(self):
        assert resolve_env("plain") == "plain"
        assert resolve_env(5) == 5


# ── load_config ──────────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_none_gives_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = load_config(None)
        assert isinstance(cfg, AppConfig)
        assert cfg.store.database_url == "sqlite:///cvesentry.db"

    def test_yaml(self, tmp_path: Path):
        path = tmp_path / "cvesentry.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "feed": {"api_key": "$NVD_KEY_FOR_TEST", "page_delay_seconds": 0},
                    "search": {"concurrency": 8},
                    "notify": {"notify_on": ["severity", "score"], "webhook_url": "https://hooks.example/x"},
                    "scheduler": {"interval_seconds": 600},
                }
            )
        )
        with patch.dict(os.environ, {"NVD_KEY_FOR_TEST": "abc"}, clear=True):
            cfg = load_config(path)
        assert cfg.feed.api_key == "abc"
        assert cfg.feed.page_delay_seconds == 0
        assert cfg.search.concurrency == 8
        assert cfg.notify.notify_on == {"severity", "score"}
        assert cfg.scheduler.interval_seconds == 600

    def test_json(self, tmp_path: Path):
        path = tmp_path / "cvesentry.json"
        path.write_text(json.dumps({"store": {"database_url": "sqlite:///x.db"}}))
        with patch.dict(os.environ, {}, clear=True):
            assert load_config(path).store.database_url == "sqlite:///x.db"

    def test_empty_yaml(self, tmp_path: Path):
        path = tmp_path / "cvesentry.yaml"
        path.write_text("")
        with patch.dict(os.environ, {}, clear=True):
            assert load_config(path).search.concurrency == 4

    def test_env_defaults(self):
        env = {
            "NVD_API_KEY": "nvd",
            "GH_TOKEN": "gh",
            "TELEGRAM_BOT_TOKEN": "tg",
            "CVESENTRY_DATABASE_URL": "postgresql://u@h/db",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = load_config(None)
        assert cfg.feed.api_key == "nvd"
        assert cfg.search.token == "gh"
        assert cfg.notify.telegram_token == "tg"
        assert cfg.store.database_url == "postgresql://u@h/db"

    def test_file_value_wins_over_env_default(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("search:\n  token: from-file\n")
        with patch.dict(os.environ, {"GITHUB_TOKEN": "from-env"}, clear=True):
            assert load_config(path).search.token == "from-file"

    def test_invalid(self, tmp_path: Path):
        path = tmp_path / "c.yaml"
        path.write_text("search:\n  concurrency: -1\n")
        with pytest.raises(ValidationError):
            load_config(path)

    def test_missing_explicit_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")


class TestFindConfig:
    def test_env_var(self, tmp_path: Path):
        with patch.dict(os.environ, {"CVESENTRY_CONFIG": str(tmp_path / "x.yaml")}):
            assert find_config() == tmp_path / "x.yaml"

    def test_working_directory(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CVESENTRY_CONFIG", raising=False)
        assert find_config() is None
        (tmp_path / "cvesentry.yml").write_text("{}")
        assert find_config() == Path("cvesentry.yml")
