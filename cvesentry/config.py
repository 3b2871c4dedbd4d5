"""Configuration models using Pydantic.

The whole configuration surface lives in one YAML (or JSON) file.
Secrets may be written as ``$ENV_VAR`` references and are resolved from
the environment at load time, so the file itself can be committed.

Example YAML::

    feed:
      base_url: https://services.nvd.nist.gov/rest/json/cves/2.0
      api_key: $NVD_API_KEY
    search:
      token: $GITHUB_TOKEN
      concurrency: 4
    notify:
      notify_on: [severity, exploit]
      telegram_token: $TELEGRAM_BOT_TOKEN
    scheduler:
      interval_seconds: 3600
    store:
      database_url: sqlite:///cvesentry.db
"""

import json
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

NVD_CVE_API_URL = "https://services.nvd.nist.gov/rest/json/cves/2.0"
GITHUB_API_URL = "https://api.github.com"
TELEGRAM_API_URL = "https://api.telegram.org"

# Fields an Updated outcome may carry.  ``exploit`` is contributed by the
# Evidence Matcher when exploit evidence goes from none to some.
NOTIFIABLE_FIELDS = frozenset(
    {
        "description",
        "score",
        "severity",
        "vector",
        "published_at",
        "weaknesses",
        "components",
        "references",
        "exploit",
    }
)


class FeedConfig(BaseModel):
    """External vulnerability feed settings.

    Attributes:
        base_url: NVD CVE API 2.0 endpoint.
        api_key: Optional API key (raises the NVD rate limit).
        results_per_page: Page size requested from the feed.
        page_delay_seconds: Politeness delay between pages.
        max_retry_window_seconds: Upper bound on time spent retrying one
            page before the cycle aborts.
        backoff_initial_seconds: First exponential backoff step.
        backoff_max_seconds: Cap on a single backoff sleep.
        max_window_days: Longest modified-date window the feed accepts.
        request_timeout_seconds: Total timeout of one HTTP request.
        max_attempts: Attempts per page before giving up, whichever of
            this and the retry window runs out first.
    """

    base_url: str = NVD_CVE_API_URL
    api_key: str | None = None
    results_per_page: int = Field(default=2000, ge=1, le=2000)
    page_delay_seconds: float = Field(default=6.0, ge=0.0)
    max_retry_window_seconds: float = Field(default=600.0, gt=0.0)
    backoff_initial_seconds: float = Field(default=2.0, gt=0.0)
    backoff_max_seconds: float = Field(default=120.0, gt=0.0)
    max_window_days: int = Field(default=120, ge=1, le=120)
    request_timeout_seconds: float = Field(default=120.0, gt=0.0)
    max_attempts: int = Field(default=10, ge=1)


class SearchConfig(BaseModel):
    """Code-hosting search source settings.

    Attributes:
        base_url: GitHub REST API root.
        token: Optional bearer token; code search requires one on GitHub.
        concurrency: Evidence Matcher worker pool size.
        max_poc_results: How many ranked PoC candidates to keep per CVE.
        max_project_candidates: Manifests inspected per vendor/product.
        request_timeout_seconds: Total timeout of one HTTP request.
    """

    base_url: str = GITHUB_API_URL
    token: str | None = None
    concurrency: int = Field(default=4, ge=1, le=32)
    max_poc_results: int = Field(default=10, ge=0, le=100)
    max_project_candidates: int = Field(default=20, ge=0, le=100)
    request_timeout_seconds: float = Field(default=60.0, gt=0.0)


class NotifyConfig(BaseModel):
    """Change Notifier settings.

    Attributes:
        notify_on: Changed fields that make an Updated outcome worth a
            notification.  Inserted outcomes always notify.
        telegram_token: Bot token for the Telegram provider.
        telegram_api_url: Telegram Bot API root.
        webhook_url: Collaborator endpoint for the webhook provider.
        frontend_url: Optional link shown in messages.
    """

    notify_on: set[str] = Field(default_factory=lambda: {"severity", "exploit"})
    telegram_token: str | None = None
    telegram_api_url: str = TELEGRAM_API_URL
    webhook_url: str | None = None
    frontend_url: str | None = None

    @field_validator("notify_on", mode="before")
    @classmethod
    def _normalize_fields(cls, v: Any) -> set[str]:
        """Lowercase, strip and reject unknown field names."""
        if v is None:
            return set()
        if isinstance(v, str):
            v = [v]
        out: set[str] = set()
        for item in v:
            name = re.sub(r"\s+", "_", str(item).strip().lower())
            if not name:
                continue
            if name not in NOTIFIABLE_FIELDS:
                raise ValueError(f"unknown notify_on field: {name}")
            out.add(name)
        return out


class SchedulerConfig(BaseModel):
    interval_seconds: float = Field(default=3600.0, gt=0.0)
    initial_lookback_days: int = Field(default=7, ge=1)


class StoreConfig(BaseModel):
    database_url: str = "sqlite:///cvesentry.db"
    conflict_retries: int = Field(default=3, ge=0, le=10)
    echo: bool = False


class AppConfig(BaseModel):
    """Top-level validated configuration."""

    feed: FeedConfig = Field(default_factory=FeedConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def resolve_env(value: Any) -> Any:
    """Resolve ``$ENV_VAR`` references in a string.

    If the value starts with ``$``, look it up in ``os.environ``.
    Otherwise return as-is.  Returns ``None`` if the env var is unset.
    """
    if isinstance(value, str) and value.startswith("$"):
        return os.environ.get(value[1:])
    return value


def _resolve_tree(raw: Any) -> Any:
    if isinstance(raw, dict):
        return {k: _resolve_tree(v) for k, v in raw.items()}
    if isinstance(raw, list):
        return [_resolve_tree(v) for v in raw]
    return resolve_env(raw)


def _apply_env_defaults(cfg: AppConfig) -> AppConfig:
    """Fill secrets the file left unset from well-known env vars."""
    env = os.environ
    if not cfg.feed.api_key and env.get("NVD_API_KEY"):
        cfg.feed.api_key = env["NVD_API_KEY"]
    if not cfg.search.token:
        token = env.get("GITHUB_TOKEN") or env.get("GH_TOKEN")
        if token:
            cfg.search.token = token
    if not cfg.notify.telegram_token and env.get("TELEGRAM_BOT_TOKEN"):
        cfg.notify.telegram_token = env["TELEGRAM_BOT_TOKEN"]
    if env.get("CVESENTRY_DATABASE_URL"):
        cfg.store.database_url = env["CVESENTRY_DATABASE_URL"]
    return cfg


def load_config(path: Path | None = None) -> AppConfig:
    """Load the configuration from a YAML or JSON file.

    Args:
        path: Path to the config file.  ``None`` (or a path that does not
            exist while looking for the default) yields defaults plus
            environment overrides.

    Returns:
        Validated ``AppConfig`` instance.

    Raises:
        FileNotFoundError: if an explicitly given file doesn't exist.
        pydantic.ValidationError: if content fails validation.
    """
    raw: Any = {}
    if path is not None:
        content = path.read_text(encoding="utf-8")
        if path.suffix.lower() == ".json":
            raw = json.loads(content)
        else:
            raw = yaml.safe_load(content) or {}
    cfg = AppConfig.model_validate(_resolve_tree(raw))
    return _apply_env_defaults(cfg)


def find_config() -> Path | None:
    """Find the config file.

    ``CVESENTRY_CONFIG`` wins; otherwise the first of ``cvesentry.yaml``,
    ``cvesentry.yml`` or ``cvesentry.json`` in the working directory.

    Returns:
        Path of the config file, or ``None`` if there is none.
    """
    explicit = os.environ.get("CVESENTRY_CONFIG")
    if explicit:
        return Path(explicit)
    for name in ("cvesentry.yaml", "cvesentry.yml", "cvesentry.json"):
        if Path(name).exists():
            return Path(name)
    return None
