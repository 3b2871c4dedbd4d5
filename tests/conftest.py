"""Shared fixtures: an in-memory store and NVD-shaped record builders."""

import datetime as dt
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from cvesentry.database import Database
from cvesentry.models import Subscriber


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def subscribers(db):
    """Two enabled subscribers and one who opted out."""
    with db.session_scope() as session:
        session.add_all(
            [
                Subscriber(user_id=101, username="alice", notifications_enabled=True),
                Subscriber(user_id=102, username="bob", notifications_enabled=True),
                Subscriber(user_id=103, username="carol", notifications_enabled=False),
            ]
        )
    return [101, 102]


def _nvd_item(
    cve_id: str = "CVE-2024-0001",
    last_modified: str = "2024-03-01T10:00:00.000",
    published: str = "2024-02-28T09:00:00.000",
    score: float | None = 9.8,
    severity: str | None = None,
    description: str = "Remote code execution in Acme Widget.",
    cwes: tuple[str, ...] = ("CWE-787",),
    cpes: tuple[dict[str, Any], ...] | None = None,
    references: tuple[str, ...] = ("https://acme.example/advisory",),
    status: str = "Analyzed",
) -> dict[str, Any]:
    if cpes is None:
        cpes = (
            {
                "vulnerable": True,
                "criteria": "cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*",
                "versionEndExcluding": "2.0",
            },
        )
    cve: dict[str, Any] = {
        "id": cve_id,
        "published": published,
        "lastModified": last_modified,
        "vulnStatus": status,
        "descriptions": [{"lang": "en", "value": description}],
        "metrics": {},
        "weaknesses": [{"description": [{"lang": "en", "value": c} for c in cwes]}] if cwes else [],
        "configurations": [{"nodes": [{"cpeMatch": list(cpes)}]}] if cpes else [],
        "references": [{"url": u, "source": "nvd@nist.gov", "tags": ["Vendor Advisory"]} for u in references],
    }
    if score is not None:
        data: dict[str, Any] = {"baseScore": score, "vectorString": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"}
        if severity:
            data["baseSeverity"] = severity
        cve["metrics"]["cvssMetricV31"] = [{"type": "Primary", "cvssData": data}]
    return {"cve": cve}


@pytest.fixture
def nvd_item():
    """Factory for NVD CVE API 2.0 list items."""
    return _nvd_item


@pytest.fixture
def ts():
    def _ts(text: str) -> dt.datetime:
        return dt.datetime.fromisoformat(text)

    return _ts


# ── HTTP mocking ─────────────────────────────────────────────────────────────


class AsyncContextManager:
    """Wraps an async mock to support `async with session.get(url) as resp:`."""

    def __init__(self, mock_resp):
        self.mock_resp = mock_resp

    async def __aenter__(self):
        return self.mock_resp

    async def __aexit__(self, *args):
        pass


def _fake_response(status: int = 200, body: Any = None, headers: dict[str, str] | None = None) -> MagicMock:
    """A stand-in for ``aiohttp.ClientResponse``.

    ``body`` may be a string (returned verbatim by ``text()``) or any
    JSON-serialisable value.
    """
    text = body if isinstance(body, str) else json.dumps(body if body is not None else {})
    resp = MagicMock()
    resp.status = status
    resp.headers = headers or {}
    resp.text = AsyncMock(return_value=text)
    resp.json = AsyncMock(side_effect=lambda **kwargs: json.loads(text))
    return resp


def _as_call(item):
    if isinstance(item, BaseException):
        return item
    return AsyncContextManager(item)


@pytest.fixture
def make_session():
    """Build a mock ``aiohttp.ClientSession`` replaying responses in order.

    Items may be ``fake_response`` objects or exceptions raised by the call.
    ``post`` replays the same queue as ``get``.
    """

    def _make(*responses) -> MagicMock:
        session = MagicMock()
        session.get = MagicMock(side_effect=[_as_call(r) for r in responses])
        session.post = MagicMock(side_effect=[_as_call(r) for r in responses])
        session.close = AsyncMock()
        return session

    return _make


@pytest.fixture
def fake_response():
    return _fake_response


async def _no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def no_sleep():
    """Drop-in for ``asyncio.sleep`` that returns at once."""
    return _no_sleep
