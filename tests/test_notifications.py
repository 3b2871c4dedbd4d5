"""Unit tests for cvesentry.notifications — providers and load_providers."""

import os
from unittest.mock import MagicMock, patch

import pytest
import requests

from cvesentry.config import NotifyConfig
from cvesentry.errors import DeliveryFailed
from cvesentry.models import Subscriber
from cvesentry.notifications import TelegramProvider, WebhookProvider, load_providers
from cvesentry.notifications.base import NotificationPayload, NotificationProvider


def _payload(**overrides):
    base = dict(
        cve_id="CVE-2024-0001",
        description="Remote code execution in Acme Widget <2.0.",
        severity="CRITICAL",
        has_exploit=True,
    )
    base.update(overrides)
    return NotificationPayload(**base)


def _subscriber(user_id=101):
    return Subscriber(user_id=user_id, username="alice", notifications_enabled=True)


# ── Base helpers ─────────────────────────────────────────────────────────────


class TestTruncate:
    def test_short(self):
        assert NotificationProvider._truncate("abc", 10) == "abc"

    def test_long(self):
        out = NotificationProvider._truncate("x" * 50, 10)
        assert len(out) == 10
        assert out.endswith("...")

    def test_none(self):
        assert NotificationProvider._truncate(None, 10) == ""


class TestPayload:
    def test_to_dict(self):
        assert _payload().to_dict() == {
            "cve_id": "CVE-2024-0001",
            "description": "Remote code execution in Acme Widget <2.0.",
            "severity": "CRITICAL",
            "has_exploit": True,
        }


# ── Telegram ─────────────────────────────────────────────────────────────────


class TestTelegramProvider:
    @patch("cvesentry.notifications.telegram.requests.post")
    def test_sends_message(self, mock_post: MagicMock):
        mock_post.return_value.raise_for_status = MagicMock()
        mock_post.return_value.json.return_value = {"ok": True}
        p = TelegramProvider(token="123:abc", frontend_url="https://cvesentry.example/")
        p.deliver(_subscriber(), _payload())

        mock_post.assert_called_once()
        assert mock_post.call_args[0][0] == "https://api.telegram.org/bot123:abc/sendMessage"
        body = mock_post.call_args[1]["json"]
        assert body["chat_id"] == 101
        assert body["parse_mode"] == "HTML"
        assert "<b>CVE-2024-0001</b>" in body["text"]
        assert "CRITICAL" in body["text"]
        assert "Exploit evidence: yes" in body["text"]
        assert 'href="https://cvesentry.example/CVE-2024-0001"' in body["text"]

    @patch("cvesentry.notifications.telegram.requests.post")
    def test_description_is_escaped(self, mock_post: MagicMock):
        mock_post.return_value.json.return_value = {"ok": True}
        TelegramProvider(token="t").deliver(_subscriber(), _payload())
        text = mock_post.call_args[1]["json"]["text"]
        assert "&lt;2.0" in text
        assert "Details" not in text

    @patch("cvesentry.notifications.telegram.requests.post")
    def test_http_error_hides_token(self, mock_post: MagicMock):
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError(
            "403 for url https://api.telegram.org/botSECRET/sendMessage"
        )
        with pytest.raises(DeliveryFailed) as exc:
            TelegramProvider(token="SECRET").deliver(_subscriber(), _payload())
        assert exc.value.provider == "telegram"
        assert "SECRET" not in str(exc.value)

    @patch("cvesentry.notifications.telegram.requests.post")
    def test_rejected_by_api(self, mock_post: MagicMock):
        mock_post.return_value.json.return_value = {"ok": False, "description": "chat not found"}
        with pytest.raises(DeliveryFailed, match="chat not found"):
            TelegramProvider(token="t").deliver(_subscriber(), _payload())

    @patch("cvesentry.notifications.telegram.requests.post")
    def test_connection_error(self, mock_post: MagicMock):
        mock_post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(DeliveryFailed):
            TelegramProvider(token="t").deliver(_subscriber(), _payload())

    def test_render_without_severity(self):
        text = TelegramProvider(token="t").render(_payload(severity=None, has_exploit=False))
        assert "ℹ️" in text
        assert "Exploit evidence: no" in text


# ── Webhook ──────────────────────────────────────────────────────────────────


class TestWebhookProvider:
    @patch("cvesentry.notifications.webhook.requests.post")
    def test_posts_payload(self, mock_post: MagicMock):
        mock_post.return_value.raise_for_status = MagicMock()
        WebhookProvider(url="https://hooks.example/cve").deliver(_subscriber(102), _payload())
        mock_post.assert_called_once()
        assert mock_post.call_args[0][0] == "https://hooks.example/cve"
        body = mock_post.call_args[1]["json"]
        assert body["subscriber_id"] == 102
        assert body["cve_id"] == "CVE-2024-0001"
        assert body["has_exploit"] is True

    @patch("cvesentry.notifications.webhook.requests.post")
    def test_failure(self, mock_post: MagicMock):
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        with pytest.raises(DeliveryFailed) as exc:
            WebhookProvider(url="https://hooks.example/cve").deliver(_subscriber(), _payload())
        assert exc.value.provider == "webhook"


# ── load_providers ───────────────────────────────────────────────────────────


class TestLoadProviders:
    def test_none_configured(self):
        assert load_providers(NotifyConfig()) == []

    def test_both(self):
        providers = load_providers(NotifyConfig(telegram_token="t", webhook_url="https://hooks.example/x"))
        assert [p.name for p in providers] == ["telegram", "webhook"]

    @patch.dict(os.environ, {"TG_FOR_TEST": "from-env"})
    def test_env_reference(self):
        providers = load_providers(NotifyConfig(telegram_token="$TG_FOR_TEST"))
        assert isinstance(providers[0], TelegramProvider)
        assert providers[0].token == "from-env"

    def test_unset_env_reference(self):
        with patch.dict(os.environ, {}, clear=True):
            assert load_providers(NotifyConfig(webhook_url="$MISSING_HOOK")) == []
