"""Telegram notification provider."""

import requests

from ..errors import DeliveryFailed
from ..models import Subscriber
from ..report import render_template
from .base import NotificationPayload, NotificationProvider

DEFAULT_TIMEOUT = (10, 30)
MAX_DESCRIPTION = 3000  # Telegram caps a message at 4096 characters


class TelegramProvider(NotificationProvider):
    """Send alerts through the Telegram Bot API.

    The chat id is the subscriber's ``user_id``; the message body is
    rendered from ``templates/telegram_message.html.j2``.

    Args:
        token: Bot token.
        api_url: Bot API root.
        frontend_url: Optional link to the vulnerability's page.
    """

    name = "telegram"

    def __init__(self, token: str, api_url: str = "https://api.telegram.org", frontend_url: str | None = None):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/") if frontend_url else None

    def render(self, payload: NotificationPayload) -> str:
        return render_template(
            "telegram_message.html.j2",
            cve_id=payload.cve_id,
            description=self._truncate(payload.description, MAX_DESCRIPTION),
            severity=payload.severity,
            has_exploit=payload.has_exploit,
            link=f"{self.frontend_url}/{payload.cve_id}" if self.frontend_url else None,
        )

    def deliver(self, subscriber: Subscriber, payload: NotificationPayload) -> None:
        body = {
            "chat_id": subscriber.user_id,
            "text": self.render(payload),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            r = requests.post(f"{self.api_url}/bot{self.token}/sendMessage", json=body, timeout=DEFAULT_TIMEOUT)
            r.raise_for_status()
            data = r.json()
        except (requests.RequestException, ValueError) as exc:
            # The token is part of the URL; keep it out of the message.
            raise DeliveryFailed(
                f"telegram delivery to {subscriber.user_id} failed: {type(exc).__name__}",
                provider=self.name,
            ) from exc
        if not data.get("ok", False):
            raise DeliveryFailed(
                f"telegram rejected message to {subscriber.user_id}: {data.get('description')}",
                provider=self.name,
            )
