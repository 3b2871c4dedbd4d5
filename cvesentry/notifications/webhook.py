"""Generic JSON webhook provider."""

import requests

from ..errors import DeliveryFailed
from ..models import Subscriber
from .base import NotificationPayload, NotificationProvider

DEFAULT_TIMEOUT = (10, 60)


class WebhookProvider(NotificationProvider):
    """POST each payload as JSON to a collaborator endpoint.

    Body: the payload fields plus ``subscriber_id``.

    Args:
        url: Collaborator endpoint.
    """

    name = "webhook"

    def __init__(self, url: str):
        self.url = url

    def deliver(self, subscriber: Subscriber, payload: NotificationPayload) -> None:
        body = payload.to_dict()
        body["subscriber_id"] = subscriber.user_id
        try:
            r = requests.post(self.url, json=body, timeout=DEFAULT_TIMEOUT)
            r.raise_for_status()
        except requests.RequestException as exc:
            raise DeliveryFailed(f"webhook delivery to {subscriber.user_id} failed: {exc}", provider=self.name) from exc
