"""Notification delivery providers.

This package implements the Strategy pattern for handing payloads to the
external messaging collaborator.  Each provider extends
``NotificationProvider`` and implements ``deliver``.

Adding a new provider requires only:
1. Create a new file in this package.
2. Subclass ``NotificationProvider``.
3. Register it in ``load_providers()``.
"""

from ..config import NotifyConfig, resolve_env
from .base import NotificationPayload, NotificationProvider
from .telegram import TelegramProvider
from .webhook import WebhookProvider

__all__ = [
    "NotificationPayload",
    "NotificationProvider",
    "TelegramProvider",
    "WebhookProvider",
    "load_providers",
]


def load_providers(config: NotifyConfig) -> list[NotificationProvider]:
    """Create the providers the configuration enables.

    Args:
        config: Notifier settings; ``$ENV_VAR`` values are resolved here
            as well, in case the config was built in code.

    Returns:
        List of active providers (possibly empty).
    """
    providers: list[NotificationProvider] = []
    token = resolve_env(config.telegram_token)
    if token:
        providers.append(
            TelegramProvider(token=token, api_url=config.telegram_api_url, frontend_url=config.frontend_url)
        )
    url = resolve_env(config.webhook_url)
    if url:
        providers.append(WebhookProvider(url=url))
    return providers
