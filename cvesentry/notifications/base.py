"""Abstract base class for notification providers."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

from ..models import Subscriber


@dataclass(frozen=True)
class NotificationPayload:
    """What a subscriber is told about one material change.

    Attributes:
        cve_id: Vulnerability identifier.
        description: Vulnerability description.
        severity: Severity band (CVSS v3, else v2), or ``None``.
        has_exploit: Whether any exploit evidence is stored.
    """

    cve_id: str
    description: str
    severity: str | None
    has_exploit: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NotificationProvider(ABC):
    """Base class for all delivery providers.

    A provider hands one payload to the external messaging collaborator
    for one subscriber.  It raises ``DeliveryFailed`` when the hand-off
    did not succeed; the Change Notifier logs that and moves on.

    Attributes:
        name: Short identifier for this provider (e.g., ``telegram``).
    """

    name: str = "base"

    @abstractmethod
    def deliver(self, subscriber: Subscriber, payload: NotificationPayload) -> None:
        """Deliver ``payload`` to ``subscriber``.

        Args:
            subscriber: Enabled subscriber row.
            payload: Notification payload.

        Raises:
            DeliveryFailed: the collaborator did not accept the payload.
        """
        ...

    @staticmethod
    def _truncate(text: str, limit: int) -> str:
        text = text or ""
        if len(text) <= limit:
            return text
        return text[: limit - 3].rstrip() + "..."
