"""Change Notifier.

Decides which upsert outcomes are worth telling subscribers about and
hands one payload per enabled subscriber to the delivery providers.

Delivery is exactly-once per (vulnerability, subscriber, outcome): a
marker row is committed before the hand-off and an existing marker skips
the subscriber.  A crash between marking and delivering loses that one
message, which is preferred over sending it twice.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select

from .database import Database
from .errors import DeliveryFailed, StoreConflict
from .evidence import EvidenceReport
from .models import NotificationDelivery, Subscriber, Vulnerability
from .notifications import NotificationPayload, NotificationProvider
from .upsert import Outcome, OutcomeKind
from .utils import log_event, utc_now

log = logging.getLogger(__name__)


@dataclass
class NotifyResult:
    """Per-outcome delivery counters."""

    sent: int = 0
    already_marked: int = 0
    failed: int = 0
    errors: list[DeliveryFailed] = field(default_factory=list)


class ChangeNotifier:
    """Turns material outcomes into subscriber notifications.

    Args:
        db: Store handle.
        providers: Delivery providers; every payload goes to each of them.
        notify_on: Changed-field names that make an Updated outcome worth
            a notification.
    """

    def __init__(self, db: Database, providers: list[NotificationProvider], notify_on: set[str] | frozenset[str]):
        self.db = db
        self.providers = providers
        self.notify_on = frozenset(notify_on)

    def is_notification_worthy(self, outcome: Outcome, report: EvidenceReport | None = None) -> bool:
        """Inserted always is; Updated only if its changes hit ``notify_on``."""
        if outcome.kind is OutcomeKind.INSERTED:
            return True
        if outcome.kind is not OutcomeKind.UPDATED:
            return False
        changed = set(outcome.changed_fields)
        if report is not None:
            changed |= report.transitions
        return bool(changed & self.notify_on)

    def build_payload(self, cve_id: str) -> NotificationPayload | None:
        with self.db.session_scope() as session:
            vuln = session.execute(select(Vulnerability).where(Vulnerability.cve_id == cve_id)).scalar_one_or_none()
            if vuln is None:
                return None
            return NotificationPayload(
                cve_id=vuln.cve_id,
                description=vuln.description or "",
                severity=vuln.cvss_v3_severity or vuln.cvss_v2_severity,
                has_exploit=bool(vuln.has_poc),
            )

    def enabled_subscribers(self) -> list[Subscriber]:
        with self.db.session_scope() as session:
            return list(
                session.execute(
                    select(Subscriber).where(Subscriber.notifications_enabled.is_(True)).order_by(Subscriber.user_id)
                ).scalars()
            )

    def _mark(self, outcome: Outcome, subscriber_id: int) -> bool:
        """Commit the delivery marker.  ``False`` if it already existed."""
        try:
            with self.db.session_scope() as session:
                exists = session.execute(
                    select(NotificationDelivery.id).where(
                        NotificationDelivery.cve_id == outcome.cve_id,
                        NotificationDelivery.subscriber_id == subscriber_id,
                        NotificationDelivery.outcome_at == outcome.updated_at,
                    )
                ).first()
                if exists is not None:
                    return False
                session.add(
                    NotificationDelivery(
                        cve_id=outcome.cve_id,
                        subscriber_id=subscriber_id,
                        outcome_at=outcome.updated_at,
                        kind=outcome.kind.value,
                        marked_at=utc_now(),
                    )
                )
        except StoreConflict:
            # A concurrent run wrote the same marker first.
            return False
        return True

    def notify(self, outcome: Outcome, report: EvidenceReport | None = None) -> NotifyResult:
        """Deliver one outcome to every enabled subscriber not yet marked.

        Returns:
            ``NotifyResult`` with sent, skipped and failed counts.
        """
        result = NotifyResult()
        if not self.is_notification_worthy(outcome, report):
            return result
        if not self.providers:
            log_event(log, logging.DEBUG, "notify_no_providers", cve_id=outcome.cve_id)
            return result
        payload = self.build_payload(outcome.cve_id)
        if payload is None:
            return result

        for subscriber in self.enabled_subscribers():
            if not self._mark(outcome, subscriber.user_id):
                result.already_marked += 1
                continue
            delivered = False
            for provider in self.providers:
                try:
                    provider.deliver(subscriber, payload)
                    delivered = True
                except DeliveryFailed as exc:
                    result.errors.append(exc)
                    log_event(
                        log,
                        logging.WARNING,
                        "delivery_failed",
                        cve_id=outcome.cve_id,
                        subscriber=subscriber.user_id,
                        provider=provider.name,
                        error=exc,
                    )
            if delivered:
                result.sent += 1
            else:
                result.failed += 1

        log_event(
            log,
            logging.INFO,
            "notified",
            cve_id=outcome.cve_id,
            kind=outcome.kind.value,
            sent=result.sent,
            already_marked=result.already_marked,
            failed=result.failed,
        )
        return result
