"""Upsert Engine: idempotent writes of normalized records.

Each ``apply`` runs in one transaction: look the vulnerability up by its
external identifier, insert it if absent, skip it if the feed timestamp
is not newer than the stored one, otherwise overwrite the mutable fields
and replace the CWE links, CPE rows and references (delete then
re-insert, same transaction).  Inserted and Updated outcomes are queued in
``pending_outcomes`` in that same transaction for the evidence and
notification stages.

Writers for the same identifier serialize through the store: a racing
insert trips the unique constraint on ``cve_id`` and a racing update
finds the row's ``updated_at`` moved under it.  Both surface as
``StoreConflict`` and the whole apply is retried a bounded number of
times; the retry then sees the winner's row and usually ends as
``UNCHANGED``.
"""

import datetime as dt
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.orm import Session

from .database import Database
from .errors import StoreConflict
from .models import AffectedComponent, ExternalReference, PendingOutcome, Vulnerability, Weakness, vulnerability_cwe
from .parsers import NormalizedRecord
from .utils import log_event, utc_now

log = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class Outcome:
    """Result of applying one record.

    Attributes:
        kind: Inserted, Updated or Unchanged.
        cve_id: External identifier.
        updated_at: Feed last-modified timestamp of the applied record.
        changed_fields: For Updated outcomes, the names of the fields whose
            value changed.
        has_components: Whether the record lists affected components.
    """

    kind: OutcomeKind
    cve_id: str
    updated_at: dt.datetime
    changed_fields: frozenset[str] = frozenset()
    has_components: bool = False

    @property
    def is_material(self) -> bool:
        return self.kind is not OutcomeKind.UNCHANGED


def _vulnerability_values(record: NormalizedRecord) -> dict[str, Any]:
    v = record.vulnerability
    return {
        "description": v.description,
        "published_at": v.published_at,
        "updated_at": v.updated_at,
        "cvss_v3_score": v.cvss_v3.score if v.cvss_v3 else None,
        "cvss_v3_severity": v.cvss_v3.severity if v.cvss_v3 else None,
        "cvss_v3_vector": v.cvss_v3.vector if v.cvss_v3 else None,
        "cvss_v2_score": v.cvss_v2.score if v.cvss_v2 else None,
        "cvss_v2_severity": v.cvss_v2.severity if v.cvss_v2 else None,
        "cvss_v2_vector": v.cvss_v2.vector if v.cvss_v2 else None,
    }


# Changed-field name -> stored columns it covers.
_FIELD_COLUMNS = {
    "description": ("description",),
    "published_at": ("published_at",),
    "score": ("cvss_v3_score", "cvss_v2_score"),
    "severity": ("cvss_v3_severity", "cvss_v2_severity"),
    "vector": ("cvss_v3_vector", "cvss_v2_vector"),
}


class UpsertEngine:
    """Writes normalized records under single-writer-per-identifier rules.

    Args:
        db: Store handle.
        conflict_retries: Immediate retries after a ``StoreConflict``.
    """

    def __init__(self, db: Database, conflict_retries: int = 3):
        self.db = db
        self.conflict_retries = conflict_retries

    def apply(self, record: NormalizedRecord) -> Outcome:
        """Insert, update or skip one record.

        Returns:
            ``Outcome`` describing what was written.

        Raises:
            StoreConflict: contention persisted past the retry budget.
            StoreUnavailable: the store cannot be reached.
        """
        attempt = 0
        while True:
            try:
                with self.db.session_scope() as session:
                    return self._apply_once(session, record)
            except StoreConflict as exc:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1
                log_event(log, logging.DEBUG, "upsert_conflict_retry", cve_id=record.cve_id, attempt=attempt, error=exc)

    def _apply_once(self, session: Session, record: NormalizedRecord) -> Outcome:
        cve_id = record.cve_id
        feed_ts = record.vulnerability.updated_at
        has_components = bool(record.components)

        existing = session.execute(select(Vulnerability).where(Vulnerability.cve_id == cve_id)).scalar_one_or_none()

        if existing is None:
            vuln = Vulnerability(cve_id=cve_id, has_poc=False, poc_count=0, **_vulnerability_values(record))
            session.add(vuln)
            session.flush()
            self._write_children(session, vuln.id, record)
            return self._queue(session, Outcome(OutcomeKind.INSERTED, cve_id, feed_ts, frozenset(), has_components))

        if existing.updated_at is not None and feed_ts <= existing.updated_at:
            return Outcome(OutcomeKind.UNCHANGED, cve_id, feed_ts, frozenset(), has_components)

        changed = self._diff(session, existing, record)

        guard = (
            Vulnerability.updated_at.is_(None)
            if existing.updated_at is None
            else Vulnerability.updated_at == existing.updated_at
        )
        result = session.execute(
            update(Vulnerability)
            .where(Vulnerability.id == existing.id, guard)
            .values(modified_at=utc_now(), **_vulnerability_values(record))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StoreConflict(f"{cve_id} was modified by a concurrent writer")

        self._delete_children(session, existing.id)
        self._write_children(session, existing.id, record)
        return self._queue(session, Outcome(OutcomeKind.UPDATED, cve_id, feed_ts, frozenset(changed), has_components))

    def _queue(self, session: Session, outcome: Outcome) -> Outcome:
        """Record the outcome as pending evidence and notification work.

        An outcome already queued for the same identifier is folded in: an
        insert nobody was told about stays an insert, otherwise the changed
        fields accumulate until the notifier has seen them.
        """
        row = session.get(PendingOutcome, outcome.cve_id)
        if row is None:
            session.add(
                PendingOutcome(
                    cve_id=outcome.cve_id,
                    kind=outcome.kind.value,
                    updated_at=outcome.updated_at,
                    changed_fields=sorted(outcome.changed_fields),
                    has_components=outcome.has_components,
                    needs_evidence=True,
                    needs_notify=True,
                    queued_at=utc_now(),
                )
            )
            return outcome
        if row.needs_notify and row.kind == OutcomeKind.INSERTED.value:
            row.changed_fields = []
        elif row.needs_notify:
            row.kind = outcome.kind.value
            row.changed_fields = sorted(set(row.changed_fields or []) | outcome.changed_fields)
        else:
            row.kind = outcome.kind.value
            row.changed_fields = sorted(outcome.changed_fields)
        row.updated_at = outcome.updated_at
        row.has_components = outcome.has_components
        row.needs_evidence = True
        row.needs_notify = True
        row.queued_at = utc_now()
        return outcome

    # ─── Children ────────────────────────────────────────────────────────────

    def _delete_children(self, session: Session, vuln_id: int) -> None:
        session.execute(delete(vulnerability_cwe).where(vulnerability_cwe.c.vuln_id == vuln_id))
        session.execute(
            delete(AffectedComponent)
            .where(AffectedComponent.vuln_id == vuln_id)
            .execution_options(synchronize_session=False)
        )
        session.execute(
            delete(ExternalReference)
            .where(ExternalReference.vuln_id == vuln_id)
            .execution_options(synchronize_session=False)
        )

    def _write_children(self, session: Session, vuln_id: int, record: NormalizedRecord) -> None:
        cwe_pks: list[int] = []
        seen: set[str] = set()
        for w in record.weaknesses:
            if w.cwe_id in seen:
                continue
            seen.add(w.cwe_id)
            cwe_pks.append(self._weakness_pk(session, w.cwe_id, w.name))
        if cwe_pks:
            session.execute(insert(vulnerability_cwe), [{"vuln_id": vuln_id, "cwe_id": pk} for pk in cwe_pks])

        for c in record.components:
            session.add(AffectedComponent(vuln_id=vuln_id, vendor=c.vendor, product=c.product, version=c.version))
        for r in record.references:
            session.add(ExternalReference(vuln_id=vuln_id, url=r.url, source=r.source, tags=list(r.tags)))
        session.flush()

    def _weakness_pk(self, session: Session, cwe_id: str, name: str | None) -> int:
        weakness = session.execute(select(Weakness).where(Weakness.cwe_id == cwe_id)).scalar_one_or_none()
        if weakness is None:
            weakness = Weakness(cwe_id=cwe_id, name=name)
            session.add(weakness)
            session.flush()
        elif name and not weakness.name:
            weakness.name = name
        return weakness.id

    # ─── Diff ────────────────────────────────────────────────────────────────

    def _diff(self, session: Session, existing: Vulnerability, record: NormalizedRecord) -> set[str]:
        new_values = _vulnerability_values(record)
        changed: set[str] = set()
        for field_name, columns in _FIELD_COLUMNS.items():
            if any(getattr(existing, col) != new_values[col] for col in columns):
                changed.add(field_name)

        old_cwes = set(
            session.execute(
                select(Weakness.cwe_id)
                .join(vulnerability_cwe, vulnerability_cwe.c.cwe_id == Weakness.id)
                .where(vulnerability_cwe.c.vuln_id == existing.id)
            ).scalars()
        )
        if old_cwes != {w.cwe_id for w in record.weaknesses}:
            changed.add("weaknesses")

        old_components = {
            tuple(row)
            for row in session.execute(
                select(AffectedComponent.vendor, AffectedComponent.product, AffectedComponent.version).where(
                    AffectedComponent.vuln_id == existing.id
                )
            )
        }
        if old_components != {(c.vendor, c.product, c.version) for c in record.components}:
            changed.add("components")

        old_refs = {
            (url, source, tuple(sorted(tags or [])))
            for url, source, tags in session.execute(
                select(ExternalReference.url, ExternalReference.source, ExternalReference.tags).where(
                    ExternalReference.vuln_id == existing.id
                )
            )
        }
        if old_refs != {(r.url, r.source, tuple(sorted(r.tags))) for r in record.references}:
            changed.add("references")
        return changed
