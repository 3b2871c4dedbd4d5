"""Evidence Matcher: exploit and affected-project discovery.

Runs after the Upsert Engine for every Inserted or Updated vulnerability
that lists at least one affected component.  Work for distinct
vulnerabilities is independent and runs over a bounded pool of
coroutines; the search source calls are the only suspension points.

Every stored row is written in its own short transaction with no await
inside it, so cancelling a worker leaves each candidate either fully
written or not attempted.
"""

import asyncio
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, TypeVar

from sqlalchemy import func, select

from .config import SearchConfig
from .database import Database
from .errors import SearchSourceError, StoreConflict
from .manifests import DeclaredDependency, find_declared_dependency
from .models import AffectedComponent, AffectedProjectEvidence, ExploitEvidence, Vulnerability
from .search import PocCandidate, ProjectCandidate, SearchClient
from .upsert import Outcome
from .utils import log_event, utc_now
from .versions import VersionRange, parse_version

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class EvidenceReport:
    """What one matcher pass found for a vulnerability.

    Attributes:
        cve_id: Vulnerability identifier.
        poc_found: PoC candidates stored or refreshed.
        projects_found: Affected projects matched inside the range.
        exploit_appeared: Exploit evidence went from none to some.
        skipped: The search-source error that cut the pass short, if any.
    """

    cve_id: str
    poc_found: int = 0
    projects_found: int = 0
    exploit_appeared: bool = False
    skipped: SearchSourceError | None = None

    @property
    def matches(self) -> int:
        return self.poc_found + self.projects_found

    @property
    def transitions(self) -> frozenset[str]:
        """Evidence changes that count as changed fields for notification."""
        return frozenset({"exploit"}) if self.exploit_appeared else frozenset()


def rank_pocs(candidates: Iterable[PocCandidate]) -> list[PocCandidate]:
    """Order PoC candidates by stars, then by last-commit recency."""
    return sorted(
        candidates,
        key=lambda c: (c.stars, c.last_commit_at or dt.datetime.min),
        reverse=True,
    )


def _specificity(version: str | None) -> int:
    parsed = parse_version(version or "")
    return parsed.specificity if parsed else 0


def _evidence_text(candidate: ProjectCandidate, declared: DeclaredDependency, affected: str) -> str:
    return (
        f"{candidate.path} declares {declared.name} {declared.spec} "
        f"(resolved {declared.version}, affected {affected}): {declared.line}"
    )


class EvidenceMatcher:
    """Discovers PoC and affected-project evidence for upsert outcomes.

    Args:
        db: Store handle.
        search: Search-source client.
        config: Search settings (pool size and result limits).
        conflict_retries: Immediate retries of one row write on
            ``StoreConflict``.
    """

    def __init__(self, db: Database, search: SearchClient, config: SearchConfig, conflict_retries: int = 3):
        self.db = db
        self.search = search
        self.config = config
        self.conflict_retries = conflict_retries

    # ─── Pool ────────────────────────────────────────────────────────────────

    async def run_all(self, outcomes: Iterable[Outcome]) -> dict[str, EvidenceReport]:
        """Run ``match`` for every eligible outcome with bounded concurrency.

        Returns:
            Mapping of identifier to report, for outcomes that were matched.
        """
        eligible = [o for o in outcomes if o.is_material and o.has_components]
        if not eligible:
            return {}
        sem = asyncio.Semaphore(self.config.concurrency)

        async def worker(outcome: Outcome) -> EvidenceReport | None:
            async with sem:
                return await self.match(outcome)

        tasks = [asyncio.create_task(worker(o)) for o in eligible]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return {r.cve_id: r for r in results if r is not None}

    # ─── One vulnerability ───────────────────────────────────────────────────

    async def match(self, outcome: Outcome) -> EvidenceReport | None:
        """Discover evidence for one vulnerability.

        Returns ``None`` for outcomes that do not qualify (Unchanged, or no
        affected components).  Search-source failures end the pass early
        and are recorded on the report; store failures propagate.
        """
        if not outcome.is_material or not outcome.has_components:
            return None
        loaded = self._load(outcome.cve_id)
        if loaded is None:
            return None
        vuln_id, had_poc, components = loaded
        report = EvidenceReport(cve_id=outcome.cve_id)

        try:
            await self._discover_pocs(vuln_id, report)
            has_poc = self._write(lambda: self._refresh_poc_signals(vuln_id))
            report.exploit_appeared = has_poc and not had_poc
            await self._discover_projects(vuln_id, components, report)
        except SearchSourceError as exc:
            report.skipped = exc
            log_event(log, logging.WARNING, "evidence_skipped", cve_id=outcome.cve_id, kind=exc.kind, error=exc)

        log_event(
            log,
            logging.INFO,
            "evidence_done",
            cve_id=outcome.cve_id,
            pocs=report.poc_found,
            projects=report.projects_found,
            exploit_appeared=report.exploit_appeared,
        )
        return report

    def _load(self, cve_id: str) -> tuple[int, bool, dict[tuple[str, str], list[str]]] | None:
        with self.db.session_scope() as session:
            vuln = session.execute(select(Vulnerability).where(Vulnerability.cve_id == cve_id)).scalar_one_or_none()
            if vuln is None:
                return None
            rows = session.execute(
                select(AffectedComponent.vendor, AffectedComponent.product, AffectedComponent.version).where(
                    AffectedComponent.vuln_id == vuln.id
                )
            )
            components: dict[tuple[str, str], list[str]] = {}
            for vendor, product, version in rows:
                components.setdefault((vendor or "", product or ""), []).append(version or "*")
            return vuln.id, bool(vuln.has_poc), components

    async def _discover_pocs(self, vuln_id: int, report: EvidenceReport) -> None:
        if self.config.max_poc_results <= 0:
            return
        candidates = rank_pocs(await self.search.search_pocs(report.cve_id))
        for candidate in candidates[: self.config.max_poc_results]:
            self._write(lambda c=candidate: self._upsert_poc(vuln_id, c))
            report.poc_found += 1

    async def _discover_projects(
        self,
        vuln_id: int,
        components: dict[tuple[str, str], list[str]],
        report: EvidenceReport,
    ) -> None:
        for (vendor, product), ranges in components.items():
            if not product:
                continue
            parsed_ranges = [VersionRange.parse(r) for r in ranges]
            for candidate in await self.search.search_dependents(vendor, product):
                content = await self.search.fetch_file(candidate.repo_full_name, candidate.path)
                if not content:
                    continue
                declared = find_declared_dependency(candidate.path, content, vendor, product)
                if declared is None:
                    continue
                hit = next((r for r in parsed_ranges if r.contains(declared.version)), None)
                if hit is None:
                    log_event(
                        log,
                        logging.DEBUG,
                        "project_out_of_range",
                        cve_id=report.cve_id,
                        repo=candidate.repo_full_name,
                        version=declared.version,
                    )
                    continue
                language = candidate.language or await self.search.fetch_language(candidate.repo_full_name)
                evidence = _evidence_text(candidate, declared, hit.expr)
                self._write(lambda: self._upsert_project(vuln_id, candidate, declared.version, evidence, language))
                report.projects_found += 1

    # ─── Store writes ────────────────────────────────────────────────────────

    def _write(self, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except StoreConflict:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1

    def _upsert_poc(self, vuln_id: int, candidate: PocCandidate) -> None:
        with self.db.session_scope() as session:
            row = session.execute(
                select(ExploitEvidence).where(ExploitEvidence.vuln_id == vuln_id, ExploitEvidence.url == candidate.url)
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    ExploitEvidence(
                        vuln_id=vuln_id,
                        url=candidate.url,
                        kind=candidate.kind,
                        stars=candidate.stars,
                        last_commit_at=candidate.last_commit_at,
                    )
                )
            else:
                row.kind = candidate.kind
                row.stars = candidate.stars
                row.last_commit_at = candidate.last_commit_at

    def _refresh_poc_signals(self, vuln_id: int) -> bool:
        with self.db.session_scope() as session:
            count = session.execute(
                select(func.count(ExploitEvidence.id)).where(ExploitEvidence.vuln_id == vuln_id)
            ).scalar_one()
            vuln = session.get(Vulnerability, vuln_id)
            vuln.poc_count = count
            vuln.has_poc = count > 0
            return count > 0

    def _upsert_project(
        self,
        vuln_id: int,
        candidate: ProjectCandidate,
        matched_version: str,
        evidence: str,
        language: str | None,
    ) -> bool:
        """Insert or strengthen one affected-project row.

        An existing row's snippet is replaced only when the new match is at
        least as specific; weaker matches leave it alone.

        Returns:
            ``True`` if a row was inserted or replaced.
        """
        with self.db.session_scope() as session:
            row = session.execute(
                select(AffectedProjectEvidence).where(
                    AffectedProjectEvidence.vuln_id == vuln_id,
                    AffectedProjectEvidence.repo_full_name == candidate.repo_full_name,
                )
            ).scalar_one_or_none()
            if row is None:
                session.add(
                    AffectedProjectEvidence(
                        vuln_id=vuln_id,
                        repo_full_name=candidate.repo_full_name,
                        html_url=candidate.html_url,
                        language=language,
                        evidence=evidence,
                        matched_version=matched_version,
                        found_at=utc_now(),
                    )
                )
                return True
            if _specificity(matched_version) < _specificity(row.matched_version):
                return False
            row.html_url = candidate.html_url
            row.language = language or row.language
            row.evidence = evidence
            row.matched_version = matched_version
            row.found_at = utc_now()
            return True
