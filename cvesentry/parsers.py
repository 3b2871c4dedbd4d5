"""Feed record normalization.

Pure functions for turning a raw NVD CVE API 2.0 record into the
canonical vulnerability shape: scores, weakness classifications,
affected components and external references.
No I/O or network calls; all inputs are in-memory data structures.
"""

import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any

from .errors import RecordInvalid, RecordRetracted
from .utils import parse_timestamp
from .versions import range_from_bounds

SEVERITY_CUTOFFS = (
    (9.0, "CRITICAL"),
    (7.0, "HIGH"),
    (4.0, "MEDIUM"),
)
_CVE_ID_RE = re.compile(r"^CVE-\d{4}-\d+$")
_CWE_PLACEHOLDERS = {"NVD-CWE-noinfo", "NVD-CWE-Other", "CWE-noinfo"}
_RETRACTED_STATUSES = {"rejected", "withdrawn"}


@dataclass(frozen=True)
class CvssScore:
    score: float | None
    severity: str | None
    vector: str | None


@dataclass(frozen=True)
class WeaknessRecord:
    cwe_id: str
    name: str | None = None


@dataclass(frozen=True)
class ComponentRecord:
    vendor: str
    product: str
    version: str


@dataclass(frozen=True)
class ReferenceRecord:
    url: str
    source: str | None = None
    tags: tuple[str, ...] = ()


@dataclass(frozen=True)
class VulnerabilityRecord:
    """Canonical vulnerability fields taken from one feed record.

    The two scorings are independent and either may be absent; no
    precedence between them is applied here.
    """

    cve_id: str
    description: str
    published_at: dt.datetime | None
    updated_at: dt.datetime
    cvss_v3: CvssScore | None = None
    cvss_v2: CvssScore | None = None


@dataclass
class NormalizedRecord:
    vulnerability: VulnerabilityRecord
    weaknesses: list[WeaknessRecord] = field(default_factory=list)
    components: list[ComponentRecord] = field(default_factory=list)
    references: list[ReferenceRecord] = field(default_factory=list)

    @property
    def cve_id(self) -> str:
        return self.vulnerability.cve_id


def severity_band(score: float | None) -> str | None:
    """Derive a severity band from a numeric score.

    Args:
        score: Base score (0.0–10.0) or ``None``.

    Returns:
        ``CRITICAL``/``HIGH``/``MEDIUM``/``LOW``, or ``None`` when there
        is no score.
    """
    if score is None:
        return None
    for cutoff, band in SEVERITY_CUTOFFS:
        if score >= cutoff:
            return band
    return "LOW"


def pick_best_description(descriptions: Any) -> str:
    """Select the best English description.

    Prefers English (``en``, ``en-US``, etc.), falls back to the first
    description with a value.
    """
    if not isinstance(descriptions, list):
        return ""
    for d in descriptions:
        if isinstance(d, dict) and (d.get("lang") or "").lower().startswith("en") and d.get("value"):
            return str(d["value"]).strip()
    for d in descriptions:
        if isinstance(d, dict) and d.get("value"):
            return str(d["value"]).strip()
    return ""


def _primary_metric(metric_list: Any) -> dict[str, Any] | None:
    if not isinstance(metric_list, list) or not metric_list:
        return None
    for m in metric_list:
        if isinstance(m, dict) and m.get("type") == "Primary":
            return m
    first = metric_list[0]
    return first if isinstance(first, dict) else None


def _to_score(entry: dict[str, Any] | None) -> CvssScore | None:
    if not entry:
        return None
    data = entry.get("cvssData") or {}
    raw_score = data.get("baseScore")
    try:
        score = float(raw_score) if raw_score is not None else None
    except (TypeError, ValueError):
        score = None
    band = data.get("baseSeverity") or entry.get("baseSeverity")
    severity = str(band).strip() if band else severity_band(score)
    vector = data.get("vectorString")
    if score is None and severity is None and not vector:
        return None
    return CvssScore(score=score, severity=severity, vector=str(vector) if vector else None)


def extract_cvss(metrics: Any) -> tuple[CvssScore | None, CvssScore | None]:
    """Extract CVSS v3 and v2 scorings from an NVD ``metrics`` block.

    Tries v3.1 then v3.0 for the v3 slot.

    Returns:
        Tuple of (v3, v2); either may be ``None``.
    """
    if not isinstance(metrics, dict):
        return None, None
    v3 = _to_score(_primary_metric(metrics.get("cvssMetricV31"))) or _to_score(
        _primary_metric(metrics.get("cvssMetricV30"))
    )
    v2 = _to_score(_primary_metric(metrics.get("cvssMetricV2")))
    return v3, v2


def extract_weaknesses(weaknesses: Any) -> list[WeaknessRecord]:
    out: list[WeaknessRecord] = []
    if not isinstance(weaknesses, list):
        return out
    for weakness in weaknesses:
        if not isinstance(weakness, dict):
            continue
        for desc in weakness.get("description") or []:
            value = str((desc or {}).get("value") or "").strip()
            if value.startswith("CWE-") and value not in _CWE_PLACEHOLDERS:
                out.append(WeaknessRecord(cwe_id=value, name=(desc or {}).get("name")))
    return out


def _unescape_cpe(part: str) -> str:
    return re.sub(r"\\(.)", r"\1", part)


def parse_cpe(criteria: str) -> tuple[str, str, str] | None:
    """Split a CPE 2.3 formatted string into (vendor, product, version).

    Args:
        criteria: e.g. ``cpe:2.3:a:acme:widget:1.2:*:*:*:*:*:*:*``.

    Returns:
        Tuple of lowercase vendor, product and raw version, or ``None``.
    """
    parts = re.split(r"(?<!\\):", criteria or "")
    if len(parts) < 6 or parts[0] != "cpe" or parts[1] != "2.3":
        return None
    vendor = _unescape_cpe(parts[3]).lower()
    product = _unescape_cpe(parts[4]).lower()
    version = _unescape_cpe(parts[5])
    if not vendor or not product:
        return None
    return vendor, product, version


def extract_components(configurations: Any) -> list[ComponentRecord]:
    """Collect vulnerable CPE matches, turning version bounds into ranges."""
    out: list[ComponentRecord] = []
    if not isinstance(configurations, list):
        return out
    for config in configurations:
        for node in (config or {}).get("nodes") or []:
            for match in (node or {}).get("cpeMatch") or []:
                if not isinstance(match, dict) or match.get("vulnerable") is False:
                    continue
                parsed = parse_cpe(str(match.get("criteria") or ""))
                if not parsed:
                    continue
                vendor, product, version = parsed
                out.append(
                    ComponentRecord(
                        vendor=vendor,
                        product=product,
                        version=range_from_bounds(
                            exact=version,
                            start_including=match.get("versionStartIncluding"),
                            start_excluding=match.get("versionStartExcluding"),
                            end_including=match.get("versionEndIncluding"),
                            end_excluding=match.get("versionEndExcluding"),
                        ),
                    )
                )
    return out


def _simple_components(affected: Any) -> list[ComponentRecord]:
    out: list[ComponentRecord] = []
    if not isinstance(affected, list):
        return out
    for a in affected:
        if not isinstance(a, dict):
            continue
        vendor = str(a.get("vendor") or "").strip().lower()
        product = str(a.get("product") or "").strip().lower()
        if not vendor and not product:
            continue
        out.append(ComponentRecord(vendor=vendor, product=product, version=str(a.get("version") or "*").strip()))
    return out


def extract_references(references: Any) -> list[ReferenceRecord]:
    out: list[ReferenceRecord] = []
    if not isinstance(references, list):
        return out
    for ref in references:
        if not isinstance(ref, dict) or not ref.get("url"):
            continue
        tags = ref.get("tags") or []
        out.append(
            ReferenceRecord(
                url=str(ref["url"]),
                source=ref.get("source"),
                tags=tuple(str(t).lower() for t in tags if t),
            )
        )
    return out


def normalize_record(raw: dict[str, Any]) -> NormalizedRecord:
    """Map one raw feed record to the canonical shape.

    Accepts the NVD list item (``{"cve": {...}}``) or the bare ``cve``
    object.  Components may come from ``configurations`` (CPE matches)
    or a simplified ``affected`` list of vendor/product/version dicts.

    Args:
        raw: Raw record dict from a feed page.

    Returns:
        ``NormalizedRecord``.

    Raises:
        RecordInvalid: missing identifier or unparseable timestamp.
        RecordRetracted: the feed marks the record as rejected.
    """
    if not isinstance(raw, dict):
        raise RecordInvalid("record is not an object")
    cve = raw.get("cve") if isinstance(raw.get("cve"), dict) else raw

    cve_id = str(cve.get("id") or "").strip().upper()
    if not cve_id:
        raise RecordInvalid("record has no identifier")
    if not _CVE_ID_RE.match(cve_id):
        raise RecordInvalid(f"malformed identifier {cve_id!r}", cve_id=cve_id)

    status = str(cve.get("vulnStatus") or "").strip().lower()
    if status in _RETRACTED_STATUSES:
        raise RecordRetracted(f"{cve_id} is marked {status}", cve_id=cve_id)

    updated_at = parse_timestamp(cve.get("lastModified"))
    if updated_at is None:
        raise RecordInvalid(f"unparseable lastModified {cve.get('lastModified')!r}", cve_id=cve_id)
    published_raw = cve.get("published")
    published_at = parse_timestamp(published_raw)
    if published_raw and published_at is None:
        raise RecordInvalid(f"unparseable published {published_raw!r}", cve_id=cve_id)

    v3, v2 = extract_cvss(cve.get("metrics"))
    components = extract_components(cve.get("configurations")) + _simple_components(cve.get("affected"))

    return NormalizedRecord(
        vulnerability=VulnerabilityRecord(
            cve_id=cve_id,
            description=pick_best_description(cve.get("descriptions")),
            published_at=published_at,
            updated_at=updated_at,
            cvss_v3=v3,
            cvss_v2=v2,
        ),
        weaknesses=extract_weaknesses(cve.get("weaknesses")),
        components=components,
        references=extract_references(cve.get("references")),
    )
