"""Relational schema for CVE Sentry using SQLAlchemy.

Table and column names are kept stable for the read-only query API that
serves these rows to clients.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utc_now

Base = declarative_base()

POC_KINDS = ("repo", "file")


vulnerability_cwe = Table(
    "vulnerability_cwe",
    Base.metadata,
    Column("vuln_id", Integer, ForeignKey("vulnerabilities.id", ondelete="CASCADE"), primary_key=True),
    Column("cwe_id", Integer, ForeignKey("cwe.id", ondelete="CASCADE"), primary_key=True),
)


class Vulnerability(Base):
    """One published vulnerability, unique by ``cve_id``."""

    __tablename__ = "vulnerabilities"

    id = Column(Integer, primary_key=True)
    cve_id = Column(String, unique=True, nullable=False)
    description = Column(Text)
    published_at = Column(DateTime)
    updated_at = Column(DateTime)  # feed last-modified, authoritative for ordering

    cvss_v3_score = Column(Float)
    cvss_v3_severity = Column(String)
    cvss_v3_vector = Column(String)
    cvss_v2_score = Column(Float)
    cvss_v2_severity = Column(String)
    cvss_v2_vector = Column(String)

    has_poc = Column(Boolean, default=False, nullable=False)
    poc_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utc_now)
    modified_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    weaknesses = relationship("Weakness", secondary=vulnerability_cwe, back_populates="vulnerabilities")
    components = relationship("AffectedComponent", back_populates="vulnerability", cascade="all, delete-orphan")
    references = relationship("ExternalReference", back_populates="vulnerability", cascade="all, delete-orphan")
    pocs = relationship("ExploitEvidence", back_populates="vulnerability", cascade="all, delete-orphan")
    affected_projects = relationship(
        "AffectedProjectEvidence", back_populates="vulnerability", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_vuln_cve_id", "cve_id"),
        Index("idx_vuln_severity", "cvss_v3_severity"),
    )


class Weakness(Base):
    """A CWE weakness classification."""

    __tablename__ = "cwe"

    id = Column(Integer, primary_key=True)
    cwe_id = Column(String, unique=True, nullable=False)
    name = Column(Text)

    vulnerabilities = relationship("Vulnerability", secondary=vulnerability_cwe, back_populates="weaknesses")


class AffectedComponent(Base):
    """A vendor/product/version triple (CPE) affected by one vulnerability.

    ``version`` is an exact value, ``*`` for every version, ``-`` when the
    notion does not apply, or a range expression such as ``>=1.0,<2.0``.
    """

    __tablename__ = "cpe"

    id = Column(Integer, primary_key=True)
    vuln_id = Column(Integer, ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False)
    vendor = Column(String)
    product = Column(String)
    version = Column(String)

    vulnerability = relationship("Vulnerability", back_populates="components")

    __table_args__ = (Index("idx_cpe_vendor_product_version", "vendor", "product", "version"),)


class ExternalReference(Base):
    __tablename__ = "vuln_references"

    id = Column(Integer, primary_key=True)
    vuln_id = Column(Integer, ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text)
    source = Column(String)
    tags = Column(JSON, default=list)

    vulnerability = relationship("Vulnerability", back_populates="references")


class ExploitEvidence(Base):
    """A proof-of-concept repository or single file, unique per (vuln, url)."""

    __tablename__ = "poc_references"

    id = Column(Integer, primary_key=True)
    vuln_id = Column(Integer, ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False)
    url = Column(Text, nullable=False)
    kind = Column(String, nullable=False)  # repo | file
    stars = Column(Integer, default=0)
    last_commit_at = Column(DateTime)

    vulnerability = relationship("Vulnerability", back_populates="pocs")

    __table_args__ = (
        UniqueConstraint("vuln_id", "url", name="uq_poc_vuln_url"),
        Index("idx_poc_vuln_id", "vuln_id"),
    )


class AffectedProjectEvidence(Base):
    """A hosted repository that declares an affected dependency version."""

    __tablename__ = "affected_projects"

    id = Column(Integer, primary_key=True)
    vuln_id = Column(Integer, ForeignKey("vulnerabilities.id", ondelete="CASCADE"), nullable=False)
    repo_full_name = Column(String, nullable=False)
    html_url = Column(Text)
    language = Column(String)
    evidence = Column(Text)
    matched_version = Column(String)
    found_at = Column(DateTime, default=utc_now)

    vulnerability = relationship("Vulnerability", back_populates="affected_projects")

    __table_args__ = (
        UniqueConstraint("vuln_id", "repo_full_name", name="uq_affected_vuln_repo"),
        Index("idx_affected_vuln_id", "vuln_id"),
    )


class Subscriber(Base):
    """A messaging-client user.  Owned by the collaborator; read-only here."""

    __tablename__ = "bot_users"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    username = Column(String)
    first_name = Column(String)
    last_name = Column(String)
    notifications_enabled = Column(Boolean, default=True)


class NotificationDelivery(Base):
    """Delivery marker written before a payload is handed off."""

    __tablename__ = "notification_deliveries"

    id = Column(Integer, primary_key=True)
    cve_id = Column(String, nullable=False)
    subscriber_id = Column(Integer, nullable=False)
    outcome_at = Column(DateTime, nullable=False)
    kind = Column(String, nullable=False)
    marked_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint("cve_id", "subscriber_id", "outcome_at", name="uq_delivery_marker"),
    )


class PendingOutcome(Base):
    """Material upsert outcome whose evidence or notification work is not done.

    Written in the upsert transaction and removed once both flags clear,
    so work interrupted by an aborted cycle or a search-source outage is
    picked up by a later cycle.
    """

    __tablename__ = "pending_outcomes"

    cve_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)  # inserted | updated
    updated_at = Column(DateTime, nullable=False)
    changed_fields = Column(JSON, default=list)
    has_components = Column(Boolean, default=False, nullable=False)
    needs_evidence = Column(Boolean, default=True, nullable=False)
    needs_notify = Column(Boolean, default=True, nullable=False)
    queued_at = Column(DateTime, default=utc_now)


class PipelineState(Base):
    """Small key/value table for durable pipeline state (watermark etc.)."""

    __tablename__ = "pipeline_state"

    key = Column(String, primary_key=True)
    value = Column(Text)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)
