"""SQLAlchemy models for stewardship compliance data.

Data Architecture Overview:
- Municipality is the CENTRAL ENTITY: every site, offset, event application
  and reallocation hangs off one
- Sites carry both permanent collection sites and one-off events
  (site_type), distinguished only by type
- Offsets are configuration keyed by (program, year); reallocations are
  reviewed records with their own lifecycle

Key Concepts:
- Required sites are never stored; they are derived from population and the
  active regulatory rules at calculation time
- ComplianceCalculation rows are saved snapshots, not a cache

Column types are portable (Uuid, JSON) so the same models run on PostgreSQL
and SQLite.

References:
- See stewardship/schemas.py for Pydantic validation models
- See stewardship/compliance.py for the aggregation over these tables
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .schemas import (
    OperatorType,
    ReallocationStatus,
    ReallocationType,
    RuleCategory,
    RuleStatus,
    RuleType,
    SiteStatus,
    SiteType,
    Tier,
)


def name_key(name: str) -> str:
    """Case-insensitive identity of a municipality name."""
    return " ".join(name.split()).lower()


class Municipality(Base):
    """A census subdivision carrying site requirements."""

    __tablename__ = "municipalities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    name_key: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True,
        doc="Lowercased, whitespace-collapsed name. Dedup key on ingestion."
    )
    population: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tier: Mapped[Tier] = mapped_column(SQLEnum(Tier), default=Tier.SINGLE)
    region: Mapped[str] = mapped_column(
        String(255), default="", index=True,
        doc="Upper-tier grouping. HSP sites may be reallocated within it."
    )
    province: Mapped[str] = mapped_column(String(100), default="")
    census_year: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    sites: Mapped[list["CollectionSite"]] = relationship(
        "CollectionSite", back_populates="municipality", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Municipality {self.name} ({self.population:,})>"


class CollectionSite(Base):
    """A permanent collection site or a collection event."""

    __tablename__ = "collection_sites"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(String(500), default="")
    municipality_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    site_type: Mapped[SiteType] = mapped_column(
        SQLEnum(SiteType), default=SiteType.COLLECTION_SITE, index=True,
        doc="Collection site counts as inventory; Event only as event offset."
    )
    operator_type: Mapped[OperatorType | None] = mapped_column(
        SQLEnum(OperatorType),
        doc="Who runs the site. Municipal, First Nation and regional depots are residency restricted."
    )
    status: Mapped[SiteStatus] = mapped_column(SQLEnum(SiteStatus), default=SiteStatus.ACTIVE, index=True)
    programs: Mapped[list[str]] = mapped_column(JSON, default=list)
    active_dates: Mapped[str | None] = mapped_column(String(100))
    latitude: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    longitude: Mapped[Decimal | None] = mapped_column(Numeric(9, 6))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    municipality: Mapped["Municipality"] = relationship("Municipality", back_populates="sites")

    def __repr__(self) -> str:
        return f"<CollectionSite {self.name} [{self.site_type}] {self.status}>"


class Adjacency(Base):
    """Two communities that share a border. Stored once with a < b."""

    __tablename__ = "adjacencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    community_a_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    community_b_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    community_a: Mapped["Municipality"] = relationship("Municipality", foreign_keys=[community_a_id])
    community_b: Mapped["Municipality"] = relationship("Municipality", foreign_keys=[community_b_id])

    __table_args__ = (
        UniqueConstraint("community_a_id", "community_b_id", name="uq_adjacency_pair"),
    )

    @property
    def community_a_name(self) -> str:
        return self.community_a.name

    @property
    def community_b_name(self) -> str:
        return self.community_b.name

    def __repr__(self) -> str:
        return f"<Adjacency {self.community_a_id} <-> {self.community_b_id}>"


class RegulatoryRule(Base):
    """Configurable parameters for requirement and offset calculations."""

    __tablename__ = "regulatory_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    program: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    category: Mapped[RuleCategory] = mapped_column(SQLEnum(RuleCategory), nullable=False)
    rule_type: Mapped[RuleType] = mapped_column(SQLEnum(RuleType), nullable=False, index=True)
    parameters: Mapped[dict] = mapped_column(
        JSON, default=dict,
        doc="camelCase parameter bag: minPopulation, sitesPerPopulation, maxOffsetPercentage, ..."
    )
    status: Mapped[RuleStatus] = mapped_column(SQLEnum(RuleStatus), default=RuleStatus.ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<RegulatoryRule {self.program} {self.rule_type}: {self.name}>"


class DirectServiceOffset(Base):
    """Global direct-service offset for a program and year (Tool A)."""

    __tablename__ = "direct_service_offsets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    program: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    global_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1,
        doc="Incremented on every save of the global percentage."
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("program", "year", name="uq_direct_service_program_year"),
    )

    def __repr__(self) -> str:
        return f"<DirectServiceOffset {self.program} {self.year}: {self.global_percentage}% v{self.version}>"


class CommunityOffset(Base):
    """Per-community override of the direct-service percentage."""

    __tablename__ = "community_offsets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    community_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    program: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage_override: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("community_id", "program", "year", name="uq_community_offset"),
    )

    def __repr__(self) -> str:
        return f"<CommunityOffset {self.community_id} {self.program} {self.year}: {self.percentage_override}%>"


class EventApplication(Base):
    """An event applied against a community's shortfall (Tool B)."""

    __tablename__ = "event_applications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    community_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_site_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("collection_sites.id", ondelete="CASCADE"), nullable=False
    )
    program: Mapped[str] = mapped_column(String(50), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("event_site_id", "program", "year", name="uq_event_application"),
        Index("ix_event_applications_program_year", "program", "year"),
    )

    def __repr__(self) -> str:
        return f"<EventApplication {self.event_site_id} -> {self.community_id} {self.program} {self.year}>"


class Reallocation(Base):
    """A site's credit moved from one community to another, under review."""

    __tablename__ = "reallocations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("collection_sites.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_municipality_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    to_municipality_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="SET NULL"), index=True
    )
    program: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    reallocation_type: Mapped[ReallocationType] = mapped_column(
        SQLEnum(ReallocationType), default=ReallocationType.SITE
    )
    percentage: Mapped[float] = mapped_column(Float, default=0)
    rationale: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[ReallocationStatus] = mapped_column(
        SQLEnum(ReallocationStatus), default=ReallocationStatus.PENDING, index=True,
        doc="pending until reviewed; created rejected when validation fails."
    )
    validation_errors: Mapped[list[str]] = mapped_column(JSON, default=list)
    decided_by: Mapped[str | None] = mapped_column(String(255))
    decided_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<Reallocation {self.site_id} {self.from_municipality_id} -> "
            f"{self.to_municipality_id} {self.program} {self.status}>"
        )


class ComplianceCalculation(Base):
    """A saved compliance snapshot for one municipality and program."""

    __tablename__ = "compliance_calculations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    municipality_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("municipalities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    program: Mapped[str] = mapped_column(String(50), nullable=False)
    required_sites: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_sites: Mapped[int] = mapped_column(Integer, nullable=False)
    shortfall: Mapped[int] = mapped_column(Integer, default=0)
    excess: Mapped[int] = mapped_column(Integer, default=0)
    compliance_rate: Mapped[float] = mapped_column(Float, default=0)
    offset_percentage: Mapped[float] = mapped_column(Float, default=0)
    calculation_date: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ComplianceCalculation {self.municipality_id} {self.program}: {self.compliance_rate}%>"
