"""Pydantic schemas for stewardship compliance data.

Two families of models live here:
- Engine records (Community, Site, Rule): the plain-data view of stored rows
  that the calculation modules consume. Built from ORM rows with
  ``model_validate(row)`` and never tied to a session.
- API schemas (*Create, *Update, *Read, request bodies): the contract of the
  REST surface in ``routes``.

Programs and site-type vocabularies follow the stewardship regulation:
- HSP (Hazardous and Special Products): Paint, Solvents, Pesticides
- EEE (Electrical and Electronic Equipment): Lighting
"""

from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
)
from pydantic.alias_generators import to_camel


# =============================================================================
# ENUMS: Canonical value sets
# =============================================================================


class Program(str, Enum):
    """Stewardship programs a site can collect for."""

    PAINT = "Paint"
    LIGHTING = "Lighting"
    SOLVENTS = "Solvents"
    PESTICIDES = "Pesticides"


HSP_PROGRAMS = frozenset({Program.PAINT, Program.SOLVENTS, Program.PESTICIDES})
"""Programs that accept reallocation within the same upper-tier region."""


class Tier(str, Enum):
    """Municipal tier in the provincial structure."""

    SINGLE = "Single"
    LOWER = "Lower"
    UPPER = "Upper"


class SiteType(str, Enum):
    """Whether a site is permanent inventory or a one-off collection event."""

    COLLECTION_SITE = "Collection site"
    """Permanent site. Counts toward a community's actual sites."""

    EVENT = "Event"
    """Collection event. Never counted as inventory, only as event offset."""


class OperatorType(str, Enum):
    """Who runs the site. Drives reallocation eligibility."""

    RETAILER = "Retailer"
    """Return-to-retail location. Reallocatable to adjacent communities only."""

    DISTRIBUTOR = "Distributor"
    MUNICIPAL = "Municipal"
    """Municipal depot. Residency restricted, never reallocatable."""

    FIRST_NATION = "First Nation/Indigenous"
    PRIVATE_DEPOT = "Private Depot"
    PRODUCT_CARE = "Product Care"
    REGIONAL_DISTRICT = "Regional District"
    REGIONAL_SERVICE_COMMISSION = "Regional Service Commission"
    OTHER = "Other"


class SiteStatus(str, Enum):
    """Lifecycle status of a site."""

    ACTIVE = "Active"
    SCHEDULED = "Scheduled"
    INACTIVE = "Inactive"
    PENDING = "Pending"
    DEACTIVATED = "Deactivated"


class ReallocationType(str, Enum):
    """Mechanism a reallocation uses to move credit between communities."""

    SITE = "site"
    EVENT = "event"
    DIRECT_RETURN = "direct_return"


class ReallocationStatus(str, Enum):
    """Review state. Only ``pending`` reallocations can be approved or rejected."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RuleCategory(str, Enum):
    HSP = "HSP"
    EEE = "EEE"
    OFFSET = "Offset"


class RuleType(str, Enum):
    """What a regulatory rule parameterizes."""

    SITE_CALCULATION = "site_calculation"
    """A population band and its sites-per-population formula."""

    MINIMUM_REQUIREMENT = "minimum_requirement"
    """Floor of sites for communities below every calculation band."""

    OFFSET_EVENT = "offset_event"
    """Cap on event offsets as a percentage of required sites."""

    OFFSET_ADJACENT = "offset_adjacent"
    """Cap and exclusions for adjacent community reallocation."""


class RuleStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class ComplianceStatus(str, Enum):
    COMPLIANT = "compliant"
    SHORTFALL = "shortfall"
    EXCESS = "excess"


# Spellings seen in rule parameter bags, mapped to the canonical operator type
OPERATOR_TYPE_ALIASES = {
    "municipal": OperatorType.MUNICIPAL.value,
    "regional": OperatorType.REGIONAL_DISTRICT.value,
    "regional_district": OperatorType.REGIONAL_DISTRICT.value,
    "first_nations": OperatorType.FIRST_NATION.value,
    "first nation": OperatorType.FIRST_NATION.value,
    "indigenous": OperatorType.FIRST_NATION.value,
    "regional_service_commission": OperatorType.REGIONAL_SERVICE_COMMISSION.value,
    "private_depot": OperatorType.PRIVATE_DEPOT.value,
    "product_care": OperatorType.PRODUCT_CARE.value,
}


def enum_value(value: Enum | str) -> str:
    """Plain string for an enum member or string.

    Engine results and stored columns carry plain strings so they serialize
    to JSON and compare in SQL without the enum type attached.
    """
    return value.value if isinstance(value, Enum) else value


def normalize_operator_type(raw: str) -> str:
    """Map a free-form operator type spelling to its canonical value."""
    clean = raw.strip()
    for member in OperatorType:
        if member.value.lower() == clean.lower():
            return member.value
    return OPERATOR_TYPE_ALIASES.get(clean.lower(), clean)


# =============================================================================
# ENGINE RECORDS
# =============================================================================


class Community(BaseModel):
    """A municipality as seen by the calculation engine."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    population: int = 0
    tier: Tier | None = None
    region: str | None = None
    province: str | None = None
    census_year: int | None = None

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, UUID) else v


class Site(BaseModel):
    """A collection site or event as seen by the calculation engine."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    address: str | None = None
    municipality_id: str
    site_type: SiteType = SiteType.COLLECTION_SITE
    operator_type: OperatorType | None = None
    status: SiteStatus = SiteStatus.ACTIVE
    programs: list[str] = Field(default_factory=list)
    active_dates: str | None = None

    @field_validator("id", "municipality_id", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        return str(v) if isinstance(v, UUID) else v

    def serves(self, program: str) -> bool:
        return program in self.programs


class RuleParameters(BaseModel):
    """Free-form parameter bag of a regulatory rule.

    Keys are stored camelCase (``minPopulation``) as the admin tooling writes
    them; snake_case is accepted too. Unknown keys are kept.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    min_population: int = Field(default=0, description="Inclusive lower bound of the band.")
    max_population: int | None = Field(default=None, description="Inclusive upper bound; None is unbounded.")
    sites_per_population: int | None = Field(
        default=None,
        gt=0,
        description="Population served per required site.",
    )
    base_requirement: int = Field(
        default=0,
        ge=0,
        description="Sites already owed for the population below this band.",
    )
    additional_per_population: int | None = Field(
        default=None,
        gt=0,
        description="Population per additional site above the band's lower bound.",
    )
    round_up_portion: bool = Field(default=True, description="Ceil partial sites (floor when false).")
    minimum_sites: int | None = Field(default=None, ge=0)
    max_offset_percentage: float | None = Field(default=None, ge=0, le=100)
    applicable_programs: list[str] = Field(default_factory=list)
    excluded_operator_types: list[str] = Field(default_factory=list)
    requires_adjacency: bool = True

    @field_validator("excluded_operator_types")
    @classmethod
    def normalize_operator_types(cls, v: list[str]) -> list[str]:
        return [normalize_operator_type(item) for item in v]

    def contains(self, population: int) -> bool:
        """True if the population falls inside this band."""
        if population < self.min_population:
            return False
        return self.max_population is None or population <= self.max_population


class Rule(BaseModel):
    """A regulatory rule as seen by the calculation engine."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    name: str = ""
    program: str
    category: RuleCategory | None = None
    rule_type: RuleType
    parameters: RuleParameters = Field(default_factory=RuleParameters)
    status: RuleStatus = RuleStatus.ACTIVE

    @field_validator("id", mode="before")
    @classmethod
    def stringify_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, UUID) else v

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE

    def applies_to(self, program: str) -> bool:
        """True if this rule governs the program (directly, via 'All', or by list)."""
        if self.program in (program, "All"):
            return True
        return program in self.parameters.applicable_programs


# =============================================================================
# SHARED RESPONSE SHAPES
# =============================================================================

T = TypeVar("T")


class Pagination(BaseModel):
    """Position of a page inside a filtered result set."""

    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(cls, total_count: int, page: int, page_size: int) -> "Pagination":
        total_pages = max(1, -(-total_count // page_size))
        return cls(
            page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_previous=page > 1,
        )


class Page(BaseModel, Generic[T]):
    """A page of results with its pagination block."""

    results: list[T]
    pagination: Pagination


class BatchFailure(BaseModel):
    item: str
    error: str


class BatchResult(BaseModel):
    """Outcome of a bulk operation. Partial failure is reported, never rolled back."""

    succeeded: list[str] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)

    @computed_field
    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @computed_field
    @property
    def failed_count(self) -> int:
        return len(self.failed)

    def record_failure(self, item: str, error: str) -> None:
        self.failed.append(BatchFailure(item=item, error=error))


# =============================================================================
# MUNICIPALITIES
# =============================================================================


class MunicipalityBase(BaseModel):
    """A census subdivision carrying site requirements.

    ``name`` is the display key and is unique case-insensitively: "Toronto"
    and "TORONTO " are the same municipality on ingestion.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    population: int = Field(ge=0, description="Census population. Drives every requirement.")
    tier: Tier = Tier.SINGLE
    region: str = Field(
        default="",
        max_length=255,
        description="Upper-tier grouping used for same-region reallocation.",
    )
    province: str = Field(default="", max_length=100)
    census_year: int | None = Field(default=None, ge=1800, le=2200)


class MunicipalityCreate(MunicipalityBase):
    pass


class MunicipalityUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=255)
    population: int | None = Field(default=None, ge=0)
    tier: Tier | None = None
    region: str | None = None
    province: str | None = None
    census_year: int | None = Field(default=None, ge=1800, le=2200)


class MunicipalityRead(MunicipalityBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class MunicipalityStats(BaseModel):
    total: int
    total_population: int
    by_tier: dict[str, int]
    by_region: dict[str, int]


class MunicipalityImportResult(BatchResult):
    """Bulk import outcome. ``succeeded`` lists every imported name."""

    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)


class AdjacencyCreate(BaseModel):
    community_a_id: UUID
    community_b_id: UUID


class AdjacencyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    community_a_id: UUID
    community_a_name: str
    community_b_id: UUID
    community_b_name: str


# =============================================================================
# SITES
# =============================================================================


class SiteBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    address: str = Field(default="", max_length=500)
    municipality_id: UUID = Field(validation_alias=AliasChoices("municipality_id", "municipality"))
    site_type: SiteType = SiteType.COLLECTION_SITE
    operator_type: OperatorType | None = None
    status: SiteStatus = SiteStatus.ACTIVE
    programs: list[Program] = Field(default_factory=list)
    active_dates: str | None = Field(
        default=None,
        description="Date or date range bounding when the site counts toward compliance.",
    )
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    notes: str | None = None

    @field_validator("programs")
    @classmethod
    def dedupe_programs(cls, v: list[Program]) -> list[Program]:
        return list(dict.fromkeys(v))


class SiteCreate(SiteBase):
    pass


class SiteUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str | None = Field(default=None, min_length=1, max_length=255)
    address: str | None = None
    municipality_id: UUID | None = None
    site_type: SiteType | None = None
    operator_type: OperatorType | None = None
    status: SiteStatus | None = None
    programs: list[Program] | None = None
    active_dates: str | None = None
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    notes: str | None = None


class SiteRead(SiteBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class SiteStatistics(BaseModel):
    total: int
    by_status: dict[str, int]
    by_site_type: dict[str, int]
    by_operator_type: dict[str, int]
    by_program: dict[str, int]


class BulkStatusRequest(BaseModel):
    site_ids: list[UUID] = Field(min_length=1)
    status: SiteStatus


class BulkDeleteRequest(BaseModel):
    site_ids: list[UUID] = Field(min_length=1)


# =============================================================================
# REGULATORY RULES
# =============================================================================


class RegulatoryRuleBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    program: str = Field(description="Program name, or 'All'.")
    category: RuleCategory
    rule_type: RuleType
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: RuleStatus = RuleStatus.ACTIVE

    @field_validator("parameters")
    @classmethod
    def parameters_parse(cls, v: dict[str, Any]) -> dict[str, Any]:
        """Reject parameter bags the engine could not evaluate."""
        RuleParameters.model_validate(v)
        return v


class RegulatoryRuleCreate(RegulatoryRuleBase):
    pass


class RegulatoryRuleUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    program: str | None = None
    category: RuleCategory | None = None
    rule_type: RuleType | None = None
    parameters: dict[str, Any] | None = None
    status: RuleStatus | None = None

    @field_validator("parameters")
    @classmethod
    def parameters_parse(cls, v: dict[str, Any] | None) -> dict[str, Any] | None:
        if v is not None:
            RuleParameters.model_validate(v)
        return v


class RegulatoryRuleRead(RegulatoryRuleBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


# =============================================================================
# COMPLIANCE
# =============================================================================


class RequirementRequest(BaseModel):
    population: int = Field(ge=0)
    program: Program
    offset_percentage: float | None = Field(default=None, ge=0, le=100)


class RequirementResponse(BaseModel):
    population: int
    program: Program
    required: int
    adjusted_required: int


class ComplianceCalculationCreate(BaseModel):
    municipality_id: UUID = Field(validation_alias=AliasChoices("municipality_id", "municipality"))
    program: Program
    offset_percentage: float = Field(default=0, ge=0, le=100)


class ComplianceCalculationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    municipality_id: UUID
    program: str
    required_sites: int
    actual_sites: int
    shortfall: int
    excess: int
    compliance_rate: float
    offset_percentage: float
    calculation_date: datetime


# =============================================================================
# TOOL A: DIRECT-SERVICE OFFSET
# =============================================================================


class DirectServiceOffsetCreate(BaseModel):
    program: Program
    year: int = Field(ge=2000, le=2200)
    global_percentage: float = Field(ge=0, le=100)


class DirectServiceOffsetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    program: str
    year: int
    global_percentage: float
    version: int
    updated_at: datetime


class CommunityOffsetCreate(BaseModel):
    community_id: UUID = Field(validation_alias=AliasChoices("community_id", "community"))
    program: Program
    year: int = Field(ge=2000, le=2200)
    percentage_override: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="None removes the override so the global percentage applies again.",
    )


class CommunityOffsetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    community_id: UUID
    program: str
    year: int
    percentage_override: float | None


# =============================================================================
# TOOL B: EVENT APPLICATION
# =============================================================================


class EventApplyRequest(BaseModel):
    community_id: UUID
    event_ids: list[UUID] = Field(default_factory=list)
    program: Program
    year: int = Field(ge=2000, le=2200)


class EventApplyAllRequest(BaseModel):
    program: Program
    year: int = Field(ge=2000, le=2200)


class EventApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    community_id: UUID
    event_site_id: UUID
    program: str
    year: int
    applied_at: datetime


# =============================================================================
# TOOL C / REALLOCATIONS
# =============================================================================


class ReallocationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    site_id: UUID = Field(validation_alias=AliasChoices("site_id", "site"))
    from_municipality_id: UUID | None = Field(
        default=None,
        validation_alias=AliasChoices("from_municipality_id", "from_municipality"),
        description="Defaults to the site's own municipality.",
    )
    to_municipality_id: UUID | None = Field(
        default=None,
        validation_alias=AliasChoices("to_municipality_id", "to_municipality"),
    )
    program: Program
    reallocation_type: ReallocationType = ReallocationType.SITE
    percentage: float = Field(default=0, ge=0, le=100)
    rationale: str = ""


class ToolCRequest(BaseModel):
    site_ids: list[UUID] = Field(min_length=1)
    from_community_id: UUID
    to_community_id: UUID
    program: Program
    rationale: str | None = None
    percentage: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Defaults to the share of the destination's requirement one site covers.",
    )


class ReallocationDecision(BaseModel):
    decided_by: str | None = None
    rationale: str | None = None


class ReallocationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: UUID
    from_municipality_id: UUID
    to_municipality_id: UUID | None
    program: str
    reallocation_type: ReallocationType
    percentage: float
    rationale: str
    status: ReallocationStatus
    validation_errors: list[str]
    decided_by: str | None
    decided_at: datetime | None
    created_at: datetime
    updated_at: datetime


class ReallocationStats(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    by_program: dict[str, int]
