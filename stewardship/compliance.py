"""Compliance aggregation across communities and programs.

For every (community, program) pair:

    required  = required_sites(population, program)
    adjusted  = apply_offset(required, direct-service %)
              - applied events (at most the shortfall they cover, floor of 1)
    actual    = Active non-Event sites + incoming - outgoing reallocations
    shortfall = max(0, adjusted - actual)
    excess    = max(0, actual - adjusted)
    rate      = actual / adjusted * 100   (100 when nothing is required)

Each offset mechanism can be switched off by the caller, which is how the
dashboard compares "as regulated" with "after offsets".
"""

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from typing import TypeVar

from pydantic import BaseModel, Field

from .events import is_eligible_event
from .offsets import DirectServiceConfig, apply_offset, clamp_percentage
from .reallocation import ReallocationRecord, site_flows
from .requirements import required_sites
from .schemas import (
    Community,
    ComplianceStatus,
    OperatorType,
    Pagination,
    Program,
    Rule,
    Site,
    SiteStatus,
    enum_value,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The aggregator counts only sites open today; Scheduled sites count in Tool B/C
ACTUAL_STATUSES = frozenset({SiteStatus.ACTIVE})


class OffsetOptions(BaseModel):
    """Which offset mechanisms the aggregation applies."""

    offset_percentage: float | None = Field(
        default=None,
        ge=0,
        le=100,
        description="Uniform direct-service percentage replacing the stored configuration.",
    )
    use_direct_service: bool = True
    use_events: bool = True
    use_reallocations: bool = True


class ComplianceFilter(BaseModel):
    program: Program | None = None
    municipality_id: str | None = None
    status: ComplianceStatus | None = None
    search: str | None = None

    def matches(self, row: "ComplianceRow") -> bool:
        if self.program is not None and row.program != self.program.value:
            return False
        if self.municipality_id and row.municipality_id != self.municipality_id:
            return False
        if self.status is not None and row.status != self.status:
            return False
        if self.search and self.search.strip().lower() not in row.municipality_name.lower():
            return False
        return True


class ComplianceRow(BaseModel):
    municipality_id: str
    municipality_name: str
    population: int
    region: str | None
    program: str
    required: int
    offset_percentage: float
    events: int = Field(description="Applied events that reduced the requirement.")
    adjusted_required: int
    own_sites: int
    incoming: int
    outgoing: int
    actual: int
    shortfall: int
    excess: int
    compliance_rate: float
    status: ComplianceStatus
    municipal_sites: int
    return_to_retail: int


class ComplianceSummary(BaseModel):
    total_rows: int
    compliant: int
    shortfall: int
    excess: int
    total_required: int
    total_adjusted: int
    total_actual: int
    total_shortfall: int
    total_excess: int
    overall_compliance_rate: float


class ComplianceAnalysis(BaseModel):
    results: list[ComplianceRow]
    pagination: Pagination
    summary: ComplianceSummary


# =============================================================================
# Row arithmetic
# =============================================================================


def compliance_rate(actual: int, adjusted: int) -> float:
    if adjusted == 0:
        return 100.0
    return round(actual / adjusted * 100, 2)


def classify(shortfall: int, excess: int) -> ComplianceStatus:
    if shortfall > 0:
        return ComplianceStatus.SHORTFALL
    if excess > 0:
        return ComplianceStatus.EXCESS
    return ComplianceStatus.COMPLIANT


def apply_events(adjusted: int, actual: int, events: int) -> tuple[int, int]:
    """Reduce a requirement by applied events.

    Events only cover the shortfall that exists before they are applied and
    never take a positive requirement below one site. Returns the new
    requirement and the events actually used.
    """
    used = min(events, max(0, adjusted - actual))
    if used == 0:
        return adjusted, 0
    return max(1, adjusted - used), used


def compliance_row(
    community: Community,
    program: str,
    own_sites: int,
    rules: Iterable[Rule] | None = None,
    offset_percentage: float = 0,
    events: int = 0,
    incoming: int = 0,
    outgoing: int = 0,
    municipal_sites: int = 0,
    return_to_retail: int = 0,
) -> ComplianceRow:
    """Compliance of one community for one program from pre-counted inputs."""
    required = required_sites(community.population, program, rules)
    percentage = clamp_percentage(offset_percentage)
    adjusted = apply_offset(required, percentage)
    actual = max(0, own_sites + incoming - outgoing)
    adjusted, used = apply_events(adjusted, actual, events)

    shortfall = max(0, adjusted - actual)
    excess = max(0, actual - adjusted)
    return ComplianceRow(
        municipality_id=community.id,
        municipality_name=community.name,
        population=community.population,
        region=community.region,
        program=program,
        required=required,
        offset_percentage=percentage,
        events=used,
        adjusted_required=adjusted,
        own_sites=own_sites,
        incoming=incoming,
        outgoing=outgoing,
        actual=actual,
        shortfall=shortfall,
        excess=excess,
        compliance_rate=compliance_rate(actual, adjusted),
        status=classify(shortfall, excess),
        municipal_sites=municipal_sites,
        return_to_retail=return_to_retail,
    )


# =============================================================================
# Aggregation
# =============================================================================


def compute_compliance(
    communities: Iterable[Community],
    sites: Iterable[Site],
    programs: Iterable[Program | str] | None = None,
    rules: Iterable[Rule] | None = None,
    options: OffsetOptions | None = None,
    direct_service: dict[str, DirectServiceConfig] | None = None,
    event_applications: dict[str, dict[str, list[str]]] | None = None,
    reallocations: Iterable[ReallocationRecord] = (),
) -> list[ComplianceRow]:
    """Every (community, program) row, unfiltered and in input order.

    Args:
        direct_service: Program -> configuration for the analysed year.
        event_applications: Program -> community id -> applied event ids.
    """
    options = options or OffsetOptions()
    programs = [enum_value(p) for p in (programs or list(Program))]
    rules = list(rules or ())
    communities = list(communities)
    sites = list(sites)
    reallocations = list(reallocations)
    direct_service = direct_service or {}
    event_applications = event_applications or {}

    rows = []
    for program in programs:
        own: Counter[str] = Counter()
        municipal: Counter[str] = Counter()
        retail: Counter[str] = Counter()
        eligible_events: dict[str, set[str]] = defaultdict(set)
        for site in sites:
            if is_eligible_event(site, program):
                eligible_events[site.municipality_id].add(site.id)
            elif site.status in ACTUAL_STATUSES and site.serves(program):
                own[site.municipality_id] += 1
                if site.operator_type == OperatorType.MUNICIPAL:
                    municipal[site.municipality_id] += 1
                elif site.operator_type == OperatorType.RETAILER:
                    retail[site.municipality_id] += 1

        if options.use_reallocations:
            incoming, outgoing = site_flows(reallocations, program)
        else:
            incoming, outgoing = Counter(), Counter()

        config = direct_service.get(program)
        applied = event_applications.get(program, {})

        for community in communities:
            if not options.use_direct_service:
                percentage = 0.0
            elif options.offset_percentage is not None:
                percentage = options.offset_percentage
            elif config is not None:
                percentage = config.percentage_for(community.id)
            else:
                percentage = 0.0

            events = 0
            if options.use_events:
                events = len(set(applied.get(community.id, ())) & eligible_events[community.id])

            rows.append(compliance_row(
                community,
                program,
                own[community.id],
                rules=rules,
                offset_percentage=percentage,
                events=events,
                incoming=incoming[community.id],
                outgoing=outgoing[community.id],
                municipal_sites=municipal[community.id],
                return_to_retail=retail[community.id],
            ))

    logger.debug(f"Computed {len(rows)} compliance rows over {len(programs)} programs")
    return rows


def summarize(rows: Sequence[ComplianceRow]) -> ComplianceSummary:
    total_adjusted = sum(r.adjusted_required for r in rows)
    total_actual = sum(r.actual for r in rows)
    return ComplianceSummary(
        total_rows=len(rows),
        compliant=sum(1 for r in rows if r.status == ComplianceStatus.COMPLIANT),
        shortfall=sum(1 for r in rows if r.status == ComplianceStatus.SHORTFALL),
        excess=sum(1 for r in rows if r.status == ComplianceStatus.EXCESS),
        total_required=sum(r.required for r in rows),
        total_adjusted=total_adjusted,
        total_actual=total_actual,
        total_shortfall=sum(r.shortfall for r in rows),
        total_excess=sum(r.excess for r in rows),
        overall_compliance_rate=compliance_rate(total_actual, total_adjusted),
    )


def sort_rows(rows: Iterable[T], ordering: str | None, default: str = "municipality_name") -> list[T]:
    """Sort models by a field name; a leading ``-`` sorts descending.

    Unknown fields fall back to the default. Strings sort case-insensitively
    and missing values sort last.
    """
    rows = list(rows)
    field = (ordering or default).strip()
    reverse = field.startswith("-")
    field = field.lstrip("-")
    if rows and not hasattr(rows[0], field):
        field, reverse = default, False

    def key(row):
        value = getattr(row, field, None)
        if isinstance(value, str):
            value = value.lower()
        return (value is None, value if value is not None else 0)

    if not reverse:
        return sorted(rows, key=key)
    present = sorted((r for r in rows if getattr(r, field, None) is not None), key=key, reverse=True)
    return present + [r for r in rows if getattr(r, field, None) is None]


def paginate(items: Sequence[T], page: int, page_size: int) -> tuple[list[T], Pagination]:
    """Slice one page out of a sequence; pages past the end are empty."""
    page = max(1, page)
    page_size = max(1, page_size)
    start = (page - 1) * page_size
    return list(items[start:start + page_size]), Pagination.build(len(items), page, page_size)


def analyze_compliance(
    communities: Iterable[Community],
    sites: Iterable[Site],
    programs: Iterable[Program | str] | None = None,
    rules: Iterable[Rule] | None = None,
    options: OffsetOptions | None = None,
    direct_service: dict[str, DirectServiceConfig] | None = None,
    event_applications: dict[str, dict[str, list[str]]] | None = None,
    reallocations: Iterable[ReallocationRecord] = (),
    filters: ComplianceFilter | None = None,
    ordering: str | None = None,
    page: int = 1,
    page_size: int = 20,
) -> ComplianceAnalysis:
    """Filtered, sorted and paginated compliance rows with a summary.

    The summary covers every row that passed the filters, not just the page.
    """
    rows = compute_compliance(
        communities,
        sites,
        programs=programs,
        rules=rules,
        options=options,
        direct_service=direct_service,
        event_applications=event_applications,
        reallocations=reallocations,
    )
    if filters is not None:
        rows = [r for r in rows if filters.matches(r)]
    rows = sort_rows(rows, ordering)
    results, pagination = paginate(rows, page, page_size)
    return ComplianceAnalysis(results=results, pagination=pagination, summary=summarize(rows))
