"""Adjacent community reallocation (Tool C) and reallocation validation.

A community with more eligible sites than it needs may lend individual sites
to a bordering community that is short for the same program.

Eligibility of a site:
- site type is "Collection site" (events go through Tool B instead)
- operator is Retailer, Distributor, Private Depot, Product Care or Other;
  Municipal, First Nation/Indigenous, Regional District and Regional Service
  Commission sites are residency restricted and never move

Program rules for the destination:
- Lighting (EEE): directly adjacent communities only
- Paint, Solvents, Pesticides (HSP): adjacent, or within the same upper-tier
  region

Percentage caps are checked per reallocation: ``site`` at most 10%, ``event``
at most 35%.
"""

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .events import counts_as_inventory
from .requirements import required_sites, rule_percentage
from .schemas import (
    HSP_PROGRAMS,
    Community,
    OperatorType,
    Program,
    ReallocationStatus,
    ReallocationType,
    Rule,
    RuleType,
    Site,
    SiteType,
    enum_value,
)

logger = logging.getLogger(__name__)

DEFAULT_ADJACENT_OFFSET_PERCENTAGE = 10.0
DEFAULT_EVENT_REALLOCATION_PERCENTAGE = 35.0

REALLOCATABLE_OPERATORS = frozenset({
    OperatorType.RETAILER.value,
    OperatorType.DISTRIBUTOR.value,
    OperatorType.PRIVATE_DEPOT.value,
    OperatorType.PRODUCT_CARE.value,
    OperatorType.OTHER.value,
})

RESIDENCY_RESTRICTED_OPERATORS = frozenset({
    OperatorType.MUNICIPAL.value,
    OperatorType.FIRST_NATION.value,
    OperatorType.REGIONAL_DISTRICT.value,
    OperatorType.REGIONAL_SERVICE_COMMISSION.value,
})

ALREADY_REALLOCATED = "Site already has a pending or approved reallocation"

HSP_PROGRAM_NAMES = frozenset(p.value for p in HSP_PROGRAMS)


# =============================================================================
# Adjacency
# =============================================================================


class AdjacencyGraph:
    """Symmetric adjacency between communities, stored as unordered id pairs."""

    def __init__(self, pairs: Iterable[tuple[str, str]] = ()):
        self._neighbours: dict[str, set[str]] = defaultdict(set)
        for a, b in pairs:
            self.add(a, b)

    def add(self, a: str, b: str) -> None:
        a, b = str(a), str(b)
        if a == b:
            return
        self._neighbours[a].add(b)
        self._neighbours[b].add(a)

    def are_adjacent(self, a: str, b: str) -> bool:
        return str(b) in self._neighbours.get(str(a), ())

    def neighbours(self, community_id: str) -> set[str]:
        return set(self._neighbours.get(str(community_id), ()))

    def pairs(self) -> set[frozenset[str]]:
        return {frozenset((a, b)) for a, others in self._neighbours.items() for b in others}

    def __len__(self) -> int:
        return len(self.pairs())


# =============================================================================
# Records
# =============================================================================


class ReallocationRecord(BaseModel):
    """A stored reallocation as seen by the engine."""

    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    site_id: str
    from_municipality_id: str
    to_municipality_id: str | None = None
    program: str
    reallocation_type: ReallocationType = ReallocationType.SITE
    percentage: float = 0
    status: ReallocationStatus = ReallocationStatus.PENDING

    @field_validator("id", "site_id", "from_municipality_id", "to_municipality_id", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        return str(v) if isinstance(v, UUID) else v

    @property
    def is_live(self) -> bool:
        """Pending or approved; rejected reallocations hold nothing."""
        return self.status != ReallocationStatus.REJECTED


class ReallocationCandidate(BaseModel):
    """A proposed reallocation before it is stored."""

    from_municipality_id: str | None = None
    to_municipality_id: str | None = None
    program: str
    reallocation_type: ReallocationType = ReallocationType.SITE
    percentage: float = 0


def excluded_operator_types(rules: Iterable[Rule] | None, program: str) -> frozenset[str]:
    """Residency-restricted operators plus any an active adjacency rule excludes."""
    excluded = set(RESIDENCY_RESTRICTED_OPERATORS)
    for rule in rules or ():
        if rule.is_active and rule.rule_type == RuleType.OFFSET_ADJACENT and rule.applies_to(program):
            excluded.update(rule.parameters.excluded_operator_types)
    return frozenset(excluded)


def is_reallocatable(site: Site, excluded: Iterable[str] | None = None) -> bool:
    """True if the site may be lent to another community."""
    if site.site_type != SiteType.COLLECTION_SITE or site.operator_type is None:
        return False
    excluded = RESIDENCY_RESTRICTED_OPERATORS if excluded is None else frozenset(excluded)
    operator = site.operator_type.value
    return operator in REALLOCATABLE_OPERATORS and operator not in excluded


def eligible_excess(eligible_count: int, required: int) -> int:
    """Eligible sites a community holds beyond its own requirement."""
    return max(0, eligible_count - required)


def site_flows(reallocations: Iterable[ReallocationRecord], program: str) -> tuple[Counter[str], Counter[str]]:
    """Incoming and outgoing site counts per community from approved site reallocations."""
    incoming: Counter[str] = Counter()
    outgoing: Counter[str] = Counter()
    for r in reallocations:
        if (
            r.program == program
            and r.status == ReallocationStatus.APPROVED
            and r.reallocation_type == ReallocationType.SITE
            and r.to_municipality_id
        ):
            incoming[r.to_municipality_id] += 1
            outgoing[r.from_municipality_id] += 1
    return incoming, outgoing


# =============================================================================
# Validation
# =============================================================================


def validate_reallocation(
    candidate: ReallocationCandidate,
    site: Site,
    communities: Iterable[Community] | Mapping[str, Community],
    adjacency: AdjacencyGraph,
    max_site_percentage: float = DEFAULT_ADJACENT_OFFSET_PERCENTAGE,
    max_event_percentage: float = DEFAULT_EVENT_REALLOCATION_PERCENTAGE,
    excluded_operators: Iterable[str] | None = None,
) -> list[str]:
    """Check a proposed reallocation and return human-readable errors.

    An empty list means the reallocation can be stored as pending. The
    source community is always the site's own municipality.
    ``excluded_operators`` defaults to the residency-restricted operators;
    pass ``excluded_operator_types(rules, program)`` to honour rule exclusions.
    """
    if not candidate.to_municipality_id:
        return ["Destination municipality is required"]

    if not isinstance(communities, Mapping):
        communities = {c.id: c for c in communities}

    source = communities.get(site.municipality_id)
    destination = communities.get(candidate.to_municipality_id)
    if source is None or destination is None:
        return ["Invalid municipality selection"]

    errors = []
    program = enum_value(candidate.program)

    if candidate.from_municipality_id and candidate.from_municipality_id != source.id:
        errors.append(f"Site does not belong to the source municipality; it is in {source.name}")
    if destination.id == source.id:
        errors.append("Destination must differ from the source municipality")

    excluded = RESIDENCY_RESTRICTED_OPERATORS if excluded_operators is None else frozenset(excluded_operators)
    operator = site.operator_type.value if site.operator_type else None
    if operator in RESIDENCY_RESTRICTED_OPERATORS:
        errors.append(f"{operator} depots cannot be reallocated due to residency restrictions")
    elif operator in excluded:
        errors.append(f"{operator} sites are excluded from adjacent reallocation for {program}")

    if site.site_type == SiteType.EVENT:
        errors.append("Event sites cannot be reallocated; apply them as event offsets instead")

    if not site.serves(program):
        errors.append(f"Site does not collect {program}")

    is_adjacent = adjacency.are_adjacent(source.id, destination.id)

    if operator == OperatorType.RETAILER.value and not is_adjacent:
        errors.append("Return-to-retail sites can only be reallocated to adjacent communities")

    if program == Program.LIGHTING.value:
        if not is_adjacent:
            errors.append("EEE (Lighting) sites can only be reallocated to adjacent municipalities")
    elif program in HSP_PROGRAM_NAMES:
        same_region = bool(source.region) and (source.region or "").lower() == (destination.region or "").lower()
        if not is_adjacent and not same_region:
            errors.append("HSP sites can only be reallocated to adjacent municipalities or within the same upper-tier")

    if candidate.reallocation_type == ReallocationType.EVENT and candidate.percentage > max_event_percentage:
        errors.append(f"Events can offset maximum {max_event_percentage:g}% of required sites")
    if candidate.reallocation_type == ReallocationType.SITE and candidate.percentage > max_site_percentage:
        errors.append(f"Adjacent community sharing limited to {max_site_percentage:g}% of required sites")

    return errors


# =============================================================================
# Tool C: communities with eligible excess
# =============================================================================


class EligibleSite(BaseModel):
    id: str
    name: str
    operator_type: str
    address: str | None


class AdjacentShortfall(BaseModel):
    id: str
    name: str
    required: int
    actual: int
    shortfall: int
    reallocations: list[str] = Field(description="Live reallocation ids from the source into this community.")

    @computed_field
    @property
    def total_reallocated(self) -> int:
        return len(self.reallocations)


class ExcessCommunity(BaseModel):
    id: str
    name: str
    required: int
    actual: int
    eligible_excess: int
    eligible_sites: list[EligibleSite]
    adjacent_with_shortfalls: list[AdjacentShortfall]


class PlannedReallocation(BaseModel):
    """A Tool C reallocation ready to store, with its validation outcome."""

    site_id: str
    from_municipality_id: str
    to_municipality_id: str
    program: str
    reallocation_type: ReallocationType = ReallocationType.SITE
    percentage: float
    rationale: str
    errors: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def status(self) -> ReallocationStatus:
        return ReallocationStatus.REJECTED if self.errors else ReallocationStatus.PENDING


class AdjacentReallocationEngine:
    """Tool C over one program: who has eligible excess and who can receive it."""

    def __init__(
        self,
        communities: Iterable[Community],
        sites: Iterable[Site],
        program: Program | str,
        adjacency: AdjacencyGraph,
        rules: Iterable[Rule] | None = None,
        reallocations: Iterable[ReallocationRecord] = (),
    ):
        self.program = enum_value(program)
        rules = list(rules or ())
        self.adjacency = adjacency
        self.max_percentage = rule_percentage(
            rules, RuleType.OFFSET_ADJACENT, self.program, DEFAULT_ADJACENT_OFFSET_PERCENTAGE
        )
        self.excluded = excluded_operator_types(rules, self.program)

        self.communities = {c.id: c for c in communities}
        self.sites = {s.id: s for s in sites}
        self.required = {
            cid: required_sites(c.population, self.program, rules)
            for cid, c in self.communities.items()
        }
        self.reallocations = [r for r in reallocations if r.program == self.program]

        # Sites already promised elsewhere cannot be offered again
        self.committed = {r.site_id for r in self.reallocations if r.is_live}
        self.incoming, self.outgoing = site_flows(self.reallocations, self.program)

        self.own: Counter[str] = Counter()
        self.eligible: dict[str, list[Site]] = defaultdict(list)
        for site in self.sites.values():
            if not counts_as_inventory(site, self.program):
                continue
            self.own[site.municipality_id] += 1
            if site.id not in self.committed and is_reallocatable(site, self.excluded):
                self.eligible[site.municipality_id].append(site)

    def actual(self, community_id: str) -> int:
        return self.own[community_id] + self.incoming[community_id] - self.outgoing[community_id]

    def shortfall(self, community_id: str) -> int:
        return max(0, self.required.get(community_id, 0) - self.actual(community_id))

    def eligible_excess(self, community_id: str) -> int:
        return eligible_excess(len(self.eligible.get(community_id, ())), self.required.get(community_id, 0))

    def adjacent_shortfalls(self, community_id: str) -> list[AdjacentShortfall]:
        rows = []
        for neighbour_id in self.adjacency.neighbours(community_id):
            neighbour = self.communities.get(neighbour_id)
            if neighbour is None or self.shortfall(neighbour_id) <= 0:
                continue
            rows.append(AdjacentShortfall(
                id=neighbour_id,
                name=neighbour.name,
                required=self.required[neighbour_id],
                actual=self.actual(neighbour_id),
                shortfall=self.shortfall(neighbour_id),
                reallocations=[
                    r.id for r in self.reallocations
                    if r.is_live and r.id
                    and r.from_municipality_id == community_id
                    and r.to_municipality_id == neighbour_id
                ],
            ))
        return sorted(rows, key=lambda r: r.name.lower())

    def excess_communities(self) -> list[ExcessCommunity]:
        """Communities that can lend at least one eligible site."""
        rows = []
        for cid, community in self.communities.items():
            excess = self.eligible_excess(cid)
            if excess <= 0:
                continue
            rows.append(ExcessCommunity(
                id=cid,
                name=community.name,
                required=self.required[cid],
                actual=self.actual(cid),
                eligible_excess=excess,
                eligible_sites=[
                    EligibleSite(
                        id=s.id,
                        name=s.name,
                        operator_type=s.operator_type.value if s.operator_type else "",
                        address=s.address,
                    )
                    for s in self.eligible[cid]
                ],
                adjacent_with_shortfalls=self.adjacent_shortfalls(cid),
            ))
        return sorted(rows, key=lambda r: r.name.lower())

    def default_percentage(self, destination_id: str) -> float:
        """Share of the destination's requirement one lent site covers, capped."""
        required = self.required.get(destination_id, 0)
        share = round(100 / required, 2) if required else 100.0
        return min(share, self.max_percentage)

    def plan(
        self,
        site_ids: Iterable[str],
        from_id: str,
        to_id: str,
        percentage: float | None = None,
        rationale: str | None = None,
    ) -> list[PlannedReallocation]:
        """Validate lending the selected sites from one community to another."""
        source = self.communities.get(from_id)
        destination = self.communities.get(to_id)
        if percentage is None:
            percentage = self.default_percentage(to_id)
        if rationale is None and source and destination:
            rationale = f"Adjacent community reallocation from {source.name} to {destination.name}"

        excess = self.eligible_excess(from_id)
        shortfall = self.shortfall(to_id)
        planned = []

        for index, site_id in enumerate(dict.fromkeys(site_ids)):
            site = self.sites.get(site_id)
            if site is None:
                errors = [f"Unknown site {site_id}"]
            else:
                errors = validate_reallocation(
                    ReallocationCandidate(
                        from_municipality_id=from_id,
                        to_municipality_id=to_id,
                        program=self.program,
                        reallocation_type=ReallocationType.SITE,
                        percentage=percentage,
                    ),
                    site,
                    self.communities,
                    self.adjacency,
                    max_site_percentage=self.max_percentage,
                    excluded_operators=self.excluded,
                )
                if site.id in self.committed:
                    errors.append(ALREADY_REALLOCATED)
                elif not is_reallocatable(site, self.excluded):
                    errors.append("Site is not eligible for adjacent reallocation")

            if source and destination:
                if not self.adjacency.are_adjacent(from_id, to_id):
                    errors.append(f"{destination.name} does not border {source.name}")
                if shortfall <= 0:
                    errors.append(f"{destination.name} has no {self.program} shortfall")
                elif index >= shortfall:
                    errors.append(f"Selection exceeds {destination.name}'s shortfall of {shortfall} sites")
                if index >= excess:
                    errors.append(f"Selection exceeds {source.name}'s eligible excess of {excess} sites")

            planned.append(PlannedReallocation(
                site_id=site_id,
                from_municipality_id=from_id,
                to_municipality_id=to_id,
                program=self.program,
                percentage=percentage,
                rationale=rationale or "",
                errors=list(dict.fromkeys(errors)),
            ))

        rejected = sum(1 for p in planned if p.errors)
        if rejected:
            logger.info(f"Tool C plan {from_id} -> {to_id}: {rejected}/{len(planned)} rejected")
        return planned


def find_excess_communities(
    communities: Iterable[Community],
    sites: Iterable[Site],
    program: Program | str,
    adjacency: AdjacencyGraph,
    rules: Iterable[Rule] | None = None,
    reallocations: Iterable[ReallocationRecord] = (),
) -> list[ExcessCommunity]:
    """Tool C listing: communities with eligible excess and their short neighbours."""
    engine = AdjacentReallocationEngine(communities, sites, program, adjacency, rules, reallocations)
    return engine.excess_communities()


def plan_adjacent_reallocation(
    site_ids: Iterable[str],
    from_id: str,
    to_id: str,
    communities: Iterable[Community],
    sites: Iterable[Site],
    program: Program | str,
    adjacency: AdjacencyGraph,
    rules: Iterable[Rule] | None = None,
    reallocations: Iterable[ReallocationRecord] = (),
    percentage: float | None = None,
    rationale: str | None = None,
) -> list[PlannedReallocation]:
    engine = AdjacentReallocationEngine(communities, sites, program, adjacency, rules, reallocations)
    return engine.plan(site_ids, from_id, to_id, percentage=percentage, rationale=rationale)
