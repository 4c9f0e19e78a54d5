"""Event offsets (Tool B): collection events covering a community's shortfall.

An event is a site of type ``Event`` with an Active or Scheduled status.
Events never count as inventory. Instead, each event applied to a community
covers one site of that community's shortfall for the program and year.

Across the whole dataset the number of applied events is capped at a
percentage (35% by default) of the total required sites for the program:

    max_events_allowed = floor(35% * sum(required))

Applying events to a community replaces whatever was applied before; the
bulk "apply all" fills shortfalls in name order and stops at the cap.
"""

import logging
import math
from collections import Counter, defaultdict
from collections.abc import Iterable
from decimal import Decimal

from pydantic import BaseModel, Field, computed_field

from .requirements import required_sites, rule_percentage
from .schemas import Community, Program, Rule, RuleType, Site, SiteStatus, SiteType, enum_value

logger = logging.getLogger(__name__)

DEFAULT_EVENT_OFFSET_PERCENTAGE = 35.0

# Statuses under which a site or event counts for the current program year
COUNTED_STATUSES = frozenset({SiteStatus.ACTIVE, SiteStatus.SCHEDULED})


def counts_as_inventory(site: Site, program: str, statuses: frozenset[SiteStatus] = COUNTED_STATUSES) -> bool:
    """True if the site counts toward a community's actual sites."""
    return site.site_type != SiteType.EVENT and site.status in statuses and site.serves(program)


def is_eligible_event(site: Site, program: str) -> bool:
    return site.site_type == SiteType.EVENT and site.status in COUNTED_STATUSES and site.serves(program)


class CommunityEventOffset(BaseModel):
    """Event offset position of one community."""

    id: str
    name: str
    required: int
    actual: int
    shortfall: int = Field(description="Shortfall before any events are applied.")
    events: list[str] = Field(description="Eligible event site ids.")
    applied_events: list[str]

    @computed_field
    @property
    def events_count(self) -> int:
        return len(self.events)

    @computed_field
    @property
    def remaining_shortfall(self) -> int:
        return max(0, self.shortfall - len(self.applied_events))


class EventOffsetSummary(BaseModel):
    program: str
    max_offset_percentage: float
    total_required: int
    max_events_allowed: int
    total_events: int
    total_applied: int
    remaining_capacity: int
    offsets_remaining: int


class EventApplicationOutcome(BaseModel):
    """Result of replacing one community's applied events."""

    community_id: str
    accepted: bool
    applied_events: list[str]
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ApplyAllOutcome(BaseModel):
    added: dict[str, list[str]] = Field(description="Community id -> events newly applied.")
    total_added: int
    total_applied: int
    max_events_allowed: int
    cap_reached: bool


class EventOffsetLedger:
    """Applied events for one program, checked against the aggregate cap.

    The ledger is built from plain records and mutated in memory; callers
    persist ``applied`` afterwards.
    """

    def __init__(
        self,
        communities: Iterable[Community],
        sites: Iterable[Site],
        program: Program | str,
        applied: dict[str, list[str]] | None = None,
        rules: Iterable[Rule] | None = None,
        max_percentage: float | None = None,
    ):
        self.program = enum_value(program)
        rules = list(rules or ())
        if max_percentage is None:
            max_percentage = rule_percentage(
                rules, RuleType.OFFSET_EVENT, self.program, DEFAULT_EVENT_OFFSET_PERCENTAGE
            )
        self.max_percentage = max_percentage

        self.communities = {c.id: c for c in communities}
        self.required = {
            cid: required_sites(c.population, self.program, rules)
            for cid, c in self.communities.items()
        }

        self.actual: Counter[str] = Counter()
        self.events: dict[str, list[str]] = defaultdict(list)
        for site in sites:
            if counts_as_inventory(site, self.program):
                self.actual[site.municipality_id] += 1
            elif is_eligible_event(site, self.program):
                self.events[site.municipality_id].append(site.id)

        self.applied: dict[str, list[str]] = {}
        for cid, event_ids in (applied or {}).items():
            eligible = set(self.events.get(cid, ()))
            kept = [e for e in dict.fromkeys(event_ids) if e in eligible]
            if len(kept) != len(event_ids):
                logger.debug(f"Dropped {len(event_ids) - len(kept)} stale event applications for {cid}")
            if kept:
                self.applied[cid] = kept

    # -------------------------------------------------------------------------
    # Derived figures
    # -------------------------------------------------------------------------

    def shortfall(self, community_id: str) -> int:
        return max(0, self.required.get(community_id, 0) - self.actual[community_id])

    @property
    def total_required(self) -> int:
        return sum(self.required.values())

    @property
    def total_applied(self) -> int:
        return sum(len(ids) for ids in self.applied.values())

    @property
    def max_events_allowed(self) -> int:
        return math.floor(Decimal(self.total_required) * Decimal(str(self.max_percentage)) / 100)

    def row(self, community_id: str) -> CommunityEventOffset:
        community = self.communities[community_id]
        return CommunityEventOffset(
            id=community_id,
            name=community.name,
            required=self.required[community_id],
            actual=self.actual[community_id],
            shortfall=self.shortfall(community_id),
            events=list(self.events.get(community_id, ())),
            applied_events=list(self.applied.get(community_id, ())),
        )

    def rows(self) -> list[CommunityEventOffset]:
        """Communities with eligible events and either a shortfall or applied events."""
        rows = [
            self.row(cid)
            for cid in self.communities
            if self.events.get(cid) and (self.shortfall(cid) > 0 or self.applied.get(cid))
        ]
        return sorted(rows, key=lambda r: r.name.lower())

    def summary(self) -> EventOffsetSummary:
        rows = self.rows()
        return EventOffsetSummary(
            program=self.program,
            max_offset_percentage=self.max_percentage,
            total_required=self.total_required,
            max_events_allowed=self.max_events_allowed,
            total_events=sum(r.events_count for r in rows),
            total_applied=self.total_applied,
            remaining_capacity=max(0, self.max_events_allowed - self.total_applied),
            offsets_remaining=sum(r.remaining_shortfall for r in rows),
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def apply(self, community_id: str, event_ids: Iterable[str]) -> EventApplicationOutcome:
        """Replace the events applied to a community.

        Unknown or ineligible events and a selection that would push the
        aggregate past the cap are errors and leave the ledger untouched.
        A selection that lowers an over-cap total is accepted. Selecting
        more events than the shortfall is only a warning.
        """
        selected = list(dict.fromkeys(event_ids))
        current = list(self.applied.get(community_id, ()))

        def rejected(*errors: str) -> EventApplicationOutcome:
            return EventApplicationOutcome(
                community_id=community_id,
                accepted=False,
                applied_events=current,
                errors=list(errors),
            )

        community = self.communities.get(community_id)
        if community is None:
            return rejected(f"Unknown community {community_id}")

        eligible = set(self.events.get(community_id, ()))
        errors = [
            f"Event {event_id} is not an eligible {self.program} event in {community.name}"
            for event_id in selected
            if event_id not in eligible
        ]
        if errors:
            return rejected(*errors)

        new_total = self.total_applied - len(current) + len(selected)
        # A ledger already over the cap may still shrink
        if new_total > self.max_events_allowed and new_total > self.total_applied:
            return rejected(
                f"Applying {len(selected)} events would exceed the {self.max_percentage:g}% "
                f"event offset cap ({self.max_events_allowed} events)"
            )

        warnings = []
        shortfall = self.shortfall(community_id)
        if len(selected) > shortfall:
            warnings.append(
                f"{len(selected)} events selected for a shortfall of {shortfall} in {community.name}"
            )

        if selected:
            self.applied[community_id] = selected
        else:
            self.applied.pop(community_id, None)

        return EventApplicationOutcome(
            community_id=community_id,
            accepted=True,
            applied_events=selected,
            warnings=warnings,
        )

    def apply_all(self) -> ApplyAllOutcome:
        """Apply unapplied eligible events to every shortfall, up to the cap."""
        capacity = self.max_events_allowed - self.total_applied
        added: dict[str, list[str]] = {}

        for row in self.rows():
            if capacity <= 0:
                break
            current = self.applied.get(row.id, [])
            candidates = [e for e in row.events if e not in current]
            take = min(row.remaining_shortfall, len(candidates), capacity)
            if take <= 0:
                continue
            chosen = candidates[:take]
            self.applied[row.id] = current + chosen
            added[row.id] = chosen
            capacity -= take

        cap_reached = self.total_applied >= self.max_events_allowed
        if cap_reached:
            logger.info(
                f"Event offset cap reached for {self.program}: "
                f"{self.total_applied}/{self.max_events_allowed}"
            )

        return ApplyAllOutcome(
            added=added,
            total_added=sum(len(ids) for ids in added.values()),
            total_applied=self.total_applied,
            max_events_allowed=self.max_events_allowed,
            cap_reached=cap_reached,
        )
