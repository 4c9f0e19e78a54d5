"""Loading engine records from the database and writing tool results back.

Every function takes an open Session and leaves commit to the caller, so a
route can group several writes into one transaction.
"""

import logging
import uuid
from collections import defaultdict
from collections.abc import Iterable

from sqlalchemy.orm import Session

from .events import DEFAULT_EVENT_OFFSET_PERCENTAGE, EventOffsetLedger
from .models import (
    Adjacency,
    CollectionSite,
    CommunityOffset,
    ComplianceCalculation,
    DirectServiceOffset,
    EventApplication,
    Municipality,
    Reallocation,
    RegulatoryRule,
    name_key,
)
from .offsets import DirectServiceConfig
from .reallocation import (
    DEFAULT_ADJACENT_OFFSET_PERCENTAGE,
    RESIDENCY_RESTRICTED_OPERATORS,
    AdjacencyGraph,
    ReallocationRecord,
)
from .requirements import DEFAULT_RULES
from .schemas import (
    HSP_PROGRAMS,
    Community,
    MunicipalityCreate,
    Program,
    ReallocationStatus,
    Rule,
    RuleCategory,
    RuleParameters,
    RuleType,
    Site,
    enum_value,
)

logger = logging.getLogger(__name__)


def as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


# =============================================================================
# ENGINE RECORDS
# =============================================================================


def load_communities(db: Session) -> list[Community]:
    return [Community.model_validate(m) for m in db.query(Municipality).order_by(Municipality.name).all()]


def load_sites(db: Session) -> list[Site]:
    return [Site.model_validate(s) for s in db.query(CollectionSite).all()]


def load_rules(db: Session) -> list[Rule]:
    return [Rule.model_validate(r) for r in db.query(RegulatoryRule).all()]


def load_adjacency(db: Session) -> AdjacencyGraph:
    pairs = db.query(Adjacency.community_a_id, Adjacency.community_b_id).all()
    return AdjacencyGraph((str(a), str(b)) for a, b in pairs)


def load_reallocations(db: Session, program: str | None = None) -> list[ReallocationRecord]:
    query = db.query(Reallocation)
    if program:
        query = query.filter(Reallocation.program == enum_value(program))
    return [ReallocationRecord.model_validate(r) for r in query.all()]


def find_live_reallocation(
    db: Session,
    site_id: uuid.UUID | str,
    program: str,
    statuses: Iterable[ReallocationStatus] = (ReallocationStatus.PENDING, ReallocationStatus.APPROVED),
    exclude_id: uuid.UUID | None = None,
) -> Reallocation | None:
    """Another reallocation of the same site and program in one of ``statuses``."""
    query = db.query(Reallocation).filter(
        Reallocation.site_id == as_uuid(site_id),
        Reallocation.program == enum_value(program),
        Reallocation.status.in_(list(statuses)),
    )
    if exclude_id is not None:
        query = query.filter(Reallocation.id != exclude_id)
    return query.first()


# =============================================================================
# MUNICIPALITIES
# =============================================================================


def find_municipality_by_name(db: Session, name: str) -> Municipality | None:
    return db.query(Municipality).filter(Municipality.name_key == name_key(name)).first()


def upsert_municipality(db: Session, data: MunicipalityCreate) -> tuple[Municipality, bool]:
    """Create a municipality or update the one with the same name.

    Names match case-insensitively with whitespace collapsed, so
    "Toronto" and " TORONTO" are one row. Returns (row, created).
    """
    existing = find_municipality_by_name(db, data.name)
    values = data.model_dump()
    if existing is not None:
        for key, value in values.items():
            setattr(existing, key, value)
        existing.name_key = name_key(data.name)
        return existing, False

    municipality = Municipality(**values, name_key=name_key(data.name))
    db.add(municipality)
    db.flush()
    return municipality, True


def delete_municipality(db: Session, municipality: Municipality) -> None:
    """Delete a municipality with its sites and every record that refers to them."""
    for site in list(municipality.sites):
        delete_site(db, site)

    mid = municipality.id
    db.query(Adjacency).filter(
        (Adjacency.community_a_id == mid) | (Adjacency.community_b_id == mid)
    ).delete(synchronize_session=False)
    db.query(CommunityOffset).filter(CommunityOffset.community_id == mid).delete(synchronize_session=False)
    db.query(EventApplication).filter(EventApplication.community_id == mid).delete(synchronize_session=False)
    db.query(ComplianceCalculation).filter(
        ComplianceCalculation.municipality_id == mid
    ).delete(synchronize_session=False)
    db.query(Reallocation).filter(
        (Reallocation.from_municipality_id == mid) | (Reallocation.to_municipality_id == mid)
    ).delete(synchronize_session=False)
    db.delete(municipality)


def delete_site(db: Session, site: CollectionSite) -> None:
    db.query(EventApplication).filter(EventApplication.event_site_id == site.id).delete(synchronize_session=False)
    db.query(Reallocation).filter(Reallocation.site_id == site.id).delete(synchronize_session=False)
    db.delete(site)


# =============================================================================
# ADJACENCY
# =============================================================================


def ordered_pair(a: uuid.UUID | str, b: uuid.UUID | str) -> tuple[uuid.UUID, uuid.UUID]:
    a, b = as_uuid(a), as_uuid(b)
    return (a, b) if str(a) < str(b) else (b, a)


def find_adjacency(db: Session, a: uuid.UUID | str, b: uuid.UUID | str) -> Adjacency | None:
    first, second = ordered_pair(a, b)
    return db.query(Adjacency).filter(
        Adjacency.community_a_id == first,
        Adjacency.community_b_id == second,
    ).first()


def add_adjacency(db: Session, a: uuid.UUID | str, b: uuid.UUID | str) -> tuple[Adjacency, bool]:
    """Record that two communities border each other. Returns (row, created)."""
    existing = find_adjacency(db, a, b)
    if existing is not None:
        return existing, False
    first, second = ordered_pair(a, b)
    adjacency = Adjacency(community_a_id=first, community_b_id=second)
    db.add(adjacency)
    db.flush()
    return adjacency, True


# =============================================================================
# TOOL A: DIRECT-SERVICE OFFSETS
# =============================================================================


def load_direct_service_config(db: Session, program: str, year: int) -> DirectServiceConfig:
    program = enum_value(program)
    row = db.query(DirectServiceOffset).filter(
        DirectServiceOffset.program == program,
        DirectServiceOffset.year == year,
    ).first()
    overrides = db.query(CommunityOffset).filter(
        CommunityOffset.program == program,
        CommunityOffset.year == year,
        CommunityOffset.percentage_override.isnot(None),
    ).all()
    return DirectServiceConfig(
        program=program,
        year=year,
        global_percentage=row.global_percentage if row else 0,
        overrides={str(o.community_id): o.percentage_override for o in overrides},
        version=row.version if row else 0,
    )


def load_direct_service_configs(db: Session, year: int) -> dict[str, DirectServiceConfig]:
    return {p.value: load_direct_service_config(db, p.value, year) for p in Program}


def save_direct_service_offset(db: Session, program: str, year: int, percentage: float) -> DirectServiceOffset:
    """Save the global percentage, bumping the configuration version."""
    program = enum_value(program)
    row = db.query(DirectServiceOffset).filter(
        DirectServiceOffset.program == program,
        DirectServiceOffset.year == year,
    ).first()
    if row is None:
        row = DirectServiceOffset(program=program, year=year, global_percentage=percentage, version=1)
        db.add(row)
    else:
        row.global_percentage = percentage
        row.version += 1
    db.flush()
    logger.info(f"Direct-service offset {program} {year} set to {percentage}% (v{row.version})")
    return row


def save_community_offset(
    db: Session,
    community_id: uuid.UUID | str,
    program: str,
    year: int,
    percentage: float | None,
) -> CommunityOffset:
    """Upsert a community override; a None percentage clears it."""
    program = enum_value(program)
    community_id = as_uuid(community_id)
    row = db.query(CommunityOffset).filter(
        CommunityOffset.community_id == community_id,
        CommunityOffset.program == program,
        CommunityOffset.year == year,
    ).first()
    if row is None:
        row = CommunityOffset(community_id=community_id, program=program, year=year)
        db.add(row)
    row.percentage_override = percentage
    db.flush()
    return row


# =============================================================================
# TOOL B: EVENT APPLICATIONS
# =============================================================================


def load_event_applications(db: Session, program: str, year: int) -> dict[str, list[str]]:
    """Community id -> applied event ids for a program and year."""
    rows = db.query(EventApplication).filter(
        EventApplication.program == enum_value(program),
        EventApplication.year == year,
    ).order_by(EventApplication.applied_at).all()
    applied: dict[str, list[str]] = defaultdict(list)
    for row in rows:
        applied[str(row.community_id)].append(str(row.event_site_id))
    return dict(applied)


def load_all_event_applications(db: Session, year: int) -> dict[str, dict[str, list[str]]]:
    return {p.value: load_event_applications(db, p.value, year) for p in Program}


def load_event_ledger(db: Session, program: str, year: int, rules: list[Rule] | None = None) -> EventOffsetLedger:
    if rules is None:
        rules = load_rules(db)
    return EventOffsetLedger(
        load_communities(db),
        load_sites(db),
        program,
        applied=load_event_applications(db, program, year),
        rules=rules,
    )


def replace_event_applications(
    db: Session,
    community_id: uuid.UUID | str,
    program: str,
    year: int,
    event_ids: Iterable[str],
) -> list[EventApplication]:
    """Overwrite the events applied to one community."""
    program = enum_value(program)
    community_id = as_uuid(community_id)
    db.query(EventApplication).filter(
        EventApplication.community_id == community_id,
        EventApplication.program == program,
        EventApplication.year == year,
    ).delete(synchronize_session=False)
    rows = [
        EventApplication(
            community_id=community_id,
            event_site_id=as_uuid(event_id),
            program=program,
            year=year,
        )
        for event_id in event_ids
    ]
    db.add_all(rows)
    db.flush()
    return rows


def save_ledger(db: Session, ledger: EventOffsetLedger, year: int, community_ids: Iterable[str]) -> None:
    """Persist the ledger's applied events for the given communities."""
    for cid in community_ids:
        replace_event_applications(db, cid, ledger.program, year, ledger.applied.get(cid, []))


# =============================================================================
# REGULATORY RULES
# =============================================================================


def rule_category(program: str) -> RuleCategory:
    if program == Program.LIGHTING.value:
        return RuleCategory.EEE
    if program in {p.value for p in HSP_PROGRAMS}:
        return RuleCategory.HSP
    return RuleCategory.OFFSET


def default_offset_rules() -> list[Rule]:
    return [
        Rule(
            name="Event offset cap",
            program="All",
            category=RuleCategory.OFFSET,
            rule_type=RuleType.OFFSET_EVENT,
            parameters=RuleParameters(max_offset_percentage=DEFAULT_EVENT_OFFSET_PERCENTAGE),
        ),
        Rule(
            name="Adjacent community sharing",
            program="All",
            category=RuleCategory.OFFSET,
            rule_type=RuleType.OFFSET_ADJACENT,
            parameters=RuleParameters(
                max_offset_percentage=DEFAULT_ADJACENT_OFFSET_PERCENTAGE,
                excluded_operator_types=sorted(RESIDENCY_RESTRICTED_OPERATORS),
                requires_adjacency=True,
            ),
        ),
    ]


def seed_default_rules(db: Session) -> list[RegulatoryRule]:
    """Store the built-in requirement table and offset caps as editable rules.

    Rules already present with the same program, type and name are left
    alone. Returns the rows created.
    """
    defaults = [rule for rules in DEFAULT_RULES.values() for rule in rules] + default_offset_rules()
    created = []
    for rule in defaults:
        exists = db.query(RegulatoryRule).filter(
            RegulatoryRule.program == rule.program,
            RegulatoryRule.rule_type == rule.rule_type,
            RegulatoryRule.name == rule.name,
        ).first()
        if exists:
            continue
        row = RegulatoryRule(
            name=rule.name,
            description="Default rule",
            program=rule.program,
            category=rule.category or rule_category(rule.program),
            rule_type=rule.rule_type,
            parameters=rule.parameters.model_dump(by_alias=True, exclude_defaults=True),
            status=rule.status,
        )
        db.add(row)
        created.append(row)
    db.flush()
    logger.info(f"Seeded {len(created)} default regulatory rules")
    return created
