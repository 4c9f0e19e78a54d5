"""REST endpoints for municipalities, sites, compliance and the offset tools.

All routes sit under ``/api/v1`` and require the admin bearer token.
"""

import logging
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query as OrmQuery, Session

from . import store
from .compliance import (
    ComplianceAnalysis,
    ComplianceFilter,
    OffsetOptions,
    analyze_compliance,
    compute_compliance,
    paginate,
)
from .database import get_db
from .events import ApplyAllOutcome, CommunityEventOffset, EventApplicationOutcome, EventOffsetSummary
from .models import (
    Adjacency,
    CollectionSite,
    CommunityOffset,
    ComplianceCalculation,
    EventApplication,
    Municipality,
    Reallocation,
    RegulatoryRule,
    name_key,
)
from .offsets import CommunityOffsetRow, adjusted_requirement, direct_service_offsets
from .reallocation import (
    ALREADY_REALLOCATED,
    DEFAULT_ADJACENT_OFFSET_PERCENTAGE,
    DEFAULT_EVENT_REALLOCATION_PERCENTAGE,
    AdjacentReallocationEngine,
    ExcessCommunity,
    ReallocationCandidate,
    excluded_operator_types,
    validate_reallocation,
)
from .requirements import rule_percentage
from .schemas import (
    AdjacencyCreate,
    AdjacencyRead,
    BatchResult,
    BulkDeleteRequest,
    BulkStatusRequest,
    Community,
    CommunityOffsetCreate,
    CommunityOffsetRead,
    ComplianceCalculationCreate,
    ComplianceCalculationRead,
    ComplianceStatus,
    DirectServiceOffsetCreate,
    DirectServiceOffsetRead,
    EventApplicationRead,
    EventApplyAllRequest,
    EventApplyRequest,
    MunicipalityCreate,
    MunicipalityImportResult,
    MunicipalityRead,
    MunicipalityStats,
    MunicipalityUpdate,
    OperatorType,
    Page,
    Pagination,
    Program,
    ReallocationCreate,
    ReallocationDecision,
    ReallocationRead,
    ReallocationStats,
    ReallocationStatus,
    RegulatoryRuleCreate,
    RegulatoryRuleRead,
    RegulatoryRuleUpdate,
    RequirementRequest,
    RequirementResponse,
    RuleStatus,
    RuleType,
    Site,
    SiteCreate,
    SiteRead,
    SiteStatistics,
    SiteStatus,
    SiteType,
    SiteUpdate,
    Tier,
    ToolCRequest,
    enum_value,
)
from .settings import ADMIN_TOKEN, API_PREFIX, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE

logger = logging.getLogger(__name__)

# =============================================================================
# AUTH
# =============================================================================

# Simple bearer token auth for every API route
security = HTTPBearer(auto_error=False)


async def verify_admin(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Verify admin bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Admin token required")
    if credentials.credentials != ADMIN_TOKEN:
        raise HTTPException(status_code=403, detail="Invalid admin token")
    return True


router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(verify_admin)])


# =============================================================================
# HELPERS
# =============================================================================


@contextmanager
def committing(db: Session) -> Iterator[None]:
    """Commit on success; roll back and surface failures as HTTP errors."""
    try:
        yield
        db.commit()
    except HTTPException:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity error: {e.orig}")
        raise HTTPException(status_code=409, detail="Conflicts with an existing record")
    except Exception as e:
        db.rollback()
        logger.exception("Write failed")
        raise HTTPException(status_code=500, detail=str(e))


def get_or_404(db: Session, model, object_id: UUID, label: str):
    obj = db.get(model, object_id)
    if obj is None:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


def current_year(year: int | None) -> int:
    return year or date.today().year


def paginate_query(query: OrmQuery, page: int, page_size: int) -> tuple[list, Pagination]:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return items, Pagination.build(total, page, page_size)


def order_query(query: OrmQuery, ordering: str | None, columns: dict[str, Any], default: str) -> OrmQuery:
    """Apply ``field`` / ``-field`` ordering; unknown fields use the default."""
    field = (ordering or default).strip()
    descending = field.startswith("-")
    column = columns.get(field.lstrip("-"))
    if column is None:
        column, descending = columns[default], False
    return query.order_by(column.desc() if descending else column.asc())


PageNumber = Query(1, ge=1)
PageSize = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE)


# =============================================================================
# MUNICIPALITIES
# =============================================================================

MUNICIPALITY_ORDERING = {
    "name": Municipality.name_key,
    "population": Municipality.population,
    "region": Municipality.region,
    "tier": Municipality.tier,
    "created_at": Municipality.created_at,
}


@router.get("/municipalities/")
async def list_municipalities(
    search: str | None = None,
    region: str | None = None,
    tier: Tier | None = None,
    ordering: str | None = None,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> Page[MunicipalityRead]:
    """List municipalities with search, filters and pagination."""
    query = db.query(Municipality)
    if search:
        query = query.filter(Municipality.name_key.contains(name_key(search)))
    if region:
        query = query.filter(func.lower(Municipality.region) == region.strip().lower())
    if tier:
        query = query.filter(Municipality.tier == tier)
    query = order_query(query, ordering, MUNICIPALITY_ORDERING, "name")

    items, pagination = paginate_query(query, page, page_size)
    return Page[MunicipalityRead](
        results=[MunicipalityRead.model_validate(m) for m in items],
        pagination=pagination,
    )


@router.get("/municipalities/stats/")
async def municipality_stats(db: Session = Depends(get_db)) -> MunicipalityStats:
    """Counts by tier and region."""
    total = db.query(func.count(Municipality.id)).scalar() or 0
    population = db.query(func.sum(Municipality.population)).scalar() or 0
    by_tier = db.query(Municipality.tier, func.count(Municipality.id)).group_by(Municipality.tier).all()
    by_region = db.query(Municipality.region, func.count(Municipality.id)).group_by(Municipality.region).all()
    return MunicipalityStats(
        total=total,
        total_population=int(population),
        by_tier={enum_value(tier): count for tier, count in by_tier},
        by_region={region or "Unassigned": count for region, count in by_region},
    )


@router.post("/municipalities/bulk_import/")
async def bulk_import_municipalities(
    items: list[dict[str, Any]],
    db: Session = Depends(get_db),
) -> MunicipalityImportResult:
    """Create or update municipalities by name; invalid rows are reported, not fatal."""
    result = MunicipalityImportResult()
    with committing(db):
        for index, raw in enumerate(items):
            label = str(raw.get("name") or f"row {index + 1}")
            try:
                data = MunicipalityCreate.model_validate(raw)
            except ValidationError as e:
                result.record_failure(label, "; ".join(err["msg"] for err in e.errors()))
                continue
            municipality, created = store.upsert_municipality(db, data)
            (result.created if created else result.updated).append(municipality.name)
            result.succeeded.append(municipality.name)

    logger.info(
        f"Imported municipalities: {len(result.created)} created, "
        f"{len(result.updated)} updated, {result.failed_count} failed"
    )
    return result


@router.get("/municipalities/adjacent/")
async def list_adjacencies(db: Session = Depends(get_db)) -> list[AdjacencyRead]:
    """Every adjacency pair."""
    rows = db.query(Adjacency).all()
    return sorted(
        (AdjacencyRead.model_validate(a) for a in rows),
        key=lambda a: (a.community_a_name.lower(), a.community_b_name.lower()),
    )


@router.post("/municipalities/adjacent/", status_code=201)
async def create_adjacency(body: AdjacencyCreate, db: Session = Depends(get_db)) -> AdjacencyRead:
    if body.community_a_id == body.community_b_id:
        raise HTTPException(status_code=400, detail="A municipality cannot border itself")
    get_or_404(db, Municipality, body.community_a_id, "Municipality")
    get_or_404(db, Municipality, body.community_b_id, "Municipality")

    with committing(db):
        adjacency, created = store.add_adjacency(db, body.community_a_id, body.community_b_id)
        if not created:
            raise HTTPException(status_code=409, detail="Adjacency already exists")
    return AdjacencyRead.model_validate(adjacency)


@router.delete("/municipalities/adjacent/{adjacency_id}/", status_code=204)
async def delete_adjacency(adjacency_id: UUID, db: Session = Depends(get_db)) -> Response:
    adjacency = get_or_404(db, Adjacency, adjacency_id, "Adjacency")
    with committing(db):
        db.delete(adjacency)
    return Response(status_code=204)


@router.get("/municipalities/{municipality_id}/")
async def get_municipality(municipality_id: UUID, db: Session = Depends(get_db)) -> MunicipalityRead:
    return MunicipalityRead.model_validate(get_or_404(db, Municipality, municipality_id, "Municipality"))


@router.get("/municipalities/{municipality_id}/adjacent/")
async def municipality_neighbours(municipality_id: UUID, db: Session = Depends(get_db)) -> list[MunicipalityRead]:
    """Municipalities bordering this one."""
    get_or_404(db, Municipality, municipality_id, "Municipality")
    neighbour_ids = [UUID(n) for n in store.load_adjacency(db).neighbours(str(municipality_id))]
    if not neighbour_ids:
        return []
    rows = db.query(Municipality).filter(Municipality.id.in_(neighbour_ids)).order_by(Municipality.name_key).all()
    return [MunicipalityRead.model_validate(m) for m in rows]


@router.post("/municipalities/", status_code=201)
async def create_municipality(body: MunicipalityCreate, db: Session = Depends(get_db)) -> MunicipalityRead:
    if store.find_municipality_by_name(db, body.name):
        raise HTTPException(status_code=409, detail=f"Municipality '{body.name}' already exists")
    with committing(db):
        municipality, _ = store.upsert_municipality(db, body)
    return MunicipalityRead.model_validate(municipality)


@router.patch("/municipalities/{municipality_id}/")
async def update_municipality(
    municipality_id: UUID,
    body: MunicipalityUpdate,
    db: Session = Depends(get_db),
) -> MunicipalityRead:
    municipality = get_or_404(db, Municipality, municipality_id, "Municipality")
    changes = body.model_dump(exclude_unset=True)

    with committing(db):
        if "name" in changes:
            clash = store.find_municipality_by_name(db, changes["name"])
            if clash is not None and clash.id != municipality.id:
                raise HTTPException(status_code=409, detail=f"Municipality '{changes['name']}' already exists")
            municipality.name_key = name_key(changes["name"])
        for key, value in changes.items():
            setattr(municipality, key, value)
    return MunicipalityRead.model_validate(municipality)


@router.delete("/municipalities/{municipality_id}/", status_code=204)
async def delete_municipality(municipality_id: UUID, db: Session = Depends(get_db)) -> Response:
    municipality = get_or_404(db, Municipality, municipality_id, "Municipality")
    with committing(db):
        store.delete_municipality(db, municipality)
    logger.info(f"Deleted municipality {municipality_id}")
    return Response(status_code=204)


# =============================================================================
# SITES
# =============================================================================

SITE_ORDERING = {
    "name": CollectionSite.name,
    "status": CollectionSite.status,
    "site_type": CollectionSite.site_type,
    "created_at": CollectionSite.created_at,
}


@router.get("/sites/")
async def list_sites(
    program: Program | None = None,
    status: SiteStatus | None = None,
    site_type: SiteType | None = None,
    operator_type: OperatorType | None = None,
    municipality: UUID | None = None,
    search: str | None = None,
    ordering: str | None = None,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> Page[SiteRead]:
    """List sites. Program filtering happens after the query since programs is a JSON list."""
    query = db.query(CollectionSite)
    if status:
        query = query.filter(CollectionSite.status == status)
    if site_type:
        query = query.filter(CollectionSite.site_type == site_type)
    if operator_type:
        query = query.filter(CollectionSite.operator_type == operator_type)
    if municipality:
        query = query.filter(CollectionSite.municipality_id == municipality)
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.filter(
            func.lower(CollectionSite.name).like(pattern) | func.lower(CollectionSite.address).like(pattern)
        )
    query = order_query(query, ordering, SITE_ORDERING, "name")

    if program is None:
        items, pagination = paginate_query(query, page, page_size)
    else:
        matching = [s for s in query.all() if program.value in (s.programs or [])]
        items, pagination = paginate(matching, page, page_size)

    return Page[SiteRead](results=[SiteRead.model_validate(s) for s in items], pagination=pagination)


@router.get("/sites/statistics/")
async def site_statistics(db: Session = Depends(get_db)) -> SiteStatistics:
    sites = db.query(CollectionSite).all()
    by_program: Counter[str] = Counter()
    for site in sites:
        by_program.update(site.programs or [])
    return SiteStatistics(
        total=len(sites),
        by_status=dict(Counter(enum_value(s.status) for s in sites)),
        by_site_type=dict(Counter(enum_value(s.site_type) for s in sites)),
        by_operator_type=dict(Counter(enum_value(s.operator_type) if s.operator_type else "Unknown" for s in sites)),
        by_program=dict(by_program),
    )


@router.post("/sites/bulk_status/")
async def bulk_site_status(body: BulkStatusRequest, db: Session = Depends(get_db)) -> BatchResult:
    """Set one status on many sites; missing sites are reported per item."""
    result = BatchResult()
    with committing(db):
        for site_id in dict.fromkeys(body.site_ids):
            site = db.get(CollectionSite, site_id)
            if site is None:
                result.record_failure(str(site_id), "Site not found")
                continue
            site.status = body.status
            result.succeeded.append(str(site_id))
    return result


@router.post("/sites/bulk_delete/")
async def bulk_site_delete(body: BulkDeleteRequest, db: Session = Depends(get_db)) -> BatchResult:
    result = BatchResult()
    with committing(db):
        for site_id in dict.fromkeys(body.site_ids):
            site = db.get(CollectionSite, site_id)
            if site is None:
                result.record_failure(str(site_id), "Site not found")
                continue
            store.delete_site(db, site)
            result.succeeded.append(str(site_id))
    return result


@router.get("/sites/{site_id}/")
async def get_site(site_id: UUID, db: Session = Depends(get_db)) -> SiteRead:
    return SiteRead.model_validate(get_or_404(db, CollectionSite, site_id, "Site"))


@router.post("/sites/", status_code=201)
async def create_site(body: SiteCreate, db: Session = Depends(get_db)) -> SiteRead:
    get_or_404(db, Municipality, body.municipality_id, "Municipality")
    values = body.model_dump()
    values["programs"] = [p.value for p in body.programs]
    with committing(db):
        site = CollectionSite(**values)
        db.add(site)
    return SiteRead.model_validate(site)


@router.patch("/sites/{site_id}/")
async def update_site(site_id: UUID, body: SiteUpdate, db: Session = Depends(get_db)) -> SiteRead:
    site = get_or_404(db, CollectionSite, site_id, "Site")
    changes = body.model_dump(exclude_unset=True)
    if changes.get("municipality_id"):
        get_or_404(db, Municipality, changes["municipality_id"], "Municipality")
    if changes.get("programs") is not None:
        changes["programs"] = [enum_value(p) for p in dict.fromkeys(changes["programs"])]

    with committing(db):
        for key, value in changes.items():
            setattr(site, key, value)
    return SiteRead.model_validate(site)


@router.delete("/sites/{site_id}/", status_code=204)
async def delete_site(site_id: UUID, db: Session = Depends(get_db)) -> Response:
    site = get_or_404(db, CollectionSite, site_id, "Site")
    with committing(db):
        store.delete_site(db, site)
    return Response(status_code=204)


# =============================================================================
# COMPLIANCE
# =============================================================================


@router.get("/compliance/analyze/")
async def analyze(
    program: Program | None = None,
    municipality: str | None = None,
    status: ComplianceStatus | None = None,
    search: str | None = None,
    ordering: str | None = None,
    year: int | None = None,
    offset_percentage: float | None = Query(None, ge=0, le=100),
    use_direct_service: bool = True,
    use_events: bool = True,
    use_reallocations: bool = True,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> ComplianceAnalysis:
    """Compliance rows for every municipality and program, with a summary."""
    year = current_year(year)
    return analyze_compliance(
        store.load_communities(db),
        store.load_sites(db),
        programs=[program] if program else None,
        rules=store.load_rules(db),
        options=OffsetOptions(
            offset_percentage=offset_percentage,
            use_direct_service=use_direct_service,
            use_events=use_events,
            use_reallocations=use_reallocations,
        ),
        direct_service=store.load_direct_service_configs(db, year),
        event_applications=store.load_all_event_applications(db, year),
        reallocations=store.load_reallocations(db),
        filters=ComplianceFilter(program=program, municipality_id=municipality, status=status, search=search),
        ordering=ordering,
        page=page,
        page_size=page_size,
    )


@router.post("/compliance/analyze/", status_code=201)
async def save_calculation(body: ComplianceCalculationCreate, db: Session = Depends(get_db)) -> ComplianceCalculationRead:
    """Compute one municipality's compliance and store the snapshot."""
    municipality = get_or_404(db, Municipality, body.municipality_id, "Municipality")
    sites = [
        Site.model_validate(s)
        for s in db.query(CollectionSite).filter(CollectionSite.municipality_id == municipality.id).all()
    ]
    [row] = compute_compliance(
        [Community.model_validate(municipality)],
        sites,
        programs=[body.program],
        rules=store.load_rules(db),
        options=OffsetOptions(offset_percentage=body.offset_percentage, use_events=False),
        reallocations=store.load_reallocations(db, body.program),
    )

    with committing(db):
        calculation = ComplianceCalculation(
            municipality_id=municipality.id,
            program=row.program,
            required_sites=row.adjusted_required,
            actual_sites=row.actual,
            shortfall=row.shortfall,
            excess=row.excess,
            compliance_rate=row.compliance_rate,
            offset_percentage=row.offset_percentage,
        )
        db.add(calculation)
    return ComplianceCalculationRead.model_validate(calculation)


@router.get("/compliance/calculations/")
async def list_calculations(
    municipality: UUID | None = None,
    program: Program | None = None,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> Page[ComplianceCalculationRead]:
    query = db.query(ComplianceCalculation)
    if municipality:
        query = query.filter(ComplianceCalculation.municipality_id == municipality)
    if program:
        query = query.filter(ComplianceCalculation.program == program.value)
    query = query.order_by(ComplianceCalculation.calculation_date.desc())
    items, pagination = paginate_query(query, page, page_size)
    return Page[ComplianceCalculationRead](
        results=[ComplianceCalculationRead.model_validate(c) for c in items],
        pagination=pagination,
    )


@router.post("/compliance/calculate/")
async def calculate_requirement(body: RequirementRequest, db: Session = Depends(get_db)) -> RequirementResponse:
    """Required sites for a population, before and after an offset."""
    required, adjusted = adjusted_requirement(
        body.population, body.program, body.offset_percentage, store.load_rules(db)
    )
    return RequirementResponse(
        population=body.population,
        program=body.program,
        required=required,
        adjusted_required=adjusted,
    )


# -----------------------------------------------------------------------------
# Regulatory rules
# -----------------------------------------------------------------------------


@router.get("/compliance/rules/")
async def list_rules(
    program: str | None = None,
    rule_type: RuleType | None = None,
    active_only: bool = False,
    db: Session = Depends(get_db),
) -> list[RegulatoryRuleRead]:
    query = db.query(RegulatoryRule)
    if program:
        query = query.filter(RegulatoryRule.program == program)
    if rule_type:
        query = query.filter(RegulatoryRule.rule_type == rule_type)
    rules = query.order_by(RegulatoryRule.program, RegulatoryRule.name).all()
    results = [RegulatoryRuleRead.model_validate(r) for r in rules]
    if active_only:
        results = [r for r in results if r.status == RuleStatus.ACTIVE]
    return results


@router.post("/compliance/rules/seed/", status_code=201)
async def seed_rules(db: Session = Depends(get_db)) -> list[RegulatoryRuleRead]:
    """Store the built-in requirement table and offset caps as editable rules."""
    with committing(db):
        created = store.seed_default_rules(db)
    return [RegulatoryRuleRead.model_validate(r) for r in created]


@router.get("/compliance/rules/{rule_id}/")
async def get_rule(rule_id: UUID, db: Session = Depends(get_db)) -> RegulatoryRuleRead:
    return RegulatoryRuleRead.model_validate(get_or_404(db, RegulatoryRule, rule_id, "Rule"))


@router.post("/compliance/rules/", status_code=201)
async def create_rule(body: RegulatoryRuleCreate, db: Session = Depends(get_db)) -> RegulatoryRuleRead:
    with committing(db):
        rule = RegulatoryRule(**body.model_dump())
        db.add(rule)
    logger.info(f"Created rule {rule.name} ({rule.program} {enum_value(rule.rule_type)})")
    return RegulatoryRuleRead.model_validate(rule)


@router.patch("/compliance/rules/{rule_id}/")
async def update_rule(rule_id: UUID, body: RegulatoryRuleUpdate, db: Session = Depends(get_db)) -> RegulatoryRuleRead:
    rule = get_or_404(db, RegulatoryRule, rule_id, "Rule")
    with committing(db):
        for key, value in body.model_dump(exclude_unset=True).items():
            setattr(rule, key, value)
    return RegulatoryRuleRead.model_validate(rule)


@router.delete("/compliance/rules/{rule_id}/", status_code=204)
async def delete_rule(rule_id: UUID, db: Session = Depends(get_db)) -> Response:
    rule = get_or_404(db, RegulatoryRule, rule_id, "Rule")
    with committing(db):
        db.delete(rule)
    return Response(status_code=204)


# =============================================================================
# TOOL A: DIRECT-SERVICE OFFSET
# =============================================================================


class ToolAResponse(BaseModel):
    program: str
    year: int
    global_percentage: float
    version: int
    communities: list[CommunityOffsetRow]


@router.get("/tools/tool-a/")
async def tool_a(
    program: Program,
    year: int | None = None,
    global_percentage: float | None = Query(None, ge=0, le=100, description="Preview without saving."),
    db: Session = Depends(get_db),
) -> ToolAResponse:
    """Every municipality's requirement under the direct-service offset."""
    config = store.load_direct_service_config(db, program.value, current_year(year))
    if global_percentage is not None:
        config = config.model_copy(update={"global_percentage": global_percentage})
    return ToolAResponse(
        program=config.program,
        year=config.year,
        global_percentage=config.global_percentage,
        version=config.version,
        communities=direct_service_offsets(store.load_communities(db), config, store.load_rules(db)),
    )


@router.post("/tools/tool-a/")
async def save_tool_a(body: DirectServiceOffsetCreate, db: Session = Depends(get_db)) -> DirectServiceOffsetRead:
    with committing(db):
        row = store.save_direct_service_offset(db, body.program.value, body.year, body.global_percentage)
    return DirectServiceOffsetRead.model_validate(row)


@router.get("/tools/offsets/community/")
async def list_community_offsets(
    program: Program,
    year: int | None = None,
    db: Session = Depends(get_db),
) -> list[CommunityOffsetRead]:
    rows = db.query(CommunityOffset).filter(
        CommunityOffset.program == program.value,
        CommunityOffset.year == current_year(year),
    ).all()
    return [CommunityOffsetRead.model_validate(r) for r in rows]


@router.post("/tools/offsets/community/")
async def save_community_offset(body: CommunityOffsetCreate, db: Session = Depends(get_db)) -> CommunityOffsetRead:
    """Set or clear one municipality's override of the global percentage."""
    get_or_404(db, Municipality, body.community_id, "Municipality")
    with committing(db):
        row = store.save_community_offset(
            db, body.community_id, body.program.value, body.year, body.percentage_override
        )
    return CommunityOffsetRead.model_validate(row)


# =============================================================================
# TOOL B: EVENT OFFSETS
# =============================================================================


class ToolBResponse(BaseModel):
    year: int
    summary: EventOffsetSummary
    communities: list[CommunityEventOffset]


@router.get("/tools/tool-b/")
async def tool_b(program: Program, year: int | None = None, db: Session = Depends(get_db)) -> ToolBResponse:
    """Municipalities with eligible events and the aggregate event cap."""
    year = current_year(year)
    ledger = store.load_event_ledger(db, program.value, year)
    return ToolBResponse(year=year, summary=ledger.summary(), communities=ledger.rows())


@router.post("/tools/tool-b/")
async def apply_events(body: EventApplyRequest, db: Session = Depends(get_db)) -> EventApplicationOutcome:
    """Replace the events applied to one municipality."""
    get_or_404(db, Municipality, body.community_id, "Municipality")
    ledger = store.load_event_ledger(db, body.program.value, body.year)
    community_id = str(body.community_id)
    outcome = ledger.apply(community_id, [str(e) for e in body.event_ids])
    if not outcome.accepted:
        raise HTTPException(status_code=400, detail=outcome.errors)

    with committing(db):
        store.save_ledger(db, ledger, body.year, [community_id])
    return outcome


@router.post("/tools/tool-b/apply-all/")
async def apply_all_events(body: EventApplyAllRequest, db: Session = Depends(get_db)) -> ApplyAllOutcome:
    """Fill every shortfall with eligible events, stopping at the cap."""
    ledger = store.load_event_ledger(db, body.program.value, body.year)
    outcome = ledger.apply_all()
    with committing(db):
        store.save_ledger(db, ledger, body.year, outcome.added)
    return outcome


@router.get("/tools/events/applications/")
async def list_event_applications(
    program: Program,
    year: int | None = None,
    community: UUID | None = None,
    db: Session = Depends(get_db),
) -> list[EventApplicationRead]:
    query = db.query(EventApplication).filter(
        EventApplication.program == program.value,
        EventApplication.year == current_year(year),
    )
    if community:
        query = query.filter(EventApplication.community_id == community)
    return [EventApplicationRead.model_validate(r) for r in query.order_by(EventApplication.applied_at).all()]


# =============================================================================
# TOOL C / REALLOCATIONS
# =============================================================================


def reallocation_engine(db: Session, program: str) -> AdjacentReallocationEngine:
    return AdjacentReallocationEngine(
        store.load_communities(db),
        store.load_sites(db),
        program,
        store.load_adjacency(db),
        rules=store.load_rules(db),
        reallocations=store.load_reallocations(db, program),
    )


@router.get("/reallocations/adjacent/")
async def adjacent_reallocation_candidates(
    program: Program,
    search: str | None = None,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> Page[ExcessCommunity]:
    """Municipalities with eligible excess sites and their short neighbours."""
    rows = reallocation_engine(db, program.value).excess_communities()
    if search:
        rows = [r for r in rows if search.strip().lower() in r.name.lower()]
    results, pagination = paginate(rows, page, page_size)
    return Page[ExcessCommunity](results=results, pagination=pagination)


@router.post("/tools/tool-c/", status_code=201)
async def tool_c(body: ToolCRequest, db: Session = Depends(get_db)) -> list[ReallocationRead]:
    """Lend selected sites to a bordering municipality.

    Every selected site is stored; those failing validation are stored
    rejected with their errors.
    """
    get_or_404(db, Municipality, body.from_community_id, "Municipality")
    get_or_404(db, Municipality, body.to_community_id, "Municipality")
    for site_id in body.site_ids:
        get_or_404(db, CollectionSite, site_id, "Site")

    planned = reallocation_engine(db, body.program.value).plan(
        [str(s) for s in body.site_ids],
        str(body.from_community_id),
        str(body.to_community_id),
        percentage=body.percentage,
        rationale=body.rationale,
    )

    with committing(db):
        rows = [
            Reallocation(
                site_id=UUID(p.site_id),
                from_municipality_id=UUID(p.from_municipality_id),
                to_municipality_id=UUID(p.to_municipality_id),
                program=p.program,
                reallocation_type=p.reallocation_type,
                percentage=p.percentage,
                rationale=p.rationale,
                status=p.status,
                validation_errors=p.errors,
            )
            for p in planned
        ]
        db.add_all(rows)
    return [ReallocationRead.model_validate(r) for r in rows]


@router.get("/reallocations/")
async def list_reallocations(
    status: ReallocationStatus | None = None,
    program: Program | None = None,
    municipality: UUID | None = None,
    page: int = PageNumber,
    page_size: int = PageSize,
    db: Session = Depends(get_db),
) -> Page[ReallocationRead]:
    query = db.query(Reallocation)
    if status:
        query = query.filter(Reallocation.status == status)
    if program:
        query = query.filter(Reallocation.program == program.value)
    if municipality:
        query = query.filter(
            (Reallocation.from_municipality_id == municipality) | (Reallocation.to_municipality_id == municipality)
        )
    query = query.order_by(Reallocation.created_at.desc())
    items, pagination = paginate_query(query, page, page_size)
    return Page[ReallocationRead](
        results=[ReallocationRead.model_validate(r) for r in items],
        pagination=pagination,
    )


@router.get("/reallocations/stats/")
async def reallocation_stats(db: Session = Depends(get_db)) -> ReallocationStats:
    rows = db.query(Reallocation.status, Reallocation.program).all()
    by_status = Counter(enum_value(s) for s, _ in rows)
    return ReallocationStats(
        total=len(rows),
        pending=by_status[ReallocationStatus.PENDING.value],
        approved=by_status[ReallocationStatus.APPROVED.value],
        rejected=by_status[ReallocationStatus.REJECTED.value],
        by_program=dict(Counter(p for _, p in rows)),
    )


@router.get("/reallocations/{reallocation_id}/")
async def get_reallocation(reallocation_id: UUID, db: Session = Depends(get_db)) -> ReallocationRead:
    return ReallocationRead.model_validate(get_or_404(db, Reallocation, reallocation_id, "Reallocation"))


@router.post("/reallocations/", status_code=201)
async def create_reallocation(body: ReallocationCreate, db: Session = Depends(get_db)) -> ReallocationRead:
    """Validate and store a reallocation: pending when clean, rejected with errors otherwise."""
    site = get_or_404(db, CollectionSite, body.site_id, "Site")
    rules = store.load_rules(db)
    program = body.program.value

    errors = validate_reallocation(
        ReallocationCandidate(
            from_municipality_id=str(body.from_municipality_id) if body.from_municipality_id else None,
            to_municipality_id=str(body.to_municipality_id) if body.to_municipality_id else None,
            program=program,
            reallocation_type=body.reallocation_type,
            percentage=body.percentage,
        ),
        Site.model_validate(site),
        store.load_communities(db),
        store.load_adjacency(db),
        max_site_percentage=rule_percentage(
            rules, RuleType.OFFSET_ADJACENT, program, DEFAULT_ADJACENT_OFFSET_PERCENTAGE
        ),
        max_event_percentage=rule_percentage(
            rules, RuleType.OFFSET_EVENT, program, DEFAULT_EVENT_REALLOCATION_PERCENTAGE
        ),
        excluded_operators=excluded_operator_types(rules, program),
    )
    if store.find_live_reallocation(db, site.id, program) is not None:
        errors.append(ALREADY_REALLOCATED)

    to_id = body.to_municipality_id
    if to_id is not None and db.get(Municipality, to_id) is None:
        to_id = None

    with committing(db):
        reallocation = Reallocation(
            site_id=site.id,
            from_municipality_id=site.municipality_id,
            to_municipality_id=to_id,
            program=program,
            reallocation_type=body.reallocation_type,
            percentage=body.percentage,
            rationale=body.rationale,
            status=ReallocationStatus.REJECTED if errors else ReallocationStatus.PENDING,
            validation_errors=errors,
        )
        db.add(reallocation)

    if errors:
        logger.info(f"Reallocation of site {site.id} rejected: {errors}")
    return ReallocationRead.model_validate(reallocation)


def decide(db: Session, reallocation_id: UUID, status: ReallocationStatus, body: ReallocationDecision) -> ReallocationRead:
    reallocation = get_or_404(db, Reallocation, reallocation_id, "Reallocation")
    if reallocation.status != ReallocationStatus.PENDING:
        raise HTTPException(
            status_code=409,
            detail=f"Only pending reallocations can be decided; this one is {enum_value(reallocation.status)}",
        )
    if status == ReallocationStatus.APPROVED and store.find_live_reallocation(
        db, reallocation.site_id, reallocation.program,
        statuses=(ReallocationStatus.APPROVED,), exclude_id=reallocation.id,
    ):
        raise HTTPException(status_code=409, detail="Site already has an approved reallocation")
    with committing(db):
        reallocation.status = status
        reallocation.decided_by = body.decided_by
        reallocation.decided_at = datetime.utcnow()
        if body.rationale:
            reallocation.rationale = body.rationale
    logger.info(f"Reallocation {reallocation_id} {enum_value(status)} by {body.decided_by or 'admin'}")
    return ReallocationRead.model_validate(reallocation)


@router.post("/reallocations/{reallocation_id}/approve/")
async def approve_reallocation(
    reallocation_id: UUID,
    body: ReallocationDecision | None = None,
    db: Session = Depends(get_db),
) -> ReallocationRead:
    return decide(db, reallocation_id, ReallocationStatus.APPROVED, body or ReallocationDecision())


@router.post("/reallocations/{reallocation_id}/reject/")
async def reject_reallocation(
    reallocation_id: UUID,
    body: ReallocationDecision | None = None,
    db: Session = Depends(get_db),
) -> ReallocationRead:
    return decide(db, reallocation_id, ReallocationStatus.REJECTED, body or ReallocationDecision())


@router.delete("/reallocations/{reallocation_id}/", status_code=204)
async def delete_reallocation(reallocation_id: UUID, db: Session = Depends(get_db)) -> Response:
    """Undo a reallocation."""
    reallocation = get_or_404(db, Reallocation, reallocation_id, "Reallocation")
    with committing(db):
        db.delete(reallocation)
    return Response(status_code=204)
