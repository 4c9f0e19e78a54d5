"""Import municipalities, sites and adjacency pairs from CSV files.

Municipalities are matched by name case-insensitively, so re-running an
import updates rows instead of duplicating them. Sites and adjacency rows
refer to municipalities by name.

CSV columns:
    municipalities: name, population, tier, region, province, census_year
    sites:          name, address, municipality, site_type, operator_type,
                    status, programs (";" separated), active_dates,
                    latitude, longitude
    adjacency:      community_a, community_b

Usage:
    python scripts/import_data.py --municipalities data/municipalities.csv
    python scripts/import_data.py --sites data/sites.csv --import
    python scripts/import_data.py --adjacency data/adjacency.csv --import
    python scripts/import_data.py --seed-rules --import
"""

import argparse
import csv
import sys
from pathlib import Path

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from pydantic import ValidationError
from sqlalchemy.orm import Session

from stewardship import store
from stewardship.database import SessionLocal, init_db
from stewardship.models import CollectionSite
from stewardship.schemas import (
    BatchResult,
    MunicipalityCreate,
    SiteCreate,
    normalize_operator_type,
)


# =============================================================================
# Row parsing
# =============================================================================


def blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def split_programs(raw: str | None) -> list[str]:
    """'Paint; Lighting' or 'Paint,Lighting' -> ['Paint', 'Lighting']."""
    if not raw:
        return []
    parts = raw.replace(",", ";").split(";")
    return [p.strip().title() for p in parts if p.strip()]


def parse_municipality_row(row: dict) -> MunicipalityCreate:
    population = (row.get("population") or "0").replace(",", "").strip()
    return MunicipalityCreate(
        name=row.get("name", ""),
        population=int(float(population or 0)),
        tier=blank_to_none(row.get("tier")) or "Single",
        region=row.get("region") or "",
        province=row.get("province") or "",
        census_year=blank_to_none(row.get("census_year")),
    )


def parse_site_row(row: dict, municipality_id) -> SiteCreate:
    operator = blank_to_none(row.get("operator_type"))
    return SiteCreate(
        name=row.get("name", ""),
        address=row.get("address") or "",
        municipality_id=municipality_id,
        site_type=blank_to_none(row.get("site_type")) or "Collection site",
        operator_type=normalize_operator_type(operator) if operator else None,
        status=blank_to_none(row.get("status")) or "Active",
        programs=split_programs(row.get("programs")),
        active_dates=blank_to_none(row.get("active_dates")),
        latitude=blank_to_none(row.get("latitude")),
        longitude=blank_to_none(row.get("longitude")),
    )


def read_rows(path: Path) -> list[dict]:
    with path.open(newline="", encoding="utf-8-sig") as f:
        return list(csv.DictReader(f))


# =============================================================================
# Import steps
# =============================================================================


def import_municipalities(db: Session, rows: list[dict]) -> BatchResult:
    result = BatchResult()
    created = updated = 0
    for index, row in enumerate(rows, start=2):
        label = row.get("name") or f"line {index}"
        try:
            data = parse_municipality_row(row)
        except (ValidationError, ValueError) as e:
            result.record_failure(label, str(e).splitlines()[0])
            continue
        municipality, is_new = store.upsert_municipality(db, data)
        created += is_new
        updated += not is_new
        result.succeeded.append(municipality.name)

    print(f"  Municipalities: {created} new, {updated} updated, {result.failed_count} failed")
    return result


def import_sites(db: Session, rows: list[dict]) -> BatchResult:
    """Add sites, updating the row already stored for the same municipality, name and address."""
    result = BatchResult()
    created = updated = 0
    for index, row in enumerate(rows, start=2):
        label = row.get("name") or f"line {index}"
        municipality = store.find_municipality_by_name(db, row.get("municipality") or "")
        if municipality is None:
            result.record_failure(label, f"Unknown municipality '{row.get('municipality')}'")
            continue
        try:
            data = parse_site_row(row, municipality.id)
        except (ValidationError, ValueError) as e:
            result.record_failure(label, str(e).splitlines()[0])
            continue

        values = data.model_dump()
        values["programs"] = [p.value for p in data.programs]
        existing = db.query(CollectionSite).filter(
            CollectionSite.municipality_id == municipality.id,
            CollectionSite.name == data.name,
            CollectionSite.address == data.address,
        ).first()
        if existing is None:
            db.add(CollectionSite(**values))
            db.flush()
            created += 1
        else:
            for key, value in values.items():
                setattr(existing, key, value)
            updated += 1
        result.succeeded.append(label)

    db.flush()
    print(f"  Sites: {created} new, {updated} updated, {result.failed_count} failed")
    return result


def import_adjacency(db: Session, rows: list[dict]) -> BatchResult:
    result = BatchResult()
    for index, row in enumerate(rows, start=2):
        a_name, b_name = row.get("community_a") or "", row.get("community_b") or ""
        label = f"{a_name} / {b_name}"
        a = store.find_municipality_by_name(db, a_name)
        b = store.find_municipality_by_name(db, b_name)
        if a is None or b is None:
            result.record_failure(label, f"Unknown municipality on line {index}")
            continue
        if a.id == b.id:
            result.record_failure(label, "A municipality cannot border itself")
            continue
        store.add_adjacency(db, a.id, b.id)
        result.succeeded.append(label)

    print(f"  Adjacency: {result.succeeded_count} pairs, {result.failed_count} failed")
    return result


def print_failures(result: BatchResult, limit: int = 20) -> None:
    for failure in result.failed[:limit]:
        print(f"    ✗ {failure.item}: {failure.error}")
    if result.failed_count > limit:
        print(f"    ... and {result.failed_count - limit} more")


def main():
    parser = argparse.ArgumentParser(description="Import stewardship data from CSV")
    parser.add_argument("--municipalities", type=Path, help="Municipalities CSV")
    parser.add_argument("--sites", type=Path, help="Collection sites CSV")
    parser.add_argument("--adjacency", type=Path, help="Adjacency pairs CSV")
    parser.add_argument("--seed-rules", action="store_true", help="Store the default regulatory rules")
    parser.add_argument("--import", dest="do_import", action="store_true",
                        help="Actually import data (default is dry run)")
    args = parser.parse_args()

    if not any([args.municipalities, args.sites, args.adjacency, args.seed_rules]):
        parser.print_help()
        return

    init_db()
    db = SessionLocal()
    try:
        # Municipalities first so sites and adjacency can resolve names
        steps = [
            (args.municipalities, import_municipalities),
            (args.sites, import_sites),
            (args.adjacency, import_adjacency),
        ]
        for path, step in steps:
            if path is None:
                continue
            print(f"\n=== {path.name} ===")
            result = step(db, read_rows(path))
            print_failures(result)

        if args.seed_rules:
            created = store.seed_default_rules(db)
            print(f"\n  Rules: {len(created)} default rules added")

        if args.do_import:
            db.commit()
            print("\n=== Import complete! ===")
        else:
            db.rollback()
            print("\n[DRY RUN] Nothing written. Re-run with --import to save.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
