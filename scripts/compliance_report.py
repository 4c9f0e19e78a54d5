"""Export compliance rows from the API to CSV.

Usage:
    python scripts/compliance_report.py --program Paint --output paint.csv
    python scripts/compliance_report.py --status shortfall --raw
    python scripts/compliance_report.py --url https://stewardship.example.org --token $ADMIN_TOKEN
"""

import argparse
import csv
import sys
from pathlib import Path
from typing import TextIO

# Add parent to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from stewardship.client import ApiError, StewardshipClient
from stewardship.compliance import ComplianceRow
from stewardship.settings import ADMIN_TOKEN, API_BASE_URL

COLUMNS = [
    "municipality_name",
    "program",
    "population",
    "region",
    "required",
    "offset_percentage",
    "events",
    "adjusted_required",
    "own_sites",
    "incoming",
    "outgoing",
    "actual",
    "shortfall",
    "excess",
    "compliance_rate",
    "status",
    "municipal_sites",
    "return_to_retail",
]


def write_report(rows: list[ComplianceRow], out: TextIO) -> int:
    writer = csv.DictWriter(out, fieldnames=COLUMNS)
    writer.writeheader()
    for row in rows:
        writer.writerow(row.model_dump(mode="json", include=set(COLUMNS)))
    return len(rows)


def main():
    parser = argparse.ArgumentParser(description="Export compliance rows to CSV")
    parser.add_argument("--url", default=API_BASE_URL, help=f"API base URL (default: {API_BASE_URL})")
    parser.add_argument("--token", default=ADMIN_TOKEN, help="Admin bearer token")
    parser.add_argument("--program", help="Paint, Lighting, Solvents or Pesticides (default: all)")
    parser.add_argument("--status", choices=["compliant", "shortfall", "excess"])
    parser.add_argument("--year", type=int, help="Offset year (default: current year)")
    parser.add_argument("--raw", action="store_true", help="Ignore every offset and reallocation")
    parser.add_argument("--output", type=Path, help="CSV path (default: stdout)")
    args = parser.parse_args()

    params = {
        "program": args.program,
        "status": args.status,
        "year": args.year,
        "ordering": "municipality_name",
    }
    if args.raw:
        params.update(use_direct_service=False, use_events=False, use_reallocations=False)

    with StewardshipClient(base_url=args.url, token=args.token) as api:
        try:
            rows = list(api.iter_compliance(**params))
            summary = api.analyze(page_size=1, **params).summary
        except ApiError as e:
            print(f"API error {e.status_code}: {e.detail}", file=sys.stderr)
            sys.exit(1)

    if args.output:
        with args.output.open("w", newline="", encoding="utf-8") as f:
            count = write_report(rows, f)
        print(f"Wrote {count} rows to {args.output}", file=sys.stderr)
    else:
        write_report(rows, sys.stdout)

    print(
        f"{summary.compliant} compliant, {summary.shortfall} short, {summary.excess} in excess; "
        f"overall {summary.overall_compliance_rate}%",
        file=sys.stderr,
    )


if __name__ == "__main__":
    main()
