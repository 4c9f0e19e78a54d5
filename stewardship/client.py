"""HTTP client for the stewardship compliance API.

Thin wrapper over ``httpx.Client`` that adds the bearer token and the
``/api/v1`` prefix, turns error responses into ``ApiError`` and parses
responses into the same pydantic models the server returns.

    with StewardshipClient(token="...") as api:
        analysis = api.analyze(program="Paint")
"""

import logging
from collections.abc import Iterable, Iterator
from typing import Any
from uuid import UUID

import httpx

from .compliance import ComplianceAnalysis
from .events import ApplyAllOutcome, EventApplicationOutcome
from .reallocation import ExcessCommunity
from .schemas import (
    AdjacencyRead,
    BatchResult,
    MunicipalityImportResult,
    MunicipalityRead,
    Page,
    ReallocationRead,
    RequirementResponse,
    SiteRead,
)
from .settings import ADMIN_TOKEN, API_BASE_URL, API_PREFIX

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response from the API."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")


def _json_ready(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_unset=True)
    if isinstance(value, dict):
        return {k: _json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_ready(v) for v in value]
    return value


class StewardshipClient:
    def __init__(
        self,
        base_url: str = API_BASE_URL,
        token: str = ADMIN_TOKEN,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    def __enter__(self) -> "StewardshipClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, params: dict | None = None, json: Any = None) -> Any:
        if params:
            params = {k: _json_ready(v) for k, v in params.items() if v is not None}
        response = self._client.request(
            method,
            f"{API_PREFIX}{path}",
            params=params,
            json=_json_ready(json) if json is not None else None,
            headers=self._headers,
        )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = response.text
            detail = body.get("detail", body) if isinstance(body, dict) else body
            raise ApiError(response.status_code, detail)
        if response.status_code == 204:
            return None
        return response.json()

    # -------------------------------------------------------------------------
    # Municipalities
    # -------------------------------------------------------------------------

    def list_municipalities(self, page: int = 1, page_size: int = 100, **filters) -> Page[MunicipalityRead]:
        data = self._request("GET", "/municipalities/", params={"page": page, "page_size": page_size, **filters})
        return Page[MunicipalityRead].model_validate(data)

    def iter_municipalities(self, page_size: int = 100, **filters) -> Iterator[MunicipalityRead]:
        """Every municipality, fetching page after page."""
        page = 1
        while True:
            result = self.list_municipalities(page=page, page_size=page_size, **filters)
            yield from result.results
            if not result.pagination.has_next:
                break
            page += 1

    def get_municipality(self, municipality_id: UUID | str) -> MunicipalityRead:
        return MunicipalityRead.model_validate(self._request("GET", f"/municipalities/{municipality_id}/"))

    def create_municipality(self, data: dict) -> MunicipalityRead:
        return MunicipalityRead.model_validate(self._request("POST", "/municipalities/", json=data))

    def update_municipality(self, municipality_id: UUID | str, changes: dict) -> MunicipalityRead:
        return MunicipalityRead.model_validate(
            self._request("PATCH", f"/municipalities/{municipality_id}/", json=changes)
        )

    def delete_municipality(self, municipality_id: UUID | str) -> None:
        self._request("DELETE", f"/municipalities/{municipality_id}/")

    def import_municipalities(self, rows: list[dict]) -> MunicipalityImportResult:
        return MunicipalityImportResult.model_validate(
            self._request("POST", "/municipalities/bulk_import/", json=rows)
        )

    def add_adjacency(self, a: UUID | str, b: UUID | str) -> AdjacencyRead:
        data = self._request("POST", "/municipalities/adjacent/", json={"community_a_id": a, "community_b_id": b})
        return AdjacencyRead.model_validate(data)

    def list_adjacencies(self) -> list[AdjacencyRead]:
        return [AdjacencyRead.model_validate(a) for a in self._request("GET", "/municipalities/adjacent/")]

    # -------------------------------------------------------------------------
    # Sites
    # -------------------------------------------------------------------------

    def list_sites(self, page: int = 1, page_size: int = 100, **filters) -> Page[SiteRead]:
        data = self._request("GET", "/sites/", params={"page": page, "page_size": page_size, **filters})
        return Page[SiteRead].model_validate(data)

    def create_site(self, data: dict) -> SiteRead:
        return SiteRead.model_validate(self._request("POST", "/sites/", json=data))

    def create_sites(self, rows: Iterable[dict]) -> BatchResult:
        """Create sites one by one, collecting failures instead of stopping."""
        result = BatchResult()
        for row in rows:
            label = str(row.get("name", "?"))
            try:
                site = self.create_site(row)
            except ApiError as e:
                result.record_failure(label, str(e.detail))
                continue
            result.succeeded.append(str(site.id))
        if result.failed:
            logger.warning(f"{result.failed_count} of {result.failed_count + result.succeeded_count} sites failed")
        return result

    def bulk_update_status(self, site_ids: Iterable[UUID | str], status: str) -> BatchResult:
        data = self._request(
            "POST", "/sites/bulk_status/",
            json={"site_ids": [str(s) for s in site_ids], "status": status},
        )
        return BatchResult.model_validate(data)

    def bulk_delete(self, site_ids: Iterable[UUID | str]) -> BatchResult:
        data = self._request("POST", "/sites/bulk_delete/", json={"site_ids": [str(s) for s in site_ids]})
        return BatchResult.model_validate(data)

    # -------------------------------------------------------------------------
    # Compliance
    # -------------------------------------------------------------------------

    def analyze(self, **params) -> ComplianceAnalysis:
        return ComplianceAnalysis.model_validate(self._request("GET", "/compliance/analyze/", params=params))

    def iter_compliance(self, page_size: int = 500, **params) -> Iterator:
        page = 1
        while True:
            analysis = self.analyze(page=page, page_size=page_size, **params)
            yield from analysis.results
            if not analysis.pagination.has_next:
                break
            page += 1

    def calculate(self, population: int, program: str, offset_percentage: float | None = None) -> RequirementResponse:
        data = self._request(
            "POST", "/compliance/calculate/",
            json={"population": population, "program": program, "offset_percentage": offset_percentage},
        )
        return RequirementResponse.model_validate(data)

    def seed_rules(self) -> list[dict]:
        return self._request("POST", "/compliance/rules/seed/")

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    def tool_a(self, program: str, year: int | None = None, global_percentage: float | None = None) -> dict:
        return self._request(
            "GET", "/tools/tool-a/",
            params={"program": program, "year": year, "global_percentage": global_percentage},
        )

    def save_direct_service_offset(self, program: str, year: int, global_percentage: float) -> dict:
        return self._request(
            "POST", "/tools/tool-a/",
            json={"program": program, "year": year, "global_percentage": global_percentage},
        )

    def tool_b(self, program: str, year: int | None = None) -> dict:
        return self._request("GET", "/tools/tool-b/", params={"program": program, "year": year})

    def apply_events(
        self,
        community_id: UUID | str,
        event_ids: Iterable[UUID | str],
        program: str,
        year: int,
    ) -> EventApplicationOutcome:
        data = self._request(
            "POST", "/tools/tool-b/",
            json={
                "community_id": str(community_id),
                "event_ids": [str(e) for e in event_ids],
                "program": program,
                "year": year,
            },
        )
        return EventApplicationOutcome.model_validate(data)

    def apply_all_events(self, program: str, year: int) -> ApplyAllOutcome:
        data = self._request("POST", "/tools/tool-b/apply-all/", json={"program": program, "year": year})
        return ApplyAllOutcome.model_validate(data)

    def adjacent_candidates(self, program: str, page: int = 1, page_size: int = 100) -> Page[ExcessCommunity]:
        data = self._request(
            "GET", "/reallocations/adjacent/",
            params={"program": program, "page": page, "page_size": page_size},
        )
        return Page[ExcessCommunity].model_validate(data)

    def tool_c(
        self,
        site_ids: Iterable[UUID | str],
        from_community_id: UUID | str,
        to_community_id: UUID | str,
        program: str,
        rationale: str | None = None,
    ) -> list[ReallocationRead]:
        data = self._request(
            "POST", "/tools/tool-c/",
            json={
                "site_ids": [str(s) for s in site_ids],
                "from_community_id": str(from_community_id),
                "to_community_id": str(to_community_id),
                "program": program,
                "rationale": rationale,
            },
        )
        return [ReallocationRead.model_validate(r) for r in data]

    # -------------------------------------------------------------------------
    # Reallocations
    # -------------------------------------------------------------------------

    def create_reallocation(self, data: dict) -> ReallocationRead:
        return ReallocationRead.model_validate(self._request("POST", "/reallocations/", json=data))

    def approve_reallocation(self, reallocation_id: UUID | str, decided_by: str | None = None) -> ReallocationRead:
        data = self._request(
            "POST", f"/reallocations/{reallocation_id}/approve/",
            json={"decided_by": decided_by},
        )
        return ReallocationRead.model_validate(data)

    def reject_reallocation(self, reallocation_id: UUID | str, decided_by: str | None = None) -> ReallocationRead:
        data = self._request(
            "POST", f"/reallocations/{reallocation_id}/reject/",
            json={"decided_by": decided_by},
        )
        return ReallocationRead.model_validate(data)

    def approve_reallocations(self, reallocation_ids: Iterable[UUID | str], decided_by: str | None = None) -> BatchResult:
        """Approve many reallocations; ones no longer pending are reported as failures."""
        result = BatchResult()
        for reallocation_id in reallocation_ids:
            try:
                self.approve_reallocation(reallocation_id, decided_by)
            except ApiError as e:
                result.record_failure(str(reallocation_id), str(e.detail))
                continue
            result.succeeded.append(str(reallocation_id))
        return result

    def delete_reallocation(self, reallocation_id: UUID | str) -> None:
        self._request("DELETE", f"/reallocations/{reallocation_id}/")
