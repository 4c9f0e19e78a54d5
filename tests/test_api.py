"""
API tests for the stewardship compliance service.

Run with: pytest tests/test_api.py -v
"""

import uuid

from fastapi.testclient import TestClient

from stewardship.main import app
from stewardship.models import Reallocation
from stewardship.schemas import ReallocationStatus, ReallocationType

API = "/api/v1"
YEAR = 2025


def create_municipality(client, name, population, region="North County", **extra):
    response = client.post(
        f"{API}/municipalities/",
        json={"name": name, "population": population, "region": region, **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


def create_site(client, municipality_id, name, programs=("Paint",), **extra):
    response = client.post(
        f"{API}/sites/",
        json={"name": name, "municipality_id": municipality_id, "programs": list(programs), **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


def make_adjacent(client, a, b):
    response = client.post(
        f"{API}/municipalities/adjacent/",
        json={"community_a_id": a, "community_b_id": b},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthAndAuth:
    def test_health_check_is_public(self, client):
        response = TestClient(app).get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_missing_token(self, client):
        response = TestClient(app).get(f"{API}/municipalities/")
        assert response.status_code == 401

    def test_wrong_token(self, client):
        response = TestClient(app).get(
            f"{API}/municipalities/",
            headers={"Authorization": "Bearer not-the-token"},
        )
        assert response.status_code == 403


class TestMunicipalities:
    def test_create_and_get(self, client):
        created = create_municipality(client, "Ashford", 45_000, tier="Lower")
        assert created["tier"] == "Lower"

        response = client.get(f"{API}/municipalities/{created['id']}/")
        assert response.status_code == 200
        assert response.json()["name"] == "Ashford"

    def test_names_are_unique_ignoring_case_and_whitespace(self, client):
        create_municipality(client, "Ashford", 45_000)
        response = client.post(f"{API}/municipalities/", json={"name": "  ASHFORD ", "population": 1})
        assert response.status_code == 409

    def test_negative_population_is_rejected(self, client):
        response = client.post(f"{API}/municipalities/", json={"name": "Nowhere", "population": -1})
        assert response.status_code == 422

    def test_list_search_and_pagination(self, client):
        for name in ["Ashford", "Ashbury", "Bellwood"]:
            create_municipality(client, name, 10_000)

        response = client.get(f"{API}/municipalities/", params={"search": "ash", "page_size": 1})
        data = response.json()
        assert data["pagination"]["total_count"] == 2
        assert data["pagination"]["has_next"]
        assert [m["name"] for m in data["results"]] == ["Ashbury"]

    def test_update_and_delete(self, client):
        created = create_municipality(client, "Ashford", 45_000)
        url = f"{API}/municipalities/{created['id']}/"

        response = client.patch(url, json={"population": 50_000})
        assert response.json()["population"] == 50_000

        assert client.delete(url).status_code == 204
        assert client.get(url).status_code == 404

    def test_rename_onto_existing_name_conflicts(self, client):
        create_municipality(client, "Ashford", 45_000)
        other = create_municipality(client, "Bellwood", 45_000)
        response = client.patch(f"{API}/municipalities/{other['id']}/", json={"name": "ashford"})
        assert response.status_code == 409

    def test_bulk_import_reports_created_updated_and_failed(self, client):
        create_municipality(client, "Ashford", 45_000)

        response = client.post(f"{API}/municipalities/bulk_import/", json=[
            {"name": "ashford", "population": 46_000},
            {"name": "Dunmore", "population": 1_000},
            {"name": "Broken", "population": -5},
        ])

        assert response.status_code == 200
        data = response.json()
        assert data["created"] == ["Dunmore"]
        assert data["updated"] == ["ashford"]
        assert data["succeeded_count"] == 2
        assert data["failed_count"] == 1
        assert data["failed"][0]["item"] == "Broken"

    def test_stats(self, client):
        create_municipality(client, "Ashford", 45_000, tier="Lower")
        create_municipality(client, "Bellwood", 5_000, region="")
        data = client.get(f"{API}/municipalities/stats/").json()
        assert data["total"] == 2
        assert data["total_population"] == 50_000
        assert data["by_tier"] == {"Lower": 1, "Single": 1}
        assert data["by_region"]["Unassigned"] == 1


class TestAdjacency:
    def test_pairs_are_symmetric_and_unique(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        b = create_municipality(client, "Bellwood", 45_000)

        pair = make_adjacent(client, a["id"], b["id"])
        assert {pair["community_a_name"], pair["community_b_name"]} == {"Ashford", "Bellwood"}

        response = client.post(
            f"{API}/municipalities/adjacent/",
            json={"community_a_id": b["id"], "community_b_id": a["id"]},
        )
        assert response.status_code == 409

        neighbours = client.get(f"{API}/municipalities/{b['id']}/adjacent/").json()
        assert [m["name"] for m in neighbours] == ["Ashford"]

    def test_self_adjacency_is_rejected(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        response = client.post(
            f"{API}/municipalities/adjacent/",
            json={"community_a_id": a["id"], "community_b_id": a["id"]},
        )
        assert response.status_code == 400

    def test_delete(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        b = create_municipality(client, "Bellwood", 45_000)
        pair = make_adjacent(client, a["id"], b["id"])

        assert client.delete(f"{API}/municipalities/adjacent/{pair['id']}/").status_code == 204
        assert client.get(f"{API}/municipalities/adjacent/").json() == []

    def test_deleting_a_municipality_removes_its_pairs(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        b = create_municipality(client, "Bellwood", 45_000)
        make_adjacent(client, a["id"], b["id"])

        assert client.delete(f"{API}/municipalities/{a['id']}/").status_code == 204
        assert client.get(f"{API}/municipalities/adjacent/").json() == []


class TestSites:
    def test_create_dedupes_programs(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        site = create_site(client, a["id"], "Depot", programs=["Paint", "Paint", "Lighting"])
        assert site["programs"] == ["Paint", "Lighting"]
        assert site["status"] == "Active"
        assert site["site_type"] == "Collection site"

    def test_unknown_municipality(self, client):
        response = client.post(
            f"{API}/sites/",
            json={"name": "Depot", "municipality_id": str(uuid.uuid4()), "programs": ["Paint"]},
        )
        assert response.status_code == 404

    def test_filter_by_program(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        create_site(client, a["id"], "Paint depot")
        create_site(client, a["id"], "Lamp shop", programs=["Lighting"])

        data = client.get(f"{API}/sites/", params={"program": "Lighting"}).json()
        assert [s["name"] for s in data["results"]] == ["Lamp shop"]
        assert data["pagination"]["total_count"] == 1

    def test_update(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        site = create_site(client, a["id"], "Depot")
        response = client.patch(f"{API}/sites/{site['id']}/", json={"status": "Inactive", "programs": ["Solvents"]})
        assert response.json()["status"] == "Inactive"
        assert response.json()["programs"] == ["Solvents"]

    def test_bulk_status_reports_missing_sites(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        site = create_site(client, a["id"], "Depot")
        missing = str(uuid.uuid4())

        response = client.post(
            f"{API}/sites/bulk_status/",
            json={"site_ids": [site["id"], missing], "status": "Deactivated"},
        )

        data = response.json()
        assert data["succeeded"] == [site["id"]]
        assert data["failed"] == [{"item": missing, "error": "Site not found"}]
        assert client.get(f"{API}/sites/{site['id']}/").json()["status"] == "Deactivated"

    def test_bulk_delete(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        first = create_site(client, a["id"], "First")
        second = create_site(client, a["id"], "Second")

        response = client.post(f"{API}/sites/bulk_delete/", json={"site_ids": [first["id"], second["id"]]})

        assert response.json()["succeeded_count"] == 2
        assert client.get(f"{API}/sites/").json()["results"] == []

    def test_statistics(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        create_site(client, a["id"], "Depot", operator_type="Municipal")
        create_site(client, a["id"], "Fair", site_type="Event", status="Scheduled")

        data = client.get(f"{API}/sites/statistics/").json()
        assert data["total"] == 2
        assert data["by_site_type"] == {"Collection site": 1, "Event": 1}
        assert data["by_operator_type"] == {"Municipal": 1, "Unknown": 1}
        assert data["by_program"] == {"Paint": 2}


class TestCompliance:
    def test_calculate_requirement(self, client):
        response = client.post(
            f"{API}/compliance/calculate/",
            json={"population": 45_000, "program": "Paint", "offset_percentage": 90},
        )
        assert response.json()["required"] == 2
        assert response.json()["adjusted_required"] == 1

    def test_seeded_rules_reproduce_built_in_requirements(self, client):
        response = client.post(f"{API}/compliance/rules/seed/")
        assert response.status_code == 201
        assert len(response.json()) > 0
        assert client.post(f"{API}/compliance/rules/seed/").json() == []

        for population, program, expected in [(45_000, "Paint", 2), (650_001, "Paint", 15), (500_001, "Lighting", 35)]:
            response = client.post(
                f"{API}/compliance/calculate/",
                json={"population": population, "program": program},
            )
            assert response.json()["required"] == expected

    def test_configured_rule_changes_requirement(self, client):
        response = client.post(f"{API}/compliance/rules/", json={
            "name": "Dense paint band",
            "program": "Paint",
            "category": "HSP",
            "rule_type": "site_calculation",
            "parameters": {"minPopulation": 0, "sitesPerPopulation": 10_000},
        })
        assert response.status_code == 201
        rule_id = response.json()["id"]

        calculate = {"population": 45_000, "program": "Paint"}
        assert client.post(f"{API}/compliance/calculate/", json=calculate).json()["required"] == 5

        client.patch(f"{API}/compliance/rules/{rule_id}/", json={"status": "Inactive"})
        assert client.post(f"{API}/compliance/calculate/", json=calculate).json()["required"] == 2

    def test_rule_with_unusable_parameters_is_rejected(self, client):
        response = client.post(f"{API}/compliance/rules/", json={
            "name": "Broken",
            "program": "Paint",
            "category": "HSP",
            "rule_type": "site_calculation",
            "parameters": {"sitesPerPopulation": 0},
        })
        assert response.status_code == 422

    def test_analyze(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        create_municipality(client, "Bellwood", 45_000)
        create_site(client, a["id"], "Depot")
        create_site(client, a["id"], "Future depot", status="Scheduled")

        response = client.get(f"{API}/compliance/analyze/", params={"program": "Paint"})

        data = response.json()
        assert data["pagination"]["total_count"] == 2
        rows = {r["municipality_name"]: r for r in data["results"]}
        assert rows["Ashford"]["actual"] == 1
        assert rows["Ashford"]["shortfall"] == 1
        assert rows["Ashford"]["compliance_rate"] == 50.0
        assert data["summary"]["total_required"] == 4
        assert data["summary"]["shortfall"] == 2

    def test_analyze_filters_by_status(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        create_municipality(client, "Bellwood", 45_000)
        for i in range(3):
            create_site(client, a["id"], f"Depot {i}")

        data = client.get(
            f"{API}/compliance/analyze/",
            params={"program": "Paint", "status": "excess"},
        ).json()
        assert [r["municipality_name"] for r in data["results"]] == ["Ashford"]
        assert data["summary"]["total_rows"] == 1

    def test_save_and_list_calculations(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        create_site(client, a["id"], "Depot")

        response = client.post(
            f"{API}/compliance/analyze/",
            json={"municipality_id": a["id"], "program": "Paint", "offset_percentage": 90},
        )
        assert response.status_code == 201
        saved = response.json()
        assert saved["required_sites"] == 1
        assert saved["actual_sites"] == 1
        assert saved["compliance_rate"] == 100.0

        listed = client.get(f"{API}/compliance/calculations/", params={"municipality": a["id"]}).json()
        assert listed["pagination"]["total_count"] == 1


class TestToolA:
    def test_saving_bumps_version(self, client):
        body = {"program": "Paint", "year": YEAR, "global_percentage": 50}
        assert client.post(f"{API}/tools/tool-a/", json=body).json()["version"] == 1
        body["global_percentage"] = 60
        saved = client.post(f"{API}/tools/tool-a/", json=body).json()
        assert saved["version"] == 2
        assert saved["global_percentage"] == 60

    def test_offset_rows_with_override_and_preview(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        b = create_municipality(client, "Bellwood", 400_000)
        client.post(f"{API}/tools/tool-a/", json={"program": "Paint", "year": YEAR, "global_percentage": 50})
        response = client.post(f"{API}/tools/offsets/community/", json={
            "community_id": b["id"], "program": "Paint", "year": YEAR, "percentage_override": 20,
        })
        assert response.status_code == 200

        data = client.get(f"{API}/tools/tool-a/", params={"program": "Paint", "year": YEAR}).json()
        rows = {r["id"]: r for r in data["communities"]}
        assert data["version"] == 1
        assert rows[a["id"]]["new_required"] == 1
        assert rows[b["id"]]["new_required"] == 8
        assert rows[b["id"]]["is_override"]

        preview = client.get(
            f"{API}/tools/tool-a/",
            params={"program": "Paint", "year": YEAR, "global_percentage": 0},
        ).json()
        assert {r["id"]: r["new_required"] for r in preview["communities"]}[a["id"]] == 2

    def test_stored_offset_flows_into_analysis(self, client):
        create_municipality(client, "Bellwood", 400_000)
        client.post(f"{API}/tools/tool-a/", json={"program": "Paint", "year": YEAR, "global_percentage": 30})

        [row] = client.get(
            f"{API}/compliance/analyze/",
            params={"program": "Paint", "year": YEAR},
        ).json()["results"]
        assert row["adjusted_required"] == 7

        [row] = client.get(
            f"{API}/compliance/analyze/",
            params={"program": "Paint", "year": YEAR, "use_direct_service": False},
        ).json()["results"]
        assert row["adjusted_required"] == 10


class TestToolB:
    def setup_bellwood(self, client):
        """Bellwood needs 10 Paint sites, has 6 and runs 4 events."""
        b = create_municipality(client, "Bellwood", 400_000)
        for i in range(6):
            create_site(client, b["id"], f"Depot {i}")
        events = [create_site(client, b["id"], f"Event {i}", site_type="Event")["id"] for i in range(4)]
        return b, events

    def test_overview(self, client):
        b, events = self.setup_bellwood(client)
        data = client.get(f"{API}/tools/tool-b/", params={"program": "Paint", "year": YEAR}).json()
        assert data["summary"]["max_events_allowed"] == 3
        [row] = data["communities"]
        assert row["shortfall"] == 4
        assert sorted(row["events"]) == sorted(events)

    def test_apply_within_cap(self, client):
        b, events = self.setup_bellwood(client)
        response = client.post(f"{API}/tools/tool-b/", json={
            "community_id": b["id"], "event_ids": events[:3], "program": "Paint", "year": YEAR,
        })
        assert response.status_code == 200
        assert response.json()["accepted"]

        applications = client.get(
            f"{API}/tools/events/applications/",
            params={"program": "Paint", "year": YEAR},
        ).json()
        assert len(applications) == 3

        [row] = client.get(
            f"{API}/compliance/analyze/",
            params={"program": "Paint", "year": YEAR},
        ).json()["results"]
        assert row["events"] == 3
        assert row["adjusted_required"] == 7
        assert row["shortfall"] == 1

    def test_apply_over_cap_is_rejected(self, client):
        b, events = self.setup_bellwood(client)
        response = client.post(f"{API}/tools/tool-b/", json={
            "community_id": b["id"], "event_ids": events, "program": "Paint", "year": YEAR,
        })
        assert response.status_code == 400
        assert "cap" in response.json()["detail"][0]

        applications = client.get(
            f"{API}/tools/events/applications/",
            params={"program": "Paint", "year": YEAR},
        ).json()
        assert applications == []

    def test_apply_all(self, client):
        self.setup_bellwood(client)
        response = client.post(f"{API}/tools/tool-b/apply-all/", json={"program": "Paint", "year": YEAR})
        data = response.json()
        assert data["total_applied"] == 3
        assert data["cap_reached"]

        again = client.post(f"{API}/tools/tool-b/apply-all/", json={"program": "Paint", "year": YEAR}).json()
        assert again["total_added"] == 0


class TestReallocations:
    def setup_pair(self, client):
        a = create_municipality(client, "Ashford", 45_000)
        b = create_municipality(client, "Bellwood", 200_000)
        make_adjacent(client, a["id"], b["id"])
        return a, b

    def test_municipal_depot_is_rejected_with_errors(self, client):
        a, b = self.setup_pair(client)
        depot = create_site(client, a["id"], "Town depot", operator_type="Municipal")

        response = client.post(f"{API}/reallocations/", json={
            "site_id": depot["id"], "to_municipality_id": b["id"], "program": "Paint", "percentage": 5,
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "rejected"
        assert "Municipal depots cannot be reallocated due to residency restrictions" in data["validation_errors"]

    def test_unknown_destination_is_stored_without_it(self, client):
        a, _ = self.setup_pair(client)
        site = create_site(client, a["id"], "Paint store", operator_type="Retailer")

        data = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": str(uuid.uuid4()), "program": "Paint",
        }).json()

        assert data["status"] == "rejected"
        assert data["to_municipality_id"] is None
        assert data["validation_errors"] == ["Invalid municipality selection"]

    def test_approve_once(self, client):
        a, b = self.setup_pair(client)
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")
        created = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint", "percentage": 10,
        }).json()
        assert created["status"] == "pending"
        assert created["from_municipality_id"] == a["id"]

        url = f"{API}/reallocations/{created['id']}/approve/"
        approved = client.post(url, json={"decided_by": "reviewer"}).json()
        assert approved["status"] == "approved"
        assert approved["decided_by"] == "reviewer"
        assert approved["decided_at"] is not None

        assert client.post(url).status_code == 409
        assert client.post(f"{API}/reallocations/{created['id']}/reject/").status_code == 409

        stats = client.get(f"{API}/reallocations/stats/").json()
        assert stats["approved"] == 1
        assert stats["by_program"] == {"Paint": 1}

    def test_site_with_a_live_reallocation_cannot_be_reallocated_again(self, client):
        a, b = self.setup_pair(client)
        c = create_municipality(client, "Cedar Creek", 200_000)
        make_adjacent(client, a["id"], c["id"])
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")

        first = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint",
        }).json()
        second = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": c["id"], "program": "Paint",
        }).json()

        assert first["status"] == "pending"
        assert second["status"] == "rejected"
        assert second["validation_errors"] == ["Site already has a pending or approved reallocation"]

        client.post(f"{API}/reallocations/{first['id']}/reject/")
        third = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": c["id"], "program": "Paint",
        }).json()
        assert third["status"] == "pending"

    def test_second_approval_for_one_site_conflicts(self, client, db_session):
        a, b = self.setup_pair(client)
        c = create_municipality(client, "Cedar Creek", 200_000)
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")
        first = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint",
        }).json()
        # Second pending row for the same site, written straight to the table
        duplicate = Reallocation(
            site_id=uuid.UUID(site["id"]),
            from_municipality_id=uuid.UUID(a["id"]),
            to_municipality_id=uuid.UUID(c["id"]),
            program="Paint",
            reallocation_type=ReallocationType.SITE,
            percentage=10,
            status=ReallocationStatus.PENDING,
            validation_errors=[],
        )
        db_session.add(duplicate)
        db_session.commit()

        assert client.post(f"{API}/reallocations/{first['id']}/approve/").status_code == 200
        response = client.post(f"{API}/reallocations/{duplicate.id}/approve/")

        assert response.status_code == 409
        assert response.json()["detail"] == "Site already has an approved reallocation"
        assert client.post(f"{API}/reallocations/{duplicate.id}/reject/").status_code == 200

    def test_operator_excluded_by_an_active_rule_is_rejected(self, client):
        a, b = self.setup_pair(client)
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")
        response = client.post(f"{API}/compliance/rules/", json={
            "name": "No distributor sharing",
            "program": "Paint",
            "category": "Offset",
            "rule_type": "offset_adjacent",
            "parameters": {"excludedOperatorTypes": ["Distributor"]},
        })
        assert response.status_code == 201

        data = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint",
        }).json()

        assert data["status"] == "rejected"
        assert data["validation_errors"] == ["Distributor sites are excluded from adjacent reallocation for Paint"]

    def test_approved_reallocation_moves_the_site_in_analysis(self, client):
        a, b = self.setup_pair(client)
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")
        created = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint",
        }).json()
        client.post(f"{API}/reallocations/{created['id']}/approve/")

        rows = {
            r["municipality_name"]: r
            for r in client.get(f"{API}/compliance/analyze/", params={"program": "Paint"}).json()["results"]
        }
        assert rows["Ashford"]["actual"] == 0
        assert rows["Bellwood"]["incoming"] == 1
        assert rows["Bellwood"]["actual"] == 1

    def test_reject_and_delete(self, client):
        a, b = self.setup_pair(client)
        site = create_site(client, a["id"], "Distributor", operator_type="Distributor")
        created = client.post(f"{API}/reallocations/", json={
            "site_id": site["id"], "to_municipality_id": b["id"], "program": "Paint",
        }).json()

        rejected = client.post(f"{API}/reallocations/{created['id']}/reject/").json()
        assert rejected["status"] == "rejected"

        assert client.delete(f"{API}/reallocations/{created['id']}/").status_code == 204
        assert client.get(f"{API}/reallocations/{created['id']}/").status_code == 404

    def test_tool_c(self, client):
        a, b = self.setup_pair(client)
        sites = [
            create_site(client, a["id"], f"Distributor {i}", operator_type="Distributor")["id"]
            for i in range(4)
        ]

        page = client.get(f"{API}/reallocations/adjacent/", params={"program": "Paint"}).json()
        [ashford] = page["results"]
        assert ashford["name"] == "Ashford"
        assert ashford["eligible_excess"] == 2
        assert ashford["adjacent_with_shortfalls"][0]["shortfall"] == 5

        response = client.post(f"{API}/tools/tool-c/", json={
            "site_ids": sites[:3],
            "from_community_id": a["id"],
            "to_community_id": b["id"],
            "program": "Paint",
        })

        assert response.status_code == 201
        planned = response.json()
        assert [p["status"] for p in planned] == ["pending", "pending", "rejected"]
        assert planned[0]["percentage"] == 10.0
        assert planned[0]["rationale"] == "Adjacent community reallocation from Ashford to Bellwood"

        page = client.get(f"{API}/reallocations/adjacent/", params={"program": "Paint"}).json()
        assert page["results"] == []

        listed = client.get(f"{API}/reallocations/", params={"status": "pending"}).json()
        assert listed["pagination"]["total_count"] == 2
