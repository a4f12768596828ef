"""
Tests for the HTTP API.

Runs the FastAPI app against in-memory SQLite with the AI backends and
upstream property APIs replaced through dependency overrides.
"""

import json
import pytest
from datetime import date, timedelta
from pathlib import Path
from unittest.mock import MagicMock
import sys

import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.comp_engine import SimilarityMatch, SimilarityScorer, SimilarityScoringError
from core.db.session import configure_engine, create_all_tables, reset_engine
from core.property_data import PropertyDataClient
from core.refurbishment import ScopeItem, ScopeModel, ScopeProposal
from utils.config import Config
from web.app import create_app
from web.dependencies import (
    get_config,
    get_property_client,
    get_reference_date,
    get_scope_model,
    get_similarity_scorer_factory,
)


REFERENCE_DATE = date(2024, 6, 1)


# =============================================================================
# Fakes
# =============================================================================

class FakeScorer(SimilarityScorer):
    def __init__(self, scores=None, fail=False):
        self.scores = scores or {}
        self.fail = fail

    def score(self, target_image_url, candidates):
        if self.fail:
            raise SimilarityScoringError("Similarity scoring failed: upstream timeout")
        return [
            SimilarityMatch(c.property_id, self.scores.get(c.property_id, 0), "looks alike")
            for c in candidates
        ]


class FakeScopeModel(ScopeModel):
    def propose(self, images, catalogue, request_payload):
        return ScopeProposal(
            items=[ScopeItem(category="Heating", item_name="Combi boiler", quantity=1)],
            summary="Old boiler",
        )


def _upstream(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = payload or {}
    response.text = ""
    return response


def provider_transaction(i, days_ago=60, **overrides):
    data = {
        "street_group_property_id": f"P{i}",
        "transaction_date": (REFERENCE_DATE - timedelta(days=days_ago)).isoformat(),
        "price": 250000 + i * 1000,
        "property_type": "Terraced",
        "number_of_bedrooms": 3,
        "number_of_bathrooms": 1,
        "internal_area_square_metres": 85,
        "price_per_square_metre": 2900 + i * 10,
        "distance_in_metres": 100 + i * 10,
        "address": {
            "street_group_format": {"address_lines": f"{i} Mill Lane", "postcode": "BS1 4DJ"},
            "simplified_format": {"street": "Mill Lane"},
        },
        "location": {"coordinates": {"latitude": 51.45, "longitude": -2.58}},
    }
    data.update(overrides)
    return data


TARGET = {
    "propertyType": "Terraced",
    "bedrooms": 3,
    "bathrooms": 1,
    "internalArea": 85,
    "location": {"coordinates": {"latitude": 51.45, "longitude": -2.58}},
}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config():
    return Config(
        openai_api_key="test-key",
        google_maps_api_key="maps-key",
        street_api_key="street-key",
        ideal_postcodes_api_key="ideal-key",
        allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_engine(engine)
    create_all_tables(engine)
    yield engine
    reset_engine()


@pytest.fixture
def scorer():
    return FakeScorer({"P0": 91, "P1": 84, "P2": 95, "P3": 60})


@pytest.fixture
def http_session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def client(config, engine, scorer, http_session):
    app = create_app(config)
    app.dependency_overrides[get_config] = lambda: config
    app.dependency_overrides[get_reference_date] = lambda: REFERENCE_DATE
    app.dependency_overrides[get_similarity_scorer_factory] = lambda: (lambda: scorer)
    app.dependency_overrides[get_scope_model] = lambda: FakeScopeModel()
    app.dependency_overrides[get_property_client] = lambda: PropertyDataClient(
        street_api_key="street-key",
        ideal_postcodes_api_key="ideal-key",
        timeout=5,
        session=http_session,
    )
    return TestClient(app)


def sse_events(response):
    return [
        json.loads(line[len("data: "):])
        for line in response.text.split("\n\n")
        if line.startswith("data: ")
    ]


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    def test_root(self, client):
        assert client.get("/").json() == {"status": "ok"}

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}

    def test_api_health_checks_database(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"

    def test_unknown_route_uses_error_body(self, client):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert "error" in response.json()


# =============================================================================
# Comparables
# =============================================================================

class TestComparablesFilter:

    def test_buckets(self, client):
        response = client.post("/api/comparables-filter", json={
            "uprn": "100",
            "nearbyTransactions": [provider_transaction(i) for i in range(3)],
            "targetProperty": TARGET,
            "targetStreet": "Mill Lane",
        })
        data = response.json()

        assert response.status_code == 200
        assert data["success"] is True
        assert data["data"]["totalCandidatesConsidered"] == 3
        # Each property appears once across buckets
        ids = [
            c["street_group_property_id"]
            for b in data["data"]["buckets"]
            for c in b["comparables"]
        ]
        assert sorted(ids) == ["P0", "P1", "P2"]
        assert data["data"]["buckets"][0]["relaxationStrategy"] == "Same street, last 3 months"

    @pytest.mark.parametrize("body, message", [
        ({"nearbyTransactions": [], "targetProperty": TARGET}, "UPRN is required"),
        ({"uprn": "1", "targetProperty": TARGET}, "nearbyTransactions array is required"),
        ({"uprn": "1", "nearbyTransactions": {}, "targetProperty": TARGET},
         "nearbyTransactions array is required"),
        ({"uprn": "1", "nearbyTransactions": []}, "targetProperty is required"),
    ])
    def test_validation(self, client, body, message):
        response = client.post("/api/comparables-filter", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": message}

    def test_malformed_transaction(self, client):
        response = client.post("/api/comparables-filter", json={
            "uprn": "1",
            "nearbyTransactions": [{"price": 1}],
            "targetProperty": TARGET,
        })
        assert response.status_code == 400

    def test_no_comparables(self, client):
        response = client.post("/api/comparables-filter", json={
            "uprn": "1",
            "nearbyTransactions": [provider_transaction(0, number_of_bedrooms=6)],
            "targetProperty": TARGET,
        })
        data = response.json()
        assert response.status_code == 200
        assert data["success"] is False
        assert data["error"] == "No suitable comparables found matching the criteria"


class TestAISelect:

    def body(self, count=4):
        return {
            "uprn": "100",
            "nearbyTransactions": [provider_transaction(i) for i in range(count)],
            "targetProperty": TARGET,
            "targetStreet": "",
        }

    @pytest.fixture
    def keyless_client(self, client, config):
        """Client using the real scorer factory with no OpenAI key set."""
        config.openai_api_key = ""
        del client.app.dependency_overrides[get_similarity_scorer_factory]
        return client

    def test_validation_without_openai_key(self, keyless_client):
        response = keyless_client.post("/api/comparables-ai-select", json={"nearbyTransactions": []})
        assert response.status_code == 400
        assert response.json() == {"error": "UPRN is required"}

    def test_no_comparables_without_openai_key(self, keyless_client):
        body = self.body()
        body["nearbyTransactions"] = [provider_transaction(0, number_of_bedrooms=6)]
        response = keyless_client.post("/api/comparables-ai-select", json=body)

        assert response.status_code == 200
        assert response.json()["error"] == "No suitable comparables found matching the criteria"

    def test_missing_openai_key_when_scoring(self, keyless_client):
        response = keyless_client.post("/api/comparables-ai-select", json=self.body())

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "OpenAI API key not configured"}

    def test_streamed_missing_openai_key(self, keyless_client):
        response = keyless_client.post(
            "/api/comparables-ai-select", json=self.body(), headers={"x-use-sse": "true"}
        )

        assert response.headers["content-type"].startswith("text/event-stream")
        assert sse_events(response)[-1] == {
            "type": "error", "message": "OpenAI API key not configured",
        }

    def test_json_result(self, client):
        data = client.post("/api/comparables-ai-select", json=self.body()).json()

        assert data["success"] is True
        assert data["data"]["comparables"] == ["P2", "P0", "P1"]
        assert data["data"]["context"]["candidates_sent_to_ai"] == 4

    def test_streamed_events(self, client):
        response = client.post(
            "/api/comparables-ai-select", json=self.body(), headers={"x-use-sse": "true"}
        )
        assert response.headers["content-type"].startswith("text/event-stream")

        events = sse_events(response)
        assert events[0]["type"] == "status"
        assert events[-1] == {"type": "complete", "progress": 100}
        result = next(e for e in events if e["type"] == "result")
        assert result["data"]["comparables"] == ["P2", "P0", "P1"]

    def test_streamed_validation_error(self, client):
        response = client.post(
            "/api/comparables-ai-select", json={"uprn": "100"}, headers={"x-use-sse": "true"}
        )
        assert sse_events(response) == [
            {"type": "error", "message": "nearbyTransactions array is required"}
        ]

    def test_nothing_similar(self, client, scorer):
        scorer.scores = {}
        data = client.post("/api/comparables-ai-select", json=self.body()).json()

        assert data["success"] is False
        assert "80% similarity" in data["error"]

    def test_scorer_failure(self, client, scorer):
        scorer.fail = True
        response = client.post("/api/comparables-ai-select", json=self.body())

        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_streamed_scorer_failure(self, client, scorer):
        scorer.fail = True
        response = client.post(
            "/api/comparables-ai-select", json=self.body(), headers={"x-use-sse": "true"}
        )
        assert sse_events(response)[-1]["type"] == "error"


class TestValuationAndSelection:

    def test_valuation_persisted(self, client):
        response = client.post("/api/comparables-valuation", json={
            "uprn": "100",
            "nearbyTransactions": [provider_transaction(i) for i in range(3)],
            "selectedComparableIds": ["P0", "P1"],
            "valuationStrategy": "average",
            "persist": True,
        })
        data = response.json()["data"]
        assert data["valuation"] == 250500
        assert data["statement"] == "£250,500 based on 2 comparables using simple average"

        stored = client.get("/api/db/comparables", params={"uprn": "100"}).json()
        assert stored["selected_comparable_ids"] == ["P0", "P1"]
        assert stored["calculated_valuation"] == 250500

    def test_valuation_empty_selection(self, client):
        data = client.post("/api/comparables-valuation", json={
            "nearbyTransactions": [provider_transaction(0)],
            "selectedComparableIds": [],
        }).json()["data"]
        assert data["valuation"] is None

    def test_invalid_strategy(self, client):
        response = client.post("/api/db/comparables", json={
            "uprn": "100", "valuation_strategy": "median",
        })
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid valuation strategy"}

    def test_default_selection(self, client):
        data = client.get("/api/db/comparables", params={"uprn": "404"}).json()
        assert data == {
            "uprn": "404",
            "selected_comparable_ids": [],
            "valuation_strategy": "average",
            "calculated_valuation": None,
        }

    def test_analysis_toggle_and_filter(self, client):
        transactions = [provider_transaction(i) for i in range(3)]
        response = client.post("/api/comparables-analysis", json={
            "uprn": "200",
            "nearbyTransactions": transactions,
            "subjectStreet": "Mill Lane",
            "subjectInternalArea": 85,
            "toggleComparableId": "P1",
            "sortBy": "price-high",
        })
        data = response.json()["data"]

        assert [p["street_group_property_id"] for p in data["properties"]] == ["P2", "P1", "P0"]
        assert data["selection"]["selected_comparable_ids"] == ["P1"]
        assert data["valuation"]["valuation"] == 251000

        stored = client.get("/api/db/comparables", params={"uprn": "200"}).json()
        assert stored["selected_comparable_ids"] == ["P1"]

    def test_analysis_unknown_sort(self, client):
        response = client.post("/api/comparables-analysis", json={
            "uprn": "200",
            "nearbyTransactions": [provider_transaction(0)],
            "sortBy": "random",
        })
        assert response.status_code == 400

    @pytest.mark.parametrize("change", [
        {"sortBy": "random"},
        {"filters": {"distance": "next_door"}},
        {"filters": {"bedrooms": "three"}},
        {"filters": {"transactionDate": "recent"}},
    ])
    def test_rejected_request_keeps_selection(self, client, change):
        body = {
            "uprn": "300",
            "nearbyTransactions": [provider_transaction(0), provider_transaction(1)],
            "toggleComparableId": "P0",
            "valuationStrategy": "price_per_sqm",
        }
        body.update(change)
        response = client.post("/api/comparables-analysis", json=body)
        assert response.status_code == 400

        stored = client.get("/api/db/comparables", params={"uprn": "300"}).json()
        assert stored["selected_comparable_ids"] == []
        assert stored["valuation_strategy"] == "average"
        assert stored["calculated_valuation"] is None


# =============================================================================
# Analyses & Tabs & Properties
# =============================================================================

class TestAnalyses:

    def test_requires_id_or_recent(self, client):
        response = client.get("/api/db/analyses")
        assert response.status_code == 400
        assert response.json() == {"error": "Either id or recent parameter is required"}

    def test_not_found(self, client):
        response = client.get("/api/db/analyses", params={"id": "missing"})
        assert response.status_code == 404
        assert response.json() == {"error": "Analysis not found"}

    def test_save_read_delete(self, client):
        response = client.post("/api/db/analyses", json={
            "analysisId": "an-1",
            "uprn": "100",
            "searchAddress": "10 Mill Lane",
            "timestamp": 1717200000000,
            "calculatedValuation": 250500,
        })
        assert response.json() == {"success": True}

        data = client.get("/api/db/analyses", params={"id": "an-1"}).json()
        assert data["searchAddress"] == "10 Mill Lane"
        assert data["calculatedValuation"] == 250500

        recent = client.get("/api/db/analyses", params={"recent": "true"}).json()
        assert [r["analysis_id"] for r in recent] == ["an-1"]

        assert client.delete("/api/db/analyses", params={"id": "an-1"}).json() == {"success": True}
        assert client.get("/api/db/analyses", params={"id": "an-1"}).status_code == 404

    def test_save_requires_ids(self, client):
        response = client.post("/api/db/analyses", json={"uprn": "100"})
        assert response.status_code == 400
        assert response.json() == {"error": "analysisId and uprn are required"}

    def test_delete_requires_id(self, client):
        response = client.delete("/api/db/analyses")
        assert response.json() == {"error": "Analysis ID is required"}


class TestTabs:

    headers = {"X-User-Id": "investor@example.com"}

    def test_requires_user(self, client):
        response = client.get("/api/db/tabs")
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    def test_default_tabs(self, client):
        data = client.get("/api/db/tabs", headers=self.headers).json()
        assert data["activeTabId"] == "tab-1"

    def test_save_and_delete(self, client):
        data = client.post("/api/db/tabs", headers=self.headers, json={
            "tabs": [{"id": "tab-1", "title": "Search"}, {"id": "tab-2", "title": "Mill Lane"}],
            "activeTabId": "tab-2",
        }).json()
        assert data["success"] is True
        assert data["activeTabId"] == "tab-2"

        response = client.delete("/api/db/tabs", headers=self.headers, params={"tabId": "tab-2"})
        assert response.json() == {"success": True}

        response = client.delete("/api/db/tabs", headers=self.headers, params={"tabId": "tab-1"})
        assert response.status_code == 400
        assert response.json() == {"error": "Cannot delete the last tab"}

    def test_tabs_required(self, client):
        response = client.post("/api/db/tabs", headers=self.headers, json={})
        assert response.json() == {"error": "Tabs array is required"}

    def test_tabs_must_be_list(self, client):
        response = client.post("/api/db/tabs", headers=self.headers, json={"tabs": "tab-1"})
        assert response.status_code == 400


class TestCachedProperties:

    def test_save_and_read(self, client):
        response = client.post("/api/db/properties", json={"uprn": "300", "data": {"beds": 3}})
        assert response.json() == {"success": True, "fetchedCount": 1}

        data = client.get("/api/db/properties", params={"uprn": "300"}).json()
        assert data["data"] == {"beds": 3}
        assert client.get("/api/properties/300").json()["fetchedCount"] == 1

        # Default comparables data is created alongside
        assert "created_at" in client.get("/api/db/comparables", params={"uprn": "300"}).json()

    def test_missing(self, client):
        assert client.get("/api/db/properties").json() == {"error": "UPRN parameter is required"}
        assert client.get("/api/db/properties", params={"uprn": "9"}).status_code == 404
        assert client.get("/api/properties/9").json() == {"error": "Property not found"}

    def test_save_requires_fields(self, client):
        response = client.post("/api/db/properties", json={"uprn": "300"})
        assert response.json() == {"error": "UPRN and data are required"}


# =============================================================================
# Calculator
# =============================================================================

class TestCalculator:

    def test_not_found(self, client):
        response = client.get("/api/db/calculator", params={"uprn": "100"})
        assert response.status_code == 404
        assert response.json() == {"error": "Calculator data not found"}

    def test_save_read_delete(self, client):
        client.post("/api/db/calculator", json={"uprn": "100", "data": {"purchaseType": "cash"}})

        data = client.get("/api/db/calculator", params={"id": "100"}).json()
        assert data["data"] == {"purchaseType": "cash"}
        assert data["lastUpdated"]

        client.delete("/api/db/calculator", params={"uprn": "100"})
        assert client.get("/api/db/calculator", params={"uprn": "100"}).status_code == 404

    def test_legacy_analysis_id(self, client):
        client.post("/api/db/calculator", json={"analysisId": "100", "data": {"a": 1}})
        assert client.get("/api/db/calculator", params={"uprn": "100"}).json()["data"] == {"a": 1}

    def test_reset(self, client):
        data = client.post("/api/calculator/reset", json={"uprn": "100"}).json()
        assert data["message"] == "Calculator data reset to defaults"
        assert data["data"]["purchaseType"] == "mortgage"

    def test_requires_uprn(self, client):
        assert client.get("/api/db/calculator").json() == {"error": "UPRN is required"}
        response = client.post("/api/db/calculator", json={"data": {"a": 1}})
        assert response.json() == {"error": "UPRN and data are required"}

    def test_calculate(self, client):
        data = client.post("/api/calculator/calculate", json={"data": {
            "purchaseType": "cash",
            "exitStrategy": "flip-sell",
            "purchaseFinance": {"purchasePrice": "100000"},
            "saleDetails": {"expectedSalePrice": "130000"},
        }}).json()
        assert data["results"]["total_return"] == 30000
        assert data["data"]["monthlyIncome"]["rent1"] == ""

    def test_calculate_invalid(self, client):
        response = client.post("/api/calculator/calculate", json={"data": {"purchaseType": "swap"}})
        assert response.status_code == 400

    def test_calculate_null_section(self, client):
        response = client.post("/api/calculator/calculate", json={"data": {"purchaseFinance": None}})

        assert response.status_code == 200
        assert response.json()["data"]["purchaseFinance"]["purchasePrice"] == ""

    def test_calculate_malformed_section(self, client):
        response = client.post("/api/calculator/calculate", json={"data": {"refurbItems": [5000]}})

        assert response.status_code == 400
        assert response.json() == {"error": "refurbItems must be a list of objects"}


# =============================================================================
# Property Data
# =============================================================================

class TestPropertyData:

    def test_postcode_required(self, client):
        response = client.get("/api/postcode/addresses")
        assert response.status_code == 400
        assert response.json() == {"error": "Postcode is required"}

    def test_postcode_addresses(self, client, http_session):
        http_session.get.return_value = _upstream(payload={"result": [
            {"id": "paf_1", "line_1": "1 Mill Lane", "postcode": "BS1 4DJ", "uprn": 42},
        ]})
        data = client.get("/api/postcode/addresses", params={"postcode": "bs1 4dj"}).json()

        assert data["postcode"] == "BS14DJ"
        assert data["addresses"][0]["full_address"] == "1 Mill Lane, BS1 4DJ"

    def test_postcode_not_found(self, client, http_session):
        http_session.get.return_value = _upstream(404)
        response = client.get("/api/postcode/addresses", params={"postcode": "BS1 4DJ"})
        assert response.status_code == 404
        assert response.json() == {"error": "Postcode not found"}

    def test_fetch_property_caches(self, client, http_session):
        document = {"data": {"attributes": {"identities": {"ordnance_survey": {"uprn": 555}}}}}
        http_session.post.return_value = _upstream(payload=document)

        response = client.post("/api/property", json={"address": "1 Mill Lane", "postcode": "BS1 4DJ"})
        assert response.json() == document
        assert client.get("/api/properties/555").json()["data"] == document

    def test_fetch_property_auth_error(self, client, http_session):
        http_session.post.return_value = _upstream(401)
        response = client.post("/api/property", json={"address": "1 Mill Lane", "postcode": "BS1 4DJ"})

        assert response.status_code == 401
        assert response.json() == {
            "error": "API authentication failed. Please check your API key configuration."
        }


# =============================================================================
# Refurbishment
# =============================================================================

class TestRefurbishment:

    def test_requires_images(self, client):
        response = client.post("/api/refurbishment-estimate", json={"images": []})
        assert response.status_code == 400
        assert response.json() == {"error": "No images provided"}

    def test_estimate(self, client):
        data = client.post("/api/refurbishment-estimate", json={
            "images": ["https://img/1.jpg"],
            "itemsToInclude": ["Combi boiler"],
        }).json()

        assert data["success"] is True
        item = data["data"]["items"][0]
        assert item["item_name"] == "Combi boiler"
        assert item["total_cost_standard"] == 2800
        assert data["data"]["summary"] == "Old boiler"
