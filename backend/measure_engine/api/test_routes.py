"""
HTTP tests for the API routes.

Run with: python -m pytest backend/measure_engine/api -v
"""

import inspect

import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

from main import app
from measure_engine.api.deps import override_store
from measure_engine.core.config import settings
from measure_engine.testing.fixtures import (
    clause,
    diabetes_measure,
    element,
    hospice_patient,
    numerator_patient,
)

API = settings.API_V1_STR


@pytest.fixture(autouse=True)
def clean_store():
    override_store.clear()
    yield
    override_store.clear()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _edit(component_id="obs-hba1c", target_format="cql", comment="tightened threshold") -> dict:
    return {
        "measureId": "CMS122",
        "componentId": component_id,
        "targetFormat": target_format,
        "generatedSnippet": "value <= 9",
        "patchedSnippet": "value < 8",
        "comment": comment,
    }


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    assert client.get("/health").json() == {"status": "healthy"}


# =============================================================================
# CODE GENERATION
# =============================================================================

def test_generate_cql(client):
    response = client.post(f"{API}/codegen/cql", json={"measure": _dump(diabetes_measure())})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["overrideCount"] == 0
    assert "library CMS122 version '1.0.0'" in body["cql"]
    assert body["metadata"]["populationCount"] == 4


def test_generate_cql_failure_is_reported_in_body(client):
    measure = {"id": "m1", "metadata": {"measureId": "m1"}, "populations": []}
    response = client.post(f"{API}/codegen/cql", json={"measure": measure})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["errors"]


def test_generate_sql_unknown_dialect(client):
    response = client.post(
        f"{API}/codegen/sql",
        json={"measure": _dump(diabetes_measure()), "dialect": "oracle"},
    )
    assert response.status_code == 400
    assert "oracle" in response.json()["detail"]


def test_generate_sql_with_dialect_override(client):
    client.put(f"{API}/overrides", json=_edit("enc-visit", "synapse-sql"))
    payload = {"measure": _dump(diabetes_measure()), "dialect": "synapse"}

    body = client.post(f"{API}/codegen/sql", json=payload).json()
    assert body["overrideCount"] == 1
    assert "-- SYNAPSE SQL OVERRIDES APPLIED: 1" in body["sql"]
    assert body["metadata"]["dialect"] == "synapse"

    payload["dialect"] = "hdi"
    assert client.post(f"{API}/codegen/sql", json=payload).json()["overrideCount"] == 0


def test_batch_generation(client):
    payload = {
        "measures": [_dump(diabetes_measure()), _dump(diabetes_measure("CMS165"))],
        "targetFormat": "hdi-sql",
    }
    body = client.post(f"{API}/codegen/batch", json=payload).json()
    assert set(body) == {"CMS122", "CMS165"}
    assert all(item["success"] for item in body.values())
    assert "MEASURE_RESULT" in body["CMS165"]["code"]


# =============================================================================
# OVERRIDES
# =============================================================================

def test_override_lifecycle(client):
    first = client.put(f"{API}/overrides", json=_edit(comment="first pass"))
    assert first.status_code == 200
    assert len(first.json()["notes"]) == 1

    second = client.put(f"{API}/overrides", json=_edit(comment="second pass")).json()
    assert [n["comment"] for n in second["notes"]] == ["first pass", "second pass"]

    listed = client.get(f"{API}/overrides/CMS122").json()
    assert len(listed) == 1
    assert listed[0]["key"]["componentId"] == "obs-hba1c"

    cql = client.post(f"{API}/codegen/cql", json={"measure": _dump(diabetes_measure())}).json()
    assert cql["overrideCount"] == 1
    assert "// CQL OVERRIDES APPLIED: 1" in cql["cql"]
    assert "second pass" in cql["cql"]

    reverted = client.delete(f"{API}/overrides/CMS122/obs-hba1c/cql")
    assert reverted.status_code == 200
    assert client.get(f"{API}/overrides/CMS122").json() == []


def test_revert_missing_override_is_404(client):
    response = client.delete(f"{API}/overrides/CMS122/obs-hba1c/cql")
    assert response.status_code == 404


# =============================================================================
# LOGIC TREE
# =============================================================================

def test_change_connective(client):
    root = clause("root", children=[element("a"), element("b"), element("c")])
    response = client.post(
        f"{API}/logic/connective",
        json={"clause": _dump(root), "index": 0, "operator": "OR"},
    )
    assert response.status_code == 200
    body = response.json()
    assert len(body["children"]) == 2
    assert body["children"][0]["operator"] == "OR"
    assert body["children"][0]["nodeType"] == "clause"


def test_change_connective_unknown_clause(client):
    root = clause("root", children=[element("a"), element("b")])
    response = client.post(
        f"{API}/logic/connective",
        json={"clause": _dump(root), "clauseId": "a", "index": 0, "operator": "OR"},
    )
    assert response.status_code == 404


def test_diagnostics(client):
    measure = _dump(diabetes_measure())
    measure["populations"][0]["criteria"]["children"].append(
        {"id": "empty", "operator": "OR", "children": []}
    )
    body = client.post(f"{API}/logic/diagnostics", json={"measure": measure}).json()
    assert {"code": "empty-clause", "nodeId": "empty"} in [
        {"code": d["code"], "nodeId": d["nodeId"]} for d in body
    ]


# =============================================================================
# VALIDATION
# =============================================================================

def test_evaluate_patient(client):
    payload = {"patient": _dump(numerator_patient()), "measure": _dump(diabetes_measure())}
    body = client.post(f"{API}/validation/evaluate", json=payload).json()
    assert body["finalOutcome"] == "in_numerator"
    assert body["populationResults"][0]["populationType"] == "initial-population"


def test_evaluate_cohort(client):
    payload = {
        "patients": [_dump(numerator_patient()), _dump(hospice_patient())],
        "measure": _dump(diabetes_measure()),
    }
    body = client.post(f"{API}/validation/evaluate-cohort", json=payload).json()
    assert body["p-num"]["trace"]["finalOutcome"] == "in_numerator"
    assert body["p-hospice"]["trace"]["finalOutcome"] == "excluded"
    assert body["p-hospice"]["error"] is None


def test_generation_and_evaluation_routes_run_in_threadpool():
    sync_paths = {
        f"{API}/codegen/cql",
        f"{API}/codegen/sql",
        f"{API}/codegen/batch",
        f"{API}/validation/evaluate",
        f"{API}/validation/evaluate-cohort",
    }
    endpoints = {route.path: route.endpoint for route in app.routes if isinstance(route, APIRoute)}
    assert sync_paths <= set(endpoints)
    for path in sync_paths:
        assert not inspect.iscoroutinefunction(endpoints[path]), path
