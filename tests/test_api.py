"""
HTTP API smoke tests (FastAPI TestClient).
Run with: python3 -m pytest tests/test_api.py -v
"""

import sys
import os

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coinmax_app.main import create_app
from coinmax_app.services.scenarios import SCENARIO_DIR_ENV


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def scenario_store(tmp_path, monkeypatch):
    monkeypatch.setenv(SCENARIO_DIR_ENV, str(tmp_path))
    return tmp_path


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_default_config_round_trips(client):
    cfg = client.get("/api/default-config").json()
    assert cfg["sim_days"] == 180
    resp = client.post("/api/stage-report", json={**cfg, "sim_days": 30})
    assert resp.status_code == 200
    assert [c["day"] for c in resp.json()] == [15, 30]


def test_simulate_returns_rows_summary_and_stages(client):
    resp = client.post("/api/simulate", json={"sim_days": 20})
    assert resp.status_code == 200
    body = resp.json()
    assert len(body["rows"]) == 20
    assert body["rows"][-1]["day"] == 20
    assert "max_drawdown" in body["summary"]
    assert [c["day"] for c in body["stages"]] == [15]


def test_invalid_config_rejected(client):
    assert client.post("/api/simulate", json={"sim_days": 0}).status_code == 422
    assert client.post("/api/simulate", json={"sell_pressure_ratio": 2}).status_code == 422
    assert client.post("/api/simulate", json={"blend_mode": "median"}).status_code == 422


def test_stress_test_endpoint(client):
    payload = {
        "config": {"sim_days": 30},
        "stress": {
            "ranges": [{"key": "sell_pressure_ratio", "min": 0.3, "max": 0.5, "step": 0.1}],
            "max_runs": 10,
        },
    }
    body = client.post("/api/stress-test", json=payload).json()
    assert body["total"] == 3
    assert body["passed"] + body["failed"] == 3
    assert body["results"][0]["params"] == {"sell_pressure_ratio": 0.3}


def test_stress_test_unknown_key_is_422(client):
    payload = {
        "config": {"sim_days": 30},
        "stress": {"ranges": [{"key": "moon_factor", "min": 1, "max": 2, "step": 1}]},
    }
    resp = client.post("/api/stress-test", json=payload)
    assert resp.status_code == 422
    assert "moon_factor" in resp.json()["detail"]


def test_optimize_endpoint(client):
    payload = {
        "config": {"sim_days": 30},
        "objective": "max_growth",
        "ranges": [{"key": "sell_pressure_ratio", "values": [0.3, 0.6]}],
        "max_iterations": 5,
        "random_seed": 1,
    }
    body = client.post("/api/optimize", json=payload).json()
    assert body["objective"] == "max_growth"
    assert body["evaluated"] == 2
    assert body["results"][0]["rank"] == 1


def test_export_csv(client):
    resp = client.post("/api/export/csv", json={"sim_days": 5})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.strip().split("\n")
    assert lines[0].startswith("day,month_idx")
    assert len(lines) == 6


def test_scenario_crud(client, scenario_store):
    assert client.get("/api/scenarios").json() == []

    resp = client.put("/api/scenarios/base-case", json={"sim_days": 60, "sell_pressure_ratio": 0.4})
    assert resp.status_code == 200
    assert [s["name"] for s in client.get("/api/scenarios").json()] == ["base-case"]

    loaded = client.get("/api/scenarios/base-case").json()
    assert loaded["sim_days"] == 60 and loaded["sell_pressure_ratio"] == 0.4

    assert client.delete("/api/scenarios/base-case").status_code == 200
    assert client.get("/api/scenarios/base-case").status_code == 404
    assert client.delete("/api/scenarios/base-case").status_code == 404


def test_scenario_bad_name_is_422(client, scenario_store):
    assert client.put("/api/scenarios/..hidden", json={}).status_code == 422


def test_stress_test_out_of_bounds_grid_value_is_422(client):
    # 0.9 is valid but the grid continues to 1.0, 1.1, 1.2
    payload = {
        "config": {"sim_days": 30},
        "stress": {"ranges": [{"key": "sell_pressure_ratio", "min": 0.9, "max": 1.2, "step": 0.1}]},
    }
    resp = client.post("/api/stress-test", json=payload)
    assert resp.status_code == 422
    assert "sell_pressure_ratio" in resp.json()["detail"]


def test_optimize_out_of_bounds_candidate_is_422(client):
    payload = {
        "config": {"sim_days": 30},
        "ranges": [{"key": "sell_pressure_ratio", "values": [0.5, 1.5]}],
        "max_iterations": 5,
    }
    resp = client.post("/api/optimize", json=payload)
    assert resp.status_code == 422
    assert "sell_pressure_ratio" in resp.json()["detail"]


def test_optimize_disabled_range_not_validated(client):
    payload = {
        "config": {"sim_days": 30},
        "ranges": [
            {"key": "sell_pressure_ratio", "values": [0.3, 0.6]},
            {"key": "amm_fee_rate", "values": [5.0], "enabled": False},
        ],
        "max_iterations": 5,
    }
    assert client.post("/api/optimize", json=payload).status_code == 200


def test_search_combination_breaking_cross_field_check_is_422(client):
    # each value is fine against the defaults; together min > max
    payload = {
        "config": {"sim_days": 10},
        "stress": {"ranges": [
            {"key": "insurance_min_usdc", "min": 1500, "max": 1500, "step": 1},
            {"key": "insurance_max_usdc", "min": 1200, "max": 1200, "step": 1},
        ]},
    }
    resp = client.post("/api/stress-test", json=payload)
    assert resp.status_code == 422


def test_legacy_unused_fields_are_ignored(client):
    cfg = client.get("/api/default-config").json()
    assert "slippage_model" not in cfg
    assert "performance_required_v5" not in cfg

    resp = client.post("/api/simulate", json={"sim_days": 5, "slippage_model": "cpmm", "performance_required_v5": 800})
    assert resp.status_code == 200
