"""
Stage report tests: checkpoint selection, labels and recommendation order.
Run with: python3 -m pytest tests/test_stage_report.py -v
"""

import math
import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from coinmax_app.schemas import ModelParams
from coinmax_app.services.simulation import simulate
from coinmax_app.services.stage_report import (
    HEALTHY_RECOMMENDATION,
    RECOMMENDATIONS,
    compute_stage_report,
    pressure_label,
    pressure_score,
    sustainability_label,
)


# ── Helpers ──────────────────────────────────────────────────────────────────

def make_base_params(**overrides) -> ModelParams:
    defaults = dict(sim_days=100)
    defaults.update(overrides)
    return ModelParams(**defaults)


def make_row(day, **overrides) -> dict:
    """A calm synthetic day: flat price, deep LP, on-target growth."""
    row = dict(
        day=day,
        price_end=1.0,
        treasury_end=100_000.0,
        lp_usdc_end=100_000.0,
        sold_over_lp=0.0,
        performance_checks=0,
        performance_pass_rate=1.0,
        total_payout_usdc=0.0,
        total_principal_inflow=100.0,
        total_referral_payout=0.0,
        total_buyback_usdc=0.0,
        total_ar_buyback=0.0,
        total_ar_burned=0.0,
        total_usdc_redemptions=0.0,
        total_mx_burned=0.0,
        total_ar_sold=0.0,
        junior_cum=2_000,
        senior_cum=500,
        vault_open=False,
        vault_open_day=None,
        vault_stakers=0.0,
    )
    row.update(overrides)
    return row


def make_rows(n, **overrides):
    return [make_row(d, **overrides) for d in range(1, n + 1)]


# ── Labels ────────────────────────────────────────────────────────────────────

def test_pressure_label_boundaries():
    assert pressure_label(0) == "SAFE"
    assert pressure_label(30) == "SAFE"
    assert pressure_label(30.01) == "WATCH"
    assert pressure_label(60) == "WATCH"
    assert pressure_label(80) == "RISK"
    assert pressure_label(80.5) == "DANGER"


def test_sustainability_label_boundaries():
    assert sustainability_label(0.6) == "HEALTHY"
    assert sustainability_label(1.0) == "TIGHT"
    assert sustainability_label(1.0001) == "UNSUSTAINABLE"
    assert sustainability_label(float("inf")) == "UNSUSTAINABLE"


def test_pressure_score_weights_and_cap():
    params = make_base_params()
    at_target = pressure_score(0.25, 0.5, 0.1, params)
    assert at_target == pytest.approx(50.0), "every part at target scores half"
    assert pressure_score(0, 0, 0, params) == 0.0
    assert pressure_score(10, 10, 10, params) == pytest.approx(100.0), "parts are capped at 2x"
    assert pressure_score(0.5, 0, 0, params) == pytest.approx(40.0)


# ── Checkpoints ───────────────────────────────────────────────────────────────

def test_checkpoints_only_inside_horizon():
    params = make_base_params()
    report = compute_stage_report(simulate(params), params)
    assert [c["day"] for c in report] == [15, 30, 60, 90]
    assert compute_stage_report([], params) == []


def test_healthy_prefix_gets_single_sentence():
    params = make_base_params()
    report = compute_stage_report(make_rows(20), params)
    assert len(report) == 1
    cp = report[0]
    assert cp["pressure_label"] == "SAFE"
    assert cp["sustainability_label"] == "HEALTHY"
    assert cp["liquidity"] == "PASS" and cp["growth"] == "PASS" and cp["vault"] == "N/A"
    assert cp["recommendation"] == HEALTHY_RECOMMENDATION


def test_recommendations_follow_priority_order():
    params = make_base_params()
    rows = make_rows(20, lp_usdc_end=5_000.0, junior_cum=0)
    cp = compute_stage_report(rows, params)[0]
    assert cp["liquidity"] == "FAIL" and cp["growth"] == "FAIL"
    assert cp["recommendation"] == RECOMMENDATIONS["liquidity"] + " " + RECOMMENDATIONS["growth"]


def test_drawdown_is_running_peak_to_trough():
    rows = make_rows(15)
    prices = [1.0, 2.0, 1.0] + [1.5] * 12
    for r, p in zip(rows, prices):
        r["price_end"] = p
    cp = compute_stage_report(rows, make_base_params())[0]
    assert cp["drawdown"] == pytest.approx(0.5), "trough at day 3 counts even after recovery"
    assert cp["price"] == 1.5


def test_payout_without_principal_is_unsustainable():
    rows = make_rows(15, total_payout_usdc=10.0, total_principal_inflow=0.0)
    cp = compute_stage_report(rows, make_base_params())[0]
    assert math.isinf(cp["payout_ratio"])
    assert cp["sustainability_label"] == "UNSUSTAINABLE"


def test_vault_target_scales_with_days_open():
    params = make_base_params(kpi_target_vault_stakers_90=500)
    passing = make_rows(90, vault_open=True, vault_open_day=1, vault_stakers=450.0)
    failing = make_rows(90, vault_open=True, vault_open_day=1, vault_stakers=100.0)

    assert compute_stage_report(passing, params)[-1]["vault"] == "PASS"
    last = compute_stage_report(failing, params)[-1]
    assert last["vault"] == "FAIL"
    assert RECOMMENDATIONS["vault"] in last["recommendation"]


def test_low_performance_rate_flagged_only_when_gated():
    rows = make_rows(15, performance_checks=1, performance_pass_rate=0.2)
    gated = compute_stage_report(rows, make_base_params(performance_gating_enabled=True))[0]
    ungated = compute_stage_report(rows, make_base_params())[0]

    assert gated["avg_performance_pass_rate"] == pytest.approx(0.2)
    assert gated["recommendation"] == RECOMMENDATIONS["performance"]
    assert ungated["recommendation"] == HEALTHY_RECOMMENDATION
