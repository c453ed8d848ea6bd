"""
Grid stress test and critical-threshold scan.

Both reduce every engine run to a summary of extremes and classify it against
FailRules. A failing run is an outcome (fail_reason string), never an error.
"""

import itertools
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from coinmax_app.schemas import FailRules, ModelParams, StressConfig, StressRange
from coinmax_app.services.pool import evaluate_many
from coinmax_app.services.simulation import simulate

logger = logging.getLogger(__name__)


FAIL_TREASURY = "treasury below floor"
FAIL_LP = "LP below floor"
FAIL_DRAWDOWN = "price drawdown over limit"
FAIL_SOLD_OVER_LP = "sold/LP over limit"

# ── Threshold scan dimensions ──
# "max": scan upward from the safe low end; "min": scan downward from the safe high end
SCAN_KEYS = [
    {"key": "sell_pressure_ratio", "label": "Max safe sell pressure", "direction": "max", "min": 0.0, "max": 1.0, "step": 0.05},
    {"key": "growth_rate", "label": "Max safe growth rate", "direction": "max", "min": 0.0, "max": 2.0, "step": 0.05},
    {"key": "junior_monthly_new", "label": "Max safe junior growth", "direction": "max", "min": 100, "max": 5000, "step": 100},
    {"key": "lp_usdc", "label": "Min safe LP depth", "direction": "min", "min": 10_000, "max": 500_000, "step": 10_000},
]

_GRID_DECIMALS = 8


def apply_overrides(base: ModelParams, overrides: Dict[str, float]) -> ModelParams:
    """Return a validated copy of base with top-level fields replaced."""
    unknown = [k for k in overrides if k not in ModelParams.model_fields]
    if unknown:
        raise ValueError(f"Unknown parameter(s): {', '.join(sorted(unknown))}")
    if not overrides:
        return base
    data = base.model_dump()
    data.update(overrides)
    return ModelParams.model_validate(data)


def range_values(r: StressRange) -> List[float]:
    """Inclusive grid for one range, rounded so float steps land on max."""
    count = int(np.floor((r.max - r.min) / r.step + 1e-9)) + 1
    values = r.min + r.step * np.arange(count, dtype=float)
    return [round(float(v), _GRID_DECIMALS) for v in values]


def summarize_rows(rows: List[dict]) -> dict:
    """Reduce engine rows to the extremes a fail rule can look at."""
    last = rows[-1]

    peak = 0.0
    max_drawdown = 0.0
    min_price = float("inf")
    min_lp = float("inf")
    min_treasury = float("inf")
    max_sol = 0.0
    for r in rows:
        price = r["price_end"]
        peak = max(peak, price)
        if peak > 0:
            max_drawdown = max(max_drawdown, (peak - price) / peak)
        min_price = min(min_price, price)
        min_lp = min(min_lp, r["lp_usdc_end"])
        min_treasury = min(min_treasury, r["treasury_end"])
        max_sol = max(max_sol, r["sold_over_lp"])

    return {
        "final_price": last["price_end"],
        "min_price": min_price,
        "max_drawdown": max_drawdown,
        "final_lp_usdc": last["lp_usdc_end"],
        "min_lp_usdc": min_lp,
        "min_treasury": min_treasury,
        "final_treasury": last["treasury_end"],
        "max_sold_over_lp": max_sol,
        "total_payout_usdc": last["total_payout_usdc"],
        "total_principal_inflow": last["total_principal_inflow"],
        "total_ar_emitted": last["total_ar_emitted"],
        "net_sell_pressure": last["total_ar_sold"] - last["total_ar_buyback"],
        "vault_stakers": last["vault_stakers"],
        "vault_total_staked_usdc": last["vault_total_staked_usdc"],
        "total_vault_platform_income": last["total_vault_platform_income"],
    }


def simulate_summary(params: ModelParams) -> dict:
    return summarize_rows(simulate(params))


def detect_fail(summary: dict, rules: FailRules) -> Optional[str]:
    """First violated rule, checked in fixed priority; None when the run passes."""
    if summary["min_treasury"] < rules.min_treasury_usdc:
        return FAIL_TREASURY
    if summary["min_lp_usdc"] < rules.min_lp_usdc:
        return FAIL_LP
    if summary["max_drawdown"] > rules.max_price_drawdown:
        return FAIL_DRAWDOWN
    if summary["max_sold_over_lp"] > rules.max_sold_over_lp:
        return FAIL_SOLD_OVER_LP
    return None


def _classified_run(job: Tuple[ModelParams, FailRules]) -> dict:
    params, rules = job
    summary = simulate_summary(params)
    summary["fail_reason"] = detect_fail(summary, rules)
    return summary


def build_grid(stress: StressConfig) -> List[Dict[str, float]]:
    """Cartesian product of the ranges in declared order, cut at max_runs."""
    keys = [r.key for r in stress.ranges]
    axes = [range_values(r) for r in stress.ranges]
    combos = itertools.islice(itertools.product(*axes), stress.max_runs)
    return [dict(zip(keys, combo)) for combo in combos]


def run_stress_test(
    base: ModelParams,
    stress: StressConfig,
    on_progress=None,
    max_workers: int = 1,
    cancel=None,
) -> List[dict]:
    grid = build_grid(stress)
    full_size = int(np.prod([len(range_values(r)) for r in stress.ranges])) if stress.ranges else 1
    if full_size > len(grid):
        logger.warning("Stress grid truncated: %d of %d combinations", len(grid), full_size)

    jobs = [(apply_overrides(base, overrides), stress.fail_rules) for overrides in grid]
    logger.info("Stress test started: %d runs, %d worker(s)", len(jobs), max_workers)

    summaries = evaluate_many(_classified_run, jobs, max_workers, on_progress, cancel)

    results = []
    for overrides, summary in zip(grid, summaries):
        if summary is None:
            continue
        results.append({"params": overrides, **summary})

    failed = sum(1 for r in results if r["fail_reason"])
    logger.info("Stress test finished: %d runs, %d passed, %d failed", len(results), len(results) - failed, failed)
    return results


def _scan_values(scan: dict) -> List[float]:
    count = int(np.floor((scan["max"] - scan["min"]) / scan["step"] + 1e-9)) + 1
    values = [round(scan["min"] + scan["step"] * i, _GRID_DECIMALS) for i in range(count)]
    if scan["direction"] == "min":
        values.reverse()
    return values


def find_thresholds(base: ModelParams, rules: FailRules) -> List[dict]:
    """For each scan dimension, the last value that still passes every rule.

    Scans from the safe end and stops at the first failure, so a boundary
    that is not monotonic is reported at its first crossing.
    """
    results = []
    for scan in SCAN_KEYS:
        values = _scan_values(scan)
        safe_value = values[0]
        passed_any = False
        runs = 0
        for v in values:
            runs += 1
            summary = simulate_summary(apply_overrides(base, {scan["key"]: v}))
            if detect_fail(summary, rules):
                break
            safe_value = v
            passed_any = True

        logger.debug("Threshold %s: %s after %d runs", scan["key"], safe_value, runs)
        results.append({
            "key": scan["key"],
            "label": scan["label"],
            "direction": scan["direction"],
            "safe_value": round(safe_value, 6),
            "passed": passed_any,
            "runs": runs,
        })
    return results
