import itertools
import logging
from typing import Dict, List, Optional

import numpy as np

from coinmax_app.schemas import ModelParams, OptimizerConstraints, OptSearchRange
from coinmax_app.services.pool import evaluate_many
from coinmax_app.services.stress_test import apply_overrides, simulate_summary

logger = logging.getLogger(__name__)


CONSTRAINT_PENALTY = 1000.0
TOP_N = 5

# ── Objective profiles ──
# penalties act on raw fractions, rewards on the ratio to the baseline run
OBJECTIVE_WEIGHTS = {
    "max_safety": {"drawdown": 60.0, "sold_over_lp": 30.0, "treasury_stress": 10.0, "payout": 5.0, "emission": 0.0},
    "balanced": {"drawdown": 40.0, "sold_over_lp": 20.0, "treasury_stress": 10.0, "payout": 20.0, "emission": 10.0},
    "max_growth": {"drawdown": 20.0, "sold_over_lp": 10.0, "treasury_stress": 10.0, "payout": 40.0, "emission": 20.0},
}

DEFAULT_OPT_RANGES = [
    OptSearchRange(key="sell_pressure_ratio", label="Sell pressure", values=[0.2, 0.3, 0.4, 0.5, 0.6]),
    OptSearchRange(key="lp_usdc", label="LP USDC", values=[50_000, 100_000, 150_000, 200_000, 300_000]),
    OptSearchRange(key="growth_rate", label="Growth rate", values=[0.0, 0.05, 0.1, 0.2, 0.3]),
    OptSearchRange(key="junior_monthly_new", label="Junior monthly new", values=[200, 300, 500, 800, 1_000]),
    OptSearchRange(key="senior_monthly_new", label="Senior monthly new", values=[50, 100, 150, 200]),
    OptSearchRange(key="treasury_buyback_ratio", label="Buyback ratio", values=[0.05, 0.1, 0.15, 0.2, 0.3]),
    OptSearchRange(key="treasury_redemption_ratio", label="Redemption ratio", values=[0.0, 0.05, 0.1, 0.2]),
    OptSearchRange(key="mx_burn_per_withdraw_ratio", label="MX burn per withdraw", values=[0.05, 0.1, 0.15, 0.2]),
    OptSearchRange(key="max_out_multiple", label="Max-out multiple", values=[2.0, 2.5, 3.0, 3.5], enabled=False),
    OptSearchRange(key="vault_convert_ratio", label="Vault convert ratio", values=[0.1, 0.2, 0.3, 0.5], enabled=False),
    OptSearchRange(key="vault_monthly_new", label="Vault monthly new", values=[100, 200, 300, 500], enabled=False),
    OptSearchRange(key="vault_avg_stake_usdc", label="Vault avg stake", values=[200, 500, 1_000], enabled=False),
    OptSearchRange(key="referral_bonus_ratio", label="Referral bonus", values=[0.03, 0.05, 0.08], enabled=False),
]


def constraint_violations(summary: dict, constraints: OptimizerConstraints) -> List[str]:
    out = []
    if summary["min_treasury"] < constraints.min_treasury_usdc:
        out.append("min_treasury_usdc")
    if summary["min_lp_usdc"] < constraints.min_lp_usdc:
        out.append("min_lp_usdc")
    if summary["max_drawdown"] > constraints.max_drawdown:
        out.append("max_drawdown")
    if summary["max_sold_over_lp"] > constraints.max_sold_over_lp:
        out.append("max_sold_over_lp")
    if summary["vault_stakers"] < constraints.min_vault_stakers:
        out.append("min_vault_stakers")
    return out


def _ratio(value: float, baseline: float) -> float:
    if baseline > 0:
        return value / baseline
    return 1.0 if value > 0 else 0.0


def score_summary(
    summary: dict,
    baseline: dict,
    objective: str,
    constraints: OptimizerConstraints,
    treasury_start: float,
) -> float:
    if objective not in OBJECTIVE_WEIGHTS:
        raise ValueError(f"Unknown objective '{objective}'. Allowed: {', '.join(OBJECTIVE_WEIGHTS)}")
    w = OBJECTIVE_WEIGHTS[objective]

    treasury_stress = max(-summary["min_treasury"], 0.0) / treasury_start if treasury_start > 0 else 0.0
    penalty = (
        w["drawdown"] * summary["max_drawdown"]
        + w["sold_over_lp"] * summary["max_sold_over_lp"]
        + w["treasury_stress"] * treasury_stress
    )
    reward = (
        w["payout"] * _ratio(summary["total_payout_usdc"], baseline["total_payout_usdc"])
        + w["emission"] * _ratio(summary["total_ar_emitted"], baseline["total_ar_emitted"])
    )
    score = reward - penalty
    if constraint_violations(summary, constraints):
        score -= CONSTRAINT_PENALTY
    return score


def generate_candidates(
    ranges: List[OptSearchRange],
    max_iterations: int,
    seed: Optional[int] = None,
) -> List[Dict[str, float]]:
    """Distinct override maps, one value per enabled dimension.

    When the whole space fits in the budget it is enumerated; otherwise
    values are drawn uniformly and duplicates are skipped.
    """
    active = [r for r in ranges if r.enabled]
    if not active:
        return []
    keys = [r.key for r in active]
    axes = [list(dict.fromkeys(r.values)) for r in active]
    space = int(np.prod([len(a) for a in axes]))

    if space <= max_iterations:
        return [dict(zip(keys, combo)) for combo in itertools.product(*axes)]

    rng = np.random.default_rng(seed)
    seen = set()
    candidates = []
    attempts = 0
    max_attempts = max_iterations * 20
    while len(candidates) < max_iterations and attempts < max_attempts:
        attempts += 1
        combo = tuple(axis[int(rng.integers(len(axis)))] for axis in axes)
        if combo in seen:
            continue
        seen.add(combo)
        candidates.append(dict(zip(keys, combo)))
    return candidates


def run_optimizer(
    base: ModelParams,
    objective: str = "balanced",
    constraints: Optional[OptimizerConstraints] = None,
    ranges: Optional[List[OptSearchRange]] = None,
    max_iterations: int = 500,
    seed: Optional[int] = None,
    on_progress=None,
    max_workers: int = 1,
    cancel=None,
) -> dict:
    """Random search over the enabled ranges, ranked by the objective profile."""
    if objective not in OBJECTIVE_WEIGHTS:
        raise ValueError(f"Unknown objective '{objective}'. Allowed: {', '.join(OBJECTIVE_WEIGHTS)}")
    constraints = constraints or OptimizerConstraints()
    ranges = DEFAULT_OPT_RANGES if ranges is None else ranges

    baseline = simulate_summary(base)
    baseline_score = score_summary(baseline, baseline, objective, constraints, base.treasury_start_usdc)

    candidates = generate_candidates(ranges, max_iterations, seed)
    configs = [apply_overrides(base, overrides) for overrides in candidates]
    logger.info("Optimizer started: objective=%s, %d candidates", objective, len(configs))

    summaries = evaluate_many(simulate_summary, configs, max_workers, on_progress, cancel)

    scored = []
    for overrides, cfg, summary in zip(candidates, configs, summaries):
        if summary is None:
            continue
        scored.append({
            "overrides": overrides,
            "summary": summary,
            "score": score_summary(summary, baseline, objective, constraints, cfg.treasury_start_usdc),
            "violations": constraint_violations(summary, constraints),
        })
    scored.sort(key=lambda item: item["score"], reverse=True)

    top = []
    for rank, item in enumerate(scored[:TOP_N], start=1):
        top.append({"rank": rank, **item})

    if top:
        logger.info("Optimizer finished: %d evaluated, best score %.2f", len(scored), top[0]["score"])
    else:
        logger.info("Optimizer finished: no candidates evaluated")

    return {
        "objective": objective,
        "results": top,
        "baseline": {
            "summary": baseline,
            "score": baseline_score,
            "violations": constraint_violations(baseline, constraints),
        },
        "evaluated": len(scored),
        "candidates": len(candidates),
    }
