from typing import List

from coinmax_app.schemas import ModelParams


STAGE_DAYS = [15, 30, 60, 90, 120, 150, 180, 210, 360]

# ── Pressure score ──
PRESSURE_WEIGHTS = {"sold_over_lp": 0.40, "drawdown": 0.35, "treasury_stress": 0.25}
PRESSURE_SUBSCORE_CAP = 2.0
PRESSURE_LABELS = [(30, "SAFE"), (60, "WATCH"), (80, "RISK")]

# ── Sustainability (payout / principal) ──
SUSTAINABILITY_LABELS = [(0.6, "HEALTHY"), (1.0, "TIGHT")]

GROWTH_PASS_RATIO = 0.8
VAULT_PASS_RATIO = 0.8
TARGET_HORIZON_DAYS = 90

RECOMMENDATIONS = {
    "pressure": (
        "Market pressure is elevated: raise treasury_buyback_ratio or lower "
        "sell_pressure_ratio to relieve the pool."
    ),
    "sustainability": (
        "Payouts outpace principal inflow: lower daily rates or max_out_multiple, "
        "or raise the burn share."
    ),
    "liquidity": "LP depth is below the minimum: seed more USDC into the pool.",
    "growth": "Node growth is behind target: revisit acquisition or referral incentives.",
    "vault": "Vault staking is behind target: raise staking rates or the convert ratio.",
    "performance": (
        "Performance pass rate is below target: lower required performance "
        "or the discount on staked volume."
    ),
}
HEALTHY_RECOMMENDATION = "All stage KPIs are within target; keep current parameters."


def pressure_label(score: float) -> str:
    for ceiling, label in PRESSURE_LABELS:
        if score <= ceiling:
            return label
    return "DANGER"


def sustainability_label(payout_ratio: float) -> str:
    for ceiling, label in SUSTAINABILITY_LABELS:
        if payout_ratio <= ceiling:
            return label
    return "UNSUSTAINABLE"


def pressure_score(sold_over_lp: float, drawdown: float, treasury_stress: float, params: ModelParams) -> float:
    """0-100 score; each part is value/target capped at 2x, weighted and halved."""
    parts = {
        "sold_over_lp": sold_over_lp / params.kpi_target_sold_over_lp,
        "drawdown": drawdown / params.kpi_target_drawdown,
        "treasury_stress": treasury_stress / params.kpi_target_treasury_stress,
    }
    weighted = sum(
        PRESSURE_WEIGHTS[k] * min(max(v, 0.0), PRESSURE_SUBSCORE_CAP) for k, v in parts.items()
    )
    return 100.0 * weighted / PRESSURE_SUBSCORE_CAP


def _payout_ratio(payout: float, principal: float) -> float:
    if principal > 0:
        return payout / principal
    return float("inf") if payout > 0 else 0.0


def _completion(actual: float, target: float) -> float:
    if target <= 0:
        return 1.0
    return actual / target


def compute_stage_report(rows: List[dict], params: ModelParams) -> List[dict]:
    """One KPI checkpoint per stage day inside the simulated horizon."""
    if not rows:
        return []

    checkpoints = []
    for stage_day in STAGE_DAYS:
        if stage_day > len(rows):
            break
        prefix = rows[:stage_day]
        r = prefix[-1]

        peak = 0.0
        max_drawdown = 0.0
        min_treasury = float("inf")
        min_lp = float("inf")
        max_sol = 0.0
        checks = 0
        pass_weighted = 0.0
        for s in prefix:
            peak = max(peak, s["price_end"])
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - s["price_end"]) / peak)
            min_treasury = min(min_treasury, s["treasury_end"])
            min_lp = min(min_lp, s["lp_usdc_end"])
            max_sol = max(max_sol, s["sold_over_lp"])
            checks += s["performance_checks"]
            pass_weighted += s["performance_pass_rate"] * s["performance_checks"]

        treasury_stress = (
            max(-min_treasury, 0.0) / params.treasury_start_usdc if params.treasury_start_usdc > 0 else 0.0
        )
        score = pressure_score(max_sol, max_drawdown, treasury_stress, params)
        p_label = pressure_label(score)

        total_payout = r["total_payout_usdc"]
        total_principal = r["total_principal_inflow"]
        payout_ratio = _payout_ratio(total_payout, total_principal)
        s_label = sustainability_label(payout_ratio)

        liquidity = "PASS" if r["lp_usdc_end"] >= params.kpi_min_lp_usdc else "FAIL"

        horizon_share = min(stage_day / TARGET_HORIZON_DAYS, 1.0)
        junior_completion = _completion(r["junior_cum"], params.kpi_target_junior_90 * horizon_share)
        senior_completion = _completion(r["senior_cum"], params.kpi_target_senior_90 * horizon_share)
        growth = (
            "PASS"
            if junior_completion >= GROWTH_PASS_RATIO and senior_completion >= GROWTH_PASS_RATIO
            else "FAIL"
        )

        vault_completion = None
        if r["vault_open"]:
            days_open = stage_day - r["vault_open_day"] + 1
            vault_target = params.kpi_target_vault_stakers_90 * min(days_open / TARGET_HORIZON_DAYS, 1.0)
            vault_completion = _completion(r["vault_stakers"], vault_target)
            vault = "PASS" if vault_completion >= VAULT_PASS_RATIO else "FAIL"
        else:
            vault = "N/A"

        avg_pass_rate = pass_weighted / checks if checks else 1.0
        performance_ok = (
            not params.performance_gating_enabled
            or avg_pass_rate >= params.kpi_target_performance_rate
        )

        failing = []
        if p_label in ("RISK", "DANGER"):
            failing.append("pressure")
        if s_label == "UNSUSTAINABLE":
            failing.append("sustainability")
        if liquidity == "FAIL":
            failing.append("liquidity")
        if growth == "FAIL":
            failing.append("growth")
        if vault == "FAIL":
            failing.append("vault")
        if not performance_ok:
            failing.append("performance")
        if failing:
            recommendation = " ".join(RECOMMENDATIONS[k] for k in failing)
        else:
            recommendation = HEALTHY_RECOMMENDATION

        nodes = r["junior_cum"] + r["senior_cum"]
        checkpoints.append({
            "day": stage_day,
            "price": r["price_end"],
            "drawdown": max_drawdown,
            "treasury": r["treasury_end"],
            "min_treasury": min_treasury,
            "lp_usdc": r["lp_usdc_end"],
            "min_lp_usdc": min_lp,
            "max_sold_over_lp": max_sol,
            "total_payout_usdc": total_payout,
            "total_principal_inflow": total_principal,
            "payout_ratio": payout_ratio,
            "treasury_stress": treasury_stress,
            "pressure_score": score,
            "pressure_label": p_label,
            "sustainability_label": s_label,
            "liquidity": liquidity,
            "growth": growth,
            "vault": vault,
            "junior_completion": junior_completion,
            "senior_completion": senior_completion,
            "vault_completion": vault_completion,
            "avg_performance_pass_rate": avg_pass_rate,
            "growth_velocity": nodes / stage_day,
            "avg_invest_per_node": total_principal / nodes if nodes else 0.0,
            "referral_cost_ratio": (
                r["total_referral_payout"] / total_principal if total_principal > 0 else 0.0
            ),
            "total_buyback_usdc": r["total_buyback_usdc"],
            "total_ar_buyback": r["total_ar_buyback"],
            "total_ar_burned": r["total_ar_burned"],
            "total_usdc_redemptions": r["total_usdc_redemptions"],
            "total_mx_burned": r["total_mx_burned"],
            "net_sell_pressure": r["total_ar_sold"] - r["total_ar_buyback"],
            "junior_cum": r["junior_cum"],
            "senior_cum": r["senior_cum"],
            "recommendation": recommendation,
        })

    return checkpoints
