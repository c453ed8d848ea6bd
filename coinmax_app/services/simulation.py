import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from coinmax_app.schemas import ModelParams
from coinmax_app.services.blend import blend_rate, blend_yield_rate


DAYS_PER_MONTH = 30
TIERS = ("junior", "senior")

# Share of a performance shortfall that is lost for good; the rest carries to
# the cohort's next milestone. Fixed 50/50 for now.
SHORTFALL_FORFEIT_SHARE = 0.5

TOTAL_KEYS = (
    "total_ar_emitted",
    "total_ar_burned",
    "total_ar_sold",
    "total_ar_buyback",
    "total_ar_redeemed",
    "total_usdc_redemptions",
    "total_mx_burned",
    "total_referral_payout",
    "total_payout_usdc",
    "total_principal_inflow",
    "total_buyback_usdc",
    "total_insurance_payout",
    "total_vault_platform_income",
    "total_forfeited_usdc",
)


# ── Engine records ──

@dataclass(frozen=True)
class Milestone:
    age: int
    has_bonus: bool
    level: str


@dataclass
class Cohort:
    """Same-day joiners of one tier. Money fields are per user."""

    tier: str
    start_day: int
    users: int
    invest_usdc: float
    package_usdc: float
    earned_usdc: float = 0.0       # counted toward the lifetime cap
    is_maxed: bool = False
    carry_usdc: float = 0.0        # shortfall carried to the next milestone
    next_milestone: int = 0

    def cap_usdc(self, max_out_multiple: float) -> float:
        return self.invest_usdc * max_out_multiple


@dataclass
class ReleaseQueueItem:
    remaining: float
    days_left: int

    def release(self) -> float:
        """Release today's pro-rata share; the last day releases what is left."""
        if self.days_left <= 0:
            return 0.0
        amount = self.remaining / self.days_left
        self.remaining -= amount
        self.days_left -= 1
        return amount


@dataclass
class SimulationState:
    lp_usdc: float
    lp_token: float
    treasury: float
    fallback_price: float
    peg_price: float
    peak_price: float
    prev_price: float
    junior_cum: int = 0
    senior_cum: int = 0
    cohorts: Dict[str, List[Cohort]] = field(default_factory=lambda: {t: [] for t in TIERS})
    retired_cohorts: List[Cohort] = field(default_factory=list)
    release_queue: List[ReleaseQueueItem] = field(default_factory=list)
    vault_open: bool = False
    vault_open_day: Optional[int] = None
    totals: Dict[str, float] = field(default_factory=lambda: dict.fromkeys(TOTAL_KEYS, 0.0))

    @classmethod
    def from_params(cls, params: ModelParams) -> "SimulationState":
        price0 = pool_price(params.lp_usdc, params.lp_token, params.price_token)
        return cls(
            lp_usdc=float(params.lp_usdc),
            lp_token=float(params.lp_token),
            treasury=float(params.treasury_start_usdc),
            fallback_price=float(params.price_token),
            peg_price=price0,
            peak_price=price0,
            prev_price=price0,
        )

    @property
    def price(self) -> float:
        return pool_price(self.lp_usdc, self.lp_token, self.fallback_price)

    def all_cohorts(self) -> List[Cohort]:
        return self.retired_cohorts + [c for t in TIERS for c in self.cohorts[t]]


# ── Constant-product pool ──

def pool_price(lp_usdc: float, lp_token: float, fallback: float) -> float:
    if lp_usdc > 0 and lp_token > 0:
        return lp_usdc / lp_token
    return fallback


def swap_token_for_usdc(
    lp_usdc: float, lp_token: float, token_in: float, fee_rate: float
) -> Tuple[float, float, float]:
    """Sell tokens into the pool, fee taken from the input.

    Returns (usdc_out, new_lp_usdc, new_lp_token). An empty pool or a
    non-positive input is a no-op.
    """
    if token_in <= 0 or lp_usdc <= 0 or lp_token <= 0:
        return 0.0, lp_usdc, lp_token
    k = lp_usdc * lp_token
    new_lp_token = lp_token + token_in * (1.0 - fee_rate)
    new_lp_usdc = k / new_lp_token
    return lp_usdc - new_lp_usdc, new_lp_usdc, new_lp_token


def swap_usdc_for_token(
    lp_usdc: float, lp_token: float, usdc_in: float, fee_rate: float
) -> Tuple[float, float, float]:
    """Buy tokens from the pool with USDC. Returns (token_out, new_lp_usdc, new_lp_token)."""
    if usdc_in <= 0 or lp_usdc <= 0 or lp_token <= 0:
        return 0.0, lp_usdc, lp_token
    k = lp_usdc * lp_token
    new_lp_usdc = lp_usdc + usdc_in * (1.0 - fee_rate)
    new_lp_token = k / new_lp_usdc
    return lp_token - new_lp_token, new_lp_usdc, new_lp_token


# ── Policy helpers ──

def tier_milestones(params: ModelParams) -> Dict[str, List[Milestone]]:
    junior = [
        Milestone(params.junior_target_v2_days, False, "v2"),
        Milestone(params.junior_target_v3_days, True, "v3"),
    ]
    senior = [
        Milestone(params.senior_target_v1_days, False, "v1"),
        Milestone(params.senior_target_v2_days, True, "v2"),
        Milestone(params.senior_target_v3_days, True, "v3"),
        Milestone(params.senior_target_v4_days, True, "v4"),
        Milestone(params.senior_target_v6_days, True, "v6"),
    ]
    return {
        "junior": sorted(junior, key=lambda m: m.age),
        "senior": sorted(senior, key=lambda m: m.age),
    }


def _required_performance(params: ModelParams) -> Dict[str, float]:
    return {
        "v1": params.performance_required_v1,
        "v2": params.performance_required_v2,
        "v3": params.performance_required_v3,
        "v4": params.performance_required_v4,
        "v6": params.performance_required_v6,
    }


def _tier_terms(params: ModelParams, tier: str) -> Dict[str, float]:
    if tier == "junior":
        return {
            "monthly_new": params.junior_monthly_new,
            "max_nodes": params.junior_max_nodes,
            "invest": params.junior_invest_usdc,
            "package": params.junior_package_usdc,
            "daily_rate": params.junior_daily_rate,
            "bonus_ratio": params.junior_bonus_ratio,
        }
    if tier == "senior":
        return {
            "monthly_new": params.senior_monthly_new,
            "max_nodes": params.senior_max_nodes,
            "invest": params.senior_invest_usdc,
            "package": params.senior_package_usdc,
            "daily_rate": params.senior_daily_rate,
            "bonus_ratio": params.senior_bonus_ratio,
        }
    raise ValueError(f"Unknown tier '{tier}'")


def monthly_new_users(params: ModelParams, base: float, month_idx: int) -> float:
    if params.growth_mode == "flat":
        return base
    if params.growth_mode == "exponential":
        return base * (1.0 + params.growth_rate) ** (month_idx - 1)
    raise ValueError(f"Unknown growth_mode '{params.growth_mode}'")


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def vault_stakers(params: ModelParams, day: int, open_day: int, cumulative_nodes: int) -> float:
    """Converted node holders plus the external staker cohort since opening."""
    converted = params.vault_convert_ratio * cumulative_nodes

    months_open = max(day - open_day, 0) / DAYS_PER_MONTH
    full_months = int(months_open)
    partial = months_open - full_months
    base = params.vault_monthly_new
    g = params.vault_user_growth_rate
    if g == 0:
        external = base * months_open
    else:
        # geometric sum of completed months + linear share of the current one
        external = base * ((1.0 + g) ** full_months - 1.0) / g
        external += partial * base * (1.0 + g) ** full_months
    return converted + external


def _check_preconditions(params: ModelParams) -> None:
    if params.sim_days < 1:
        raise ValueError(f"sim_days must be >= 1, got {params.sim_days}")
    if params.lp_usdc < 0 or params.lp_token < 0:
        raise ValueError("LP reserves must be >= 0")
    if params.linear_release_days < 0:
        raise ValueError("linear_release_days must be >= 0")


# ── Day-step pieces ──

def _grow(state: SimulationState, params: ModelParams, day: int, month_idx: int) -> Dict[str, int]:
    new_users = {}
    for tier in TIERS:
        terms = _tier_terms(params, tier)
        cumulative = state.junior_cum if tier == "junior" else state.senior_cum
        room = max(int(terms["max_nodes"]) - cumulative, 0)
        count = _round_half_up(monthly_new_users(params, terms["monthly_new"], month_idx) / DAYS_PER_MONTH)
        count = min(max(count, 0), room)
        if count > 0:
            state.cohorts[tier].append(Cohort(
                tier=tier,
                start_day=day,
                users=count,
                invest_usdc=float(terms["invest"]),
                package_usdc=float(terms["package"]),
            ))
        if tier == "junior":
            state.junior_cum += count
        else:
            state.senior_cum += count
        new_users[tier] = count
    return new_users


def _pay_milestones(
    state: SimulationState,
    params: ModelParams,
    day: int,
    milestones: Dict[str, List[Milestone]],
    staked_usdc: float,
) -> Dict[str, float]:
    active_agents = sum(c.users for t in TIERS for c in state.cohorts[t])
    perf_per_agent = (
        staked_usdc * params.performance_discount / active_agents if active_agents > 0 else 0.0
    )
    required = _required_performance(params)

    out = {
        "raw": 0.0,
        "capped": 0.0,
        "forfeited": 0.0,
        "carried": 0.0,
        "junior_users": 0,
        "senior_users": 0,
    }
    pass_rates = []

    for tier in TIERS:
        terms = _tier_terms(params, tier)
        plan = milestones[tier]
        for cohort in state.cohorts[tier]:
            age = day - cohort.start_day
            while (
                not cohort.is_maxed
                and cohort.next_milestone < len(plan)
                and plan[cohort.next_milestone].age == age
            ):
                idx = cohort.next_milestone
                ms = plan[idx]
                prev_age = plan[idx - 1].age if idx > 0 else 0
                static = cohort.package_usdc * terms["daily_rate"] * (ms.age - prev_age)
                bonus = cohort.package_usdc * terms["bonus_ratio"] if ms.has_bonus else 0.0
                carry_in = cohort.carry_usdc
                entitlement = static + bonus + carry_in

                if params.performance_gating_enabled:
                    req = required[ms.level]
                    pass_rate = min(max(perf_per_agent / req, 0.0), 1.0) if req > 0 else 1.0
                    pass_rates.append(pass_rate)
                else:
                    pass_rate = 1.0

                paid = entitlement * pass_rate
                shortfall = entitlement - paid
                is_last = idx == len(plan) - 1
                forfeit = shortfall if is_last else shortfall * SHORTFALL_FORFEIT_SHARE
                carry = shortfall - forfeit

                # carried-in shortfall counts as static accrual for the cap
                counted_share = 0.0
                if entitlement > 0:
                    counted_share = (
                        (static + carry_in) * params.cap_include_static
                        + bonus * params.cap_include_dynamic
                    ) / entitlement
                counted = paid * counted_share
                uncounted = paid - counted
                room = max(cohort.cap_usdc(params.max_out_multiple) - cohort.earned_usdc, 0.0)
                if counted >= room:
                    counted = room
                    cohort.is_maxed = True
                    forfeit += carry
                    carry = 0.0

                cohort.earned_usdc += counted
                cohort.carry_usdc = carry
                cohort.next_milestone += 1

                out["raw"] += paid * cohort.users
                out["capped"] += (uncounted + counted) * cohort.users
                out["forfeited"] += forfeit * cohort.users
                out["carried"] += carry * cohort.users
                out[f"{tier}_users"] += cohort.users

        # cohorts that maxed out or passed their last milestone stop earning
        still_active = []
        for cohort in state.cohorts[tier]:
            if cohort.is_maxed or cohort.next_milestone >= len(plan):
                state.retired_cohorts.append(cohort)
            else:
                still_active.append(cohort)
        state.cohorts[tier] = still_active

    out["performance_checks"] = len(pass_rates)
    out["performance_pass_rate"] = sum(pass_rates) / len(pass_rates) if pass_rates else 1.0
    return out


def _release_tokens(state: SimulationState, params: ModelParams, payout_ar: float, burn_rate: float) -> Dict[str, float]:
    instant = payout_ar * (1.0 - burn_rate)
    vested = payout_ar * burn_rate
    if vested > 0:
        if params.linear_release_days > 0:
            state.release_queue.append(ReleaseQueueItem(remaining=vested, days_left=params.linear_release_days))
        else:
            instant += vested

    linear = sum(item.release() for item in state.release_queue)
    state.release_queue = [item for item in state.release_queue if item.days_left > 0]
    return {"instant": instant, "linear": linear, "released": instant + linear}


def _step_day(
    state: SimulationState,
    params: ModelParams,
    day: int,
    milestones: Dict[str, List[Milestone]],
    burn_rate: float,
    staking_rate: float,
) -> dict:
    month_idx = (day - 1) // DAYS_PER_MONTH + 1
    trigger_cfg = params.treasury_buyback_trigger
    buffer = trigger_cfg.treasury_min_buffer

    # 1. Growth
    new_users = _grow(state, params, day, month_idx)
    principal_inflow = (
        new_users["junior"] * params.junior_invest_usdc
        + new_users["senior"] * params.senior_invest_usdc
    )

    # 2. Vault phase gate
    if not state.vault_open:
        nodes_full = (
            state.junior_cum >= params.junior_max_nodes
            and state.senior_cum >= params.senior_max_nodes
        )
        if day >= params.vault_open_day or (params.vault_open_on_node_full and nodes_full):
            state.vault_open = True
            state.vault_open_day = day

    stakers = 0.0
    staked_usdc = 0.0
    vault_profit = 0.0
    vault_income = 0.0
    if state.vault_open:
        stakers = vault_stakers(params, day, state.vault_open_day, state.junior_cum + state.senior_cum)
        staked_usdc = stakers * params.vault_avg_stake_usdc
        vault_profit = staked_usdc * staking_rate
        vault_income = vault_profit * params.platform_fee_ratio

    # 3. Milestone payouts
    payout = _pay_milestones(state, params, day, milestones, staked_usdc)
    price_begin = state.price
    payout_ar = payout["capped"] / price_begin if price_begin > 0 else 0.0

    # 4. Burn / vesting split
    release = _release_tokens(state, params, payout_ar, burn_rate)
    released = release["released"]

    treasury_begin = state.treasury
    external_profit = (
        params.external_profit_monthly / DAYS_PER_MONTH
        * (1.0 + params.external_profit_growth_rate) ** (month_idx - 1)
    )
    treasury_inflow = principal_inflow + external_profit + vault_income
    available = treasury_begin + treasury_inflow

    # 5. MX burn gate
    if params.mx_burn_mode == "usdc_value":
        burn_notional = payout["capped"]
    elif params.mx_burn_mode == "token_amount":
        burn_notional = released * price_begin
    else:
        raise ValueError(f"Unknown mx_burn_mode '{params.mx_burn_mode}'")
    mx_burn_usdc = burn_notional * params.mx_burn_per_withdraw_ratio
    mx_burned = mx_burn_usdc / params.mx_price_usdc if params.mx_price_usdc > 0 else 0.0
    treasury_burn_usdc = mx_burn_usdc if params.mx_burn_from == "treasury" else 0.0
    available -= treasury_burn_usdc

    # 6. Treasury redemption, before anything reaches the market
    redeemed_ar = released * params.treasury_redemption_ratio
    redemption_usdc = redeemed_ar * price_begin
    redemption_budget = max(available - buffer, 0.0)
    if redemption_usdc > redemption_budget:
        redemption_usdc = redemption_budget
        redeemed_ar = redemption_budget / price_begin if price_begin > 0 else 0.0
    available -= redemption_usdc

    # 7. Market sale
    sold_ar = (released - redeemed_ar) * params.sell_pressure_ratio
    lp_usdc_begin = state.lp_usdc
    lp_token_begin = state.lp_token
    usdc_out, state.lp_usdc, state.lp_token = swap_token_for_usdc(
        state.lp_usdc, state.lp_token, sold_ar, params.amm_fee_rate
    )
    if usdc_out <= 0:
        sold_ar = 0.0
    lp_usdc_after_sale = state.lp_usdc
    lp_token_after_sale = state.lp_token
    price_after_sale = state.price
    lp_share_usdc = usdc_out if params.lp_owned_by_treasury else 0.0
    available -= lp_share_usdc

    # 8. Treasury defense
    peak_so_far = max(state.peak_price, price_after_sale)
    drawdown_now = price_after_sale / peak_so_far - 1.0 if peak_so_far > 0 else 0.0
    sold_over_lp = usdc_out / lp_usdc_begin if lp_usdc_begin > 0 else 0.0
    trigger_drawdown = drawdown_now < trigger_cfg.drawdown_threshold
    trigger_sold_over_lp = sold_over_lp > trigger_cfg.sold_over_lp_threshold
    trigger_lp_low = lp_usdc_after_sale < trigger_cfg.lp_usdc_min_threshold
    defense_triggered = params.treasury_defense_enabled and (
        trigger_drawdown or trigger_sold_over_lp or trigger_lp_low
    )

    base_budget = params.treasury_buyback_ratio * treasury_inflow
    if defense_triggered:
        buyback_budget = 2.0 * base_budget
    elif params.treasury_defense_enabled and params.treasury_buyback_daily_enabled:
        buyback_budget = base_budget
    else:
        buyback_budget = 0.0
    buyback_budget = min(buyback_budget, max(available - buffer, 0.0))

    buyback_ar, state.lp_usdc, state.lp_token = swap_usdc_for_token(
        state.lp_usdc, state.lp_token, buyback_budget, params.amm_fee_rate
    )
    buyback_usdc = buyback_budget if buyback_ar > 0 else 0.0
    available -= buyback_usdc

    # 9. Finalize market state
    price_end = state.price
    state.peak_price = max(state.peak_price, price_end)
    drawdown = (state.peak_price - price_end) / state.peak_price if state.peak_price > 0 else 0.0
    price_change = price_end / state.prev_price - 1.0 if state.prev_price > 0 else 0.0
    state.prev_price = price_end

    # 10. Ancillary flows
    insurance_usdc = 0.0
    if params.insurance_enabled and state.peg_price > 0 and usdc_out > 0:
        loss = 1.0 - price_end / state.peg_price
        if loss >= params.insurance_loss_threshold:
            multiple = (
                params.insurance_payout_high_loss_multiple
                if loss >= params.insurance_high_loss_threshold
                else params.insurance_payout_low_loss_multiple
            )
            insurance_usdc = min(usdc_out * loss * multiple, params.insurance_max_usdc)
            if insurance_usdc < params.insurance_min_usdc:
                insurance_usdc = 0.0
    referral_usdc = principal_inflow * params.referral_bonus_ratio * params.referral_participation_rate

    # 11. Treasury close
    treasury_outflow = (
        redemption_usdc
        + buyback_usdc
        + treasury_burn_usdc
        + lp_share_usdc
        + insurance_usdc
        + referral_usdc
    )
    treasury_end = treasury_begin + treasury_inflow - treasury_outflow
    state.treasury = treasury_end

    totals = state.totals
    totals["total_ar_emitted"] += payout_ar
    totals["total_ar_burned"] += buyback_ar
    totals["total_ar_sold"] += sold_ar
    totals["total_ar_buyback"] += buyback_ar
    totals["total_ar_redeemed"] += redeemed_ar
    totals["total_usdc_redemptions"] += redemption_usdc
    totals["total_mx_burned"] += mx_burned
    totals["total_referral_payout"] += referral_usdc
    totals["total_payout_usdc"] += payout["capped"]
    totals["total_principal_inflow"] += principal_inflow
    totals["total_buyback_usdc"] += buyback_usdc
    totals["total_insurance_payout"] += insurance_usdc
    totals["total_vault_platform_income"] += vault_income
    totals["total_forfeited_usdc"] += payout["forfeited"]

    return {
        "day": day,
        "month_idx": month_idx,
        "junior_new": new_users["junior"],
        "senior_new": new_users["senior"],
        "junior_cum": state.junior_cum,
        "senior_cum": state.senior_cum,
        "junior_milestone_users": payout["junior_users"],
        "senior_milestone_users": payout["senior_users"],
        "node_payout_usdc_raw": payout["raw"],
        "node_payout_usdc_capped": payout["capped"],
        "payout_forfeited_usdc": payout["forfeited"],
        "payout_carried_usdc": payout["carried"],
        "performance_checks": payout["performance_checks"],
        "performance_pass_rate": payout["performance_pass_rate"],
        "payout_ar_today": payout_ar,
        "burn_rate": burn_rate,
        "instant_release_ar": release["instant"],
        "linear_release_ar": release["linear"],
        "released_ar_today": released,
        "release_queue_len": len(state.release_queue),
        "mx_burn_usdc": mx_burn_usdc,
        "mx_burned_today": mx_burned,
        "redeemed_ar_today": redeemed_ar,
        "redemption_usdc": redemption_usdc,
        "sold_ar_today": sold_ar,
        "lp_usdc_begin": lp_usdc_begin,
        "lp_token_begin": lp_token_begin,
        "lp_usdc_after_sale": lp_usdc_after_sale,
        "lp_token_after_sale": lp_token_after_sale,
        "amm_fee_rate": params.amm_fee_rate,
        "usdc_out": usdc_out,
        "price_begin": price_begin,
        "price_after_sale": price_after_sale,
        "defense_triggered": defense_triggered,
        "trigger_drawdown": trigger_drawdown,
        "trigger_sold_over_lp": trigger_sold_over_lp,
        "trigger_lp_low": trigger_lp_low,
        "buyback_budget_usdc": buyback_budget,
        "buyback_usdc": buyback_usdc,
        "buyback_ar": buyback_ar,
        "lp_usdc_end": state.lp_usdc,
        "lp_token_end": state.lp_token,
        "price_end": price_end,
        "peak_price": state.peak_price,
        "drawdown": drawdown,
        "sold_over_lp": sold_over_lp,
        "price_change": price_change,
        "vault_open": state.vault_open,
        "vault_open_day": state.vault_open_day,
        "vault_stakers": stakers,
        "vault_total_staked_usdc": staked_usdc,
        "vault_profit_usdc": vault_profit,
        "vault_platform_income": vault_income,
        "insurance_payout_usdc": insurance_usdc,
        "referral_payout_usdc": referral_usdc,
        "principal_inflow": principal_inflow,
        "external_profit_usdc": external_profit,
        "treasury_begin": treasury_begin,
        "treasury_inflow": treasury_inflow,
        "treasury_outflow": treasury_outflow,
        "treasury_end": treasury_end,
        **totals,
    }


def run_with_state(params: ModelParams) -> Tuple[List[dict], SimulationState]:
    """Run the projection and also hand back the final engine state (cohorts, queue)."""
    _check_preconditions(params)

    state = SimulationState.from_params(params)
    milestones = tier_milestones(params)
    burn_rate = blend_rate(params.burn_schedule, params.burn_blend_mode)
    staking_rate = blend_yield_rate(params.vault_rates, params.blend_mode)

    rows = []
    for day in range(1, params.sim_days + 1):
        rows.append(_step_day(state, params, day, milestones, burn_rate, staking_rate))
    return rows, state


def simulate(params: ModelParams) -> List[dict]:
    """Project the economy day by day. Pure: same params, same rows."""
    rows, _ = run_with_state(params)
    return rows
