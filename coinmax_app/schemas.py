from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


BlendMode = Literal["aggressive", "longterm", "weighted", "average"]
GrowthMode = Literal["flat", "exponential"]
MxBurnMode = Literal["usdc_value", "token_amount"]
MxBurnFrom = Literal["user", "treasury"]
Objective = Literal["max_safety", "balanced", "max_growth"]


class BuybackTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    drawdown_threshold: float = -0.30      # price/peak - 1 below this fires
    sold_over_lp_threshold: float = 0.20   # today's usdc_out / lp_usdc_begin above this fires
    lp_usdc_min_threshold: float = 20_000  # LP USDC reserve below this fires
    treasury_min_buffer: float = 50_000    # never spend the treasury below this

    @field_validator("drawdown_threshold")
    @classmethod
    def drawdown_range(cls, v):
        if v < -1 or v > 0:
            raise ValueError("drawdown_threshold must be between -1 and 0")
        return v

    @field_validator("sold_over_lp_threshold", "lp_usdc_min_threshold", "treasury_min_buffer")
    @classmethod
    def non_negative(cls, v, info):
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v


class ModelParams(BaseModel):
    """Full policy configuration for one projection run.

    Flat on purpose: every field is a scalar, bool, enum string or a
    {day: rate} map so scenarios serialize to plain JSON.
    """

    model_config = ConfigDict(frozen=True)

    # ── AMM / liquidity pool ──
    price_token: float = 1.0               # fallback price when the pool is empty
    lp_usdc: float = 100_000
    lp_token: float = 100_000
    amm_fee_rate: float = 0.003
    sell_pressure_ratio: float = 0.5       # share of released tokens sold the same day

    # ── Growth ──
    growth_mode: GrowthMode = "flat"
    growth_rate: float = 0.2               # monthly compounding under "exponential"
    junior_monthly_new: float = 500
    senior_monthly_new: float = 100
    junior_max_nodes: int = 2_000
    senior_max_nodes: int = 1_000
    sim_days: int = 180

    # ── Node investment ──
    junior_invest_usdc: float = 100        # principal paid in, base of the lifetime cap
    senior_invest_usdc: float = 1_000
    junior_package_usdc: float = 1_000     # yield base
    senior_package_usdc: float = 10_000
    junior_daily_rate: float = 0.005
    senior_daily_rate: float = 0.009
    junior_bonus_ratio: float = 0.02       # milestone bonus as fraction of package
    senior_bonus_ratio: float = 0.02

    # ── Milestone ages (days since joining) ──
    junior_target_v2_days: int = 60
    junior_target_v3_days: int = 90
    senior_target_v1_days: int = 15
    senior_target_v2_days: int = 30
    senior_target_v3_days: int = 60
    senior_target_v4_days: int = 90
    senior_target_v6_days: int = 120

    # ── Lifetime cap ──
    max_out_multiple: float = 3.0
    cap_include_static: bool = True
    cap_include_dynamic: bool = True

    # ── Burn / vesting ──
    burn_schedule: Dict[int, float] = Field(
        default_factory=lambda: {0: 0.20, 7: 0.15, 15: 0.10, 30: 0.05, 60: 0.00}
    )
    burn_blend_mode: BlendMode = "average"
    linear_release_days: int = 30

    # ── Vault staking ──
    vault_rates: Dict[int, float] = Field(
        default_factory=lambda: {7: 0.005, 30: 0.007, 90: 0.009, 180: 0.012, 360: 0.015}
    )
    blend_mode: BlendMode = "average"
    platform_fee_ratio: float = 0.10
    vault_open_day: int = 30
    vault_open_on_node_full: bool = True
    vault_convert_ratio: float = 0.30      # share of node holders that also stake
    vault_monthly_new: float = 200         # external stakers in the first open month
    vault_user_growth_rate: float = 0.10
    vault_avg_stake_usdc: float = 500

    # ── Performance gating (required USDC per active agent per level) ──
    performance_gating_enabled: bool = False
    performance_discount: float = 0.5
    performance_required_v1: float = 50
    performance_required_v2: float = 100
    performance_required_v3: float = 200
    performance_required_v4: float = 400
    performance_required_v6: float = 1_600

    # ── MX burn gate ──
    mx_price_usdc: float = 1.0
    mx_burn_per_withdraw_ratio: float = 0.10
    mx_burn_mode: MxBurnMode = "usdc_value"
    mx_burn_from: MxBurnFrom = "user"

    # ── Treasury ──
    treasury_start_usdc: float = 100_000
    external_profit_monthly: float = 0
    external_profit_growth_rate: float = 0
    lp_owned_by_treasury: bool = False

    # ── Treasury defense ──
    treasury_defense_enabled: bool = True
    treasury_buyback_ratio: float = 0.10   # of today's gross treasury inflow
    treasury_buyback_daily_enabled: bool = False  # spend the base budget on calm days too
    treasury_redemption_ratio: float = 0.0
    treasury_buyback_trigger: BuybackTrigger = Field(default_factory=BuybackTrigger)

    # ── Insurance ──
    insurance_enabled: bool = False
    insurance_loss_threshold: float = 0.30        # loss vs peg that opens claims
    insurance_high_loss_threshold: float = 0.50   # loss vs peg that uses the high multiple
    insurance_min_usdc: float = 100
    insurance_max_usdc: float = 2_000
    insurance_payout_low_loss_multiple: float = 3
    insurance_payout_high_loss_multiple: float = 4

    # ── Referral ──
    referral_bonus_ratio: float = 0.05
    referral_participation_rate: float = 0.6

    # ── KPI targets for the stage report ──
    kpi_target_sold_over_lp: float = 0.25
    kpi_target_drawdown: float = 0.50
    kpi_target_treasury_stress: float = 0.10
    kpi_target_junior_90: float = 2_000
    kpi_target_senior_90: float = 500
    kpi_min_lp_usdc: float = 20_000
    kpi_target_vault_stakers_90: float = 500
    kpi_target_performance_rate: float = 0.8

    @field_validator("sim_days")
    @classmethod
    def sim_days_range(cls, v):
        if v < 1 or v > 3_650:
            raise ValueError("sim_days must be between 1 and 3650")
        return v

    @field_validator("lp_usdc", "lp_token")
    @classmethod
    def reserves_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator(
        "amm_fee_rate",
        "sell_pressure_ratio",
        "platform_fee_ratio",
        "vault_convert_ratio",
        "performance_discount",
        "mx_burn_per_withdraw_ratio",
        "treasury_buyback_ratio",
        "treasury_redemption_ratio",
        "insurance_loss_threshold",
        "insurance_high_loss_threshold",
        "referral_bonus_ratio",
        "referral_participation_rate",
        "kpi_target_performance_rate",
    )
    @classmethod
    def unit_range(cls, v, info):
        if v < 0 or v > 1:
            raise ValueError(f"{info.field_name} must be between 0 and 1")
        return v

    @field_validator(
        "price_token",
        "mx_price_usdc",
        "max_out_multiple",
        "kpi_target_sold_over_lp",
        "kpi_target_drawdown",
        "kpi_target_treasury_stress",
    )
    @classmethod
    def positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator(
        "growth_rate",
        "junior_monthly_new",
        "senior_monthly_new",
        "junior_max_nodes",
        "senior_max_nodes",
        "junior_invest_usdc",
        "senior_invest_usdc",
        "junior_package_usdc",
        "senior_package_usdc",
        "junior_daily_rate",
        "senior_daily_rate",
        "junior_bonus_ratio",
        "senior_bonus_ratio",
        "linear_release_days",
        "vault_open_day",
        "vault_monthly_new",
        "vault_user_growth_rate",
        "vault_avg_stake_usdc",
        "external_profit_monthly",
        "insurance_min_usdc",
        "insurance_max_usdc",
        "kpi_target_junior_90",
        "kpi_target_senior_90",
        "kpi_min_lp_usdc",
        "kpi_target_vault_stakers_90",
    )
    @classmethod
    def non_negative(cls, v, info):
        if v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v

    @field_validator(
        "junior_target_v2_days",
        "junior_target_v3_days",
        "senior_target_v1_days",
        "senior_target_v2_days",
        "senior_target_v3_days",
        "senior_target_v4_days",
        "senior_target_v6_days",
    )
    @classmethod
    def milestone_days_positive(cls, v, info):
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return v

    @field_validator("burn_schedule", "vault_rates")
    @classmethod
    def schedule_entries(cls, v, info):
        for day, rate in v.items():
            if day < 0:
                raise ValueError(f"{info.field_name}: day keys must be >= 0, got {day}")
            if rate < 0:
                raise ValueError(f"{info.field_name}: rates must be >= 0, got {rate} at day {day}")
        return v

    def model_post_init(self, __context):
        if self.insurance_max_usdc < self.insurance_min_usdc:
            raise ValueError(
                f"insurance_max_usdc ({self.insurance_max_usdc}) must be >= "
                f"insurance_min_usdc ({self.insurance_min_usdc})"
            )


# ── Search requests ──

class FailRules(BaseModel):
    min_treasury_usdc: float = 0
    min_lp_usdc: float = 10_000
    max_price_drawdown: float = 0.5
    max_sold_over_lp: float = 0.1


class StressRange(BaseModel):
    key: str
    min: float
    max: float
    step: float

    @field_validator("step")
    @classmethod
    def step_positive(cls, v):
        if v <= 0:
            raise ValueError("step must be > 0")
        return v

    def model_post_init(self, __context):
        if self.max < self.min:
            raise ValueError(f"Range '{self.key}': max ({self.max}) must be >= min ({self.min})")


class StressConfig(BaseModel):
    ranges: List[StressRange]
    fail_rules: FailRules = Field(default_factory=FailRules)
    max_runs: int = 500

    @field_validator("max_runs")
    @classmethod
    def max_runs_range(cls, v):
        if v < 1 or v > 20_000:
            raise ValueError("max_runs must be between 1 and 20000")
        return v


class StressTestInput(BaseModel):
    config: ModelParams = Field(default_factory=ModelParams)
    stress: StressConfig
    include_thresholds: bool = False


class ThresholdInput(BaseModel):
    config: ModelParams = Field(default_factory=ModelParams)
    fail_rules: FailRules = Field(default_factory=FailRules)


class OptimizerConstraints(BaseModel):
    min_treasury_usdc: float = 0
    min_lp_usdc: float = 10_000
    max_drawdown: float = 0.5
    max_sold_over_lp: float = 0.1
    min_vault_stakers: float = 0


class OptSearchRange(BaseModel):
    key: str
    label: str = ""
    values: List[float]
    enabled: bool = True

    @field_validator("values")
    @classmethod
    def values_non_empty(cls, v):
        if not v:
            raise ValueError("values must contain at least one candidate")
        return v


class OptimizerInput(BaseModel):
    config: ModelParams = Field(default_factory=ModelParams)
    objective: Objective = "balanced"
    constraints: OptimizerConstraints = Field(default_factory=OptimizerConstraints)
    ranges: Optional[List[OptSearchRange]] = None  # None → DEFAULT_OPT_RANGES
    max_iterations: int = 500
    random_seed: Optional[int] = None

    @field_validator("max_iterations")
    @classmethod
    def iterations_range(cls, v):
        if v < 1 or v > 5_000:
            raise ValueError("max_iterations must be between 1 and 5000")
        return v
