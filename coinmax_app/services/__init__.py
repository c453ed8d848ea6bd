from coinmax_app.services.blend import blend_key, blend_rate, blend_yield_rate
from coinmax_app.services.optimizer import run_optimizer
from coinmax_app.services.simulation import simulate
from coinmax_app.services.stage_report import compute_stage_report
from coinmax_app.services.stress_test import detect_fail, find_thresholds, run_stress_test, simulate_summary

__all__ = [
    "blend_key",
    "blend_rate",
    "blend_yield_rate",
    "compute_stage_report",
    "detect_fail",
    "find_thresholds",
    "run_optimizer",
    "run_stress_test",
    "simulate",
    "simulate_summary",
]
