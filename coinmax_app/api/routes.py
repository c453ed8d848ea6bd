import asyncio
import logging
import os
from functools import partial

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from coinmax_app.schemas import ModelParams, OptimizerInput, StressTestInput, ThresholdInput
from coinmax_app.services.optimizer import run_optimizer
from coinmax_app.services.scenarios import delete_scenario, list_scenarios, load_scenario, save_scenario
from coinmax_app.services.simulation import simulate
from coinmax_app.services.stage_report import compute_stage_report
from coinmax_app.services.stress_test import apply_overrides, find_thresholds, range_values, run_stress_test, summarize_rows
from coinmax_app.utils.csv_export import rows_to_csv
from coinmax_app.utils.json_safety import sanitize_floats

logger = logging.getLogger(__name__)

router = APIRouter()

# ── Worker processes per search request ──
SEARCH_WORKERS = int(os.environ.get("COINMAX_SEARCH_WORKERS", "1"))


def _check_axes(base: ModelParams, axes):
    """Reject a search whose key or any single axis value fails validation."""
    try:
        for key, values in axes:
            for value in values:
                apply_overrides(base, {key: value})
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


def _check_stress_keys(data: StressTestInput):
    _check_axes(data.config, [(r.key, range_values(r)) for r in data.stress.ranges])


async def _run_search(job, *args):
    # combinations can still break cross-field checks once merged
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, job, *args)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


def _simulate_bundle(params: ModelParams) -> dict:
    rows = simulate(params)
    return {
        "rows": rows,
        "summary": summarize_rows(rows),
        "stages": compute_stage_report(rows, params),
    }


def _stress_bundle(data: StressTestInput) -> dict:
    results = run_stress_test(data.config, data.stress, max_workers=SEARCH_WORKERS)
    failed = sum(1 for r in results if r["fail_reason"])
    out = {
        "results": results,
        "total": len(results),
        "passed": len(results) - failed,
        "failed": failed,
    }
    if data.include_thresholds:
        out["thresholds"] = find_thresholds(data.config, data.stress.fail_rules)
    return out


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/default-config")
async def default_config():
    return ModelParams().model_dump(mode="json")


@router.post("/simulate")
async def api_simulate(data: ModelParams):
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, _simulate_bundle, data)
    return sanitize_floats(result)


@router.post("/stage-report")
async def api_stage_report(data: ModelParams):
    loop = asyncio.get_running_loop()
    rows = await loop.run_in_executor(None, simulate, data)
    return sanitize_floats(compute_stage_report(rows, data))


@router.post("/stress-test")
async def api_stress_test(data: StressTestInput):
    _check_stress_keys(data)
    result = await _run_search(_stress_bundle, data)
    return sanitize_floats(result)


@router.post("/thresholds")
async def api_thresholds(data: ThresholdInput):
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, find_thresholds, data.config, data.fail_rules)
    return sanitize_floats(result)


@router.post("/optimize")
async def api_optimize(data: OptimizerInput):
    if data.ranges:
        _check_axes(data.config, [(r.key, r.values) for r in data.ranges if r.enabled])

    job = partial(
        run_optimizer,
        data.config,
        objective=data.objective,
        constraints=data.constraints,
        ranges=data.ranges,
        max_iterations=data.max_iterations,
        seed=data.random_seed,
        max_workers=SEARCH_WORKERS,
    )
    result = await _run_search(job)
    return sanitize_floats(result)


@router.post("/export/csv")
async def api_export_csv(data: ModelParams):
    loop = asyncio.get_running_loop()
    rows = await loop.run_in_executor(None, simulate, data)
    return Response(
        content=rows_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="coinmax_sim.csv"'},
    )


# ── Scenario store ──

@router.get("/scenarios")
async def api_list_scenarios():
    return list_scenarios()


@router.put("/scenarios/{name}")
async def api_save_scenario(name: str, data: ModelParams):
    try:
        return save_scenario(name, data)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.get("/scenarios/{name}")
async def api_load_scenario(name: str):
    try:
        return load_scenario(name).model_dump(mode="json")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Scenario '{name}' not found")


@router.delete("/scenarios/{name}")
async def api_delete_scenario(name: str):
    try:
        delete_scenario(name)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Scenario '{name}' not found")
    return {"ok": True}
