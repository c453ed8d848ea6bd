"""
Named scenario store: one JSON file per saved ModelParams.

Files live under COINMAX_SCENARIO_DIR (default ./scenarios). Names are
restricted to a safe slug so they map 1:1 to file names.
"""

import json
import logging
import os
import re
import time
from pathlib import Path
from typing import List, Optional

from coinmax_app.schemas import ModelParams

logger = logging.getLogger(__name__)

# ── Storage location ──
SCENARIO_DIR_ENV = "COINMAX_SCENARIO_DIR"
_DEFAULT_DIR = "scenarios"

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


def scenario_dir(base: Optional[Path] = None) -> Path:
    if base is not None:
        return Path(base)
    return Path(os.environ.get(SCENARIO_DIR_ENV, _DEFAULT_DIR))


def _path_for(name: str, base: Optional[Path] = None) -> Path:
    if not _NAME_RE.match(name) or name.startswith("."):
        raise ValueError(f"Invalid scenario name '{name}': use letters, digits, '_', '-' or '.'")
    return scenario_dir(base) / f"{name}.json"


def list_scenarios(base: Optional[Path] = None) -> List[dict]:
    """Saved scenarios as {name, saved_at}, newest first."""
    folder = scenario_dir(base)
    if not folder.is_dir():
        return []
    entries = []
    for path in folder.glob("*.json"):
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        entries.append({"name": data["name"], "saved_at": data["saved_at"]})
    entries.sort(key=lambda e: e["saved_at"], reverse=True)
    return entries


def save_scenario(name: str, config: ModelParams, base: Optional[Path] = None) -> dict:
    """Create or replace a scenario."""
    path = _path_for(name, base)
    path.parent.mkdir(parents=True, exist_ok=True)
    entry = {"name": name, "saved_at": time.time(), "config": config.model_dump(mode="json")}
    tmp = path.with_suffix(".json.tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(entry, f, ensure_ascii=False, indent=2)
    tmp.replace(path)
    logger.info("Saved scenario '%s' to %s", name, path)
    return {"name": name, "saved_at": entry["saved_at"]}


def load_scenario(name: str, base: Optional[Path] = None) -> ModelParams:
    path = _path_for(name, base)
    if not path.is_file():
        raise KeyError(name)
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return ModelParams.model_validate(data["config"])


def delete_scenario(name: str, base: Optional[Path] = None) -> None:
    path = _path_for(name, base)
    if not path.is_file():
        raise KeyError(name)
    path.unlink()
    logger.info("Deleted scenario '%s'", name)
