"""Configuration surface for an assignment run.

``build_config`` deep-copies ``DEFAULT_CONFIG``, merges caller overrides and
validates the result. The returned dict is read once per run and never
mutated by the engine.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Dict

from assignment_errors import ConfigurationError

MODEL_VERSION = "1.0.1"

BALANCE_INTENSITY_PRESETS: Dict[str, float] = {
    "VERY_LIGHT": 0.1,
    "LIGHT": 0.5,
    "NORMAL": 1.0,
    "HEAVY": 10.0,
    "VERY_HEAVY": 100.0,
}

# =============== CONFIG (flags + weights together) ====================
DEFAULT_CONFIG = {
    "MODEL_VERSION": MODEL_VERSION,
    # ISO date used by time-based scores and stability rules; None = today
    "AS_OF_DATE": None,

    # Per-unit slack penalties (deviation is measured in multiples of target)
    "LP_PENALTY": {
        "ALPHA": 0.01,   # inside the variance band
        "BETA": 0.1,     # between variance band and absolute limit
        "BIG_M": 100.0,  # beyond the absolute limit
    },
    "BALANCE_INTENSITY": "NORMAL",

    "BALANCE": {
        "arr": {"ENABLED": True, "TARGET": None, "VARIANCE": 0.10, "MIN": 0.0, "MAX": None},
        "atr": {"ENABLED": True, "TARGET": None, "VARIANCE": 0.15, "MIN": 0.0, "MAX": None},
        "pipeline": {"ENABLED": True, "TARGET": None, "VARIANCE": 0.15, "MIN": 0.0, "MAX": None},
        "tiers": {"ENABLED": True, "VARIANCE": 0.50},
        # default absolute max = target * (1 + VARIANCE + OVERLOAD_VARIANCE)
        "OVERLOAD_VARIANCE": 0.20,
    },

    # Global mode balances several metrics in one objective
    "METRIC_WEIGHTS": {
        "customer": {"arr": 0.50, "atr": 0.25, "tiers": 0.25},
        "prospect": {"pipeline": 0.50, "tiers": 0.50},
    },
    # Waterfall tiers balance only the primary metric of each pass
    "WATERFALL_METRICS": {
        "customer": ["arr"],
        "prospect": ["pipeline"],
    },

    "OBJECTIVE": {
        "TIE_BREAK_WEIGHT": 0.001,
        "REP_ORDER_WEIGHT": 0.001,
        "MIN_WEIGHT": 0.05,
        "DEFAULT_WEIGHTS": {"continuity": 0.35, "geography": 0.35, "team": 0.30},
        "MAX_COEFFICIENT_RATIO": 1e9,
    },

    "CONTINUITY": {
        "TENURE_MAX_DAYS": 730,
        "TENURE_WEIGHT": 0.35,
        "STABILITY_WEIGHT": 0.30,
        "VALUE_WEIGHT": 0.25,
        "BASE": 0.10,
        "STABILITY_MAX_OWNERS": 5,
        "VALUE_THRESHOLD": 2_000_000,
    },
    "GEOGRAPHY": {
        "EXACT": 1.0,
        "SIBLING": 0.65,
        "PARENT": 0.40,
        "GLOBAL": 0.20,
        "UNKNOWN": 0.50,
        # territory -> region overrides applied before keyword auto-mapping
        "TERRITORY_MAPPINGS": {},
    },
    "TEAM": {
        "EXACT": 1.0,
        "ONE_LEVEL": 0.60,
        "TWO_LEVEL": 0.25,
        "THREE_PLUS": 0.05,
        "REACHING_DOWN_PENALTY": 0.15,
        "UNKNOWN": 0.50,
    },
    "STABILITY": {
        "RENEWAL_SOON_DAYS": 90,
        "RECENT_CHANGE_DAYS": 90,
    },
    "SALES_TOOLS": {
        "ARR_THRESHOLD": 25_000,
        "REP_ID": "__SALES_TOOLS__",
        "REP_NAME": "Sales Tools",
    },
    "HIGH_VALUE_ARR_THRESHOLD": 500_000,
    "RATIONALE_SIGNIFICANCE": 0.10,

    "SOLVER": {
        "MODE": "WATERFALL",          # WATERFALL | GLOBAL
        "TIME_LIMIT_SECONDS": 60,
        "MIP_REL_GAP": 1e-4,
        # problems up to this many binaries are solved to a zero gap
        "EXACT_GAP_MAX_BINARIES": 5000,
        "REMOTE_URL": None,
        "REMOTE_TIMEOUT_SECONDS": 300,
        "REMOTE_RETRY_BACKOFF_SECONDS": 2.0,
        "MAX_INPROCESS_FAILURES": 2,
    },
    "SCALE_LIMITS": {
        "HIGHS_MAX_VARIABLES": 30_000,
        "HIGHS_MAX_LP_STRING_BYTES": 5_000_000,
        "MAX_ACCOUNTS_FOR_GLOBAL_LP": 8000,
        "WARN_ACCOUNTS_THRESHOLD": 3000,
    },
    "SCORING_WORKERS": 4,

    # Waterfall order; position drives both sequencing and objective weight
    "PRIORITIES": [
        {"id": "manual_holdover", "position": 0, "enabled": True},
        {"id": "sales_tools_bucket", "position": 1, "enabled": False},
        {"id": "stability_accounts", "position": 2, "enabled": True},
        {"id": "team_alignment", "position": 3, "enabled": True},
        {"id": "geo_and_continuity", "position": 4, "enabled": True},
        {"id": "continuity", "position": 5, "enabled": True},
        {"id": "geography", "position": 6, "enabled": True},
        {"id": "arr_balance", "position": 7, "enabled": True},
    ],
}


def deep_update(dst: dict, src: dict) -> dict:
    """Recursively merge ``src`` into ``dst`` (in-place)."""

    for key, value in (src or {}).items():
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            deep_update(dst[key], value)
        else:
            dst[key] = copy.deepcopy(value)
    return dst


def intensity_multiplier(cfg: dict) -> float:
    preset = str(cfg.get("BALANCE_INTENSITY", "NORMAL")).upper()
    if preset not in BALANCE_INTENSITY_PRESETS:
        raise ConfigurationError(
            f"Unknown BALANCE_INTENSITY '{preset}' (expected one of {', '.join(BALANCE_INTENSITY_PRESETS)})"
        )
    return BALANCE_INTENSITY_PRESETS[preset]


def _validate_penalties(cfg: dict) -> None:
    pen = cfg.get("LP_PENALTY") or {}
    try:
        alpha, beta, big_m = float(pen["ALPHA"]), float(pen["BETA"]), float(pen["BIG_M"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"LP_PENALTY needs numeric ALPHA/BETA/BIG_M: {exc}") from exc
    if not 0 < alpha < beta < big_m:
        raise ConfigurationError("LP_PENALTY must satisfy 0 < ALPHA < BETA < BIG_M")


def _validate_balance(cfg: dict) -> None:
    for metric in ("arr", "atr", "pipeline"):
        entry = cfg["BALANCE"].get(metric) or {}
        variance = float(entry.get("VARIANCE", 0.0))
        if variance < 0 or variance >= 1:
            raise ConfigurationError(f"BALANCE.{metric}.VARIANCE must be in [0, 1)")
        maximum = entry.get("MAX")
        minimum = float(entry.get("MIN") or 0.0)
        if maximum is not None and float(maximum) < minimum:
            raise ConfigurationError(f"BALANCE.{metric}.MAX is below MIN")


def build_config(overrides: dict | None = None) -> dict:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        deep_update(cfg, overrides)
    # PRIORITIES is a list, so an override replaces it wholesale
    _validate_penalties(cfg)
    _validate_balance(cfg)
    cfg["BALANCE_INTENSITY"] = str(cfg.get("BALANCE_INTENSITY", "NORMAL")).upper()
    cfg["INTENSITY_MULTIPLIER"] = intensity_multiplier(cfg)
    mode = str(cfg["SOLVER"].get("MODE", "WATERFALL")).upper()
    if mode not in {"WATERFALL", "GLOBAL"}:
        raise ConfigurationError(f"SOLVER.MODE must be WATERFALL or GLOBAL, got '{mode}'")
    cfg["SOLVER"]["MODE"] = mode
    return cfg


def load_config_file(path: Path) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))
