"""Quality metrics and the per-run telemetry record."""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from assignment_errors import classify_error
from book_model import (
    Account,
    Proposal,
    Rep,
    account_metric,
    classify_account_tier,
    get_account_arr,
)
from scoring import geography_score, tier_index


@dataclass
class QualityMetrics:
    arr_cv: float = 0.0
    atr_cv: float = 0.0
    pipeline_cv: float = 0.0
    continuity_rate: float = 0.0
    high_value_continuity_rate: float = 0.0
    arr_stayed_pct: float = 0.0
    geo_exact_rate: float = 0.0
    geo_sibling_or_better_rate: float = 0.0
    geo_cross_region_rate: float = 0.0
    tier_exact_rate: float = 0.0
    tier_one_level_rate: float = 0.0
    max_overload_pct: float = 0.0
    unassigned_count: int = 0
    warning_count: int = 0


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population std / mean as a percentage; 0 when the mean is 0."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    if mean == 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance) / mean * 100.0


def rep_loads(
    proposals: Sequence[Proposal],
    accounts_by_id: Dict[str, Account],
    reps: Sequence[Rep],
    metric: str,
) -> Dict[str, float]:
    loads: Dict[str, float] = {r.rep_id: 0.0 for r in reps}
    for p in proposals:
        if p.proposed_rep_id not in loads:
            continue
        acct = accounts_by_id.get(p.account_id)
        if acct is None:
            continue
        # parent ARR already includes its children's bookings
        if metric == "arr" and acct.parent_id and acct.parent_id in accounts_by_id:
            continue
        loads[p.proposed_rep_id] += account_metric(acct, metric)
    return loads


def _pct(num: float, den: float) -> float:
    return (num / den * 100.0) if den else 0.0


def valid_owner_ids(reps: Sequence[Rep]) -> set:
    """Owners that can keep their accounts: active, assignable, not departing."""
    return {r.rep_id for r in reps if r.eligible}


def calculate_metrics(
    proposals: Sequence[Proposal],
    accounts: Sequence[Account],
    reps: Sequence[Rep],
    cfg: dict,
) -> QualityMetrics:
    accounts_by_id = {a.account_id: a for a in accounts}
    reps_by_id = {r.rep_id: r for r in reps}
    eligible = [r for r in reps if r.eligible]
    m = QualityMetrics()

    arr = rep_loads(proposals, accounts_by_id, eligible, "arr")
    atr = rep_loads(proposals, accounts_by_id, eligible, "atr")
    pipe = rep_loads(proposals, accounts_by_id, eligible, "pipeline")
    m.arr_cv = coefficient_of_variation(list(arr.values()))
    m.atr_cv = coefficient_of_variation([v for v in atr.values() if v > 0])
    m.pipeline_cv = coefficient_of_variation([v for v in pipe.values() if v > 0])
    if arr:
        mean = sum(arr.values()) / len(arr)
        if mean > 0:
            m.max_overload_pct = max(0.0, (max(arr.values()) / mean - 1.0) * 100.0)

    valid_owners = valid_owner_ids(reps)
    high_value = float(cfg.get("HIGH_VALUE_ARR_THRESHOLD", 500_000))
    kept = eligible_n = hv_kept = hv_n = 0
    arr_kept = arr_total = 0.0
    geo_exact = geo_sib = geo_cross = geo_n = 0
    tier_exact = tier_one = tier_n = 0
    geo_params = cfg["GEOGRAPHY"]

    for p in proposals:
        m.warning_count += len(p.warnings)
        if p.is_unassigned:
            m.unassigned_count += 1
        acct = accounts_by_id.get(p.account_id)
        if acct is None:
            continue
        value = get_account_arr(acct)
        if acct.owner_id in valid_owners:
            eligible_n += 1
            arr_total += value
            stayed = p.proposed_rep_id == acct.owner_id
            kept += stayed
            arr_kept += value if stayed else 0.0
            if value >= high_value:
                hv_n += 1
                hv_kept += stayed

        rep = reps_by_id.get(p.proposed_rep_id)
        if rep is None:
            continue
        g = geography_score(acct, rep, geo_params)
        geo_n += 1
        geo_exact += g >= float(geo_params["EXACT"])
        geo_sib += g >= float(geo_params["SIBLING"])
        geo_cross += g <= 0.25
        a_idx = tier_index(classify_account_tier(acct.employees))
        r_idx = tier_index(rep.team_tier)
        if a_idx >= 0 and r_idx >= 0:
            tier_n += 1
            tier_exact += a_idx == r_idx
            tier_one += abs(a_idx - r_idx) == 1

    m.continuity_rate = _pct(kept, eligible_n)
    m.high_value_continuity_rate = _pct(hv_kept, hv_n)
    m.arr_stayed_pct = _pct(arr_kept, arr_total)
    m.geo_exact_rate = _pct(geo_exact, geo_n)
    m.geo_sibling_or_better_rate = _pct(geo_sib, geo_n)
    m.geo_cross_region_rate = _pct(geo_cross, geo_n)
    m.tier_exact_rate = _pct(tier_exact, tier_n)
    m.tier_one_level_rate = _pct(tier_one, tier_n)
    return m


def build_telemetry_record(
    *,
    cfg: dict,
    mode: str,
    elapsed_ms: float,
    proposals: Sequence[Proposal],
    metrics: QualityMetrics,
    solver_stats: Optional[dict] = None,
    status: str = "success",
    error: Optional[str] = None,
    weights: Optional[dict] = None,
    priorities: Optional[List[dict]] = None,
    num_accounts: int = 0,
    num_reps: int = 0,
) -> dict:
    rules = defaultdict(int)
    for p in proposals:
        rules[p.rule_applied] += 1
    solver_stats = solver_stats or {}
    return {
        "model_version": cfg.get("MODEL_VERSION"),
        "mode": mode,
        "status": status,
        "error_category": classify_error(error) if error else None,
        "error_message": error,
        "elapsed_ms": round(elapsed_ms, 1),
        "num_accounts": num_accounts,
        "num_reps": num_reps,
        "num_proposals": len(proposals),
        "proposals_by_rule": dict(sorted(rules.items())),
        "balance_intensity": cfg.get("BALANCE_INTENSITY"),
        "intensity_multiplier": cfg.get("INTENSITY_MULTIPLIER"),
        "lp_penalty": dict(cfg.get("LP_PENALTY") or {}),
        "weights": weights or {},
        "priorities": priorities or [],
        "solver": solver_stats,
        "metrics": asdict(metrics),
    }


def format_metrics(metrics: QualityMetrics) -> List[str]:
    return [
        f"ARR CV: {metrics.arr_cv:.1f}%",
        f"ATR CV: {metrics.atr_cv:.1f}%",
        f"Pipeline CV: {metrics.pipeline_cv:.1f}%",
        f"Continuity: {metrics.continuity_rate:.1f}% (high value {metrics.high_value_continuity_rate:.1f}%)",
        f"ARR stayed: {metrics.arr_stayed_pct:.1f}%",
        f"Geo exact / sibling+ / cross: {metrics.geo_exact_rate:.1f}% / "
        f"{metrics.geo_sibling_or_better_rate:.1f}% / {metrics.geo_cross_region_rate:.1f}%",
        f"Tier exact / one level: {metrics.tier_exact_rate:.1f}% / {metrics.tier_one_level_rate:.1f}%",
        f"Max ARR overload vs mean: {metrics.max_overload_pct:.1f}%",
        f"Unassigned: {metrics.unassigned_count} | Warnings: {metrics.warning_count}",
    ]
