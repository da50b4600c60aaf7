"""Pure scoring functions for (account, rep) pairs.

Every function here reads only its arguments: the evaluation date is passed in
as ``as_of`` so two calls on the same pair always agree.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from assignment_errors import ConfigurationError
from book_model import (
    TIER_ORDER,
    Account,
    Rep,
    account_metric,
    classify_account_tier,
    get_account_arr,
    trim,
)

# BigM lands at this multiple of the largest coefficient when it has to be raised
BIG_M_HEADROOM = 2.0

REGION_HIERARCHY: Dict[str, List[str]] = {
    "AMER": ["North East", "South East", "Central", "West"],
    "EMEA": ["UK", "DACH", "France", "Nordics", "Southern Europe", "Benelux", "Middle East", "Africa"],
    "APAC": ["ANZ", "Japan", "Southeast Asia", "India", "Greater China", "Korea"],
}

# (keywords, region) checked in order after exact names
TERRITORY_KEYWORDS: List[Tuple[Tuple[str, ...], str]] = [
    (("northeast", "north east"), "North East"),
    (("southeast asia", "singapore", "indonesia", "vietnam"), "Southeast Asia"),
    (("southeast", "south east"), "South East"),
    (("central", "midwest"), "Central"),
    (("united kingdom", "britain", "uk"), "UK"),
    (("dach", "germany", "austria", "switzerland"), "DACH"),
    (("france", "french"), "France"),
    (("nordic", "sweden", "norway", "denmark", "finland"), "Nordics"),
    (("benelux", "netherlands", "belgium"), "Benelux"),
    (("spain", "italy", "portugal"), "Southern Europe"),
    (("anz", "australia", "new zealand"), "ANZ"),
    (("japan",), "Japan"),
    (("india",), "India"),
    (("china", "hong kong", "taiwan"), "Greater China"),
    (("korea",), "Korea"),
    (("amer", "americas"), "AMER"),
    (("emea", "europe"), "EMEA"),
    (("apac", "asia"), "APAC"),
]


# -------------------- Geography --------------------
def _auto_map_territory(territory: str) -> Optional[str]:
    normalized = trim(territory).lower()
    if not normalized:
        return None
    for parent, children in REGION_HIERARCHY.items():
        if normalized == parent.lower():
            return parent
        for child in children:
            if normalized == child.lower():
                return child
    for keywords, region in TERRITORY_KEYWORDS:
        if any(k in normalized for k in keywords):
            return region
    if "west" in normalized and "east" not in normalized:
        return "West"
    return None


def map_territory(territory: str, mappings: Dict[str, str] | None = None) -> Optional[str]:
    """Explicit mapping first, keyword auto-mapping second."""
    territory = trim(territory)
    if not territory:
        return None
    mapped = (mappings or {}).get(territory)
    if mapped:
        return mapped
    return _auto_map_territory(territory)


def parent_region(region: Optional[str]) -> Optional[str]:
    if not region:
        return None
    if region in REGION_HIERARCHY:
        return region
    for parent, children in REGION_HIERARCHY.items():
        if region in children:
            return parent
    return None


def are_sibling_regions(a: str, b: str) -> bool:
    if a == b or a in REGION_HIERARCHY or b in REGION_HIERARCHY:
        return False
    pa = parent_region(a)
    return pa is not None and pa == parent_region(b)


def account_region(account: Account, mappings: Dict[str, str] | None = None) -> Optional[str]:
    return map_territory(account.territory or account.geo, mappings)


def geography_score(account: Account, rep: Rep, params: dict) -> float:
    mappings = params.get("TERRITORY_MAPPINGS") or {}
    rep_region = trim(rep.region)
    acct_region = account_region(account, mappings)
    if not acct_region or not rep_region:
        return float(params["UNKNOWN"])
    if acct_region == rep_region:
        return float(params["EXACT"])
    if are_sibling_regions(acct_region, rep_region):
        return float(params["SIBLING"])
    pa, pr = parent_region(acct_region), parent_region(rep_region)
    if pa and pr and pa == pr:
        return float(params["PARENT"])
    return float(params["GLOBAL"])


def is_same_geography(account: Account, rep: Rep, params: dict) -> bool:
    """Exact region match, or the rep covers the account's whole macro-region."""
    acct_region = account_region(account, params.get("TERRITORY_MAPPINGS") or {})
    rep_region = trim(rep.region)
    if not acct_region or not rep_region:
        return False
    return acct_region == rep_region or parent_region(acct_region) == rep_region


# -------------------- Continuity --------------------
def continuity_score(account: Account, rep: Rep, params: dict, as_of: date) -> float:
    if not account.owner_id or rep.rep_id != account.owner_id or rep.is_backfill_source:
        return 0.0

    tenure = 0.0
    if account.owner_change_date is not None:
        days = max(0, (as_of - account.owner_change_date).days)
        tenure = min(1.0, days / float(params["TENURE_MAX_DAYS"]))

    stability = 1.0
    owners = account.owners_lifetime_count or 1
    max_owners = int(params["STABILITY_MAX_OWNERS"])
    if owners > 1 and max_owners > 1:
        stability = max(0.0, 1.0 - (owners - 1) / (max_owners - 1))

    value = min(1.0, get_account_arr(account) / float(params["VALUE_THRESHOLD"]))

    score = (
        float(params["BASE"])
        + float(params["TENURE_WEIGHT"]) * tenure
        + float(params["STABILITY_WEIGHT"]) * stability
        + float(params["VALUE_WEIGHT"]) * value
    )
    return min(1.0, max(0.0, score))


# -------------------- Team alignment --------------------
def tier_index(tier: Optional[str]) -> int:
    if not tier or tier not in TIER_ORDER:
        return -1
    return TIER_ORDER.index(tier)


def team_alignment_score(account: Account, rep: Rep, params: dict) -> float:
    acct_idx = tier_index(classify_account_tier(account.employees))
    rep_idx = tier_index(rep.team_tier)
    if acct_idx < 0 or rep_idx < 0:
        return float(params["UNKNOWN"])
    distance = abs(acct_idx - rep_idx)
    base = {0: params["EXACT"], 1: params["ONE_LEVEL"], 2: params["TWO_LEVEL"]}.get(distance, params["THREE_PLUS"])
    base = float(base)
    if rep_idx > acct_idx:
        # senior rep on a smaller account
        base = max(0.0, base - float(params["REACHING_DOWN_PENALTY"]) * distance)
    return base


# -------------------- Pair scores --------------------
@dataclass(frozen=True)
class PairScores:
    continuity: float
    geography: float
    team: Optional[float]  # None when team alignment is not scored


@dataclass(frozen=True)
class FactorWeights:
    continuity: float
    geography: float
    team: float

    def effective(self, team_scored: bool) -> "FactorWeights":
        """Redistribute the team weight onto continuity/geography when team is N/A."""
        if team_scored or self.team == 0:
            return self
        base = self.continuity + self.geography
        if base <= 0:
            return FactorWeights(0.5, 0.5, 0.0)
        return FactorWeights(
            self.continuity + self.team * self.continuity / base,
            self.geography + self.team * self.geography / base,
            0.0,
        )


@dataclass
class ScoringContext:
    continuity: dict
    geography: dict
    team: dict
    as_of: date
    score_team: bool = True

    @classmethod
    def from_config(cls, cfg: dict, as_of: date, *, score_team: bool = True) -> "ScoringContext":
        return cls(
            continuity=dict(cfg["CONTINUITY"]),
            geography=dict(cfg["GEOGRAPHY"]),
            team=dict(cfg["TEAM"]),
            as_of=as_of,
            score_team=score_team,
        )


def score_pair(account: Account, rep: Rep, ctx: ScoringContext) -> PairScores:
    return PairScores(
        continuity=continuity_score(account, rep, ctx.continuity, ctx.as_of),
        geography=geography_score(account, rep, ctx.geography),
        team=team_alignment_score(account, rep, ctx.team) if ctx.score_team else None,
    )


def weighted_score(scores: PairScores, weights: FactorWeights) -> float:
    w = weights.effective(scores.team is not None)
    return w.continuity * scores.continuity + w.geography * scores.geography + w.team * (scores.team or 0.0)


def tie_breaker_ranks(accounts: Iterable[Account], metric: str = "arr") -> Dict[str, float]:
    """1 / (rank + 1) by descending metric value, ties broken by account id.

    Harmonic ranks make the largest account worth more than the next two
    combined, so the common equal-load partitions have a unique optimum.
    """
    ordered = sorted(accounts, key=lambda a: (-account_metric(a, metric), a.account_id))
    return {a.account_id: 1.0 / (idx + 1) for idx, a in enumerate(ordered)}


def pair_coefficient(
    scores: PairScores,
    weights: FactorWeights,
    *,
    tie_break: float,
    rep_order: float,
    objective: dict,
) -> float:
    """Objective coefficient of one assignment variable.

    ``tie_break`` orders accounts (bigger first) and ``rep_order`` orders reps
    (stable id order) so symmetric solutions resolve the same way every run.
    """
    return (
        weighted_score(scores, weights)
        + float(objective["TIE_BREAK_WEIGHT"]) * tie_break
        + float(objective["REP_ORDER_WEIGHT"]) * tie_break * rep_order
    )


def score_pairs(
    pairs: Sequence[Tuple[Account, Rep]],
    ctx: ScoringContext,
    workers: int = 4,
) -> Dict[Tuple[str, str], PairScores]:
    """Score every pair across worker threads; result order follows ``pairs``."""

    if workers <= 1 or len(pairs) < 64:
        return {(a.account_id, r.rep_id): score_pair(a, r, ctx) for a, r in pairs}

    chunk = max(1, len(pairs) // workers)
    chunks = [pairs[i:i + chunk] for i in range(0, len(pairs), chunk)]
    partial: Dict[int, List[Tuple[Tuple[str, str], PairScores]]] = {}
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futs = {
            pool.submit(lambda part: [((a.account_id, r.rep_id), score_pair(a, r, ctx)) for a, r in part], part): idx
            for idx, part in enumerate(chunks)
        }
        for fut in as_completed(futs):
            partial[futs[fut]] = fut.result()

    merged: Dict[Tuple[str, str], PairScores] = {}
    for idx in sorted(partial):
        merged.update(partial[idx])
    return merged


# -------------------- Balance penalty --------------------
@dataclass(frozen=True)
class MetricBand:
    """Target with a soft variance band and an absolute [minimum, maximum]."""

    target: float
    pref_min: float
    pref_max: float
    minimum: float
    maximum: float

    @property
    def norm(self) -> float:
        return max(self.target, 1.0)

    def widths(self) -> Dict[str, float]:
        """Normalized slack bounds; the BigM slacks are unbounded."""
        n = self.norm
        return {
            "alpha_over": max(0.0, self.pref_max - self.target) / n,
            "alpha_under": max(0.0, self.target - self.pref_min) / n,
            "beta_over": max(0.0, self.maximum - self.pref_max) / n,
            "beta_under": max(0.0, self.pref_min - self.minimum) / n,
        }


@dataclass(frozen=True)
class PenaltyRates:
    alpha: float
    beta: float
    big_m: float

    @classmethod
    def from_config(cls, cfg: dict, metric_weight: float = 1.0) -> "PenaltyRates":
        scale = float(cfg["INTENSITY_MULTIPLIER"]) * metric_weight
        pen = cfg["LP_PENALTY"]
        return cls(float(pen["ALPHA"]) * scale, float(pen["BETA"]) * scale, float(pen["BIG_M"]) * scale)

    def dominating(self, max_coefficient: float) -> "PenaltyRates":
        """Same rates, or all three scaled up until BigM strictly beats ``max_coefficient``.

        Light intensities and small metric weights can push BigM below the value
        of a single assignment; scaling keeps the Alpha:Beta:BigM ratio.
        """
        if self.big_m > max_coefficient:
            return self
        if self.big_m <= 0:
            raise ConfigurationError(
                f"BigM penalty {self.big_m:g} cannot exceed assignment coefficient {max_coefficient:g}"
            )
        factor = BIG_M_HEADROOM * max_coefficient / self.big_m
        return PenaltyRates(self.alpha * factor, self.beta * factor, self.big_m * factor)


def balance_penalty(load: float, band: MetricBand, rates: PenaltyRates) -> float:
    """Three-tier penalty of a rep's total load for one metric."""
    widths = band.widths()
    deviation = (load - band.target) / band.norm
    if deviation >= 0:
        a_w, b_w = widths["alpha_over"], widths["beta_over"]
    else:
        a_w, b_w = widths["alpha_under"], widths["beta_under"]
    dev = abs(deviation)
    a = min(dev, a_w)
    b = min(dev - a, b_w)
    m = dev - a - b
    return rates.alpha * a + rates.beta * b + rates.big_m * m
