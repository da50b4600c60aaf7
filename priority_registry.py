"""Priority rule registry.

Each rule identifier maps to exactly one ``RuleKind`` and one typed parameter
class. The engine dispatches on ``RuleKind`` only; identifiers are resolved
here once, when the configuration is parsed.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Optional, Sequence, Type

from assignment_errors import ConfigurationError
from scoring import FactorWeights


class RuleFamily(str, Enum):
    FILTER = "filter"
    OPTIMIZATION = "optimization"
    MODIFIER = "modifier"


class RuleKind(str, Enum):
    MANUAL_HOLDOVER = "manual_holdover"
    SALES_TOOLS_BUCKET = "sales_tools_bucket"
    STABILITY_ACCOUNTS = "stability_accounts"
    TEAM_ALIGNMENT = "team_alignment"
    GEO_AND_CONTINUITY = "geo_and_continuity"
    CONTINUITY = "continuity"
    GEOGRAPHY = "geography"
    ARR_BALANCE = "arr_balance"


# -------------------- Typed parameters --------------------
@dataclass(frozen=True)
class HoldoverParams:
    include_strategic: bool = True


@dataclass(frozen=True)
class SalesToolsParams:
    arr_threshold: Optional[float] = None  # None = SALES_TOOLS.ARR_THRESHOLD


@dataclass(frozen=True)
class StabilityParams:
    cre_risk: bool = True
    renewal_soon: bool = True
    pe_firm: bool = True
    recent_owner_change: bool = True
    backfill_migration: bool = True
    renewal_soon_days: Optional[int] = None
    recent_change_days: Optional[int] = None


@dataclass(frozen=True)
class TeamAlignmentParams:
    min_tier_match_pct: float = 80.0
    enforce_tier_match: bool = False


@dataclass(frozen=True)
class OptimizationParams:
    pass


@dataclass(frozen=True)
class RuleDefinition:
    kind: RuleKind
    name: str
    family: RuleFamily
    params_type: Type
    description: str = ""


RULE_REGISTRY: Dict[str, RuleDefinition] = {
    "manual_holdover": RuleDefinition(
        RuleKind.MANUAL_HOLDOVER, "Manual Holdover", RuleFamily.FILTER, HoldoverParams,
        "Locked accounts stay with their owner; strategic accounts stay in the strategic pool",
    ),
    "sales_tools_bucket": RuleDefinition(
        RuleKind.SALES_TOOLS_BUCKET, "Sales Tools Bucket", RuleFamily.FILTER, SalesToolsParams,
        "Customers below the ARR threshold route to the Sales Tools bucket",
    ),
    "stability_accounts": RuleDefinition(
        RuleKind.STABILITY_ACCOUNTS, "Stability Accounts", RuleFamily.FILTER, StabilityParams,
        "Accounts at risk or mid-renewal keep their current owner",
    ),
    "team_alignment": RuleDefinition(
        RuleKind.TEAM_ALIGNMENT, "Team Alignment", RuleFamily.MODIFIER, TeamAlignmentParams,
        "Match account employee tier to rep team tier",
    ),
    "geo_and_continuity": RuleDefinition(
        RuleKind.GEO_AND_CONTINUITY, "Geography + Continuity", RuleFamily.OPTIMIZATION, OptimizationParams,
        "Keep accounts with an in-region owner that has capacity",
    ),
    "continuity": RuleDefinition(
        RuleKind.CONTINUITY, "Continuity", RuleFamily.OPTIMIZATION, OptimizationParams,
        "Keep accounts with their owner regardless of region",
    ),
    "geography": RuleDefinition(
        RuleKind.GEOGRAPHY, "Geography", RuleFamily.OPTIMIZATION, OptimizationParams,
        "Assign to an in-region rep with capacity",
    ),
    "arr_balance": RuleDefinition(
        RuleKind.ARR_BALANCE, "Balance Optimization", RuleFamily.OPTIMIZATION, OptimizationParams,
        "Residual optimization across all eligible reps",
    ),
}

RESIDUAL_LABEL = "RO"


@dataclass(frozen=True)
class PriorityRule:
    rule_id: str
    kind: RuleKind
    position: int
    enabled: bool
    params: object = field(default_factory=OptimizationParams)

    @property
    def definition(self) -> RuleDefinition:
        return RULE_REGISTRY[self.rule_id]

    @property
    def family(self) -> RuleFamily:
        return self.definition.family

    @property
    def name(self) -> str:
        return self.definition.name


def _build_params(rule_id: str, params_type: Type, raw: dict | None):
    raw = dict(raw or {})
    known = {f.name for f in fields(params_type)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown parameter(s) for priority '{rule_id}': {', '.join(unknown)}")
    return params_type(**raw)


def parse_priorities(entries: Sequence[dict]) -> List[PriorityRule]:
    """Resolve raw priority entries into typed rules sorted by position."""

    rules: List[PriorityRule] = []
    seen_positions: Dict[int, str] = {}
    seen_ids = set()
    for entry in entries or []:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ConfigurationError("Each priority entry must be an object with an 'id'")
        rule_id = str(entry["id"])
        definition = RULE_REGISTRY.get(rule_id)
        if definition is None:
            raise ConfigurationError(f"Unknown priority '{rule_id}'")
        if rule_id in seen_ids:
            raise ConfigurationError(f"Priority '{rule_id}' listed more than once")
        try:
            position = int(entry.get("position"))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Priority '{rule_id}' needs an integer position") from exc
        if position in seen_positions:
            raise ConfigurationError(
                f"Priorities '{seen_positions[position]}' and '{rule_id}' share position {position}"
            )
        seen_positions[position] = rule_id
        seen_ids.add(rule_id)
        rules.append(
            PriorityRule(
                rule_id=rule_id,
                kind=definition.kind,
                position=position,
                enabled=bool(entry.get("enabled", True)),
                params=_build_params(rule_id, definition.params_type, entry.get("params")),
            )
        )
    rules.sort(key=lambda r: r.position)
    return rules


def enabled_rules(rules: Sequence[PriorityRule]) -> List[PriorityRule]:
    return [r for r in rules if r.enabled]


def find_rule(rules: Sequence[PriorityRule], kind: RuleKind) -> Optional[PriorityRule]:
    for rule in rules:
        if rule.kind == kind and rule.enabled:
            return rule
    return None


def position_label(rule_id: str, rules: Sequence[PriorityRule]) -> str:
    """``P{position}`` for enabled rules; residual optimization is ``RO``."""
    if rule_id == RuleKind.ARR_BALANCE.value:
        return RESIDUAL_LABEL
    for rule in rules:
        if rule.rule_id == rule_id and rule.enabled:
            return f"P{rule.position}"
    return RESIDUAL_LABEL


def priority_weight(position: int) -> float:
    # positions are 0-indexed; P0 -> 1.0, P5 -> 1/6
    return 1.0 / (position + 1) if position >= 0 else 0.0


def derive_factor_weights(rules: Sequence[PriorityRule], objective: dict) -> FactorWeights:
    """Objective weights for continuity/geography/team from priority positions."""

    def weight_of(kind: RuleKind) -> float:
        rule = find_rule(rules, kind)
        return priority_weight(rule.position) if rule else 0.0

    geo_and_cont = weight_of(RuleKind.GEO_AND_CONTINUITY)
    raw_c = weight_of(RuleKind.CONTINUITY) + 0.5 * geo_and_cont
    raw_g = weight_of(RuleKind.GEOGRAPHY) + 0.5 * geo_and_cont
    raw_t = weight_of(RuleKind.TEAM_ALIGNMENT)

    total = raw_c + raw_g + raw_t
    if total == 0:
        d = objective["DEFAULT_WEIGHTS"]
        return FactorWeights(float(d["continuity"]), float(d["geography"]), float(d["team"]))

    w = [raw_c / total, raw_g / total, raw_t / total]
    min_weight = float(objective.get("MIN_WEIGHT", 0.05))
    if any(x == 0 for x in w):
        w = [max(min_weight, x) for x in w]
        s = sum(w)
        w = [x / s for x in w]
    return FactorWeights(*w)


def rules_snapshot(rules: Sequence[PriorityRule]) -> List[dict]:
    return [{"id": r.rule_id, "position": r.position, "enabled": r.enabled} for r in rules]
