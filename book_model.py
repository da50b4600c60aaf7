"""Account / rep / proposal records shared by every stage of an assignment run.

Revenue is always read through ``get_account_arr`` / ``get_account_atr`` so a
parent that already carries its hierarchy roll-up is never double counted with
its children.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional

UNASSIGNED_REP_ID = "__UNASSIGNED__"
UNASSIGNED_REP_NAME = "Unassigned"

METRICS = ("arr", "atr", "pipeline", "accounts")
TIER_ORDER = ("SMB", "Growth", "MM", "ENT")

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"

WARN_CONTINUITY_BROKEN = "continuity_broken"
WARN_CROSS_REGION = "cross_region"
WARN_CAPACITY_EXCEEDED = "capacity_exceeded"
WARN_UNASSIGNED = "unassigned"
WARN_PARENT_CHILD_SEPARATED = "parent_child_separated"
WARN_SOLVER_FALLBACK = "solver_fallback"
WARN_DATA_INTEGRITY = "data_integrity"


# -------------------- Helpers --------------------
def trim(s) -> str:
    return ("" if s is None else str(s)).strip()


def to_float(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(str(value).replace(",", ""))
    except (TypeError, ValueError):
        return default


def to_int(value, default: int = 0) -> int:
    try:
        return int(to_float(value, default))
    except (TypeError, ValueError):
        return default


def to_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return trim(value).lower() in {"1", "true", "yes", "y"}


def parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = trim(value)
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        return None


# -------------------- Records --------------------
@dataclass
class MetricLimits:
    target: Optional[float] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None


@dataclass
class Account:
    account_id: str
    name: str = ""
    is_customer: Optional[bool] = None
    parent_id: Optional[str] = None
    hierarchy_bookings_arr: Optional[float] = None
    calculated_arr: Optional[float] = None
    arr: Optional[float] = None
    calculated_atr: Optional[float] = None
    atr: Optional[float] = None
    pipeline_value: float = 0.0
    employees: Optional[int] = None
    territory: str = ""
    geo: str = ""
    owner_id: Optional[str] = None
    owner_name: str = ""
    owner_change_date: Optional[date] = None
    owners_lifetime_count: Optional[int] = None
    locked: bool = False
    lock_reason: str = ""
    is_strategic: bool = False
    cre_risk: bool = False
    renewal_date: Optional[date] = None
    pe_firm: str = ""

    @property
    def is_parent(self) -> bool:
        return not self.parent_id

    @property
    def customer(self) -> bool:
        if self.is_customer is not None:
            return bool(self.is_customer)
        return get_account_arr(self) > 0


@dataclass
class Rep:
    rep_id: str
    name: str = ""
    region: str = ""
    team_tier: Optional[str] = None
    is_active: bool = True
    include_in_assignments: bool = True
    is_strategic_rep: bool = False
    is_backfill_source: bool = False
    backfill_target_rep_id: Optional[str] = None
    manager_id: Optional[str] = None
    capacity: Dict[str, MetricLimits] = field(default_factory=dict)

    @property
    def eligible(self) -> bool:
        return self.is_active and self.include_in_assignments and not self.is_backfill_source

    def limits(self, metric: str) -> MetricLimits:
        return self.capacity.get(metric) or MetricLimits()


@dataclass
class AssignmentWarning:
    severity: str
    kind: str
    reason: str
    details: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"severity": self.severity, "kind": self.kind, "reason": self.reason, "details": self.details}


@dataclass
class Proposal:
    account_id: str
    account_name: str
    proposed_rep_id: str
    proposed_rep_name: str
    current_owner_id: Optional[str]
    rule_applied: str
    priority_label: str
    rationale: str = ""
    warnings: List[AssignmentWarning] = field(default_factory=list)
    scores: Dict[str, Optional[float]] = field(default_factory=dict)

    @property
    def confidence(self) -> str:
        return classify_confidence(self.warnings)

    @property
    def is_unassigned(self) -> bool:
        return self.proposed_rep_id == UNASSIGNED_REP_ID


# -------------------- Revenue chain --------------------
def get_account_arr(account: Account) -> float:
    """ARR priority chain: hierarchy bookings, calculated ARR, raw ARR, 0."""
    for value in (account.hierarchy_bookings_arr, account.calculated_arr, account.arr):
        if value:
            return float(value)
    return 0.0


def get_account_atr(account: Account) -> float:
    for value in (account.calculated_atr, account.atr):
        if value:
            return float(value)
    return 0.0


def get_account_pipeline(account: Account) -> float:
    return float(account.pipeline_value or 0.0)


def account_metric(account: Account, metric: str) -> float:
    if metric == "arr":
        return get_account_arr(account)
    if metric == "atr":
        return get_account_atr(account)
    if metric == "pipeline":
        return get_account_pipeline(account)
    if metric == "accounts":
        return 1.0
    raise KeyError(f"Unknown metric '{metric}'")


def classify_account_tier(employees: Optional[int]) -> Optional[str]:
    if employees is None:
        return None
    if employees < 100:
        return "SMB"
    if employees < 500:
        return "Growth"
    if employees < 1500:
        return "MM"
    return "ENT"


def classify_confidence(warnings: List[AssignmentWarning]) -> str:
    severities = {w.severity for w in warnings}
    if SEVERITY_HIGH in severities:
        return "low"
    if SEVERITY_MEDIUM in severities:
        return "medium"
    return "high"


# -------------------- Snapshot I/O --------------------
def _optional_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    return to_float(value)


def account_from_dict(row: Dict) -> Account:
    employees = row.get("employees")
    owners = row.get("owners_lifetime_count")
    is_customer = row.get("is_customer")
    return Account(
        account_id=trim(row.get("account_id") or row.get("id")),
        name=trim(row.get("name") or row.get("account_name")),
        is_customer=None if is_customer is None else to_bool(is_customer),
        parent_id=trim(row.get("parent_id")) or None,
        hierarchy_bookings_arr=_optional_float(row.get("hierarchy_bookings_arr")),
        calculated_arr=_optional_float(row.get("calculated_arr")),
        arr=_optional_float(row.get("arr")),
        calculated_atr=_optional_float(row.get("calculated_atr")),
        atr=_optional_float(row.get("atr")),
        pipeline_value=to_float(row.get("pipeline_value")),
        employees=None if employees in (None, "") else to_int(employees),
        territory=trim(row.get("territory")),
        geo=trim(row.get("geo")),
        owner_id=trim(row.get("owner_id")) or None,
        owner_name=trim(row.get("owner_name")),
        owner_change_date=parse_date(row.get("owner_change_date")),
        owners_lifetime_count=None if owners in (None, "") else to_int(owners),
        locked=to_bool(row.get("locked")),
        lock_reason=trim(row.get("lock_reason")),
        is_strategic=to_bool(row.get("is_strategic")),
        cre_risk=to_bool(row.get("cre_risk")),
        renewal_date=parse_date(row.get("renewal_date")),
        pe_firm=trim(row.get("pe_firm")),
    )


def rep_from_dict(row: Dict) -> Rep:
    capacity: Dict[str, MetricLimits] = {}
    for metric, limits in (row.get("capacity") or {}).items():
        limits = limits or {}
        capacity[metric] = MetricLimits(
            target=_optional_float(limits.get("target")),
            minimum=_optional_float(limits.get("min")),
            maximum=_optional_float(limits.get("max")),
        )
    return Rep(
        rep_id=trim(row.get("rep_id") or row.get("id")),
        name=trim(row.get("name")),
        region=trim(row.get("region")),
        team_tier=trim(row.get("team_tier")) or None,
        is_active=to_bool(row.get("is_active", True)),
        include_in_assignments=to_bool(row.get("include_in_assignments", True)),
        is_strategic_rep=to_bool(row.get("is_strategic_rep")),
        is_backfill_source=to_bool(row.get("is_backfill_source")),
        backfill_target_rep_id=trim(row.get("backfill_target_rep_id")) or None,
        manager_id=trim(row.get("manager_id")) or None,
        capacity=capacity,
    )


PROPOSAL_COLUMNS = [
    "AccountId",
    "AccountName",
    "CurrentOwner",
    "ProposedRepId",
    "ProposedRepName",
    "Rule",
    "Priority",
    "Confidence",
    "Warnings",
    "Rationale",
]


def proposal_to_row(p: Proposal) -> Dict[str, str]:
    return {
        "AccountId": p.account_id,
        "AccountName": p.account_name,
        "CurrentOwner": p.current_owner_id or "",
        "ProposedRepId": p.proposed_rep_id,
        "ProposedRepName": p.proposed_rep_name,
        "Rule": p.rule_applied,
        "Priority": p.priority_label,
        "Confidence": p.confidence,
        "Warnings": "; ".join(f"{w.severity}:{w.kind}" for w in p.warnings),
        "Rationale": p.rationale,
    }
