"""LP/MIP model for one assignment sub-problem.

The model is kept as typed collections (``LPModel``) and only turned into text
by ``to_lp_text`` at the solver boundary.

Balance uses three slack bands per rep and metric:

* alpha: deviation inside the variance band (cheap)
* beta: deviation between the variance band and the absolute min/max
* bigM: deviation beyond the absolute min/max (effectively forbidden)

All metric values are divided by the band's normalization factor, so the
constraint matrix never carries raw dollar magnitudes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from assignment_errors import LPBuildError
from book_model import Account, Rep, classify_account_tier
from scoring import MetricBand, PenaltyRates

logger = logging.getLogger(__name__)

LP_LINE_WIDTH = 200

SLACK_KINDS = ("ao", "au", "bo", "bu", "mo", "mu")


# --------------------- IR ---------------------
@dataclass
class LPVariable:
    name: str
    kind: str = "continuous"  # "binary" | "continuous"
    lower: float = 0.0
    upper: Optional[float] = None


@dataclass
class LPConstraint:
    name: str
    terms: List[Tuple[float, str]]
    sense: str  # "=", "<=", ">="
    rhs: float


class LPModel:
    """Variables, constraints and objective terms of a maximization model."""

    def __init__(self, name: str = "assignment"):
        self.name = name
        self.variables: Dict[str, LPVariable] = {}
        self.constraints: List[LPConstraint] = []
        self.score_terms: List[Tuple[float, str]] = []
        self.penalty_terms: Dict[str, float] = {}
        self.slacks: List[str] = []
        self._objective: Optional[List[Tuple[float, str]]] = None

    def add_binary(self, name: str) -> str:
        self.variables[name] = LPVariable(name, "binary", 0.0, 1.0)
        return name

    def declare_slack(self, name: str, upper: Optional[float] = None) -> str:
        self.variables[name] = LPVariable(name, "continuous", 0.0, upper)
        self.slacks.append(name)
        return name

    def add_constraint(self, name: str, terms: List[Tuple[float, str]], sense: str, rhs: float) -> None:
        if sense not in ("=", "<=", ">="):
            raise LPBuildError(f"Unsupported constraint sense '{sense}'")
        for _, var in terms:
            if var not in self.variables:
                raise LPBuildError(f"Constraint {name} references undeclared variable {var}")
        self.constraints.append(LPConstraint(name, list(terms), sense, float(rhs)))

    def add_score(self, coef: float, var: str) -> None:
        if coef != 0:
            self.score_terms.append((float(coef), var))

    def add_penalty(self, rate: float, var: str) -> None:
        if var not in self.variables:
            raise LPBuildError(f"Penalty on undeclared variable {var}")
        self.penalty_terms[var] = self.penalty_terms.get(var, 0.0) + float(rate)

    def finalize(self, *, expect_penalties: bool) -> "LPModel":
        """Assemble the objective once every score and penalty term exists."""

        missing = [s for s in self.slacks if self.penalty_terms.get(s, 0.0) <= 0]
        if missing:
            raise LPBuildError(
                f"{len(missing)} declared slack variable(s) carry no penalty (first: {missing[0]})"
            )
        if expect_penalties and not self.penalty_terms:
            raise LPBuildError("Objective assembled without any balance penalty terms")

        objective = list(self.score_terms)
        objective.extend((-rate, var) for var, rate in self.penalty_terms.items())
        self._objective = objective
        return self

    @property
    def finalized(self) -> bool:
        return self._objective is not None

    @property
    def objective(self) -> List[Tuple[float, str]]:
        if self._objective is None:
            raise LPBuildError("Objective requested before the model was finalized")
        return self._objective

    @property
    def binaries(self) -> List[str]:
        return [v.name for v in self.variables.values() if v.kind == "binary"]


# --------------------- Problem ---------------------
@dataclass
class BalanceSpec:
    """One balanced metric: its weight, per-rep bands and per-account values."""

    metric: str
    weight: float
    bands: Dict[str, MetricBand]
    values: Dict[str, float]
    prior: Dict[str, float] = field(default_factory=dict)


@dataclass
class TierMatchSpec:
    min_pct: float


@dataclass
class ProblemSize:
    num_accounts: int
    num_variables: int
    num_binaries: int
    num_constraints: int
    nonzeros: int
    lp_bytes: int


@dataclass
class LPProblem:
    model: LPModel
    accounts: List[Account]
    reps: List[Rep]
    assign_vars: Dict[str, Dict[str, str]]
    metrics: List[str]
    coefficient_ratio: float = 1.0
    _lp_text: Optional[str] = None

    @property
    def num_accounts(self) -> int:
        return len(self.accounts)

    def lp_text(self) -> str:
        if self._lp_text is None:
            self._lp_text = to_lp_text(self.model)
        return self._lp_text

    def var_owner(self) -> Dict[str, Tuple[str, str]]:
        return {
            var: (aid, rid)
            for aid, by_rep in self.assign_vars.items()
            for rid, var in by_rep.items()
        }


# --------------------- Bands ---------------------
def resolve_band(rep: Rep, metric: str, cfg: dict, auto_target: float) -> MetricBand:
    """Per-rep limits override config; config overrides the auto target."""

    balance = cfg["BALANCE"]
    entry = balance.get(metric) or {}
    limits = rep.limits(metric)

    target = limits.target
    if target is None:
        target = entry.get("TARGET")
    if target is None:
        target = auto_target
    target = max(0.0, float(target))

    variance = float(entry.get("VARIANCE", 0.0))
    pref_min = target * (1 - variance)
    pref_max = target * (1 + variance)

    minimum = limits.minimum if limits.minimum is not None else entry.get("MIN")
    minimum = float(minimum or 0.0)
    if minimum >= target:
        minimum = 0.0
    pref_min = max(pref_min, minimum)

    maximum = limits.maximum if limits.maximum is not None else entry.get("MAX")
    if maximum is None:
        maximum = target * (1 + variance + float(balance.get("OVERLOAD_VARIANCE", 0.20)))
    maximum = float(maximum)
    return MetricBand(target=target, pref_min=pref_min, pref_max=min(pref_max, max(maximum, target)),
                      minimum=minimum, maximum=maximum)


def tier_band(count: float, num_reps: int, cfg: dict) -> MetricBand:
    """Band for per-tier account counts (global mode)."""
    variance = float(cfg["BALANCE"]["tiers"].get("VARIANCE", 0.5))
    target = count / max(1, num_reps)
    return MetricBand(
        target=target,
        pref_min=max(0.0, target * (1 - variance)),
        pref_max=target * (1 + variance),
        minimum=0.0,
        maximum=max(2 * target, 1.0),
    )


# --------------------- Builder ---------------------
def build_assignment_problem(
    *,
    accounts: Sequence[Account],
    candidates: Dict[str, List[Rep]],
    reps: Sequence[Rep],
    coefficients: Dict[Tuple[str, str], float],
    balance: Sequence[BalanceSpec],
    cfg: dict,
    assignment: str = "exact",
    tier_match: Optional[TierMatchSpec] = None,
    name: str = "assignment",
) -> LPProblem:
    """Build the MIP for ``accounts`` restricted to their candidate reps.

    ``assignment`` is ``"exact"`` (every account placed) or ``"optional"``
    (an account may stay in the pool for a later priority).
    """

    if assignment not in ("exact", "optional"):
        raise LPBuildError(f"Unknown assignment mode '{assignment}'")

    model = LPModel(name)
    accounts = sorted(accounts, key=lambda a: a.account_id)
    reps = sorted(reps, key=lambda r: r.rep_id)
    rep_index = {r.rep_id: j for j, r in enumerate(reps)}

    # 1) assignment variables + score terms
    assign_vars: Dict[str, Dict[str, str]] = {}
    for i, acct in enumerate(accounts):
        by_rep: Dict[str, str] = {}
        for rep in sorted(candidates.get(acct.account_id, []), key=lambda r: r.rep_id):
            if rep.rep_id not in rep_index:
                continue
            var = model.add_binary(f"x{i}_{rep_index[rep.rep_id]}")
            by_rep[rep.rep_id] = var
            model.add_score(coefficients.get((acct.account_id, rep.rep_id), 0.0), var)
        if by_rep:
            assign_vars[acct.account_id] = by_rep
            model.add_constraint(
                f"asg{i}",
                [(1.0, v) for v in by_rep.values()],
                "=" if assignment == "exact" else "<=",
                1.0,
            )

    # 2) balance constraints with alpha/beta/bigM slacks
    expect_penalties = False
    max_coefficient = max(coefficients.values(), default=0.0)
    for m, spec in enumerate(balance):
        rates = PenaltyRates.from_config(cfg, spec.weight).dominating(max_coefficient)
        for rep in reps:
            band = spec.bands.get(rep.rep_id)
            if band is None or band.target <= 0:
                continue
            expect_penalties = True
            j = rep_index[rep.rep_id]
            norm = band.norm
            terms: List[Tuple[float, str]] = []
            for acct in accounts:
                var = assign_vars.get(acct.account_id, {}).get(rep.rep_id)
                value = spec.values.get(acct.account_id, 0.0)
                if var is not None and value:
                    terms.append((value / norm, var))

            widths = band.widths()
            ao = model.declare_slack(f"ao{m}_{j}", widths["alpha_over"])
            au = model.declare_slack(f"au{m}_{j}", widths["alpha_under"])
            bo = model.declare_slack(f"bo{m}_{j}", widths["beta_over"])
            bu = model.declare_slack(f"bu{m}_{j}", widths["beta_under"])
            mo = model.declare_slack(f"mo{m}_{j}")
            mu = model.declare_slack(f"mu{m}_{j}")
            terms += [(-1.0, ao), (1.0, au), (-1.0, bo), (1.0, bu), (-1.0, mo), (1.0, mu)]
            rhs = (band.target - spec.prior.get(rep.rep_id, 0.0)) / norm
            model.add_constraint(f"bal{m}_{j}", terms, "=", rhs)

            model.add_penalty(rates.alpha, ao)
            model.add_penalty(rates.alpha, au)
            model.add_penalty(rates.beta, bo)
            model.add_penalty(rates.beta, bu)
            model.add_penalty(rates.big_m, mo)
            model.add_penalty(rates.big_m, mu)

    # 3) optional team tier-match floor per rep
    if tier_match is not None:
        _add_tier_match(model, accounts, reps, assign_vars, rep_index, tier_match)

    # 4) objective last
    model.finalize(expect_penalties=expect_penalties)

    problem = LPProblem(
        model=model,
        accounts=list(accounts),
        reps=list(reps),
        assign_vars=assign_vars,
        metrics=[s.metric for s in balance],
    )
    problem.coefficient_ratio = coefficient_range(model)
    max_ratio = float(cfg["OBJECTIVE"].get("MAX_COEFFICIENT_RATIO", 1e9))
    if problem.coefficient_ratio > max_ratio:
        raise LPBuildError(
            f"LP {name} coefficient range {problem.coefficient_ratio:.3g} exceeds {max_ratio:.3g}"
        )
    logger.debug(
        "Built LP %s: %d accounts, %d vars, %d constraints",
        name, len(accounts), len(model.variables), len(model.constraints),
    )
    return problem


def _add_tier_match(
    model: LPModel,
    accounts: Sequence[Account],
    reps: Sequence[Rep],
    assign_vars: Dict[str, Dict[str, str]],
    rep_index: Dict[str, int],
    spec: TierMatchSpec,
) -> None:
    p = max(0.0, min(1.0, spec.min_pct / 100.0))
    for rep in reps:
        if not rep.team_tier:
            continue
        terms: List[Tuple[float, str]] = []
        for acct in accounts:
            var = assign_vars.get(acct.account_id, {}).get(rep.rep_id)
            tier = classify_account_tier(acct.employees)
            if var is None or tier is None:
                continue
            terms.append(((1.0 - p) if tier == rep.team_tier else -p, var))
        if terms:
            model.add_constraint(f"tier{rep_index[rep.rep_id]}", terms, ">=", 0.0)


def coefficient_range(model: LPModel) -> float:
    magnitudes = [abs(c) for c, _ in model.objective if c]
    for con in model.constraints:
        magnitudes.extend(abs(c) for c, _ in con.terms if c)
    if not magnitudes:
        return 1.0
    return max(magnitudes) / min(magnitudes)


def estimate_size(problem: LPProblem) -> ProblemSize:
    model = problem.model
    return ProblemSize(
        num_accounts=problem.num_accounts,
        num_variables=len(model.variables),
        num_binaries=len(model.binaries),
        num_constraints=len(model.constraints),
        nonzeros=sum(len(c.terms) for c in model.constraints),
        lp_bytes=len(problem.lp_text().encode("utf-8")),
    )


# --------------------- LP text ---------------------
def _fmt(value: float) -> str:
    return f"{value:.12g}"


def _linear(terms: Sequence[Tuple[float, str]]) -> str:
    parts = []
    for coef, var in terms:
        sign = "-" if coef < 0 else "+"
        mag = abs(coef)
        parts.append(f"{sign} {var}" if mag == 1 else f"{sign} {_fmt(mag)} {var}")
    return " ".join(parts) if parts else "0"


def _wrap(prefix: str, body: str, width: int = LP_LINE_WIDTH) -> List[str]:
    lines: List[str] = []
    current = prefix
    for token in body.split(" "):
        if len(current) + len(token) + 1 > width and current.strip():
            lines.append(current)
            current = "   "
        current = f"{current} {token}" if current else token
    lines.append(current)
    return lines


def to_lp_text(model: LPModel) -> str:
    """CPLEX LP dialect accepted by HiGHS and the remote solver service."""

    lines: List[str] = [f"\\ {model.name}", "Maximize"]
    lines += _wrap(" obj:", _linear(model.objective))
    lines.append("Subject To")
    for con in model.constraints:
        lines += _wrap(f" {con.name}:", f"{_linear(con.terms)} {con.sense} {_fmt(con.rhs)}")
    lines.append("Bounds")
    for var in model.variables.values():
        if var.kind == "binary":
            continue
        if var.upper is None:
            lines.append(f" {var.name} >= {_fmt(var.lower)}")
        else:
            lines.append(f" {_fmt(var.lower)} <= {var.name} <= {_fmt(var.upper)}")
    binaries = model.binaries
    if binaries:
        lines.append("Binary")
        lines += _wrap("", " ".join(binaries))
    lines.append("End")
    return "\n".join(lines) + "\n"
