"""Priority waterfall.

Accounts start PENDING; each enabled rule, in ascending position, sees only
the accounts still pending and either places them directly (filter rules) or
solves an LP over them (optimization rules). Whatever no rule places is
force-assigned at the end, so every account leaves the run with exactly one
proposal.

Customers and prospects run as two passes over shared rep workloads:
customers balance ARR, prospects balance pipeline.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from assignment_errors import ConfigurationError, LPBuildError, SolverError
from book_model import (
    METRICS,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    UNASSIGNED_REP_ID,
    UNASSIGNED_REP_NAME,
    WARN_CAPACITY_EXCEEDED,
    WARN_CONTINUITY_BROKEN,
    WARN_CROSS_REGION,
    WARN_SOLVER_FALLBACK,
    WARN_UNASSIGNED,
    Account,
    AssignmentWarning,
    Proposal,
    Rep,
    account_metric,
    classify_account_tier,
    parse_date,
)
from hierarchy import (
    aggregate_parent,
    cascade_to_children,
    flag_split_hierarchies,
    orphan_warning,
    split_hierarchy,
)
from holdover_rules import assign_strategic_pool, manual_lock, routes_to_sales_tools, stability_lock
from lp_builder import BalanceSpec, LPProblem, TierMatchSpec, build_assignment_problem, resolve_band, tier_band
from priority_registry import (
    RESIDUAL_LABEL,
    PriorityRule,
    RuleKind,
    derive_factor_weights,
    enabled_rules,
    find_rule,
    parse_priorities,
    position_label,
    rules_snapshot,
)
from rationale import generate_rationale
from scoring import (
    MetricBand,
    PairScores,
    ScoringContext,
    geography_score,
    is_same_geography,
    pair_coefficient,
    score_pairs,
    tie_breaker_ranks,
)
from solver_backends import extract_assignments, solver_params_from_config
from solver_router import SolverMode, SolverRouter
from telemetry import QualityMetrics, build_telemetry_record, calculate_metrics

logger = logging.getLogger(__name__)

RULE_MANUAL_LOCK = "manual lock"
RULE_STRATEGIC = "strategic pool"
RULE_SALES_TOOLS = "sales tools bucket"
RULE_STABILITY = "stability lock"
RULE_FORCED = "forced assignment"
RULE_UNASSIGNED = "unassigned"

MANUAL_LOCK_LABEL = "P0"

TIER_PREFIX = "tier:"


@dataclass
class AssignmentResult:
    proposals: List[Proposal]
    metrics: QualityMetrics
    telemetry: dict
    tiers: List[dict] = field(default_factory=list)


def resolve_as_of(cfg: dict) -> date:
    return parse_date(cfg.get("AS_OF_DATE")) or date.today()


def tier_metrics() -> List[str]:
    return [f"{TIER_PREFIX}{t}" for t in ("SMB", "Growth", "MM", "ENT")]


def metric_value(account: Account, metric: str) -> float:
    if metric.startswith(TIER_PREFIX):
        return 1.0 if classify_account_tier(account.employees) == metric[len(TIER_PREFIX):] else 0.0
    return account_metric(account, metric)


class WaterfallEngine:
    mode = "waterfall"

    def __init__(
        self,
        accounts: Sequence[Account],
        reps: Sequence[Rep],
        cfg: dict,
        *,
        router: SolverRouter | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.cfg = cfg
        self.rules: List[PriorityRule] = parse_priorities(cfg.get("PRIORITIES") or [])
        self.active = enabled_rules(self.rules)
        if not self.active:
            raise ConfigurationError("No enabled priority rules")

        self.accounts = sorted(accounts, key=lambda a: a.account_id)
        self.reps = sorted(reps, key=lambda r: r.rep_id)
        self.reps_by_id = {r.rep_id: r for r in self.reps}
        eligible = [r for r in self.reps if r.eligible]
        if not eligible:
            raise ConfigurationError("Rep pool is empty (no active, assignable reps)")
        self.strategic_reps = [r for r in eligible if r.is_strategic_rep]
        self.pool_reps = [r for r in eligible if not r.is_strategic_rep]
        n = len(self.pool_reps)
        self.rep_order = {r.rep_id: (n - j) / n for j, r in enumerate(self.pool_reps)} if n else {}

        self.as_of = resolve_as_of(cfg)
        self.weights = derive_factor_weights(self.rules, cfg["OBJECTIVE"])
        self.team_rule = find_rule(self.rules, RuleKind.TEAM_ALIGNMENT)
        self.ctx = ScoringContext.from_config(cfg, self.as_of, score_team=self.team_rule is not None)
        self.router = router or SolverRouter(cfg)
        self.cancel_event = cancel_event

        self.loads: Dict[str, Dict[str, float]] = {r.rep_id: defaultdict(float) for r in self.reps}
        self.proposals: Dict[str, Proposal] = {}
        self.pending: Dict[str, Account] = {}
        self.tiers: List[dict] = []
        self._bands: Dict[Tuple[str, str], MetricBand] = {}
        self._auto_targets: Dict[str, float] = {}
        self._pass_kind = "customer"

        self._handlers: Dict[RuleKind, Callable[[PriorityRule], None]] = {
            RuleKind.MANUAL_HOLDOVER: self._apply_manual_holdover,
            RuleKind.SALES_TOOLS_BUCKET: self._apply_sales_tools,
            RuleKind.STABILITY_ACCOUNTS: self._apply_stability,
            RuleKind.TEAM_ALIGNMENT: lambda rule: None,  # applied through weights/constraints
            RuleKind.GEO_AND_CONTINUITY: self._apply_geo_and_continuity,
            RuleKind.CONTINUITY: self._apply_continuity,
            RuleKind.GEOGRAPHY: self._apply_geography,
            RuleKind.ARR_BALANCE: self._apply_residual,
        }

    # -------------------- run --------------------
    def run(self) -> AssignmentResult:
        started = time.perf_counter()
        roots, children, orphans = split_hierarchy(self.accounts)
        roots = [aggregate_parent(r, children.get(r.account_id, [])) for r in roots]
        logger.info(
            "%s run: %d accounts (%d assignable), %d reps, %d enabled rules",
            self.mode, len(self.accounts), len(roots), len(self.reps), len(self.active),
        )

        self._run_pass([a for a in roots if a.customer], "customer")
        self._run_pass([a for a in roots if not a.customer], "prospect")

        proposals = list(self.proposals.values())
        proposals += cascade_to_children(self.proposals, children, self.reps_by_id)
        flag_split_hierarchies(proposals, children)
        by_id = {p.account_id: p for p in proposals}
        for acct in orphans:
            if acct.account_id in by_id:
                by_id[acct.account_id].warnings.append(orphan_warning(acct))
        proposals.sort(key=lambda p: p.account_id)

        metrics = calculate_metrics(proposals, self.accounts, self.reps, self.cfg)
        elapsed = (time.perf_counter() - started) * 1000.0
        telemetry = build_telemetry_record(
            cfg=self.cfg,
            mode=self.mode,
            elapsed_ms=elapsed,
            proposals=proposals,
            metrics=metrics,
            solver_stats={**asdict(self.router.stats), "tiers": self.tiers},
            status="success",
            weights=asdict(self.weights),
            priorities=rules_snapshot(self.rules),
            num_accounts=len(self.accounts),
            num_reps=len(self.reps),
        )
        return AssignmentResult(proposals, metrics, telemetry, list(self.tiers))

    def _metrics_for(self, kind: str) -> List[str]:
        balance = self.cfg["BALANCE"]
        return [m for m in self.cfg["WATERFALL_METRICS"].get(kind, []) if (balance.get(m) or {}).get("ENABLED", True)]

    def _start_pass(self, accounts: List[Account], kind: str) -> None:
        self._pass_kind = kind
        self._bands = {}
        self.pending = {a.account_id: a for a in sorted(accounts, key=lambda a: a.account_id)}
        n = max(1, len(self.pool_reps))
        self._auto_targets = {m: sum(account_metric(a, m) for a in accounts) / n for m in METRICS}

    def _run_pass(self, accounts: List[Account], kind: str) -> None:
        if not accounts:
            return
        self._start_pass(accounts, kind)
        self._apply_manual_locks()
        for rule in self.active:
            if not self.pending:
                break
            self._handlers[rule.kind](rule)
        self._force_leftovers()

    # -------------------- bookkeeping --------------------
    @property
    def primary_metric(self) -> str:
        metrics = self.cfg["WATERFALL_METRICS"].get(self._pass_kind) or ["arr"]
        return metrics[0]

    def band(self, rep: Rep, metric: str) -> MetricBand:
        key = (rep.rep_id, metric)
        if key not in self._bands:
            self._bands[key] = resolve_band(rep, metric, self.cfg, self._auto_targets.get(metric, 0.0))
        return self._bands[key]

    def has_capacity(self, rep: Rep, account: Account) -> bool:
        metric = self.primary_metric
        return self.loads[rep.rep_id][metric] + account_metric(account, metric) <= self.band(rep, metric).maximum

    def _label(self, rule: PriorityRule) -> str:
        return position_label(rule.rule_id, self.rules)

    def _assign(
        self,
        account: Account,
        rep_id: str,
        rep_name: str,
        *,
        rule_applied: str,
        label: str,
        rationale: str,
        warnings: Iterable[AssignmentWarning] = (),
        scores: PairScores | None = None,
    ) -> Proposal:
        proposal = Proposal(
            account_id=account.account_id,
            account_name=account.name,
            proposed_rep_id=rep_id,
            proposed_rep_name=rep_name,
            current_owner_id=account.owner_id,
            rule_applied=rule_applied,
            priority_label=label,
            rationale=rationale,
            warnings=list(warnings),
            scores=asdict(scores) if scores is not None else {},
        )
        self.proposals[account.account_id] = proposal
        self.pending.pop(account.account_id, None)
        if rep_id in self.loads:
            load = self.loads[rep_id]
            for metric in METRICS:
                load[metric] += account_metric(account, metric)
            for metric in tier_metrics():
                load[metric] += metric_value(account, metric)
        return proposal

    # -------------------- filter rules --------------------
    def _apply_manual_locks(self) -> None:
        """Locked accounts stay with an active owner whatever the priority order."""
        holdover = find_rule(self.rules, RuleKind.MANUAL_HOLDOVER)
        label = self._label(holdover) if holdover is not None else MANUAL_LOCK_LABEL
        for acct in list(self.pending.values()):
            lock = manual_lock(acct, self.reps_by_id)
            if lock is None:
                continue
            rep = self.reps_by_id[lock.rep_id]
            self._assign(acct, rep.rep_id, rep.name, rule_applied=RULE_MANUAL_LOCK, label=label,
                         rationale=generate_rationale(label, rep.name, lock_reason=lock.reason))

    def _apply_manual_holdover(self, rule: PriorityRule) -> None:
        if not getattr(rule.params, "include_strategic", True) or not self.strategic_reps:
            return
        label = self._label(rule)
        strategic = [a for a in self.pending.values() if a.is_strategic]
        arr_loads = {r.rep_id: self.loads[r.rep_id]["arr"] for r in self.strategic_reps}
        for acct, rep in assign_strategic_pool(strategic, self.strategic_reps, arr_loads):
            reason = "Strategic account kept with strategic owner" if acct.owner_id == rep.rep_id \
                else "Strategic account routed to least-loaded strategic rep"
            self._assign(acct, rep.rep_id, rep.name, rule_applied=RULE_STRATEGIC, label=label,
                         rationale=generate_rationale(label, rep.name, lock_reason=reason))

    def _apply_sales_tools(self, rule: PriorityRule) -> None:
        settings = self.cfg["SALES_TOOLS"]
        threshold = rule.params.arr_threshold
        if threshold is None:
            threshold = float(settings["ARR_THRESHOLD"])
        label = self._label(rule)
        for acct in list(self.pending.values()):
            if routes_to_sales_tools(acct, threshold):
                self._assign(
                    acct, settings["REP_ID"], settings["REP_NAME"],
                    rule_applied=RULE_SALES_TOOLS, label=label,
                    rationale=generate_rationale(label, settings["REP_NAME"],
                                                 lock_reason=f"ARR below {threshold:,.0f}"),
                )

    def _apply_stability(self, rule: PriorityRule) -> None:
        label = self._label(rule)
        for acct in list(self.pending.values()):
            lock = stability_lock(acct, self.reps_by_id, rule.params, self.cfg["STABILITY"], self.as_of)
            if lock is None:
                continue
            rep = self.reps_by_id[lock.rep_id]
            self._assign(acct, rep.rep_id, rep.name, rule_applied=f"{RULE_STABILITY}: {lock.lock_type}",
                         label=label, rationale=generate_rationale(label, rep.name, lock_reason=lock.reason))

    # -------------------- optimization rules --------------------
    def _owner_in_pool(self, account: Account) -> Optional[Rep]:
        rep = self.reps_by_id.get(account.owner_id or "")
        if rep is None or rep.is_strategic_rep or not rep.eligible:
            return None
        return rep

    def _apply_geo_and_continuity(self, rule: PriorityRule) -> None:
        def candidates(acct: Account) -> List[Rep]:
            owner = self._owner_in_pool(acct)
            if owner and is_same_geography(acct, owner, self.ctx.geography) and self.has_capacity(owner, acct):
                return [owner]
            return []

        self._solve_tier(rule, candidates, assignment="optional")

    def _apply_continuity(self, rule: PriorityRule) -> None:
        def candidates(acct: Account) -> List[Rep]:
            owner = self._owner_in_pool(acct)
            if owner and self.has_capacity(owner, acct):
                return [owner]
            return []

        self._solve_tier(rule, candidates, assignment="optional")

    def _apply_geography(self, rule: PriorityRule) -> None:
        def candidates(acct: Account) -> List[Rep]:
            return [r for r in self.pool_reps
                    if is_same_geography(acct, r, self.ctx.geography) and self.has_capacity(r, acct)]

        self._solve_tier(rule, candidates, assignment="optional")

    def _apply_residual(self, rule: PriorityRule) -> None:
        def candidates(acct: Account) -> List[Rep]:
            return [r for r in self.pool_reps if self.has_capacity(r, acct)]

        self._solve_tier(rule, candidates, assignment="exact")

    def cross_region_warnings(self, acct: Account, rep: Rep) -> List[AssignmentWarning]:
        if geography_score(acct, rep, self.ctx.geography) > float(self.ctx.geography["GLOBAL"]):
            return []
        return [AssignmentWarning(SEVERITY_LOW, WARN_CROSS_REGION, "Rep is outside the account's region",
                                  f"account territory '{acct.territory or acct.geo}', rep region '{rep.region}'")]

    def _tier_warnings(self, rule: PriorityRule, acct: Account, rep: Rep) -> List[AssignmentWarning]:
        if rule.kind in (RuleKind.CONTINUITY, RuleKind.ARR_BALANCE):
            return self.cross_region_warnings(acct, rep)
        return []

    def _coefficients(
        self, accounts: List[Account], cands: Dict[str, List[Rep]], scores: Dict[Tuple[str, str], PairScores]
    ) -> Dict[Tuple[str, str], float]:
        ranks = tie_breaker_ranks(accounts, self.primary_metric)
        objective = self.cfg["OBJECTIVE"]
        return {
            (aid, rep.rep_id): pair_coefficient(
                scores[(aid, rep.rep_id)], self.weights,
                tie_break=ranks[aid], rep_order=self.rep_order.get(rep.rep_id, 0.0), objective=objective,
            )
            for aid, reps in cands.items()
            for rep in reps
        }

    def _balance_specs(self, accounts: List[Account], reps: List[Rep], metrics: List[str],
                       weights: Dict[str, float]) -> List[BalanceSpec]:
        specs: List[BalanceSpec] = []
        for metric in metrics:
            if metric.startswith(TIER_PREFIX):
                count = sum(metric_value(a, metric) for a in self.pending.values())
                count += sum(self.loads[r.rep_id][metric] for r in self.pool_reps)
                bands = {r.rep_id: tier_band(count, len(self.pool_reps), self.cfg) for r in reps}
            else:
                bands = {r.rep_id: self.band(r, metric) for r in reps}
            specs.append(BalanceSpec(
                metric=metric,
                weight=weights.get(metric, 1.0),
                bands=bands,
                values={a.account_id: metric_value(a, metric) for a in accounts},
                prior={r.rep_id: self.loads[r.rep_id][metric] for r in reps},
            ))
        return specs

    def _build_problem(
        self,
        name: str,
        accounts: List[Account],
        cands: Dict[str, List[Rep]],
        scores: Dict[Tuple[str, str], PairScores],
        metrics: List[str],
        metric_weights: Dict[str, float],
        assignment: str,
    ) -> LPProblem:
        reps_in_tier = sorted({r.rep_id: r for rs in cands.values() for r in rs}.values(), key=lambda r: r.rep_id)
        tier_match = None
        params = self.team_rule.params if self.team_rule is not None else None
        if params is not None and params.enforce_tier_match:
            tier_match = TierMatchSpec(params.min_tier_match_pct)
        return build_assignment_problem(
            accounts=accounts,
            candidates=cands,
            reps=reps_in_tier,
            coefficients=self._coefficients(accounts, cands, scores),
            balance=self._balance_specs(accounts, reps_in_tier, metrics, metric_weights),
            cfg=self.cfg,
            assignment=assignment,
            tier_match=tier_match,
            name=name,
        )

    def _solve_tier(self, rule: PriorityRule, candidate_fn: Callable[[Account], List[Rep]], *, assignment: str) -> None:
        cands: Dict[str, List[Rep]] = {}
        for aid, acct in self.pending.items():
            reps = candidate_fn(acct)
            if reps:
                cands[aid] = reps
        if not cands:
            return
        accounts = [self.pending[aid] for aid in sorted(cands)]
        metrics = self._metrics_for(self._pass_kind)
        self._optimize(
            name=f"{rule.rule_id}_{self._pass_kind}",
            accounts=accounts,
            cands=cands,
            metrics=metrics,
            metric_weights={m: 1.0 / len(metrics) for m in metrics},
            assignment=assignment,
            mode=SolverMode.WATERFALL_TIER,
            rule_applied=rule.name.lower(),
            label=self._label(rule),
            warn=lambda acct, rep: self._tier_warnings(rule, acct, rep),
        )

    def _optimize(
        self,
        *,
        name: str,
        accounts: List[Account],
        cands: Dict[str, List[Rep]],
        metrics: List[str],
        metric_weights: Dict[str, float],
        assignment: str,
        mode: SolverMode,
        rule_applied: str,
        label: str,
        warn: Callable[[Account, Rep], List[AssignmentWarning]],
    ) -> None:
        pairs = [(acct, rep) for acct in accounts for rep in cands[acct.account_id]]
        scores = score_pairs(pairs, self.ctx, int(self.cfg.get("SCORING_WORKERS", 4)))
        tier: dict = {"name": name, "accounts": len(accounts)}
        self.tiers.append(tier)
        try:
            problem = self._build_problem(name, accounts, cands, scores, metrics, metric_weights, assignment)
        except LPBuildError as exc:
            logger.warning("Tier %s: model rejected (%s); using score fallback", name, exc)
            tier.update(status="build_error", message=str(exc))
            self._score_fallback(accounts, cands, scores, rule_applied, label, f"Model rejected ({exc})")
            return
        tier["variables"] = len(problem.model.variables)
        params = solver_params_from_config(self.cfg, problem, self.cancel_event)

        try:
            solution = self.router.solve(problem, params, mode)
        except SolverError as exc:
            logger.warning("Tier %s: solver failed (%s); using score fallback", name, exc)
            tier.update(status="error", message=str(exc))
            self._score_fallback(accounts, cands, scores, rule_applied, label, f"Solver failed ({exc})")
            return
        tier.update(status=solution.status.value, backend=solution.backend, duration_ms=round(solution.duration_ms, 1))
        if not solution.status.has_solution:
            logger.warning("Tier %s infeasible; using score fallback", name)
            self._score_fallback(accounts, cands, scores, rule_applied, label, "Tier infeasible")
            return

        chosen = extract_assignments(problem, solution)
        threshold = float(self.cfg.get("RATIONALE_SIGNIFICANCE", 0.10))
        placed = 0
        for acct in accounts:
            rep_id = chosen.get(acct.account_id)
            if rep_id is None:
                continue
            rep = self.reps_by_id[rep_id]
            pair = scores[(acct.account_id, rep_id)]
            self._assign(
                acct, rep.rep_id, rep.name,
                rule_applied=rule_applied, label=label,
                rationale=generate_rationale(label, rep.name, pair, self.weights, threshold=threshold),
                warnings=warn(acct, rep),
                scores=pair,
            )
            placed += 1
        tier["assigned"] = placed

    def _score_fallback(
        self,
        accounts: List[Account],
        cands: Dict[str, List[Rep]],
        scores: Dict[Tuple[str, str], PairScores],
        rule_applied: str,
        label: str,
        reason: str,
    ) -> None:
        """Best candidate by score for every tier account, capacity ignored."""
        coefficients = self._coefficients(accounts, cands, scores)
        for acct in accounts:
            aid = acct.account_id
            ordered = sorted(cands[aid], key=lambda r: r.rep_id)
            rep = max(ordered, key=lambda r: coefficients[(aid, r.rep_id)])
            warning = AssignmentWarning(SEVERITY_MEDIUM, WARN_SOLVER_FALLBACK, reason,
                                        "assigned to best-scoring rep without balance optimization")
            pair = scores[(aid, rep.rep_id)]
            self._assign(
                acct, rep.rep_id, rep.name,
                rule_applied=f"{rule_applied} (fallback)", label=label,
                rationale=generate_rationale(label, rep.name, pair, self.weights, fallback_reason=reason),
                warnings=[warning],
                scores=pair,
            )

    # -------------------- leftovers --------------------
    def _force_leftovers(self) -> None:
        metric = self.primary_metric
        for acct in list(self.pending.values()):
            if not self.pool_reps:
                self._assign(
                    acct, UNASSIGNED_REP_ID, UNASSIGNED_REP_NAME,
                    rule_applied=RULE_UNASSIGNED, label=RESIDUAL_LABEL,
                    rationale=generate_rationale(RESIDUAL_LABEL, UNASSIGNED_REP_NAME,
                                                 fallback_reason="No eligible rep available"),
                    warnings=[AssignmentWarning(SEVERITY_HIGH, WARN_UNASSIGNED, "No eligible rep available",
                                                "every active rep is strategic or excluded")],
                )
                continue
            rep = min(self.pool_reps, key=lambda r: (self.loads[r.rep_id][metric], r.rep_id))
            warnings: List[AssignmentWarning] = []
            if not self.has_capacity(rep, acct):
                warnings.append(AssignmentWarning(
                    SEVERITY_HIGH, WARN_CAPACITY_EXCEEDED, "No rep had capacity; assigned to least-loaded rep",
                    f"{metric} load {self.loads[rep.rep_id][metric]:,.0f} + {account_metric(acct, metric):,.0f} "
                    f"> max {self.band(rep, metric).maximum:,.0f}",
                ))
            owner = self._owner_in_pool(acct)
            if owner is not None and owner.rep_id != rep.rep_id:
                warnings.append(AssignmentWarning(SEVERITY_MEDIUM, WARN_CONTINUITY_BROKEN,
                                                  "Moved away from current owner", f"owner {owner.rep_id}"))
            self._assign(
                acct, rep.rep_id, rep.name,
                rule_applied=RULE_FORCED, label=RESIDUAL_LABEL,
                rationale=generate_rationale(RESIDUAL_LABEL, rep.name,
                                             fallback_reason="No priority placed the account"),
                warnings=warnings,
            )


def run_waterfall(
    accounts: Sequence[Account],
    reps: Sequence[Rep],
    cfg: dict,
    *,
    router: SolverRouter | None = None,
    cancel_event: threading.Event | None = None,
) -> AssignmentResult:
    return WaterfallEngine(accounts, reps, cfg, router=router, cancel_event=cancel_event).run()
