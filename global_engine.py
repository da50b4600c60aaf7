"""Single global LP mode.

Filter rules still run first (locks, strategic pool, sales tools, stability);
everything left is solved in one model that balances every weighted metric at
once. Global models are only sent to the remote solver.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Sequence, Tuple

from book_model import Account, Rep
from priority_registry import RESIDUAL_LABEL, RuleFamily
from solver_router import SolverMode, SolverRouter
from waterfall_engine import AssignmentResult, WaterfallEngine, run_waterfall, tier_metrics

logger = logging.getLogger(__name__)

RULE_GLOBAL = "global optimization"

MODE_WATERFALL = "WATERFALL"
MODE_GLOBAL = "GLOBAL"


def global_metrics(cfg: dict, kind: str) -> Tuple[List[str], Dict[str, float]]:
    """Balanced metrics and their weights for one pass; ``tiers`` fans out per tier."""

    balance = cfg["BALANCE"]
    metrics: List[str] = []
    weights: Dict[str, float] = {}
    for name, weight in (cfg["METRIC_WEIGHTS"].get(kind) or {}).items():
        weight = float(weight)
        if weight <= 0 or not (balance.get(name) or {}).get("ENABLED", True):
            continue
        if name == "tiers":
            per_tier = weight / len(tier_metrics())
            for metric in tier_metrics():
                metrics.append(metric)
                weights[metric] = per_tier
        else:
            metrics.append(name)
            weights[name] = weight
    return metrics, weights


class GlobalEngine(WaterfallEngine):
    mode = "global"

    def _run_pass(self, accounts: List[Account], kind: str) -> None:
        if not accounts:
            return
        self._start_pass(accounts, kind)
        self._apply_manual_locks()
        for rule in self.active:
            if rule.family is RuleFamily.FILTER and self.pending:
                self._handlers[rule.kind](rule)
        if self.pending and self.pool_reps:
            self._solve_global(kind)
        self._force_leftovers()

    def _solve_global(self, kind: str) -> None:
        accounts = list(self.pending.values())
        metrics, weights = global_metrics(self.cfg, kind)
        logger.info("Global %s model: %d accounts x %d reps, metrics %s",
                    kind, len(accounts), len(self.pool_reps), ", ".join(metrics) or "-")
        self._optimize(
            name=f"global_{kind}",
            accounts=accounts,
            cands={a.account_id: list(self.pool_reps) for a in accounts},
            metrics=metrics,
            metric_weights=weights,
            assignment="exact",
            mode=SolverMode.GLOBAL,
            rule_applied=RULE_GLOBAL,
            label=RESIDUAL_LABEL,
            warn=self.cross_region_warnings,
        )


def run_global(
    accounts: Sequence[Account],
    reps: Sequence[Rep],
    cfg: dict,
    *,
    router: SolverRouter | None = None,
    cancel_event: threading.Event | None = None,
) -> AssignmentResult:
    return GlobalEngine(accounts, reps, cfg, router=router, cancel_event=cancel_event).run()


def choose_mode(cfg: dict, override: str | None = None) -> str:
    mode = (override or cfg["SOLVER"].get("MODE") or MODE_WATERFALL).upper()
    return MODE_GLOBAL if mode == MODE_GLOBAL else MODE_WATERFALL


def run_engine(
    accounts: Sequence[Account],
    reps: Sequence[Rep],
    cfg: dict,
    *,
    mode: str | None = None,
    router: SolverRouter | None = None,
    cancel_event: threading.Event | None = None,
) -> AssignmentResult:
    """Dispatch to the waterfall or the global model."""
    runner = run_global if choose_mode(cfg, mode) == MODE_GLOBAL else run_waterfall
    return runner(accounts, reps, cfg, router=router, cancel_event=cancel_event)
