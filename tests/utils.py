"""Builders and fake solver backends for engine tests."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from assignment_config import build_config
from assignment_errors import SolverResourceError
from book_model import Account, MetricLimits, Rep
from lp_builder import LPProblem
from solver_backends import SolverBackend, SolverParams, SolverSolution, SolverStatus

AS_OF = "2024-01-15"


def make_account(
    account_id: str,
    arr: float = 0.0,
    *,
    owner: Optional[str] = None,
    territory: str = "",
    employees: Optional[int] = None,
    **fields,
) -> Account:
    fields.setdefault("name", f"Account {account_id}")
    if arr and "is_customer" not in fields:
        fields["is_customer"] = True
    return Account(
        account_id=account_id,
        arr=arr or None,
        owner_id=owner,
        territory=territory,
        employees=employees,
        **fields,
    )


def make_rep(
    rep_id: str,
    *,
    region: str = "",
    tier: Optional[str] = None,
    arr_target: Optional[float] = None,
    arr_max: Optional[float] = None,
    **fields,
) -> Rep:
    capacity: Dict[str, MetricLimits] = {}
    if arr_target is not None or arr_max is not None:
        capacity["arr"] = MetricLimits(target=arr_target, maximum=arr_max)
    fields.setdefault("name", f"Rep {rep_id}")
    return Rep(rep_id=rep_id, region=region, team_tier=tier, capacity=capacity, **fields)


def priorities(*rule_ids: str, disabled: Iterable[str] = ()) -> List[dict]:
    """Enabled rules at positions 0..n-1 in the given order."""
    entries = [{"id": rid, "position": pos, "enabled": True} for pos, rid in enumerate(rule_ids)]
    offset = len(entries)
    entries += [{"id": rid, "position": offset + i, "enabled": False} for i, rid in enumerate(disabled)]
    return entries


def config(**overrides) -> dict:
    base = {"AS_OF_DATE": AS_OF, "SCORING_WORKERS": 1}
    base.update(overrides)
    return build_config(base)


def write_snapshot(path: Path, accounts: List[dict], reps: List[dict]) -> Path:
    path.write_text(json.dumps({"accounts": accounts, "reps": reps}), encoding="utf-8")
    return path


class FailingBackend(SolverBackend):
    """Always raises the given error; counts calls."""

    def __init__(self, name: str = "failing", error: Exception | None = None):
        self.name = name
        self.error = error or SolverResourceError(f"{name} out of memory", backend=name)
        self.calls = 0

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        self.calls += 1
        raise self.error


class ScriptedBackend(SolverBackend):
    """Replays a list of outcomes: SolverSolution instances or exceptions."""

    def __init__(self, name: str, outcomes: List[object]):
        self.name = name
        self.outcomes = list(outcomes)
        self.calls = 0

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        self.calls += 1
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingBackend(SolverBackend):
    """Assigns every account to the candidate chosen by ``pick``."""

    def __init__(self, name: str = "recording", pick: Callable[[str, List[str]], str] | None = None):
        self.name = name
        self.pick = pick or (lambda account_id, rep_ids: rep_ids[0])
        self.problems: List[LPProblem] = []

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        self.problems.append(problem)
        values = {}
        for account_id, by_rep in problem.assign_vars.items():
            chosen = self.pick(account_id, sorted(by_rep))
            for rep_id, var in by_rep.items():
                values[var] = 1.0 if rep_id == chosen else 0.0
        return SolverSolution(SolverStatus.OPTIMAL, values, 0.0, 1.0, self.name, "Optimal")


def infeasible(name: str = "scripted") -> SolverSolution:
    return SolverSolution(SolverStatus.INFEASIBLE, backend=name, message="infeasible")
