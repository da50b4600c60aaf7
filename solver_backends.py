"""Solver backends behind one ``solve(problem, params)`` contract.

* ``HighsBackend`` – in-process HiGHS (highspy) reading the LP text
* ``PulpBackend`` – PuLP/CBC built straight from the model IR
* ``RemoteBackend`` – JSON POST of the LP text to a solver service

Backend-specific failures are translated into ``SolverResourceError`` /
``SolverTransientError`` so the router never sees backend exceptions.
"""

from __future__ import annotations

import json
import logging
import socket
import ssl
import tempfile
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import certifi
import highspy
import pulp

from assignment_errors import SolverResourceError, SolverTransientError
from lp_builder import LPProblem

logger = logging.getLogger(__name__)


class SolverStatus(str, Enum):
    OPTIMAL = "optimal"
    FEASIBLE = "feasible"
    INFEASIBLE = "infeasible"
    ERROR = "error"

    @property
    def has_solution(self) -> bool:
        return self in (SolverStatus.OPTIMAL, SolverStatus.FEASIBLE)


@dataclass
class SolverParams:
    time_limit: float = 60.0
    mip_rel_gap: float = 1e-4
    remote_url: Optional[str] = None
    remote_timeout: float = 300.0
    retry_backoff: float = 2.0
    cancel_event: Optional[threading.Event] = None


@dataclass
class SolverSolution:
    status: SolverStatus
    values: Dict[str, float] = field(default_factory=dict)
    objective: Optional[float] = None
    duration_ms: float = 0.0
    backend: str = ""
    message: str = ""


def solver_params_from_config(
    cfg: dict,
    problem: LPProblem | None = None,
    cancel_event: threading.Event | None = None,
) -> SolverParams:
    solver = cfg["SOLVER"]
    gap = float(solver.get("MIP_REL_GAP", 1e-4))
    if problem is not None and len(problem.model.binaries) <= int(solver.get("EXACT_GAP_MAX_BINARIES", 0)):
        gap = 0.0
    return SolverParams(
        time_limit=float(solver.get("TIME_LIMIT_SECONDS", 60)),
        mip_rel_gap=gap,
        remote_url=solver.get("REMOTE_URL") or None,
        remote_timeout=float(solver.get("REMOTE_TIMEOUT_SECONDS", 300)),
        retry_backoff=float(solver.get("REMOTE_RETRY_BACKOFF_SECONDS", 2.0)),
        cancel_event=cancel_event,
    )


class SolverBackend:
    name = "base"

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        raise NotImplementedError


# -------------------- HiGHS (in-process) --------------------
class HighsBackend(SolverBackend):
    name = "highs"

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        start = time.perf_counter()
        try:
            with tempfile.TemporaryDirectory() as tmp:
                lp_path = Path(tmp) / "model.lp"
                lp_path.write_text(problem.lp_text(), encoding="utf-8")
                h = highspy.Highs()
                h.setOptionValue("output_flag", False)
                h.setOptionValue("time_limit", float(params.time_limit))
                h.setOptionValue("mip_rel_gap", float(params.mip_rel_gap))
                if h.readModel(str(lp_path)) == highspy.HighsStatus.kError:
                    raise SolverResourceError("HiGHS rejected the LP model", backend=self.name)
                if h.run() == highspy.HighsStatus.kError:
                    raise SolverResourceError("HiGHS run aborted", backend=self.name)
                model_status = h.getModelStatus()
                solution = h.getSolution()
                names = list(h.getLp().col_names_)
                objective = h.getInfo().objective_function_value
        except MemoryError as exc:
            raise SolverResourceError(f"HiGHS out of memory: {exc}", backend=self.name) from exc
        except RuntimeError as exc:
            raise SolverResourceError(f"HiGHS aborted: {exc}", backend=self.name) from exc
        duration = (time.perf_counter() - start) * 1000.0

        if model_status == highspy.HighsModelStatus.kInfeasible:
            return SolverSolution(SolverStatus.INFEASIBLE, duration_ms=duration, backend=self.name,
                                  message="infeasible")
        if not solution.value_valid:
            raise SolverResourceError(
                f"HiGHS finished with {h.modelStatusToString(model_status)} and no solution",
                backend=self.name,
            )
        status = SolverStatus.OPTIMAL if model_status == highspy.HighsModelStatus.kOptimal else SolverStatus.FEASIBLE
        values = {name: float(v) for name, v in zip(names, solution.col_value)}
        return SolverSolution(status, values, float(objective), duration, self.name,
                              h.modelStatusToString(model_status))


# -------------------- PuLP / CBC --------------------
class PulpBackend(SolverBackend):
    name = "pulp_cbc"

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        start = time.perf_counter()
        model = problem.model
        prob = pulp.LpProblem(model.name, pulp.LpMaximize)
        lp_vars = {
            v.name: pulp.LpVariable(
                v.name,
                lowBound=v.lower,
                upBound=v.upper,
                cat=pulp.LpBinary if v.kind == "binary" else pulp.LpContinuous,
            )
            for v in model.variables.values()
        }
        prob += pulp.lpSum(coef * lp_vars[name] for coef, name in model.objective), "obj"
        for con in model.constraints:
            expr = pulp.lpSum(coef * lp_vars[name] for coef, name in con.terms)
            if con.sense == "=":
                prob += (expr == con.rhs), con.name
            elif con.sense == "<=":
                prob += (expr <= con.rhs), con.name
            else:
                prob += (expr >= con.rhs), con.name

        solver = pulp.PULP_CBC_CMD(msg=False, timeLimit=params.time_limit, gapRel=params.mip_rel_gap)
        try:
            prob.solve(solver)
        except pulp.PulpSolverError as exc:
            raise SolverResourceError(f"CBC failed: {exc}", backend=self.name) from exc
        duration = (time.perf_counter() - start) * 1000.0

        status_text = pulp.LpStatus.get(prob.status, str(prob.status))
        if status_text == "Infeasible" or prob.sol_status == pulp.LpSolutionInfeasible:
            return SolverSolution(SolverStatus.INFEASIBLE, duration_ms=duration, backend=self.name,
                                  message=status_text)
        if prob.sol_status == pulp.LpSolutionOptimal:
            status = SolverStatus.OPTIMAL
        elif prob.sol_status == pulp.LpSolutionIntegerFeasible:
            status = SolverStatus.FEASIBLE
        else:
            raise SolverResourceError(f"CBC finished with status {status_text}", backend=self.name)
        values = {name: float(var.varValue or 0.0) for name, var in lp_vars.items()}
        return SolverSolution(status, values, pulp.value(prob.objective), duration, self.name, status_text)


# -------------------- Remote service --------------------
class RemoteBackend(SolverBackend):
    name = "remote"

    def __init__(self, url: str | None = None):
        self.url = url

    def _post(self, url: str, payload: bytes, timeout: float) -> bytes:
        ctx = ssl.create_default_context(cafile=certifi.where())
        req = urllib.request.Request(
            url,
            data=payload,
            headers={"Content-Type": "application/json", "User-Agent": "BookAssigner/1.0"},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=timeout, context=ctx) as resp:
            return resp.read()

    def solve(self, problem: LPProblem, params: SolverParams) -> SolverSolution:
        base = self.url or params.remote_url
        if not base:
            raise SolverResourceError("No remote solver URL configured", backend=self.name)
        payload = json.dumps(
            {
                "lp": problem.lp_text(),
                "options": {"time_limit": params.time_limit, "mip_rel_gap": params.mip_rel_gap},
            }
        ).encode("utf-8")

        start = time.perf_counter()
        try:
            body = self._post(base.rstrip("/") + "/solve", payload, params.remote_timeout)
        except urllib.error.HTTPError as exc:
            if exc.code >= 500 or exc.code == 429:
                raise SolverTransientError(f"Remote solver HTTP {exc.code}", backend=self.name) from exc
            raise SolverResourceError(f"Remote solver rejected the model (HTTP {exc.code})",
                                      backend=self.name) from exc
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as exc:
            raise SolverTransientError(f"Remote solver unreachable: {exc}", backend=self.name) from exc
        duration = (time.perf_counter() - start) * 1000.0

        try:
            data = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise SolverResourceError("Remote solver returned unparseable JSON", backend=self.name) from exc
        return parse_remote_response(data, duration, self.name)


def parse_remote_response(data: dict, duration_ms: float = 0.0, backend: str = "remote") -> SolverSolution:
    status_text = str(data.get("status") or "")
    columns = data.get("columns") or {}
    values = {name: float((col or {}).get("Primal", 0.0)) for name, col in columns.items()}
    objective = data.get("objectiveValue")
    objective = float(objective) if objective is not None else None

    if status_text == "Infeasible":
        return SolverSolution(SolverStatus.INFEASIBLE, duration_ms=duration_ms, backend=backend,
                              message=status_text)
    if status_text == "Optimal":
        return SolverSolution(SolverStatus.OPTIMAL, values, objective, duration_ms, backend, status_text)
    if values:
        # "Time limit" and friends still carry an incumbent
        return SolverSolution(SolverStatus.FEASIBLE, values, objective, duration_ms, backend, status_text)
    raise SolverResourceError(f"Remote solver returned '{status_text}' without a solution", backend=backend)


def extract_assignments(problem: LPProblem, solution: SolverSolution) -> Dict[str, str]:
    """account_id -> rep_id for assignment variables at (or rounding to) 1."""

    chosen: Dict[str, str] = {}
    if not solution.status.has_solution:
        return chosen
    for account_id, by_rep in problem.assign_vars.items():
        best_rep, best_val = None, 0.5
        for rep_id in sorted(by_rep):
            val = solution.values.get(by_rep[rep_id], 0.0)
            if val >= best_val and (best_rep is None or val > best_val):
                best_rep, best_val = rep_id, val
        if best_rep is not None:
            chosen[account_id] = best_rep
    return chosen
