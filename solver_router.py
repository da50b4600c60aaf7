"""Backend selection and fallback chain.

``SolverMode`` is passed explicitly on every call:

* GLOBAL – remote service only (problem size is unbounded)
* WATERFALL_TIER – in-process HiGHS, then PuLP/CBC, then the remote service;
  the scale guard skips HiGHS for oversized problems and a per-run circuit
  breaker stops retrying it after repeated resource failures.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List

from assignment_errors import SolverCancelled, SolverError, SolverResourceError, SolverTransientError
from lp_builder import LPProblem, estimate_size
from solver_backends import (
    HighsBackend,
    PulpBackend,
    RemoteBackend,
    SolverBackend,
    SolverParams,
    SolverSolution,
)

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.05
DEADLINE_GRACE_SECONDS = 5.0


class SolverMode(str, Enum):
    WATERFALL_TIER = "waterfall_tier"
    GLOBAL = "global"


@dataclass
class RouteDecision:
    backends: List[str]
    reason: str


@dataclass
class RouterStats:
    solves: int = 0
    backends_used: Dict[str, int] = field(default_factory=dict)
    failures: List[str] = field(default_factory=list)
    retries: int = 0
    abandoned: int = 0

    def record_success(self, backend: str) -> None:
        self.solves += 1
        self.backends_used[backend] = self.backends_used.get(backend, 0) + 1


class SolverRouter:
    def __init__(
        self,
        cfg: dict,
        *,
        inprocess: SolverBackend | None = None,
        software: SolverBackend | None = None,
        remote: SolverBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.limits = dict(cfg["SCALE_LIMITS"])
        self.max_inprocess_failures = int(cfg["SOLVER"].get("MAX_INPROCESS_FAILURES", 2))
        self.backends: Dict[str, SolverBackend] = {
            "inprocess": inprocess or HighsBackend(),
            "software": software or PulpBackend(),
            "remote": remote or RemoteBackend(),
        }
        # an injected remote backend is assumed to know its own endpoint
        self._remote_injected = remote is not None
        self.inprocess_failures = 0
        self.stats = RouterStats()
        self._sleep = sleep

    # -------------------- routing --------------------
    def _remote_available(self, params: SolverParams) -> bool:
        return self._remote_injected or bool(params.remote_url)

    def route_plan(self, problem: LPProblem, params: SolverParams, mode: SolverMode) -> RouteDecision:
        remote = ["remote"] if self._remote_available(params) else []
        if mode == SolverMode.GLOBAL:
            if not remote:
                return RouteDecision([], "global mode requires a remote solver URL")
            return RouteDecision(remote, "global mode always solves remotely")

        size = estimate_size(problem)
        if size.num_accounts > int(self.limits["MAX_ACCOUNTS_FOR_GLOBAL_LP"]):
            chain = remote or ["software"]
            return RouteDecision(chain, f"{size.num_accounts} accounts exceed the in-process ceiling")
        if size.num_accounts > int(self.limits["WARN_ACCOUNTS_THRESHOLD"]):
            logger.warning("Large tier: %d accounts; expect a slow solve", size.num_accounts)
        if size.num_variables > int(self.limits["HIGHS_MAX_VARIABLES"]):
            return RouteDecision(["software", *remote], f"{size.num_variables} variables exceed the in-process limit")
        if size.lp_bytes > int(self.limits["HIGHS_MAX_LP_STRING_BYTES"]):
            return RouteDecision(["software", *remote], f"LP text of {size.lp_bytes} bytes exceeds the in-process limit")
        if self.inprocess_failures >= self.max_inprocess_failures:
            return RouteDecision(["software", *remote], "in-process solver disabled after repeated failures")
        return RouteDecision(["inprocess", "software", *remote], "default chain")

    # -------------------- execution --------------------
    def solve(self, problem: LPProblem, params: SolverParams, mode: SolverMode) -> SolverSolution:
        decision = self.route_plan(problem, params, mode)
        logger.info("Routing %s (%s): %s", problem.model.name, mode.value, decision.reason)
        if not decision.backends:
            raise SolverResourceError(decision.reason)

        errors: List[str] = []
        for key in decision.backends:
            backend = self.backends[key]
            try:
                if key == "remote":
                    solution = self._solve_remote(backend, problem, params)
                else:
                    solution = self._run(backend, problem, params, params.time_limit + DEADLINE_GRACE_SECONDS)
            except SolverResourceError as exc:
                errors.append(f"{backend.name}: {exc}")
                self.stats.failures.append(f"{backend.name}: {exc}")
                if key == "inprocess":
                    self.inprocess_failures += 1
                logger.warning("Solver %s failed (%s); escalating", backend.name, exc)
                continue
            self.stats.record_success(backend.name)
            return solution

        raise SolverResourceError("All solver backends failed: " + "; ".join(errors))

    def _solve_remote(self, backend: SolverBackend, problem: LPProblem, params: SolverParams) -> SolverSolution:
        deadline = params.remote_timeout + DEADLINE_GRACE_SECONDS
        try:
            return self._run(backend, problem, params, deadline, transient=True)
        except SolverTransientError as first:
            logger.warning("Remote solver transient failure (%s); retrying once", first)
            self.stats.retries += 1
            self._sleep(params.retry_backoff)
            try:
                return self._run(backend, problem, params, deadline, transient=True)
            except SolverTransientError as second:
                raise SolverResourceError(f"Remote solver failed twice: {second}", backend=backend.name) from second

    def _run(
        self,
        backend: SolverBackend,
        problem: LPProblem,
        params: SolverParams,
        deadline_seconds: float,
        *,
        transient: bool = False,
    ) -> SolverSolution:
        """Run one backend call with a deadline, honoring ``params.cancel_event``.

        A call that is already running cannot be interrupted: on cancel or
        deadline its worker thread is left to finish on the backend's own
        ``time_limit`` and is counted in ``stats.abandoned``.
        """

        cancel = params.cancel_event
        if cancel is not None and cancel.is_set():
            raise SolverCancelled("Solve cancelled before start", backend=backend.name)

        pool = ThreadPoolExecutor(max_workers=1)
        try:
            fut = pool.submit(backend.solve, problem, params)
            started = time.monotonic()
            while True:
                try:
                    return fut.result(timeout=POLL_SECONDS)
                except FutureTimeout:
                    if fut.done():
                        raise SolverResourceError(f"{backend.name} timed out internally", backend=backend.name)
                except SolverError:
                    raise
                except Exception as exc:
                    raise SolverResourceError(f"{backend.name} crashed: {exc}", backend=backend.name) from exc
                if cancel is not None and cancel.is_set():
                    self._abandon(fut)
                    raise SolverCancelled("Solve cancelled", backend=backend.name)
                if time.monotonic() - started > deadline_seconds:
                    self._abandon(fut)
                    error = SolverTransientError if transient else SolverResourceError
                    raise error(f"{backend.name} exceeded {deadline_seconds:.0f}s", backend=backend.name)
        finally:
            pool.shutdown(wait=False)

    def _abandon(self, fut) -> None:
        if not fut.cancel():
            self.stats.abandoned += 1
