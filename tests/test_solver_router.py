import threading
import time

import pytest

from assignment_errors import SolverCancelled, SolverResourceError, SolverTransientError
from lp_builder import build_assignment_problem
import solver_router
from solver_backends import SolverBackend, SolverParams, SolverSolution, SolverStatus
from solver_router import SolverMode, SolverRouter
from tests.utils import FailingBackend, RecordingBackend, ScriptedBackend, config, make_account, make_rep


def _problem(num_accounts: int = 2, num_reps: int = 2):
    cfg = config()
    accounts = [make_account(f"A{i}", 100 + i) for i in range(num_accounts)]
    reps = [make_rep(f"R{j}") for j in range(num_reps)]
    return build_assignment_problem(
        accounts=accounts,
        candidates={a.account_id: reps for a in accounts},
        reps=reps,
        coefficients={(a.account_id, r.rep_id): 1.0 for a in accounts for r in reps},
        balance=[],
        cfg=cfg,
    )


def _router(cfg=None, **backends) -> SolverRouter:
    backends.setdefault("inprocess", RecordingBackend("highs"))
    backends.setdefault("software", RecordingBackend("pulp_cbc"))
    return SolverRouter(cfg or config(), sleep=lambda s: None, **backends)


def test_default_chain_uses_inprocess_first() -> None:
    router = _router()
    plan = router.route_plan(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert plan.backends == ["inprocess", "software"]
    solution = router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert solution.backend == "highs"
    assert router.stats.backends_used == {"highs": 1}


def test_remote_appended_when_configured() -> None:
    router = _router()
    plan = router.route_plan(_problem(), SolverParams(remote_url="https://x"), SolverMode.WATERFALL_TIER)
    assert plan.backends == ["inprocess", "software", "remote"]


def test_resource_error_escalates_to_software() -> None:
    failing = FailingBackend("highs")
    router = _router(inprocess=failing)
    solution = router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert solution.backend == "pulp_cbc"
    assert failing.calls == 1
    assert router.inprocess_failures == 1
    assert router.stats.failures and "highs" in router.stats.failures[0]


def test_crashing_backend_is_wrapped_and_escalated() -> None:
    router = _router(inprocess=FailingBackend("highs", error=AttributeError("no such method")))
    assert router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER).backend == "pulp_cbc"


def test_circuit_breaker_skips_inprocess() -> None:
    failing = FailingBackend("highs")
    router = _router(config(SOLVER={"MAX_INPROCESS_FAILURES": 2}), inprocess=failing)
    for _ in range(4):
        router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert failing.calls == 2
    plan = router.route_plan(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert plan.backends == ["software"]
    assert "disabled" in plan.reason


def test_scale_guard_skips_inprocess_for_large_models() -> None:
    cfg = config(SCALE_LIMITS={"HIGHS_MAX_VARIABLES": 5})
    router = _router(cfg)
    plan = router.route_plan(_problem(3, 2), SolverParams(), SolverMode.WATERFALL_TIER)
    assert plan.backends == ["software"]

    cfg = config(SCALE_LIMITS={"HIGHS_MAX_LP_STRING_BYTES": 10})
    plan = _router(cfg).route_plan(_problem(), SolverParams(remote_url="https://x"), SolverMode.WATERFALL_TIER)
    assert plan.backends == ["software", "remote"]


def test_account_ceiling_goes_straight_to_remote() -> None:
    cfg = config(SCALE_LIMITS={"MAX_ACCOUNTS_FOR_GLOBAL_LP": 2})
    router = _router(cfg)
    assert router.route_plan(_problem(3), SolverParams(remote_url="https://x"), SolverMode.WATERFALL_TIER).backends == ["remote"]
    assert router.route_plan(_problem(3), SolverParams(), SolverMode.WATERFALL_TIER).backends == ["software"]


def test_global_mode_is_remote_only() -> None:
    remote = RecordingBackend("remote")
    router = _router(remote=remote)
    assert router.route_plan(_problem(), SolverParams(), SolverMode.GLOBAL).backends == ["remote"]
    assert router.solve(_problem(), SolverParams(), SolverMode.GLOBAL).backend == "remote"

    no_remote = _router()
    with pytest.raises(SolverResourceError, match="remote"):
        no_remote.solve(_problem(), SolverParams(), SolverMode.GLOBAL)


def test_remote_transient_retried_once() -> None:
    ok = SolverSolution(SolverStatus.OPTIMAL, {}, 0.0, 1.0, "remote")
    remote = ScriptedBackend("remote", [SolverTransientError("503"), ok])
    sleeps = []
    router = SolverRouter(config(), inprocess=RecordingBackend(), software=RecordingBackend(),
                          remote=remote, sleep=sleeps.append)
    assert router.solve(_problem(), SolverParams(retry_backoff=1.5), SolverMode.GLOBAL) is ok
    assert remote.calls == 2
    assert sleeps == [1.5]
    assert router.stats.retries == 1


def test_remote_second_transient_becomes_resource_error() -> None:
    remote = ScriptedBackend("remote", [SolverTransientError("503"), SolverTransientError("503 again")])
    router = _router(remote=remote)
    with pytest.raises(SolverResourceError, match="All solver backends failed"):
        router.solve(_problem(), SolverParams(), SolverMode.GLOBAL)
    assert remote.calls == 2


def test_all_backends_failing_raises() -> None:
    router = _router(inprocess=FailingBackend("highs"), software=FailingBackend("pulp_cbc"))
    with pytest.raises(SolverResourceError) as info:
        router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER)
    assert "highs" in str(info.value) and "pulp_cbc" in str(info.value)


def test_infeasible_is_returned_not_escalated() -> None:
    infeasible = SolverSolution(SolverStatus.INFEASIBLE, backend="highs")
    software = RecordingBackend("pulp_cbc")
    router = _router(inprocess=ScriptedBackend("highs", [infeasible]), software=software)
    assert router.solve(_problem(), SolverParams(), SolverMode.WATERFALL_TIER).status is SolverStatus.INFEASIBLE
    assert software.problems == []


class SlowBackend(SolverBackend):
    name = "slow"

    def __init__(self, seconds: float):
        self.seconds = seconds

    def solve(self, problem, params):
        time.sleep(self.seconds)
        return SolverSolution(SolverStatus.OPTIMAL, {}, 0.0, 0.0, self.name)


def test_cancel_before_start() -> None:
    event = threading.Event()
    event.set()
    with pytest.raises(SolverCancelled):
        _router().solve(_problem(), SolverParams(cancel_event=event), SolverMode.WATERFALL_TIER)


def test_cancel_while_running() -> None:
    event = threading.Event()
    router = _router(inprocess=SlowBackend(2.0))
    timer = threading.Timer(0.1, event.set)
    timer.start()
    started = time.monotonic()
    with pytest.raises(SolverCancelled):
        router.solve(_problem(), SolverParams(cancel_event=event), SolverMode.WATERFALL_TIER)
    assert time.monotonic() - started < 1.5
    assert router.stats.abandoned == 1
    timer.cancel()


def test_deadline_exceeded_escalates(monkeypatch) -> None:
    monkeypatch.setattr(solver_router, "DEADLINE_GRACE_SECONDS", 0.1)
    router = _router(inprocess=SlowBackend(1.0))
    solution = router.solve(_problem(), SolverParams(time_limit=0.0), SolverMode.WATERFALL_TIER)
    assert solution.backend == "pulp_cbc"
    assert "exceeded" in router.stats.failures[0]
    assert router.stats.abandoned == 1
