import pytest

from book_model import WARN_SOLVER_FALLBACK
from global_engine import MODE_GLOBAL, MODE_WATERFALL, choose_mode, global_metrics, run_engine, run_global
from solver_router import SolverRouter
from tests.utils import FailingBackend, RecordingBackend, config, make_account, make_rep, priorities


def _book():
    reps = [make_rep("R1"), make_rep("R2")]
    accounts = [
        make_account("A1", 300, employees=50),
        make_account("A2", 200, owner="R2", employees=800),
        make_account("L1", 100, owner="R2", locked=True),
        make_account("X1", 0, pipeline_value=100.0, employees=20),
    ]
    return accounts, reps


def _remote_router(cfg, remote):
    return SolverRouter(cfg, inprocess=FailingBackend("highs"), software=FailingBackend("pulp_cbc"), remote=remote)


def test_global_pass_per_account_kind_solved_remotely() -> None:
    cfg = config()
    remote = RecordingBackend("remote")
    accounts, reps = _book()

    result = run_global(accounts, reps, cfg, router=_remote_router(cfg, remote))
    got = {p.account_id: p for p in result.proposals}
    assert [p.model.name for p in remote.problems] == ["global_customer", "global_prospect"]
    # filter rules still run; optimization tiers do not
    assert got["L1"].rule_applied == "manual lock"
    assert got["L1"].proposed_rep_id == "R2"
    for aid in ("A1", "A2", "X1"):
        assert got[aid].rule_applied == "global optimization"
        assert got[aid].priority_label == "RO"
        assert got[aid].proposed_rep_id == "R1"
    assert result.telemetry["mode"] == "global"
    assert result.telemetry["solver"]["backends_used"] == {"remote": 2}


def test_global_keeps_manual_locks_without_holdover_rule() -> None:
    cfg = config(PRIORITIES=priorities("arr_balance"))
    remote = RecordingBackend("remote")
    accounts, reps = _book()

    got = {p.account_id: p for p in run_global(accounts, reps, cfg, router=_remote_router(cfg, remote)).proposals}
    assert (got["L1"].proposed_rep_id, got["L1"].rule_applied, got["L1"].priority_label) == ("R2", "manual lock", "P0")
    assert all("L1" not in problem.assign_vars for problem in remote.problems)


def test_global_model_balances_tier_counts() -> None:
    cfg = config()
    remote = RecordingBackend("remote")
    accounts, reps = _book()
    run_global(accounts, reps, cfg, router=_remote_router(cfg, remote))
    customer = remote.problems[0]
    rows = [c.name for c in customer.model.constraints if c.name.startswith("bal")]
    # arr (m=0) and at least one tier count row; atr is zero everywhere and has no target
    assert "bal0_0" in rows
    assert any(not name.startswith("bal0_") and not name.startswith("bal1_") for name in rows)


def test_global_without_remote_falls_back_with_warnings() -> None:
    cfg = config()
    accounts, reps = _book()
    result = run_global(accounts, reps, cfg)
    got = {p.account_id: p for p in result.proposals}
    assert got["A1"].rule_applied == "global optimization (fallback)"
    assert [w.kind for w in got["A1"].warnings] == [WARN_SOLVER_FALLBACK]
    assert "remote solver URL" in result.tiers[0]["message"]
    assert len(result.proposals) == len(accounts)


def test_global_metrics_fan_out_tiers() -> None:
    metrics, weights = global_metrics(config(), "customer")
    assert metrics == ["arr", "atr", "tier:SMB", "tier:Growth", "tier:MM", "tier:ENT"]
    assert weights["arr"] == pytest.approx(0.5)
    assert weights["tier:MM"] == pytest.approx(0.25 / 4)
    assert sum(weights.values()) == pytest.approx(1.0)

    metrics, _ = global_metrics(config(BALANCE={"atr": {"ENABLED": False}}), "customer")
    assert "atr" not in metrics
    metrics, _ = global_metrics(config(METRIC_WEIGHTS={"prospect": {"tiers": 0.0}}), "prospect")
    assert metrics == ["pipeline"]


def test_choose_mode() -> None:
    assert choose_mode(config()) == MODE_WATERFALL
    assert choose_mode(config(), "global") == MODE_GLOBAL
    assert choose_mode(config(SOLVER={"MODE": "GLOBAL"})) == MODE_GLOBAL
    assert choose_mode(config(SOLVER={"MODE": "GLOBAL"}), "waterfall") == MODE_WATERFALL


def test_run_engine_dispatches() -> None:
    cfg = config()
    accounts, reps = _book()
    remote = RecordingBackend("remote")
    result = run_engine(accounts, reps, cfg, mode="global", router=_remote_router(cfg, remote))
    assert result.telemetry["mode"] == "global"
    assert remote.problems

    waterfall = run_engine(accounts, reps, cfg)
    assert waterfall.telemetry["mode"] == "waterfall"
