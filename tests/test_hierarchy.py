from book_model import WARN_DATA_INTEGRITY, WARN_PARENT_CHILD_SEPARATED, Proposal
from hierarchy import (
    aggregate_parent,
    build_hierarchy,
    cascade_to_children,
    flag_split_hierarchies,
    split_hierarchy,
)
from solver_router import SolverRouter
from tests.utils import RecordingBackend, config, make_account, make_rep
from waterfall_engine import run_waterfall


def _family():
    return [
        make_account("P", 1000, atr=100.0, pipeline_value=10.0),
        make_account("C1", 200, parent_id="P", atr=50.0, pipeline_value=5.0),
        make_account("G1", 50, parent_id="C1"),
        make_account("O1", 70, parent_id="MISSING"),
        make_account("X", 10, parent_id="Y"),
        make_account("Y", 10, parent_id="X"),
    ]


def test_build_hierarchy_edges() -> None:
    graph = build_hierarchy(_family())
    assert set(graph.edges) == {("P", "C1"), ("C1", "G1"), ("Y", "X"), ("X", "Y")}
    assert "MISSING" not in graph


def test_split_hierarchy_roots_children_orphans() -> None:
    roots, children, orphans = split_hierarchy(_family())
    assert [a.account_id for a in roots] == ["O1", "P", "X", "Y"]
    assert [c.account_id for c in children["P"]] == ["C1", "G1"]
    # broken parent links and cycles are assigned standalone
    assert [a.account_id for a in orphans] == ["O1", "X", "Y"]


def test_aggregate_parent_rolls_up_atr_and_pipeline() -> None:
    parent, child = _family()[:2]
    merged = aggregate_parent(parent, [child])
    assert merged.calculated_atr == 150.0
    assert merged.pipeline_value == 15.0
    assert merged.arr == 1000
    assert parent.calculated_atr is None
    assert aggregate_parent(parent, []) is parent


def _proposal(account_id: str, rep_id: str) -> Proposal:
    return Proposal(account_id, f"Account {account_id}", rep_id, f"Rep {rep_id}", None, "continuity", "P5", "")


def test_cascade_and_flag_split() -> None:
    reps = {"R1": make_rep("R1"), "R2": make_rep("R2")}
    children = {"P": [make_account("C1", 10, owner="R2"), make_account("C2", 10, owner="R2", locked=True)]}
    parent = _proposal("P", "R1")

    cascaded = cascade_to_children({"P": parent}, children, reps)
    by_id = {p.account_id: p for p in cascaded}
    assert by_id["C1"].proposed_rep_id == "R1"
    assert by_id["C1"].rule_applied == "parent cascade"
    assert by_id["C1"].priority_label == "P5"
    assert by_id["C2"].proposed_rep_id == "R2"
    assert by_id["C2"].rule_applied == "manual lock"

    assert flag_split_hierarchies([parent, *cascaded], children) == 1
    assert [w.kind for w in by_id["C2"].warnings] == [WARN_PARENT_CHILD_SEPARATED]
    assert [w.kind for w in parent.warnings] == [WARN_PARENT_CHILD_SEPARATED]
    assert by_id["C1"].warnings == []


def test_locked_child_of_inactive_owner_follows_parent() -> None:
    reps = {"R1": make_rep("R1"), "R2": make_rep("R2", is_active=False), "R3": make_rep("R3")}
    children = {"P": [
        make_account("C1", 10, owner="R2", locked=True),
        make_account("C2", 10, owner="R3", locked=True, lock_reason="Exec sponsor"),
    ]}
    cascaded = {p.account_id: p for p in cascade_to_children({"P": _proposal("P", "R1")}, children, reps)}

    assert cascaded["C1"].proposed_rep_id == "R1"
    assert cascaded["C1"].rule_applied == "parent cascade"
    assert cascaded["C1"].rationale == "P5: Assigned to Rep R1; follows parent Account P"
    assert cascaded["C2"].proposed_rep_id == "R3"
    assert cascaded["C2"].rationale == "P5: Exec sponsor - stays with Rep R3"


def test_engine_only_assigns_roots_and_reports_hierarchy_issues() -> None:
    cfg = config()
    reps = [make_rep("R1"), make_rep("R2")]
    accounts = [
        make_account("P", 1000, owner="R1", locked=True),
        make_account("P-C1", 300, owner="R2", parent_id="P"),
        make_account("P-C2", 300, owner="R2", parent_id="P", locked=True),
        make_account("ORPHAN", 100, parent_id="GONE"),
    ]
    backend = RecordingBackend("highs")
    result = run_waterfall(accounts, reps, cfg, router=SolverRouter(cfg, inprocess=backend))
    got = {p.account_id: p for p in result.proposals}

    assert got["P"].rule_applied == "manual lock"
    assert got["P-C1"].proposed_rep_id == "R1"
    assert got["P-C2"].proposed_rep_id == "R2"
    assert WARN_PARENT_CHILD_SEPARATED in {w.kind for w in got["P"].warnings}
    assert WARN_DATA_INTEGRITY in {w.kind for w in got["ORPHAN"].warnings}
    # children never reach the solver
    solved = {aid for problem in backend.problems for aid in problem.assign_vars}
    assert solved == {"ORPHAN"}
