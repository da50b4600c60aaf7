import csv
import json
from pathlib import Path

import pytest

from book_model import PROPOSAL_COLUMNS
from run_assignment import REP_LOAD_COLUMNS, load_snapshot, run_assignment
from run_intensity_experiments import SUMMARY_COLUMNS, run_experiments
from tests.utils import AS_OF, priorities, write_snapshot

BASE = {"AS_OF_DATE": AS_OF, "SCORING_WORKERS": 1, "PRIORITIES": priorities("continuity", "arr_balance")}


def _snapshot(tmp_path: Path) -> Path:
    accounts = [
        {"account_id": "A1", "name": "Acme", "arr": 200, "is_customer": True, "owner_id": "R1"},
        {"account_id": "A2", "name": "Globex", "arr": "200", "is_customer": "yes", "owner_id": "R1"},
        {"account_id": "P1", "name": "Initech", "pipeline_value": 50},
    ]
    reps = [
        {"rep_id": "R1", "name": "Alice", "region": "UK", "capacity": {"arr": {"target": 200, "max": 1000}}},
        {"rep_id": "R2", "name": "Bob", "region": "UK", "capacity": {"arr": {"target": 200, "max": 1000}}},
        {"rep_id": "R3", "name": "Carol", "is_active": False},
    ]
    return write_snapshot(tmp_path / "snapshot.json", accounts, reps)


def _read_csv(path: Path):
    with path.open(encoding="utf-8", newline="") as handle:
        return list(csv.DictReader(handle))


def test_run_assignment_writes_outputs(tmp_path: Path) -> None:
    out = tmp_path / "out"
    result = run_assignment(snapshot=_snapshot(tmp_path), out_dir=out, overrides=dict(BASE))

    for name in ("proposals.csv", "telemetry.json", "rep_loads.csv", "stats.txt", "rep_loads.png"):
        assert (out / name).exists(), name

    rows = _read_csv(out / "proposals.csv")
    assert list(rows[0]) == PROPOSAL_COLUMNS
    assert [r["AccountId"] for r in rows] == ["A1", "A2", "P1"]
    assert all(r["ProposedRepId"] in {"R1", "R2"} for r in rows)
    assert all(r["Confidence"] in {"high", "medium", "low"} for r in rows)

    loads = _read_csv(out / "rep_loads.csv")
    assert list(loads[0]) == REP_LOAD_COLUMNS
    # inactive reps are not part of the load table
    assert [r["RepId"] for r in loads] == ["R1", "R2"]
    assert sum(float(r["ARR"]) for r in loads) == 400.0
    assert sum(int(r["Accounts"]) for r in loads) == 3

    telemetry = json.loads((out / "telemetry.json").read_text(encoding="utf-8"))
    assert telemetry["mode"] == "waterfall"
    assert telemetry["num_proposals"] == 3
    assert telemetry["metrics"]["continuity_rate"] == pytest.approx(result.metrics.continuity_rate)
    assert "Proposals by rule:" in (out / "stats.txt").read_text(encoding="utf-8")
    assert len(result.proposals) == 3


def test_run_assignment_without_plot(tmp_path: Path) -> None:
    out = tmp_path / "out"
    run_assignment(snapshot=_snapshot(tmp_path), out_dir=out, overrides=dict(BASE), plot=False)
    assert (out / "proposals.csv").exists()
    assert not (out / "rep_loads.png").exists()


def test_load_snapshot_parses_types(tmp_path: Path) -> None:
    snap = load_snapshot(_snapshot(tmp_path))
    a2 = next(a for a in snap.accounts if a.account_id == "A2")
    assert a2.arr == 200.0
    assert a2.customer
    assert not next(a for a in snap.accounts if a.account_id == "P1").customer
    r1 = snap.reps[0]
    assert r1.capacity["arr"].target == 200.0
    assert r1.capacity["arr"].maximum == 1000.0
    assert not snap.reps[2].eligible


def test_load_snapshot_rejects_bad_input(tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError, match="snapshot must be an object"):
        load_snapshot(bad)
    no_id = write_snapshot(tmp_path / "no_id.json", [{"name": "nameless"}], [])
    with pytest.raises(ValueError, match="without an id"):
        load_snapshot(no_id)


def test_intensity_experiments_summary(tmp_path: Path) -> None:
    out = tmp_path / "exp"
    results = run_experiments(
        snapshot=_snapshot(tmp_path),
        out_dir=out,
        presets=["VERY_HEAVY", "VERY_LIGHT"],
        base_overrides=BASE,
        workers=1,
    )
    assert [r.preset for r in results] == ["VERY_LIGHT", "VERY_HEAVY"]
    light, heavy = results
    assert light.note == "" and heavy.note == ""
    assert heavy.arr_cv < light.arr_cv
    assert heavy.continuity_rate < light.continuity_rate

    rows = _read_csv(out / "summary.csv")
    assert list(rows[0]) == SUMMARY_COLUMNS
    assert [r["preset"] for r in rows] == ["VERY_LIGHT", "VERY_HEAVY"]
    assert (out / "intensity_bar.png").exists()
    assert (out / "very_light" / "proposals.csv").exists()
