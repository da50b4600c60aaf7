#!/usr/bin/env python3
"""Generate assignment proposals for a book-of-business snapshot.

Input is a JSON snapshot ``{"accounts": [...], "reps": [...]}``; optional
``--config`` overrides are merged onto the defaults. Outputs land in
``--out-dir``:

* proposals.csv   one row per account (rep, rule, priority, confidence, rationale)
* telemetry.json  run record (mode, backends, timings, quality metrics)
* rep_loads.csv   per-rep ARR / ATR / pipeline / account counts
* stats.txt       quality summary
* rep_loads.png   ARR per rep against the target band
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from assignment_config import build_config, load_config_file
from book_model import (
    METRICS,
    PROPOSAL_COLUMNS,
    Account,
    Rep,
    account_from_dict,
    proposal_to_row,
    rep_from_dict,
)
from global_engine import choose_mode, run_engine
from telemetry import format_metrics, rep_loads
from waterfall_engine import AssignmentResult

REP_LOAD_COLUMNS = ["RepId", "RepName", "Region", "Tier", "Accounts", "ARR", "ATR", "Pipeline"]


@dataclass
class Snapshot:
    accounts: List[Account]
    reps: List[Rep]


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(
        description="Assign accounts to reps through the priority waterfall",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    ap.add_argument("--snapshot", type=Path, required=True, help="JSON file with 'accounts' and 'reps' arrays")
    ap.add_argument("--config", type=Path, help="Optional JSON overrides merged onto the default config")
    ap.add_argument("--out-dir", type=Path, default=Path("assignment_out"))
    ap.add_argument("--mode", choices=["waterfall", "global"], help="Override SOLVER.MODE")
    ap.add_argument("--intensity", help="Override BALANCE_INTENSITY (VERY_LIGHT .. VERY_HEAVY)")
    ap.add_argument("--no-plot", action="store_true", help="Skip rep_loads.png")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap.parse_args()


# -------------------- Snapshot I/O --------------------
def load_snapshot(path: Path) -> Snapshot:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{path}: snapshot must be an object with 'accounts' and 'reps'")
    accounts = [account_from_dict(row) for row in data.get("accounts") or []]
    reps = [rep_from_dict(row) for row in data.get("reps") or []]
    missing = [a for a in accounts if not a.account_id]
    if missing:
        raise ValueError(f"{path}: {len(missing)} account(s) without an id")
    return Snapshot(accounts, reps)


def write_proposals(path: Path, result: AssignmentResult) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=PROPOSAL_COLUMNS)
        writer.writeheader()
        for proposal in result.proposals:
            writer.writerow(proposal_to_row(proposal))


def load_table(result: AssignmentResult, snapshot: Snapshot) -> List[Dict[str, object]]:
    accounts_by_id = {a.account_id: a for a in snapshot.accounts}
    eligible = [r for r in snapshot.reps if r.eligible]
    per_metric = {m: rep_loads(result.proposals, accounts_by_id, eligible, m) for m in METRICS}
    counts: Dict[str, int] = {r.rep_id: 0 for r in eligible}
    for p in result.proposals:
        if p.proposed_rep_id in counts:
            counts[p.proposed_rep_id] += 1
    rows = []
    for rep in sorted(eligible, key=lambda r: r.rep_id):
        rows.append({
            "RepId": rep.rep_id,
            "RepName": rep.name,
            "Region": rep.region,
            "Tier": rep.team_tier or "",
            "Accounts": counts[rep.rep_id],
            "ARR": round(per_metric["arr"][rep.rep_id], 2),
            "ATR": round(per_metric["atr"][rep.rep_id], 2),
            "Pipeline": round(per_metric["pipeline"][rep.rep_id], 2),
        })
    return rows


def write_rep_loads(path: Path, rows: Sequence[Dict[str, object]]) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=REP_LOAD_COLUMNS)
        writer.writeheader()
        writer.writerows(rows)


def write_stats(path: Path, result: AssignmentResult) -> None:
    tel = result.telemetry
    lines = [
        f"Mode: {tel['mode']} | Intensity: {tel['balance_intensity']} (x{tel['intensity_multiplier']})",
        f"Accounts: {tel['num_accounts']} | Reps: {tel['num_reps']} | Proposals: {tel['num_proposals']}",
        f"Elapsed: {tel['elapsed_ms']:.0f} ms | Backends: {tel['solver'].get('backends_used') or {}}",
        "",
        "Proposals by rule:",
    ]
    lines += [f"  {rule}: {count}" for rule, count in tel["proposals_by_rule"].items()]
    lines += ["", "Quality:"] + [f"  {line}" for line in format_metrics(result.metrics)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def plot_rep_loads(path: Path, rows: Sequence[Dict[str, object]], dpi: int = 150) -> None:
    if not rows:
        return
    names = [str(r["RepName"] or r["RepId"]) for r in rows]
    values = [float(r["ARR"]) for r in rows]
    mean = sum(values) / len(values)
    fig, ax = plt.subplots(figsize=(max(8, len(rows) * 0.6), 4.5))
    ax.bar(names, values, color="#4c72b0")
    ax.axhline(mean, color="#c44e52", linestyle="--", linewidth=1, label=f"mean {mean:,.0f}")
    ax.set_ylabel("ARR")
    ax.set_title("ARR per rep")
    ax.legend(loc="upper right")
    plt.setp(ax.get_xticklabels(), rotation=30, ha="right")
    fig.tight_layout()
    fig.savefig(path, dpi=dpi)
    plt.close(fig)


# -------------------- API --------------------
def run_assignment(
    *,
    snapshot: Path,
    out_dir: Path,
    overrides: dict | None = None,
    mode: str | None = None,
    plot: bool = True,
) -> AssignmentResult:
    cfg = build_config(overrides)
    data = load_snapshot(snapshot)
    result = run_engine(data.accounts, data.reps, cfg, mode=mode)

    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    write_proposals(out_dir / "proposals.csv", result)
    (out_dir / "telemetry.json").write_text(json.dumps(result.telemetry, indent=2, default=str), encoding="utf-8")
    rows = load_table(result, data)
    write_rep_loads(out_dir / "rep_loads.csv", rows)
    write_stats(out_dir / "stats.txt", result)
    if plot:
        plot_rep_loads(out_dir / "rep_loads.png", rows)
    return result


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    overrides: dict = load_config_file(args.config) if args.config else {}
    if args.intensity:
        overrides["BALANCE_INTENSITY"] = args.intensity
    mode = choose_mode(build_config(overrides), args.mode)
    result = run_assignment(
        snapshot=args.snapshot,
        out_dir=args.out_dir,
        overrides=overrides,
        mode=mode,
        plot=not args.no_plot,
    )
    print(f"Wrote {len(result.proposals)} proposals to {args.out_dir / 'proposals.csv'}")
    for line in format_metrics(result.metrics):
        print(line)
    low = sum(1 for p in result.proposals if p.confidence == "low")
    if low:
        print(f"[WARN] {low} proposal(s) with low confidence; see proposals.csv")


if __name__ == "__main__":
    main()
