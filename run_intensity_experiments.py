#!/usr/bin/env python3
"""Compare balance-intensity presets on one snapshot, in parallel."""
from __future__ import annotations

import argparse
import csv
import json
import os
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt

from assignment_config import BALANCE_INTENSITY_PRESETS, deep_update, load_config_file
from run_assignment import run_assignment

SUMMARY_COLUMNS = [
    "preset",
    "multiplier",
    "arr_cv",
    "continuity_rate",
    "geo_exact_rate",
    "max_overload_pct",
    "warning_count",
    "elapsed_ms",
    "note",
]


@dataclass
class IntensityResult:
    preset: str
    multiplier: float
    arr_cv: Optional[float] = None
    continuity_rate: Optional[float] = None
    geo_exact_rate: Optional[float] = None
    max_overload_pct: Optional[float] = None
    warning_count: Optional[int] = None
    elapsed_ms: Optional[float] = None
    note: str = ""


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Run the assignment engine once per balance-intensity preset")
    ap.add_argument("--snapshot", type=Path, required=True)
    ap.add_argument("--base-config", type=Path, help="Optional JSON overrides applied to every run")
    ap.add_argument("--presets", nargs="+", default=list(BALANCE_INTENSITY_PRESETS),
                    choices=list(BALANCE_INTENSITY_PRESETS))
    ap.add_argument("--out-dir", type=Path, default=Path("intensity_experiments"))
    ap.add_argument("--workers", type=int, default=os.cpu_count() or 2)
    return ap.parse_args()


def run_single(preset: str, snapshot: Path, base_overrides: dict, out_dir: Path) -> IntensityResult:
    overrides = deep_update(json.loads(json.dumps(base_overrides)), {"BALANCE_INTENSITY": preset})
    result = IntensityResult(preset, BALANCE_INTENSITY_PRESETS[preset])
    try:
        run = run_assignment(snapshot=snapshot, out_dir=out_dir / preset.lower(), overrides=overrides, plot=False)
    except Exception as exc:  # pragma: no cover - reported in the summary instead
        result.note = str(exc)
        return result
    m = run.metrics
    result.arr_cv = m.arr_cv
    result.continuity_rate = m.continuity_rate
    result.geo_exact_rate = m.geo_exact_rate
    result.max_overload_pct = m.max_overload_pct
    result.warning_count = m.warning_count
    result.elapsed_ms = run.telemetry["elapsed_ms"]
    return result


def write_summary(path: Path, results: Sequence[IntensityResult]) -> None:
    with path.open("w", encoding="utf-8", newline="") as handle:
        writer = csv.DictWriter(handle, fieldnames=SUMMARY_COLUMNS)
        writer.writeheader()
        for res in results:
            writer.writerow({k: ("" if v is None else v) for k, v in asdict(res).items()})


def plot_summary(path: Path, results: Sequence[IntensityResult], dpi: int = 150) -> None:
    done = [r for r in results if r.arr_cv is not None]
    if not done:
        return
    names = [r.preset for r in done]
    fig, (ax_cv, ax_cont) = plt.subplots(1, 2, figsize=(12, 4.5))
    ax_cv.bar(names, [r.arr_cv for r in done], color="#4c72b0")
    ax_cv.set_ylabel("ARR CV (%)")
    ax_cv.set_title("Balance")
    ax_cont.bar(names, [r.continuity_rate for r in done], color="#55a868")
    ax_cont.set_ylabel("Continuity (%)")
    ax_cont.set_title("Continuity")
    for ax in (ax_cv, ax_cont):
        plt.setp(ax.get_xticklabels(), rotation=20, ha="right")
    fig.tight_layout()
    fig.savefig(path, dpi=dpi)
    plt.close(fig)


def run_experiments(
    *,
    snapshot: Path,
    out_dir: Path,
    presets: Sequence[str] | None = None,
    base_overrides: dict | None = None,
    workers: int = 1,
) -> List[IntensityResult]:
    presets = list(presets or BALANCE_INTENSITY_PRESETS)
    out_dir.mkdir(parents=True, exist_ok=True)
    results: List[IntensityResult] = []
    if workers <= 1:
        results = [run_single(p, snapshot, base_overrides or {}, out_dir) for p in presets]
    else:
        with ProcessPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(run_single, p, snapshot, base_overrides or {}, out_dir): p for p in presets}
            for fut in as_completed(futures):
                results.append(fut.result())
    order = {p: i for i, p in enumerate(BALANCE_INTENSITY_PRESETS)}
    results.sort(key=lambda r: order[r.preset])
    write_summary(out_dir / "summary.csv", results)
    plot_summary(out_dir / "intensity_bar.png", results)
    return results


def main() -> None:
    args = parse_args()
    base = load_config_file(args.base_config) if args.base_config else {}
    results = run_experiments(
        snapshot=args.snapshot,
        out_dir=args.out_dir,
        presets=args.presets,
        base_overrides=base,
        workers=args.workers,
    )
    print(",".join(SUMMARY_COLUMNS[:-1]))
    for res in results:
        if res.note:
            print(f"# {res.preset}: {res.note}")
            continue
        print(f"{res.preset},{res.multiplier},{res.arr_cv:.2f},{res.continuity_rate:.1f},"
              f"{res.geo_exact_rate:.1f},{res.max_overload_pct:.1f},{res.warning_count},{res.elapsed_ms:.0f}")
    best = min((r for r in results if r.arr_cv is not None), key=lambda r: r.arr_cv, default=None)
    if best:
        print(f"# Most even ARR: {best.preset} (CV={best.arr_cv:.2f}%)")


if __name__ == "__main__":
    main()
