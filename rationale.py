"""Human-readable explanations attached to each proposal."""

from __future__ import annotations

from typing import List, Optional, Tuple

from scoring import FactorWeights, PairScores

FACTOR_LABELS = {
    "continuity": "Continuity",
    "geography": "Geography",
    "team": "Team Alignment",
}


def factor_contributions(scores: PairScores, weights: FactorWeights) -> List[Tuple[str, float]]:
    """Weighted contribution of each factor, largest first (ties by name)."""
    w = weights.effective(scores.team is not None)
    parts = [
        ("continuity", w.continuity * scores.continuity),
        ("geography", w.geography * scores.geography),
    ]
    if scores.team is not None:
        parts.append(("team", w.team * scores.team))
    return sorted(parts, key=lambda kv: (-kv[1], kv[0]))


def generate_rationale(
    label: str,
    rep_name: str,
    scores: Optional[PairScores] = None,
    weights: Optional[FactorWeights] = None,
    *,
    threshold: float = 0.10,
    note: str = "",
    lock_reason: Optional[str] = None,
    fallback_reason: Optional[str] = None,
) -> str:
    """Explain one proposal as ``label: ...``.

    Filter rules pass ``lock_reason`` and read ``label: reason - stays with rep``.
    Score fallbacks pass ``fallback_reason``. Optimized proposals name the
    factors whose share of the weighted score is at least ``threshold``.
    """

    suffix = f"; {note}" if note else ""
    if lock_reason is not None:
        return f"{label}: {lock_reason} - stays with {rep_name}{suffix}"
    if fallback_reason is not None:
        return f"{label}: {fallback_reason} - assigned to {rep_name}{suffix}"
    if scores is None or weights is None:
        return f"{label}: Assigned to {rep_name}{suffix}"

    parts = factor_contributions(scores, weights)
    total = sum(v for _, v in parts)
    if total <= 0:
        return f"{label}: Assigned to {rep_name} for workload balance (no scoring factor applied){suffix}"

    significant = [(name, v / total) for name, v in parts if v / total >= threshold]
    if len(significant) == 1:
        name, _ = significant[0]
        return f"{label}: Assigned to {rep_name} on {FACTOR_LABELS[name]} (score {total:.2f}){suffix}"
    named = ", ".join(f"{FACTOR_LABELS[name]} {share * 100:.0f}%" for name, share in significant)
    return f"{label}: Assigned to {rep_name} (score {total:.2f}: {named}){suffix}"
