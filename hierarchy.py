"""Parent/child account hierarchy.

Only parent (and standalone) accounts enter the priority waterfall; children
follow their parent's proposed rep unless they are locked elsewhere, in which
case the split is reported on both sides.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Tuple

import networkx as nx

from book_model import (
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    WARN_DATA_INTEGRITY,
    WARN_PARENT_CHILD_SEPARATED,
    Account,
    AssignmentWarning,
    Proposal,
    Rep,
    get_account_atr,
    get_account_pipeline,
)
from holdover_rules import manual_lock
from rationale import generate_rationale


def build_hierarchy(accounts: Iterable[Account]) -> nx.DiGraph:
    graph = nx.DiGraph()
    accounts = list(accounts)
    for acct in accounts:
        graph.add_node(acct.account_id, account=acct)
    for acct in accounts:
        if acct.parent_id and acct.parent_id in graph and acct.parent_id != acct.account_id:
            graph.add_edge(acct.parent_id, acct.account_id)
    return graph


def split_hierarchy(accounts: Iterable[Account]) -> Tuple[List[Account], Dict[str, List[Account]], List[Account]]:
    """Return (assignable roots, children by root id, orphaned children).

    Orphans reference a parent that is not in the snapshot; they are assigned
    as standalone accounts.
    """

    accounts = sorted(accounts, key=lambda a: a.account_id)
    graph = build_hierarchy(accounts)
    roots: List[Account] = []
    children: Dict[str, List[Account]] = {}
    orphans: List[Account] = []
    for acct in accounts:
        if graph.in_degree(acct.account_id) == 0:
            roots.append(acct)
            if acct.parent_id:
                orphans.append(acct)
            descendants = sorted(nx.descendants(graph, acct.account_id))
            if descendants:
                children[acct.account_id] = [graph.nodes[d]["account"] for d in descendants]

    # parent cycles have no root; break them by assigning each member standalone
    covered = {a.account_id for a in roots}
    for kids in children.values():
        covered.update(k.account_id for k in kids)
    for acct in accounts:
        if acct.account_id not in covered:
            roots.append(acct)
            orphans.append(acct)
    return roots, children, orphans


def aggregate_parent(parent: Account, children: List[Account]) -> Account:
    """Roll child ATR/pipeline into the parent.

    ARR is not summed: the ARR chain already prefers the hierarchy bookings
    figure, which includes the children.
    """
    if not children:
        return parent
    atr = get_account_atr(parent) + sum(get_account_atr(c) for c in children)
    pipeline = get_account_pipeline(parent) + sum(get_account_pipeline(c) for c in children)
    return dataclasses.replace(parent, calculated_atr=atr or None, pipeline_value=pipeline)


def orphan_warning(account: Account) -> AssignmentWarning:
    return AssignmentWarning(
        SEVERITY_LOW,
        WARN_DATA_INTEGRITY,
        "Parent account missing from snapshot",
        f"parent_id={account.parent_id}",
    )


def cascade_to_children(
    parent_proposals: Dict[str, Proposal],
    children: Dict[str, List[Account]],
    reps_by_id: Dict[str, Rep],
) -> List[Proposal]:
    """Children inherit the parent's rep; locked children keep their owner."""

    out: List[Proposal] = []
    for parent_id in sorted(children):
        parent = parent_proposals.get(parent_id)
        if parent is None:
            continue
        for child in children[parent_id]:
            lock = manual_lock(child, reps_by_id)
            if lock is not None:
                owner = reps_by_id[lock.rep_id]
                out.append(
                    Proposal(
                        account_id=child.account_id,
                        account_name=child.name,
                        proposed_rep_id=owner.rep_id,
                        proposed_rep_name=owner.name,
                        current_owner_id=child.owner_id,
                        rule_applied="manual lock",
                        priority_label=parent.priority_label,
                        rationale=generate_rationale(parent.priority_label, owner.name, lock_reason=lock.reason),
                    )
                )
                continue
            parent_name = parent.account_name or parent.account_id
            out.append(
                Proposal(
                    account_id=child.account_id,
                    account_name=child.name,
                    proposed_rep_id=parent.proposed_rep_id,
                    proposed_rep_name=parent.proposed_rep_name,
                    current_owner_id=child.owner_id,
                    rule_applied="parent cascade",
                    priority_label=parent.priority_label,
                    rationale=generate_rationale(parent.priority_label, parent.proposed_rep_name,
                                                 note=f"follows parent {parent_name}"),
                )
            )
    return out


def flag_split_hierarchies(proposals: List[Proposal], children: Dict[str, List[Account]]) -> int:
    """Attach parent_child_separated warnings where a family spans several reps."""

    by_id = {p.account_id: p for p in proposals}
    flagged = 0
    for parent_id in sorted(children):
        parent = by_id.get(parent_id)
        if parent is None:
            continue
        for child in children[parent_id]:
            prop = by_id.get(child.account_id)
            if prop is None or prop.proposed_rep_id == parent.proposed_rep_id:
                continue
            detail = f"parent {parent_id} -> {parent.proposed_rep_id}, child {child.account_id} -> {prop.proposed_rep_id}"
            prop.warnings.append(AssignmentWarning(
                SEVERITY_MEDIUM, WARN_PARENT_CHILD_SEPARATED, "Child assigned away from its parent", detail))
            parent.warnings.append(AssignmentWarning(
                SEVERITY_MEDIUM, WARN_PARENT_CHILD_SEPARATED, "Hierarchy split across reps", detail))
            flagged += 1
    return flagged
