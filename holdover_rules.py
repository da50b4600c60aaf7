"""Attribute-driven holdover decisions shared by the waterfall and global modes.

None of these call a solver: each returns where an account must go (or
``None`` when the account stays in the optimization pool).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

from book_model import Account, Rep, get_account_arr
from priority_registry import StabilityParams

LOCK_MANUAL = "manual_lock"
LOCK_BACKFILL = "backfill_migration"
LOCK_CRE = "cre_risk"
LOCK_RENEWAL = "renewal_soon"
LOCK_PE = "pe_firm"
LOCK_RECENT = "recent_change"


@dataclass(frozen=True)
class LockDecision:
    lock_type: str
    rep_id: str
    reason: str


def _current_owner(account: Account, reps_by_id: Dict[str, Rep]) -> Optional[Rep]:
    rep = reps_by_id.get(account.owner_id or "")
    if rep is None or not rep.is_active:
        return None
    return rep


def manual_lock(account: Account, reps_by_id: Dict[str, Rep]) -> Optional[LockDecision]:
    """Locked accounts stay with an owner that is still on the roster."""
    if not account.locked:
        return None
    owner = _current_owner(account, reps_by_id)
    if owner is None:
        return None
    return LockDecision(LOCK_MANUAL, owner.rep_id, account.lock_reason or "Manually excluded from reassignment")


def stability_lock(
    account: Account,
    reps_by_id: Dict[str, Rep],
    params: StabilityParams,
    defaults: dict,
    as_of: date,
) -> Optional[LockDecision]:
    owner = _current_owner(account, reps_by_id)
    if owner is None:
        return None

    # backfill takes precedence and never locks to a departing rep
    if owner.is_backfill_source:
        if not params.backfill_migration:
            return None
        target = reps_by_id.get(owner.backfill_target_rep_id or "")
        if target is None or not target.eligible:
            return None
        return LockDecision(LOCK_BACKFILL, target.rep_id,
                            f"Owner {owner.name or owner.rep_id} is leaving, migrating to {target.name or target.rep_id}")

    if params.cre_risk and account.cre_risk:
        return LockDecision(LOCK_CRE, owner.rep_id, "CRE at-risk account")

    renewal_days = params.renewal_soon_days if params.renewal_soon_days is not None else int(defaults["RENEWAL_SOON_DAYS"])
    if params.renewal_soon and account.renewal_date is not None:
        days = (account.renewal_date - as_of).days
        if 0 <= days <= renewal_days:
            return LockDecision(LOCK_RENEWAL, owner.rep_id, f"Renewal in {days} days")

    if params.pe_firm and account.pe_firm:
        return LockDecision(LOCK_PE, owner.rep_id, f"PE firm: {account.pe_firm}")

    recent_days = params.recent_change_days if params.recent_change_days is not None else int(defaults["RECENT_CHANGE_DAYS"])
    if params.recent_owner_change and account.owner_change_date is not None:
        days = (as_of - account.owner_change_date).days
        if 0 <= days <= recent_days:
            return LockDecision(LOCK_RECENT, owner.rep_id, f"Owner changed {days} days ago")
    return None


def routes_to_sales_tools(account: Account, threshold: float) -> bool:
    """Low-ARR customers go to the Sales Tools bucket; prospects never do."""
    return account.customer and get_account_arr(account) < threshold


def assign_strategic_pool(
    accounts: Sequence[Account],
    strategic_reps: Sequence[Rep],
    loads: Dict[str, float],
) -> List[Tuple[Account, Rep]]:
    """Strategic accounts stay with a strategic owner, else the least-loaded strategic rep.

    Accounts are placed largest ARR first; ``loads`` (ARR per rep) is updated in place.
    """

    if not strategic_reps:
        return []
    by_id = {r.rep_id: r for r in strategic_reps}
    out: List[Tuple[Account, Rep]] = []
    for acct in sorted(accounts, key=lambda a: (-get_account_arr(a), a.account_id)):
        rep = by_id.get(acct.owner_id or "")
        if rep is None:
            rep = min(strategic_reps, key=lambda r: (loads.get(r.rep_id, 0.0), r.rep_id))
        loads[rep.rep_id] = loads.get(rep.rep_id, 0.0) + get_account_arr(acct)
        out.append((acct, rep))
    return out
