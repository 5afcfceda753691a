# badbingo/repo.py
"""
Repossession: diverting money to overdue debts.

Contest winnings of a borrower with a repo-triggered debt are partly
seized (REPO_SEIZURE_FRACTION) until the flag clears. Debts far past due
get one direct seizure from the balance; if that does not clear them they
are marked defaulted.
"""
import logging
from typing import List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import REPO_SEIZURE_FRACTION, SEVERE_OVERDUE_DAYS
from .db import for_update
from .debts import apply_payment, get_debt, outstanding
from .errors import InvalidStateTransition
from .events import RepoSeized, emit
from .ledger import TxKind, debit, get_balance
from .sweeps import SweepResult, run_each
from .transitions import compare_and_set, record_transition
from .util import DAY_MS, now_ms

logger = logging.getLogger(__name__)


def _seize(db: Session, debt: dict, amount: int, *, now=None) -> int:
    debit(
        db,
        debt["borrower_id"],
        amount,
        TxKind.REPO_SEIZURE,
        reference=("debt", debt["id"]),
        description=f"repo seizure for debt {debt['id']}",
        now=now,
    )
    remaining = apply_payment(db, debt, amount, seized=True, now=now)
    emit(
        db,
        RepoSeized(debt_id=debt["id"], borrower_id=debt["borrower_id"], amount=amount, remaining=remaining),
        now=now,
    )
    logger.info("Seized %d from %s for debt %d (%d left)", amount, debt["borrower_id"], debt["id"], remaining)
    return remaining


def lock_repo_debts(db: Session, account_id: str) -> List[int]:
    """
    Row-lock the account's repo-triggered debts, oldest first.

    Debt rows are always locked before account rows, so callers that will
    also move money must take these locks first.
    """
    rows = db.execute(
        text(
            "SELECT id FROM debt WHERE borrower_id = :b AND repo_triggered "
            "AND status IN ('active', 'defaulted') ORDER BY created_at, id"
            f"{for_update(db)}"
        ),
        {"b": account_id},
    ).fetchall()
    return [r[0] for r in rows]


def seize_from_winnings(
    db: Session,
    account_id: str,
    winnings: int,
    *,
    debt_ids: Optional[Sequence[int]] = None,
    now=None,
) -> int:
    """
    Called right after a payout credits ``winnings``. Returns the total
    seized; 0 when the account has no repo-triggered debt.

    ``debt_ids`` are debts already locked with ``lock_repo_debts`` before
    the payout touched any account.
    """
    if debt_ids is None:
        debt_ids = lock_repo_debts(db, account_id)
    budget = int(winnings * REPO_SEIZURE_FRACTION)
    seized = 0
    for debt_id in debt_ids:
        if budget <= 0:
            break
        debt = get_debt(db, debt_id)
        take = min(budget, outstanding(debt))
        if take <= 0:
            continue
        _seize(db, debt, take, now=now)
        budget -= take
        seized += take
    return seized


def _seize_severe(db: Session, debt_id: int, *, now=None) -> None:
    ts = now_ms(now)
    debt = get_debt(db, debt_id, lock=True)
    if debt["status"] != "active" or debt["severe_seizure_at"] is not None:
        raise InvalidStateTransition(f"debt {debt_id} already handled")
    res = db.execute(
        text(
            "UPDATE debt SET severe_seizure_at = :ts "
            "WHERE id = :id AND severe_seizure_at IS NULL"
        ),
        {"id": debt_id, "ts": ts},
    )
    if res.rowcount == 0:
        raise InvalidStateTransition(f"debt {debt_id} already handled")
    record_transition(db, "debt", debt_id, "severe_seizure", now=now)

    owed = outstanding(debt)
    take = min(int(get_balance(db, debt["borrower_id"]) * REPO_SEIZURE_FRACTION), owed)
    remaining = owed
    if take > 0:
        remaining = _seize(db, debt, take, now=now)
    if remaining > 0:
        compare_and_set(db, "debt", debt_id, ["active"], "defaulted")
        logger.warning("Debt %d defaulted with %d still owed", debt_id, remaining)


def seize_severely_overdue(db: Session, *, now=None) -> SweepResult:
    ts = now_ms(now)
    cutoff = ts - SEVERE_OVERDUE_DAYS * DAY_MS
    ids = [
        r[0]
        for r in db.execute(
            text(
                "SELECT id FROM debt WHERE status = 'active' AND repo_triggered "
                "AND severe_seizure_at IS NULL AND due_at < :cutoff ORDER BY id"
            ),
            {"cutoff": cutoff},
        ).fetchall()
    ]
    return run_each(db, SweepResult(name="repo"), ids, lambda d: _seize_severe(db, d, now=now))
