# badbingo/ledger.py
"""
Append-only ledger plus balance projection.

Every balance change is one conditional UPDATE against a single account
row followed by the transaction insert, both inside the caller's unit of
work. Nothing else in the engine writes ``account.balance``.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import ALLOWANCE_AMOUNT, ALLOWANCE_HOURS
from .db import for_update
from .errors import InsufficientFunds, InvalidStateTransition, NotFound, ValidationError
from .util import HOUR_MS, iso, now_ms

logger = logging.getLogger(__name__)

Reference = Optional[Tuple[str, int]]


class TxKind(str, Enum):
    OPENING_BALANCE = "opening-balance"
    ALLOWANCE = "allowance"
    STAKE_LOCK = "stake-lock"
    STAKE_RELEASE = "stake-release"
    STAKE_FORFEIT = "stake-forfeit"
    CONTEST_WIN = "contest-win"
    CONTEST_LOSS = "contest-loss"
    STEAL_SUCCESS = "steal-success"
    STEAL_VICTIM = "steal-victim"
    STEAL_PENALTY = "steal-penalty"
    DEFEND_BONUS = "defend-bonus"
    BORROW = "borrow"
    REPAY = "repay"
    INTEREST = "interest"
    REPO_SEIZURE = "repo-seizure"


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────

def _check_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"amount must be a positive integer, got {amount!r}")
    return amount


def _insert_tx(
    db: Session,
    account_id: str,
    amount: int,
    balance_after: int,
    kind: TxKind,
    reference: Reference,
    description: Optional[str],
    ts: int,
) -> int:
    ref_type, ref_id = reference if reference else (None, None)
    row = db.execute(
        text(
            "INSERT INTO ledger_transaction "
            "(account_id, amount, balance_after, kind, reference_type, reference_id, description, created_at) "
            "VALUES (:acct, :amt, :bal, :kind, :rt, :rid, :d, :ts) RETURNING id"
        ),
        {
            "acct": account_id,
            "amt": amount,
            "bal": balance_after,
            "kind": TxKind(kind).value,
            "rt": ref_type,
            "rid": ref_id,
            "d": description,
            "ts": ts,
        },
    ).first()
    return int(row[0])


def get_balance(db: Session, account_id: str) -> int:
    row = db.execute(
        text("SELECT balance FROM account WHERE id = :id"), {"id": account_id}
    ).first()
    if not row:
        raise NotFound(f"account {account_id} not found")
    return int(row[0])


# ────────────────────────────────────────────────────────────
# Mutations
# ────────────────────────────────────────────────────────────

def debit(
    db: Session,
    account_id: str,
    amount: int,
    kind: TxKind,
    *,
    reference: Reference = None,
    description: Optional[str] = None,
    now=None,
) -> int:
    """Take ``amount`` from the account. Returns the new balance."""
    _check_amount(amount)
    row = db.execute(
        text(
            "UPDATE account SET balance = balance - :amt "
            "WHERE id = :id AND balance >= :amt RETURNING balance"
        ),
        {"id": account_id, "amt": amount},
    ).first()
    if not row:
        balance = get_balance(db, account_id)
        raise InsufficientFunds(
            f"account {account_id} has {balance}, needs {amount}",
            balance=balance,
            required=amount,
        )
    new_balance = int(row[0])
    _insert_tx(db, account_id, -amount, new_balance, kind, reference, description, now_ms(now))
    return new_balance


def credit(
    db: Session,
    account_id: str,
    amount: int,
    kind: TxKind,
    *,
    reference: Reference = None,
    description: Optional[str] = None,
    now=None,
) -> int:
    """Give ``amount`` to the account. Returns the new balance."""
    _check_amount(amount)
    row = db.execute(
        text("UPDATE account SET balance = balance + :amt WHERE id = :id RETURNING balance"),
        {"id": account_id, "amt": amount},
    ).first()
    if not row:
        raise NotFound(f"account {account_id} not found")
    new_balance = int(row[0])
    _insert_tx(db, account_id, amount, new_balance, kind, reference, description, now_ms(now))
    return new_balance


def record(
    db: Session,
    account_id: str,
    kind: TxKind,
    *,
    reference: Reference = None,
    description: Optional[str] = None,
    now=None,
) -> int:
    """Zero-amount informational entry (contest loss, interest accrual)."""
    balance = get_balance(db, account_id)
    return _insert_tx(db, account_id, 0, balance, kind, reference, description, now_ms(now))


def lock_accounts(db: Session, account_ids: Iterable[str]) -> List[str]:
    """Row-lock accounts in ascending id order so multi-account writes never deadlock."""
    ordered = sorted(set(account_ids))
    suffix = for_update(db)
    for account_id in ordered:
        row = db.execute(
            text(f"SELECT id FROM account WHERE id = :id{suffix}"), {"id": account_id}
        ).first()
        if not row:
            raise NotFound(f"account {account_id} not found")
    return ordered


def payout(
    db: Session,
    winner_id: str,
    loser_id: str,
    pot: int,
    *,
    contest_id: int,
    now=None,
) -> int:
    """
    Settle a contest: the winner is credited the full pot, the loser gets a
    zero-amount contest-loss entry (their stake left at lock time).
    Running totals for both sides are updated in the same unit of work.
    """
    lock_accounts(db, [winner_id, loser_id])
    ref = ("contest", contest_id)
    new_balance = credit(db, winner_id, pot, TxKind.CONTEST_WIN, reference=ref, now=now)
    record(db, loser_id, TxKind.CONTEST_LOSS, reference=ref, now=now)

    db.execute(
        text(
            "UPDATE account SET wins = wins + 1, win_streak = win_streak + 1, "
            "best_win_streak = CASE WHEN win_streak + 1 > best_win_streak "
            "THEN win_streak + 1 ELSE best_win_streak END, "
            "total_clashes = total_clashes + 1, total_earnings = total_earnings + :pot "
            "WHERE id = :id"
        ),
        {"id": winner_id, "pot": pot},
    )
    db.execute(
        text(
            "UPDATE account SET losses = losses + 1, win_streak = 0, "
            "total_clashes = total_clashes + 1 WHERE id = :id"
        ),
        {"id": loser_id},
    )
    logger.info("Contest %d paid %d to %s (loser %s)", contest_id, pot, winner_id, loser_id)
    return new_balance


def claim_allowance(db: Session, account_id: str, *, amount: int = ALLOWANCE_AMOUNT, now=None) -> int:
    """Periodic free bingos, at most once per ALLOWANCE_HOURS."""
    ts = now_ms(now)
    cutoff = ts - ALLOWANCE_HOURS * HOUR_MS
    res = db.execute(
        text(
            "UPDATE account SET last_allowance_at = :ts "
            "WHERE id = :id AND (last_allowance_at IS NULL OR last_allowance_at <= :cutoff)"
        ),
        {"id": account_id, "ts": ts, "cutoff": cutoff},
    )
    if res.rowcount == 0:
        row = db.execute(
            text("SELECT last_allowance_at FROM account WHERE id = :id"), {"id": account_id}
        ).first()
        if not row:
            raise NotFound(f"account {account_id} not found")
        next_at = int(row[0]) + ALLOWANCE_HOURS * HOUR_MS
        raise InvalidStateTransition(
            "allowance already claimed", next_allowance_at=iso(next_at)
        )
    return credit(db, account_id, amount, TxKind.ALLOWANCE, description="allowance", now=now)


# ────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────

def history(db: Session, account_id: str, *, limit: int = 50):
    return db.execute(
        text(
            "SELECT id, amount, balance_after, kind, reference_type, reference_id, description, created_at "
            "FROM ledger_transaction WHERE account_id = :id ORDER BY id DESC LIMIT :n"
        ),
        {"id": account_id, "n": limit},
    ).mappings().all()


def replay_balance(db: Session, account_id: str) -> int:
    """Sum every transaction amount for the account in creation order."""
    rows = db.execute(
        text("SELECT amount FROM ledger_transaction WHERE account_id = :id ORDER BY id"),
        {"id": account_id},
    ).fetchall()
    total = 0
    for (amount,) in rows:
        total += int(amount)
    return total


def verify_account(db: Session, account_id: str) -> bool:
    return replay_balance(db, account_id) == get_balance(db, account_id)
