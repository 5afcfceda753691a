# badbingo/debts.py
"""
Debt ledger: borrowing, daily compounding interest, overdue detection and
repayment. Collateral seizure lives in repo.py and reads ``repo_triggered``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import (
    DEBT_DAILY_RATE_BPS,
    DEBT_TERM_DAYS,
    INTEREST_ROUNDING,
    INTEREST_WINDOW_HOURS,
    MAX_DEBT_RATIO,
    MIN_BORROW_TRUST,
    REPO_TRUST_PENALTY,
)
from .db import for_update
from .directory import AccountDirectory, SqlAccountDirectory, adjust_trust
from .errors import (
    BorrowDenied,
    InvalidStateTransition,
    NotAParticipant,
    NotFound,
    StaleState,
    ValidationError,
)
from .events import DebtOverdue, emit
from .ledger import TxKind, credit, debit, record
from .sweeps import SweepResult, run_each
from .util import DAY_MS, HOUR_MS, now_ms

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("active", "defaulted")


@dataclass
class BorrowCheck:
    allowed: bool
    reason: Optional[str]
    max_borrowable: int
    current_debt: int


@dataclass
class AccrualResult:
    debt_id: int
    interest: int
    accrued_interest: int
    outstanding: int
    accrued: bool
    overdue_triggered: bool = False


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────

def outstanding(debt: dict) -> int:
    """principal + accrued interest - repaid"""
    return int(debt["principal"]) + int(debt["accrued_interest"]) - int(debt["amount_repaid"])


def compute_interest(owed: int, rate_bps: int, rounding: str = INTEREST_ROUNDING) -> int:
    if owed <= 0:
        return 0
    if rounding == "floor":
        return owed * rate_bps // 10_000
    return -(-owed * rate_bps // 10_000)


def get_debt(db: Session, debt_id: int, *, lock: bool = False) -> dict:
    suffix = for_update(db) if lock else ""
    row = db.execute(
        text(f"SELECT * FROM debt WHERE id = :id{suffix}"), {"id": debt_id}
    ).mappings().first()
    if not row:
        raise NotFound(f"debt {debt_id} not found")
    return dict(row)


def apply_payment(db: Session, debt: dict, amount: int, *, seized: bool = False, now=None) -> int:
    """
    Book ``amount`` against the debt, guarded on the repaid/accrued values
    the caller read. Paying it off clears the repo flag. Returns what is
    still owed.
    """
    remaining = outstanding(debt) - amount
    if remaining < 0:
        raise ValidationError("payment exceeds outstanding balance")
    settled = ", status = 'repaid', repo_triggered = FALSE" if remaining == 0 else ""
    res = db.execute(
        text(
            "UPDATE debt SET amount_repaid = amount_repaid + :amt, "
            f"seized_amount = seized_amount + :seized{settled} "
            "WHERE id = :id AND amount_repaid = :prev_repaid AND accrued_interest = :prev_accrued"
        ),
        {
            "id": debt["id"],
            "amt": amount,
            "seized": amount if seized else 0,
            "prev_repaid": debt["amount_repaid"],
            "prev_accrued": debt["accrued_interest"],
        },
    )
    if res.rowcount == 0:
        raise StaleState(f"debt {debt['id']} changed concurrently")
    if remaining == 0:
        logger.info("Debt %d repaid in full", debt["id"])
    return remaining


# ────────────────────────────────────────────────────────────
# Borrowing
# ────────────────────────────────────────────────────────────

def total_debt(db: Session, borrower_id: str) -> int:
    row = db.execute(
        text(
            "SELECT COALESCE(SUM(principal + accrued_interest - amount_repaid), 0) "
            "FROM debt WHERE borrower_id = :b AND status IN ('active', 'defaulted')"
        ),
        {"b": borrower_id},
    ).first()
    return int(row[0])


def can_borrow(
    db: Session,
    borrower_id: str,
    amount: int,
    *,
    directory: Optional[AccountDirectory] = None,
) -> BorrowCheck:
    acct = (directory or SqlAccountDirectory()).get_account(db, borrower_id)
    current = total_debt(db, borrower_id)
    if int(acct["trust_score"]) < MIN_BORROW_TRUST:
        return BorrowCheck(False, f"trust score below {MIN_BORROW_TRUST}", 0, current)
    max_borrowable = max(0, MAX_DEBT_RATIO * int(acct["balance"]) - current)
    if amount > max_borrowable:
        return BorrowCheck(
            False,
            f"debt would exceed {MAX_DEBT_RATIO}x balance",
            max_borrowable,
            current,
        )
    return BorrowCheck(True, None, max_borrowable, current)


def borrow(
    db: Session,
    borrower_id: str,
    amount: int,
    *,
    rate_bps: int = DEBT_DAILY_RATE_BPS,
    term_days: int = DEBT_TERM_DAYS,
    directory: Optional[AccountDirectory] = None,
    now=None,
) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    check = can_borrow(db, borrower_id, amount, directory=directory)
    if not check.allowed:
        raise BorrowDenied(check.reason, max_borrowable=check.max_borrowable)

    ts = now_ms(now)
    row = db.execute(
        text(
            "INSERT INTO debt (borrower_id, principal, interest_rate_bps, status, due_at, "
            "last_interest_accrual_at, created_at) "
            "VALUES (:b, :p, :r, 'active', :due, :ts, :ts) RETURNING id"
        ),
        {"b": borrower_id, "p": amount, "r": rate_bps, "due": ts + term_days * DAY_MS, "ts": ts},
    ).first()
    debt_id = int(row[0])
    credit(db, borrower_id, amount, TxKind.BORROW, reference=("debt", debt_id), now=now)
    logger.info("Debt %d: %s borrowed %d at %d bps/day", debt_id, borrower_id, amount, rate_bps)
    return debt_id


# ────────────────────────────────────────────────────────────
# Interest / overdue
# ────────────────────────────────────────────────────────────

def _trigger_overdue(db: Session, debt: dict, ts: int, *, now=None) -> bool:
    res = db.execute(
        text(
            "UPDATE debt SET repo_triggered = TRUE, repo_triggered_at = :ts "
            "WHERE id = :id AND NOT repo_triggered AND repo_triggered_at IS NULL"
        ),
        {"id": debt["id"], "ts": ts},
    )
    if res.rowcount == 0:
        return False
    adjust_trust(db, debt["borrower_id"], -REPO_TRUST_PENALTY)
    emit(
        db,
        DebtOverdue(
            debt_id=debt["id"],
            borrower_id=debt["borrower_id"],
            amount_owed=outstanding(debt),
            due_at=int(debt["due_at"]),
            trust_penalty=REPO_TRUST_PENALTY,
        ),
        now=now,
    )
    logger.warning("Debt %d overdue; repo triggered for %s", debt["id"], debt["borrower_id"])
    return True


def accrue_interest(
    db: Session,
    debt_id: int,
    *,
    rounding: str = INTEREST_ROUNDING,
    window_hours: int = INTEREST_WINDOW_HOURS,
    now=None,
) -> AccrualResult:
    """
    Add one period of interest on the total currently owed. Within
    ``window_hours`` of the previous accrual this is a no-op. Also flags the
    debt overdue (once) when past due.
    """
    ts = now_ms(now)
    debt = get_debt(db, debt_id, lock=True)
    if debt["status"] != "active":
        return AccrualResult(debt_id, 0, int(debt["accrued_interest"]), outstanding(debt), False)

    interest = 0
    accrued = False
    prev = int(debt["last_interest_accrual_at"])
    if ts - prev >= window_hours * HOUR_MS:
        interest = compute_interest(outstanding(debt), int(debt["interest_rate_bps"]), rounding)
        res = db.execute(
            text(
                "UPDATE debt SET accrued_interest = accrued_interest + :i, "
                "last_interest_accrual_at = :ts "
                "WHERE id = :id AND last_interest_accrual_at = :prev AND status = 'active'"
            ),
            {"id": debt_id, "i": interest, "ts": ts, "prev": prev},
        )
        if res.rowcount == 0:
            raise StaleState(f"debt {debt_id} accrued concurrently")
        record(
            db,
            debt["borrower_id"],
            TxKind.INTEREST,
            reference=("debt", debt_id),
            description=f"interest {interest} on debt {debt_id}",
            now=now,
        )
        debt["accrued_interest"] = int(debt["accrued_interest"]) + interest
        accrued = True
        logger.info("Debt %d accrued %d interest", debt_id, interest)

    triggered = False
    if ts > int(debt["due_at"]) and not debt["repo_triggered"] and debt["repo_triggered_at"] is None:
        triggered = _trigger_overdue(db, debt, ts, now=now)

    return AccrualResult(
        debt_id=debt_id,
        interest=interest,
        accrued_interest=int(debt["accrued_interest"]),
        outstanding=outstanding(debt),
        accrued=accrued,
        overdue_triggered=triggered,
    )


def accrue_all_interest(db: Session, *, now=None) -> SweepResult:
    from .repo import seize_severely_overdue

    ids = [
        r[0]
        for r in db.execute(
            text("SELECT id FROM debt WHERE status = 'active' ORDER BY id")
        ).fetchall()
    ]
    result = run_each(db, SweepResult(name="interest"), ids, lambda d: accrue_interest(db, d, now=now))
    seized = seize_severely_overdue(db, now=now)
    result.processed += seized.processed
    result.skipped += seized.skipped
    result.errors.extend(seized.errors)
    return result


# ────────────────────────────────────────────────────────────
# Repayment / reads
# ────────────────────────────────────────────────────────────

def repay(db: Session, debt_id: int, payer_id: str, amount: int, *, now=None) -> int:
    """Pay toward a debt. Overpayment is rejected. Returns what is still owed."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive integer")
    debt = get_debt(db, debt_id, lock=True)
    if payer_id != debt["borrower_id"]:
        raise NotAParticipant(f"{payer_id} is not the borrower on debt {debt_id}")
    if debt["status"] not in OPEN_STATUSES:
        raise InvalidStateTransition(f"debt {debt_id} is {debt['status']}")
    owed = outstanding(debt)
    if amount > owed:
        raise ValidationError(
            f"payment {amount} exceeds outstanding {owed}", outstanding=owed
        )
    debit(db, payer_id, amount, TxKind.REPAY, reference=("debt", debt_id), now=now)
    return apply_payment(db, debt, amount, now=now)


def list_debts(db: Session, borrower_id: str) -> List[dict]:
    rows = db.execute(
        text("SELECT * FROM debt WHERE borrower_id = :b ORDER BY id"), {"b": borrower_id}
    ).mappings().all()
    out = []
    for r in rows:
        d = dict(r)
        d["outstanding"] = outstanding(d)
        out.append(d)
    return out
