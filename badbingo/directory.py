# badbingo/directory.py
"""Account directory: identity, balance, trust and recency for participants."""
from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import DEFAULT_STARTING_BALANCE, ONLINE_WINDOW_SECONDS
from .errors import NotFound, ValidationError
from .ledger import TxKind, credit
from .util import now_ms

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = (
    "id, balance, trust_score, wins, losses, win_streak, best_win_streak, total_clashes, "
    "total_earnings, steals_successful, steals_defended, times_caught, times_robbed, "
    "last_active_at, last_allowance_at, is_active, created_at"
)


class AccountDirectory(Protocol):
    def get_account(self, db: Session, account_id: str) -> dict: ...

    def is_recently_active(self, db: Session, account_id: str, *, now=None) -> bool: ...


class SqlAccountDirectory:
    """Default directory, backed by the account table."""

    def __init__(self, online_window_seconds: int = ONLINE_WINDOW_SECONDS):
        self.online_window_ms = online_window_seconds * 1000

    def get_account(self, db: Session, account_id: str) -> dict:
        row = db.execute(
            text(f"SELECT {_ACCOUNT_COLUMNS} FROM account WHERE id = :id"), {"id": account_id}
        ).mappings().first()
        if not row:
            raise NotFound(f"account {account_id} not found")
        return dict(row)

    def is_recently_active(self, db: Session, account_id: str, *, now=None) -> bool:
        acct = self.get_account(db, account_id)
        last = acct["last_active_at"]
        if last is None:
            return False
        return now_ms(now) - int(last) <= self.online_window_ms


def touch(db: Session, account_id: str, *, now=None) -> None:
    res = db.execute(
        text("UPDATE account SET last_active_at = :ts WHERE id = :id"),
        {"id": account_id, "ts": now_ms(now)},
    )
    if res.rowcount == 0:
        raise NotFound(f"account {account_id} not found")


def open_account(
    db: Session,
    account_id: str,
    *,
    balance: int = DEFAULT_STARTING_BALANCE,
    trust_score: int = 50,
    now=None,
) -> dict:
    """Create an account at zero and credit the opening balance through the ledger."""
    if not account_id or len(account_id) > 64:
        raise ValidationError("account id must be 1-64 characters")
    if not 0 <= trust_score <= 100:
        raise ValidationError("trust score must be within 0-100")
    ts = now_ms(now)
    try:
        db.execute(
            text(
                "INSERT INTO account (id, balance, trust_score, last_active_at, created_at) "
                "VALUES (:id, 0, :trust, :ts, :ts)"
            ),
            {"id": account_id, "trust": trust_score, "ts": ts},
        )
    except IntegrityError:
        raise ValidationError(f"account {account_id} already exists")
    if balance > 0:
        credit(db, account_id, balance, TxKind.OPENING_BALANCE, description="opening balance", now=now)
    logger.info("Opened account %s with %d", account_id, balance)
    return SqlAccountDirectory().get_account(db, account_id)


def deactivate(db: Session, account_id: str) -> None:
    res = db.execute(
        text("UPDATE account SET is_active = :f WHERE id = :id"), {"id": account_id, "f": False}
    )
    if res.rowcount == 0:
        raise NotFound(f"account {account_id} not found")


def adjust_trust(db: Session, account_id: str, delta: int) -> None:
    """Shift trust score, clamped to 0-100."""
    db.execute(
        text(
            "UPDATE account SET trust_score = CASE "
            "WHEN trust_score + :d < 0 THEN 0 "
            "WHEN trust_score + :d > 100 THEN 100 "
            "ELSE trust_score + :d END WHERE id = :id"
        ),
        {"id": account_id, "d": delta},
    )
