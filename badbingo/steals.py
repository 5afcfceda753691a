# badbingo/steals.py
"""
Attack/defense timer.

An attacker tries to take a percentage of a target's balance. If the target
was active recently a short defense window opens; the stored ``window_end``
is the only clock that matters, checked whenever someone acts. Nothing
waits on the window: outcomes are resolved lazily by the next call (or the
sweep) that observes it has closed.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import (
    DEFEND_BONUS,
    DEFENSE_WINDOW_SECONDS,
    MINIGAME_GRACE_SECONDS,
    STEAL_MIN_TARGET_BALANCE,
    STEAL_PENALTY_MULTIPLIER,
)
from .db import for_update
from .directory import AccountDirectory, SqlAccountDirectory, touch
from .errors import (
    InvalidStateTransition,
    NotAParticipant,
    NotFound,
    StaleState,
    ValidationError,
    WindowClosed,
    WindowStillOpen,
)
from .events import StealAlertOpened, StealResolved, emit
from .ledger import TxKind, credit, debit, get_balance, lock_accounts
from .sweeps import SweepResult, run_each
from .transitions import compare_and_set, record_transition
from .util import from_ms, now_ms

logger = logging.getLogger(__name__)

StealPolicy = Callable[[dict, datetime], int]


# ────────────────────────────────────────────────────────────
# Percentage policies
# ────────────────────────────────────────────────────────────

def hour_of_day_percentage(attacker: dict, now: datetime) -> int:
    """
    Deterministic percentage from attacker history and the hour:
    base 10, +trust/5, +2 per success (max 10), -3 per time caught
    (max 15), +|12 - hour|/2. Clamped to 1-50.
    """
    pct = 10
    pct += int(attacker["trust_score"]) // 5
    pct += min(10, int(attacker["steals_successful"]) * 2)
    pct -= min(15, int(attacker["times_caught"]) * 3)
    pct += abs(12 - now.hour) // 2
    return max(1, min(50, pct))


class FixedPercentage:
    def __init__(self, pct: int):
        if not 1 <= pct <= 100:
            raise ValueError("percentage must be within 1-100")
        self.pct = pct

    def __call__(self, attacker: dict, now: datetime) -> int:
        return self.pct


DEFAULT_POLICY: StealPolicy = hour_of_day_percentage


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────

def get_steal(db: Session, steal_id: int, *, lock: bool = False) -> dict:
    suffix = for_update(db) if lock else ""
    row = db.execute(
        text(f"SELECT * FROM steal_attempt WHERE id = :id{suffix}"), {"id": steal_id}
    ).mappings().first()
    if not row:
        raise NotFound(f"steal {steal_id} not found")
    return dict(row)


def _outcome(steal: dict, ts: int, grace_ms: int) -> str:
    if steal["was_defended"]:
        return "defended"
    if steal["minigame_passed"] is not None and not steal["minigame_passed"]:
        return "failed"
    if steal["target_online"] and ts <= int(steal["window_end"]):
        raise WindowStillOpen(
            f"defense window for steal {steal['id']} is still open",
            window_end=int(steal["window_end"]),
        )
    if steal["minigame_passed"]:
        return "success"
    base = int(steal["window_end"]) if steal["target_online"] else int(steal["created_at"])
    if ts > base + grace_ms:
        return "failed"
    raise InvalidStateTransition(f"steal {steal['id']} is waiting for the minigame result")


def _bump(db: Session, account_id: str, column: str) -> None:
    # column names come from the fixed set below
    db.execute(text(f"UPDATE account SET {column} = {column} + 1 WHERE id = :id"), {"id": account_id})


def _resolve(db: Session, steal: dict, outcome: str, *, now=None) -> dict:
    ts = now_ms(now)
    steal_id = steal["id"]
    attacker, target = steal["attacker_id"], steal["target_id"]
    potential = int(steal["potential_amount"])
    lock_accounts(db, [attacker, target])

    actual = penalty = paid_bonus = 0
    if outcome == "success":
        actual = min(potential, get_balance(db, target))
    elif outcome == "defended":
        penalty = min(STEAL_PENALTY_MULTIPLIER * potential, get_balance(db, attacker))
        paid_bonus = max(0, DEFEND_BONUS)

    compare_and_set(
        db,
        "steal",
        steal_id,
        ["in_progress"],
        outcome,
        {
            "actual_amount": actual,
            "attacker_penalty": penalty,
            "defender_bonus": paid_bonus,
            "completed_at": ts,
        },
    )
    record_transition(db, "steal", steal_id, "resolved", now=now)

    ref = ("steal", steal_id)
    if outcome == "success":
        if actual > 0:
            debit(db, target, actual, TxKind.STEAL_VICTIM, reference=ref, now=now)
            credit(db, attacker, actual, TxKind.STEAL_SUCCESS, reference=ref, now=now)
        _bump(db, attacker, "steals_successful")
        _bump(db, target, "times_robbed")
    elif outcome == "defended":
        if penalty > 0:
            debit(db, attacker, penalty, TxKind.STEAL_PENALTY, reference=ref, now=now)
        if paid_bonus > 0:
            credit(db, target, paid_bonus, TxKind.DEFEND_BONUS, reference=ref, now=now)
        _bump(db, target, "steals_defended")
        _bump(db, attacker, "times_caught")

    emit(
        db,
        StealResolved(
            steal_id=steal_id,
            attacker_id=attacker,
            target_id=target,
            status=outcome,
            amount=actual if outcome == "success" else penalty,
        ),
        now=now,
    )
    logger.info("Steal %d %s (moved %d, penalty %d)", steal_id, outcome, actual, penalty)
    return get_steal(db, steal_id)


# ────────────────────────────────────────────────────────────
# Operations
# ────────────────────────────────────────────────────────────

def initiate(
    db: Session,
    attacker_id: str,
    target_id: str,
    *,
    policy: Optional[StealPolicy] = None,
    directory: Optional[AccountDirectory] = None,
    now: Optional[datetime] = None,
) -> dict:
    if attacker_id == target_id:
        raise ValidationError("cannot steal from yourself")
    policy = policy or DEFAULT_POLICY
    directory = directory or SqlAccountDirectory()
    ts = now_ms(now)
    at = from_ms(ts)

    attacker = directory.get_account(db, attacker_id)
    target = directory.get_account(db, target_id)
    if not target["is_active"]:
        raise ValidationError(f"account {target_id} is not active")
    balance = int(target["balance"])
    if balance < STEAL_MIN_TARGET_BALANCE:
        raise ValidationError(
            f"target balance below {STEAL_MIN_TARGET_BALANCE}", balance=balance
        )

    pct = int(policy(attacker, at))
    potential = balance * pct // 100
    online = directory.is_recently_active(db, target_id, now=now)
    window_start = ts if online else None
    window_end = ts + DEFENSE_WINDOW_SECONDS * 1000 if online else None

    row = db.execute(
        text(
            "INSERT INTO steal_attempt (attacker_id, target_id, steal_percentage, potential_amount, "
            "target_online, window_start, window_end, status, created_at) "
            "VALUES (:a, :t, :pct, :pot, :online, :ws, :we, 'in_progress', :ts) RETURNING id"
        ),
        {
            "a": attacker_id,
            "t": target_id,
            "pct": pct,
            "pot": potential,
            "online": online,
            "ws": window_start,
            "we": window_end,
            "ts": ts,
        },
    ).first()
    steal_id = int(row[0])
    touch(db, attacker_id, now=now)

    if online:
        emit(
            db,
            StealAlertOpened(
                steal_id=steal_id,
                attacker_id=attacker_id,
                target_id=target_id,
                window_end=window_end,
                potential_amount=potential,
            ),
            now=now,
        )
    logger.info(
        "Steal %d: %s -> %s at %d%% (potential %d, target %s)",
        steal_id, attacker_id, target_id, pct, potential, "online" if online else "offline",
    )
    return get_steal(db, steal_id)


def defend(db: Session, steal_id: int, defender_id: str, *, now=None) -> dict:
    """Succeeds up to and including window_end; the steal resolves as defended."""
    ts = now_ms(now)
    steal = get_steal(db, steal_id, lock=True)
    if defender_id != steal["target_id"]:
        raise NotAParticipant(f"only the target may defend steal {steal_id}")
    if steal["status"] != "in_progress":
        raise InvalidStateTransition(f"steal {steal_id} is {steal['status']}")
    if not steal["target_online"]:
        raise InvalidStateTransition(f"steal {steal_id} has no defense window")
    if ts > int(steal["window_end"]):
        raise WindowClosed(f"defense window for steal {steal_id} closed")

    res = db.execute(
        text(
            "UPDATE steal_attempt SET was_defended = TRUE, defended_at = :ts "
            "WHERE id = :id AND status = 'in_progress' AND NOT was_defended AND window_end >= :ts"
        ),
        {"id": steal_id, "ts": ts},
    )
    if res.rowcount == 0:
        raise StaleState(f"steal {steal_id} changed concurrently")
    touch(db, defender_id, now=now)
    steal["was_defended"] = True
    return _resolve(db, steal, "defended", now=now)


def complete(db: Session, steal_id: int, attacker_id: str, minigame_success: bool, *, now=None) -> dict:
    """
    Attacker reports the minigame. Failed minigames and offline targets
    resolve right away; an online target resolves once its window closes.
    """
    ts = now_ms(now)
    steal = get_steal(db, steal_id, lock=True)
    if attacker_id != steal["attacker_id"]:
        raise NotAParticipant(f"only the attacker may complete steal {steal_id}")
    if steal["status"] != "in_progress":
        raise InvalidStateTransition(f"steal {steal_id} is {steal['status']}")
    res = db.execute(
        text(
            "UPDATE steal_attempt SET minigame_passed = :m "
            "WHERE id = :id AND status = 'in_progress' AND minigame_passed IS NULL"
        ),
        {"id": steal_id, "m": bool(minigame_success)},
    )
    if res.rowcount == 0:
        raise InvalidStateTransition(f"minigame for steal {steal_id} already reported")
    steal["minigame_passed"] = bool(minigame_success)

    try:
        outcome = _outcome(steal, ts, MINIGAME_GRACE_SECONDS * 1000)
    except WindowStillOpen:
        return get_steal(db, steal_id)
    return _resolve(db, steal, outcome, now=now)


def resolve_steal(db: Session, steal_id: int, *, now=None) -> dict:
    """Lazy resolution once the window has closed. Resolving twice is an error."""
    steal = get_steal(db, steal_id, lock=True)
    if steal["status"] != "in_progress":
        raise InvalidStateTransition(f"steal {steal_id} already resolved as {steal['status']}")
    outcome = _outcome(steal, now_ms(now), MINIGAME_GRACE_SECONDS * 1000)
    return _resolve(db, steal, outcome, now=now)


def resolve_expired_steals(db: Session, *, now=None) -> SweepResult:
    ts = now_ms(now)
    ids = [
        r[0]
        for r in db.execute(
            text(
                "SELECT id FROM steal_attempt WHERE status = 'in_progress' "
                "AND COALESCE(window_end, created_at) < :ts ORDER BY id"
            ),
            {"ts": ts},
        ).fetchall()
    ]
    return run_each(db, SweepResult(name="steals"), ids, lambda sid: resolve_steal(db, sid, now=now))


def active_alerts(db: Session, target_id: str, *, now=None) -> List[dict]:
    rows = db.execute(
        text(
            "SELECT id, attacker_id, potential_amount, window_end FROM steal_attempt "
            "WHERE target_id = :t AND status = 'in_progress' AND target_online "
            "AND NOT was_defended AND window_end >= :ts ORDER BY window_end"
        ),
        {"t": target_id, "ts": now_ms(now)},
    ).mappings().all()
    return [dict(r) for r in rows]
