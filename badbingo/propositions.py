# badbingo/propositions.py
"""
Proposition matcher.

Stakes are locked for every participant when the proposition opens. Once
every participant has voted, the first opposite yes/no pair (participant
order, then account id) becomes a contest and everyone else is released.
Unanimous votes release everyone. Expiry with votes outstanding forfeits
the non-voters' stakes to the house.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import HOUSE_ACCOUNT_ID, PROOF_DEADLINE_HOURS
from .db import for_update
from .errors import (
    AlreadyVoted,
    Expired,
    InvalidStateTransition,
    NotAParticipant,
    NotFound,
    StaleState,
    ValidationError,
)
from .events import ContestCreated, emit
from .ledger import TxKind, credit, debit, lock_accounts, record
from .sweeps import SweepResult, run_each
from .transitions import compare_and_set, record_transition
from .util import HOUR_MS, now_ms, to_ms

logger = logging.getLogger(__name__)

VOTES = ("yes", "no")


@dataclass
class VoteOutcome:
    proposition_id: int
    status: str  # pending | matched | null_result
    contest_id: Optional[int] = None


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────

def _load(db: Session, proposition_id: int, *, lock: bool = False) -> dict:
    suffix = for_update(db) if lock else ""
    row = db.execute(
        text(f"SELECT id, text, stake, status, expires_at FROM proposition WHERE id = :id{suffix}"),
        {"id": proposition_id},
    ).mappings().first()
    if not row:
        raise NotFound(f"proposition {proposition_id} not found")
    return dict(row)


def _participants(db: Session, proposition_id: int) -> List[dict]:
    rows = db.execute(
        text(
            "SELECT account_id, position, stake, vote, voted_at, stake_state "
            "FROM proposition_participant WHERE proposition_id = :pid "
            "ORDER BY position, account_id"
        ),
        {"pid": proposition_id},
    ).mappings().all()
    return [dict(r) for r in rows]


def _set_stake_state(db: Session, proposition_id: int, account_id: str, state: str) -> None:
    db.execute(
        text(
            "UPDATE proposition_participant SET stake_state = :s "
            "WHERE proposition_id = :pid AND account_id = :acct"
        ),
        {"pid": proposition_id, "acct": account_id, "s": state},
    )


def _release(db: Session, proposition_id: int, participants: Sequence[dict], *, now=None) -> None:
    ref = ("proposition", proposition_id)
    for p in participants:
        if p["stake_state"] != "locked":
            continue
        credit(db, p["account_id"], int(p["stake"]), TxKind.STAKE_RELEASE, reference=ref, now=now)
        _set_stake_state(db, proposition_id, p["account_id"], "released")


def first_opposite_pair(participants: Sequence[dict]):
    """First yes/no pair in participant order, or None when all votes agree."""
    for i, a in enumerate(participants):
        for b in participants[i + 1:]:
            if a["vote"] and b["vote"] and a["vote"] != b["vote"]:
                return a, b
    return None


# ────────────────────────────────────────────────────────────
# Operations
# ────────────────────────────────────────────────────────────

def open_proposition(
    db: Session,
    text_: str,
    stake: int,
    participant_ids: Sequence[str],
    expires_at: datetime,
    *,
    stakes: Optional[Dict[str, int]] = None,
    now=None,
) -> int:
    """
    Record a proposition handed over by the generator and lock every
    participant's stake. Raises InsufficientFunds if anyone cannot cover it.
    """
    if not text_ or not text_.strip():
        raise ValidationError("proposition text is required")
    if isinstance(stake, bool) or not isinstance(stake, int) or stake <= 0:
        raise ValidationError("stake must be a positive integer")
    ids = list(participant_ids)
    if len(ids) < 2 or len(set(ids)) != len(ids):
        raise ValidationError("a proposition needs at least two distinct participants")
    stakes = stakes or {}
    unknown = set(stakes) - set(ids)
    if unknown:
        raise ValidationError(f"stakes given for non-participants: {sorted(unknown)}")
    if any(isinstance(v, bool) or not isinstance(v, int) or v <= 0 for v in stakes.values()):
        raise ValidationError("per-participant stakes must be positive integers")

    ts = now_ms(now)
    exp = to_ms(expires_at)
    if exp <= ts:
        raise ValidationError("expiry must be in the future")
    ordered = lock_accounts(db, ids)

    row = db.execute(
        text(
            "INSERT INTO proposition (text, stake, status, expires_at, created_at) "
            "VALUES (:t, :s, 'open', :exp, :ts) RETURNING id"
        ),
        {"t": text_.strip(), "s": stake, "exp": exp, "ts": ts},
    ).first()
    pid = int(row[0])

    for position, account_id in enumerate(ids):
        db.execute(
            text(
                "INSERT INTO proposition_participant (proposition_id, account_id, position, stake, stake_state) "
                "VALUES (:pid, :acct, :pos, :stake, 'locked')"
            ),
            {"pid": pid, "acct": account_id, "pos": position, "stake": stakes.get(account_id, stake)},
        )

    ref = ("proposition", pid)
    for account_id in ordered:
        debit(db, account_id, stakes.get(account_id, stake), TxKind.STAKE_LOCK, reference=ref, now=now)

    logger.info("Opened proposition %d with %d participants (stake %d)", pid, len(ids), stake)
    return pid


def cast_vote(db: Session, proposition_id: int, participant_id: str, vote: str, *, now=None) -> VoteOutcome:
    if vote not in VOTES:
        raise ValidationError(f"vote must be one of {VOTES}")
    ts = now_ms(now)
    # row lock serializes the last two votes so both cannot miss the other
    prop = _load(db, proposition_id, lock=True)
    if prop["status"] == "expired" or ts >= int(prop["expires_at"]):
        raise Expired(f"proposition {proposition_id} has expired")
    if prop["status"] != "open":
        raise InvalidStateTransition(f"proposition {proposition_id} is {prop['status']}")

    row = db.execute(
        text(
            "SELECT vote FROM proposition_participant "
            "WHERE proposition_id = :pid AND account_id = :acct"
        ),
        {"pid": proposition_id, "acct": participant_id},
    ).first()
    if not row:
        raise NotAParticipant(f"{participant_id} is not part of proposition {proposition_id}")
    if row[0] is not None:
        raise AlreadyVoted(f"{participant_id} already voted on proposition {proposition_id}")

    res = db.execute(
        text(
            "UPDATE proposition_participant SET vote = :v, voted_at = :ts "
            "WHERE proposition_id = :pid AND account_id = :acct AND vote IS NULL"
        ),
        {"pid": proposition_id, "acct": participant_id, "v": vote, "ts": ts},
    )
    if res.rowcount == 0:
        raise AlreadyVoted(f"{participant_id} already voted on proposition {proposition_id}")

    return evaluate(db, proposition_id, now=now)


def evaluate(db: Session, proposition_id: int, *, now=None) -> VoteOutcome:
    """
    Re-run matching. Safe to call any number of times: once a contest
    exists this only reports it.
    """
    prop = _load(db, proposition_id, lock=True)
    if prop["status"] == "matched":
        row = db.execute(
            text("SELECT id FROM contest WHERE proposition_id = :pid"), {"pid": proposition_id}
        ).first()
        return VoteOutcome(proposition_id, "matched", int(row[0]) if row else None)
    if prop["status"] != "open":
        return VoteOutcome(proposition_id, prop["status"])

    participants = _participants(db, proposition_id)
    if any(p["vote"] is None for p in participants):
        return VoteOutcome(proposition_id, "pending")

    ts = now_ms(now)
    lock_accounts(db, [p["account_id"] for p in participants])
    pair = first_opposite_pair(participants)

    if pair is None:
        compare_and_set(db, "proposition", proposition_id, ["open"], "null_result", {"resolved_at": ts})
        record_transition(db, "proposition", proposition_id, "null_result", now=now)
        _release(db, proposition_id, participants, now=now)
        logger.info("Proposition %d: unanimous, stakes released", proposition_id)
        return VoteOutcome(proposition_id, "null_result")

    a, b = pair
    compare_and_set(db, "proposition", proposition_id, ["open"], "matched", {"resolved_at": ts})
    record_transition(db, "proposition", proposition_id, "matched", now=now)

    prover = a if a["vote"] == "yes" else b
    deadline = ts + PROOF_DEADLINE_HOURS * HOUR_MS
    pot = int(a["stake"]) + int(b["stake"])
    try:
        row = db.execute(
            text(
                "INSERT INTO contest (proposition_id, participant_a, participant_b, vote_a, vote_b, "
                "stake_a, stake_b, pot, prover_id, status, proof_deadline, created_at) "
                "VALUES (:pid, :a, :b, :va, :vb, :sa, :sb, :pot, :prover, 'pending_proof', :dl, :ts) "
                "RETURNING id"
            ),
            {
                "pid": proposition_id,
                "a": a["account_id"],
                "b": b["account_id"],
                "va": a["vote"],
                "vb": b["vote"],
                "sa": int(a["stake"]),
                "sb": int(b["stake"]),
                "pot": pot,
                "prover": prover["account_id"],
                "dl": deadline,
                "ts": ts,
            },
        ).first()
    except IntegrityError:
        raise StaleState(f"proposition {proposition_id} already has a contest")
    contest_id = int(row[0])

    for p in (a, b):
        _set_stake_state(db, proposition_id, p["account_id"], "committed")
    others = [p for p in participants if p["account_id"] not in (a["account_id"], b["account_id"])]
    _release(db, proposition_id, others, now=now)

    emit(
        db,
        ContestCreated(
            contest_id=contest_id,
            proposition_id=proposition_id,
            participant_a=a["account_id"],
            participant_b=b["account_id"],
            prover_id=prover["account_id"],
            pot=pot,
            proof_deadline=deadline,
        ),
        now=now,
    )
    logger.info(
        "Proposition %d matched %s vs %s -> contest %d (pot %d)",
        proposition_id, a["account_id"], b["account_id"], contest_id, pot,
    )
    return VoteOutcome(proposition_id, "matched", contest_id)


def _expire_one(db: Session, proposition_id: int, *, now=None) -> None:
    ts = now_ms(now)
    prop = _load(db, proposition_id, lock=True)
    if prop["status"] != "open" or int(prop["expires_at"]) > ts:
        raise InvalidStateTransition(f"proposition {proposition_id} is not due for expiry")

    compare_and_set(db, "proposition", proposition_id, ["open"], "expired", {"resolved_at": ts})
    record_transition(db, "proposition", proposition_id, "expired", now=now)

    participants = _participants(db, proposition_id)
    lock_accounts(db, [p["account_id"] for p in participants] + [HOUSE_ACCOUNT_ID])
    ref = ("proposition", proposition_id)
    voters = [p for p in participants if p["vote"] is not None]
    _release(db, proposition_id, voters, now=now)
    forfeited = 0
    for p in participants:
        if p["vote"] is not None or p["stake_state"] != "locked":
            continue
        stake = int(p["stake"])
        record(db, p["account_id"], TxKind.STAKE_FORFEIT, reference=ref,
               description="did not vote before expiry", now=now)
        credit(db, HOUSE_ACCOUNT_ID, stake, TxKind.STAKE_FORFEIT, reference=ref,
               description=f"forfeit from {p['account_id']}", now=now)
        _set_stake_state(db, proposition_id, p["account_id"], "forfeited")
        forfeited += stake
    logger.info("Proposition %d expired; %d forfeited to house", proposition_id, forfeited)


def expire_propositions(db: Session, *, now=None) -> SweepResult:
    ts = now_ms(now)
    ids = [
        r[0]
        for r in db.execute(
            text("SELECT id FROM proposition WHERE status = 'open' AND expires_at <= :ts ORDER BY id"),
            {"ts": ts},
        ).fetchall()
    ]
    return run_each(db, SweepResult(name="propositions"), ids, lambda pid: _expire_one(db, pid, now=now))


def get_proposition(db: Session, proposition_id: int) -> dict:
    prop = _load(db, proposition_id)
    prop["participants"] = _participants(db, proposition_id)
    row = db.execute(
        text("SELECT id FROM contest WHERE proposition_id = :pid"), {"pid": proposition_id}
    ).first()
    prop["contest_id"] = int(row[0]) if row else None
    return prop
