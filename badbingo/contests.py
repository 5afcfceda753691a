# badbingo/contests.py
"""
Contest ("clash") lifecycle.

    pending_proof -> proof_submitted -> reviewing | disputed -> completed
    terminal alternates: expired (prover missed the deadline), forfeited

Every terminal move goes through ``_settle``: status compare-and-swap, the
"settled" idempotency key, the payout and the repo hook all land in the
caller's single unit of work, so a contest is paid at most once and a
failed payout leaves it untouched.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import PROOF_VIEW_HOURS
from .db import for_update
from .errors import (
    Expired,
    InvalidStateTransition,
    NotAParticipant,
    NotFound,
    ValidationError,
)
from .events import ContestResolved, ProofSubmitted, emit
from .ledger import payout
from .proofs import (
    ArtifactStore,
    CaptureMetadata,
    LegacyDirectUrl,
    StoragePath,
    ViewGrant,
    create_proof,
    grant_view,
    parse_artifact_ref,
)
from .repo import lock_repo_debts, seize_from_winnings
from .sweeps import SweepResult, run_each
from .transitions import compare_and_set, record_transition
from .util import now_ms

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending_proof", "proof_submitted", "reviewing", "disputed")
RESOLVABLE = ("proof_submitted", "reviewing", "disputed")


# ────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────

def get_contest(db: Session, contest_id: int, *, lock: bool = False) -> dict:
    suffix = for_update(db) if lock else ""
    row = db.execute(
        text(f"SELECT * FROM contest WHERE id = :id{suffix}"), {"id": contest_id}
    ).mappings().first()
    if not row:
        raise NotFound(f"contest {contest_id} not found")
    return dict(row)


def counterpart(contest: dict, account_id: str) -> str:
    if account_id == contest["participant_a"]:
        return contest["participant_b"]
    return contest["participant_a"]


def _require_participant(contest: dict, account_id: str) -> None:
    if account_id not in (contest["participant_a"], contest["participant_b"]):
        raise NotAParticipant(f"{account_id} is not part of contest {contest['id']}")


def _settle(
    db: Session,
    contest: dict,
    winner_id: str,
    expected: Sequence[str],
    status: str,
    *,
    note: Optional[str] = None,
    now=None,
) -> dict:
    ts = now_ms(now)
    contest_id = contest["id"]
    loser_id = counterpart(contest, winner_id)
    compare_and_set(
        db,
        "contest",
        contest_id,
        expected,
        status,
        {"winner_id": winner_id, "loser_id": loser_id, "resolved_at": ts, "resolution_note": note},
    )
    record_transition(db, "contest", contest_id, "settled", now=now)

    pot = int(contest["pot"])
    # debt rows before account rows, same order as repay and accrual
    repo_debts = lock_repo_debts(db, winner_id)
    payout(db, winner_id, loser_id, pot, contest_id=contest_id, now=now)
    seized = seize_from_winnings(db, winner_id, pot, debt_ids=repo_debts, now=now)

    emit(
        db,
        ContestResolved(
            contest_id=contest_id,
            status=status,
            winner_id=winner_id,
            loser_id=loser_id,
            pot=pot,
            seized=seized,
        ),
        now=now,
    )
    logger.info("Contest %d %s: %s wins %d", contest_id, status, winner_id, pot)
    return {
        "contest_id": contest_id,
        "status": status,
        "winner_id": winner_id,
        "loser_id": loser_id,
        "pot": pot,
        "seized": seized,
    }


# ────────────────────────────────────────────────────────────
# Proof submission / viewing
# ────────────────────────────────────────────────────────────

def submit_proof(
    db: Session,
    contest_id: int,
    prover_id: str,
    artifact_ref,
    *,
    media_kind: str = "photo",
    view_duration_hours: int = PROOF_VIEW_HOURS,
    view_once: bool = False,
    metadata: Optional[CaptureMetadata] = None,
    allow_legacy: bool = False,
    now=None,
) -> int:
    if isinstance(artifact_ref, (StoragePath, LegacyDirectUrl)):
        ref = artifact_ref
    else:
        ref = parse_artifact_ref(artifact_ref, allow_legacy=allow_legacy)

    ts = now_ms(now)
    contest = get_contest(db, contest_id, lock=True)
    _require_participant(contest, prover_id)
    if prover_id != contest["prover_id"]:
        raise NotAParticipant(f"only the prover may submit proof for contest {contest_id}")
    if contest["status"] != "pending_proof":
        raise InvalidStateTransition(f"contest {contest_id} is {contest['status']}")
    if ts > int(contest["proof_deadline"]):
        raise Expired(f"proof deadline for contest {contest_id} has passed")

    compare_and_set(db, "contest", contest_id, ["pending_proof"], "proof_submitted", {"proof_submitted_at": ts})
    proof_id = create_proof(
        db,
        contest_id,
        prover_id,
        ref,
        media_kind=media_kind,
        view_duration_hours=view_duration_hours,
        view_once=view_once,
        metadata=metadata,
        now=now,
    )
    db.execute(
        text("UPDATE contest SET proof_id = :pid WHERE id = :id"), {"pid": proof_id, "id": contest_id}
    )
    proof_expires = db.execute(
        text("SELECT expires_at FROM proof WHERE id = :id"), {"id": proof_id}
    ).scalar_one()
    emit(
        db,
        ProofSubmitted(
            contest_id=contest_id,
            proof_id=proof_id,
            prover_id=prover_id,
            reviewer_id=counterpart(contest, prover_id),
            view_once=view_once,
            expires_at=int(proof_expires),
        ),
        now=now,
    )
    logger.info("Contest %d: proof %d submitted by %s", contest_id, proof_id, prover_id)
    return proof_id


def view_proof(
    db: Session,
    contest_id: int,
    viewer_id: str,
    *,
    store: Optional[ArtifactStore] = None,
    now=None,
) -> ViewGrant:
    contest = get_contest(db, contest_id)
    _require_participant(contest, viewer_id)
    if contest["proof_id"] is None:
        raise InvalidStateTransition(f"contest {contest_id} has no proof yet")
    grant = grant_view(db, int(contest["proof_id"]), store=store, now=now)
    db.execute(
        text(
            "UPDATE contest SET proof_viewed_at = :ts "
            "WHERE id = :id AND proof_viewed_at IS NULL"
        ),
        {"id": contest_id, "ts": now_ms(now)},
    )
    return grant


# ────────────────────────────────────────────────────────────
# Review / dispute / resolution
# ────────────────────────────────────────────────────────────

def begin_review(db: Session, contest_id: int, reviewer_id: str, *, now=None) -> None:
    contest = get_contest(db, contest_id, lock=True)
    _require_participant(contest, reviewer_id)
    if reviewer_id == contest["prover_id"]:
        raise NotAParticipant("the prover cannot review their own proof")
    if contest["status"] != "proof_submitted":
        raise InvalidStateTransition(f"contest {contest_id} is {contest['status']}")
    compare_and_set(db, "contest", contest_id, ["proof_submitted"], "reviewing", {"reviewer_id": reviewer_id})


def dispute(db: Session, contest_id: int, disputer_id: str, reason: str, *, now=None) -> None:
    """Freeze the contest for human review."""
    if not reason or not reason.strip():
        raise ValidationError("a dispute needs a reason")
    contest = get_contest(db, contest_id, lock=True)
    _require_participant(contest, disputer_id)
    if contest["status"] != "proof_submitted":
        raise InvalidStateTransition(f"contest {contest_id} is {contest['status']}")
    compare_and_set(
        db,
        "contest",
        contest_id,
        ["proof_submitted"],
        "disputed",
        {"disputed_by": disputer_id, "dispute_reason": reason.strip()[:1000], "disputed_at": now_ms(now)},
    )
    logger.info("Contest %d disputed by %s", contest_id, disputer_id)


def resolve(
    db: Session,
    contest_id: int,
    proof_accepted: bool,
    resolver_id: str,
    *,
    note: Optional[str] = None,
    now=None,
) -> dict:
    """Accepted proof means the prover wins; otherwise the counterpart does. Winner takes the pot."""
    contest = get_contest(db, contest_id, lock=True)
    _require_participant(contest, resolver_id)
    if contest["status"] not in RESOLVABLE:
        raise InvalidStateTransition(f"contest {contest_id} is {contest['status']}")
    prover = contest["prover_id"]
    winner = prover if proof_accepted else counterpart(contest, prover)
    return _settle(db, contest, winner, RESOLVABLE, "completed", note=note, now=now)


def forfeit(db: Session, contest_id: int, participant_id: str, *, now=None) -> dict:
    contest = get_contest(db, contest_id, lock=True)
    _require_participant(contest, participant_id)
    if contest["status"] not in OPEN_STATUSES:
        raise InvalidStateTransition(f"contest {contest_id} is {contest['status']}")
    winner = counterpart(contest, participant_id)
    return _settle(
        db, contest, winner, OPEN_STATUSES, "forfeited",
        note=f"{participant_id} conceded", now=now,
    )


# ────────────────────────────────────────────────────────────
# Deadline sweep
# ────────────────────────────────────────────────────────────

def _expire_one(db: Session, contest_id: int, *, now=None) -> dict:
    ts = now_ms(now)
    contest = get_contest(db, contest_id, lock=True)
    if contest["status"] != "pending_proof" or int(contest["proof_deadline"]) >= ts:
        raise InvalidStateTransition(f"contest {contest_id} is not overdue")
    winner = counterpart(contest, contest["prover_id"])
    return _settle(
        db, contest, winner, ["pending_proof"], "expired",
        note="prover missed the proof deadline", now=now,
    )


def expire_overdue_contests(db: Session, *, now=None) -> SweepResult:
    ts = now_ms(now)
    ids = [
        r[0]
        for r in db.execute(
            text(
                "SELECT id FROM contest WHERE status = 'pending_proof' AND proof_deadline < :ts ORDER BY id"
            ),
            {"ts": ts},
        ).fetchall()
    ]
    return run_each(db, SweepResult(name="contests"), ids, lambda cid: _expire_one(db, cid, now=now))


def active_contests(db: Session, account_id: str) -> List[dict]:
    rows = db.execute(
        text(
            "SELECT * FROM contest WHERE (participant_a = :a OR participant_b = :a) "
            "AND status IN ('pending_proof', 'proof_submitted', 'reviewing', 'disputed') ORDER BY id"
        ),
        {"a": account_id},
    ).mappings().all()
    return [dict(r) for r in rows]
