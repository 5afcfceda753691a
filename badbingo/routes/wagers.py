# badbingo/routes/wagers.py
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..contests import (
    begin_review,
    dispute,
    forfeit,
    get_contest,
    resolve,
    submit_proof,
    view_proof,
)
from ..db import atomic, get_db
from ..proofs import ArtifactStore, CaptureMetadata, get_artifact_store
from ..propositions import cast_vote, get_proposition, open_proposition
from ..util import iso, to_ms

router = APIRouter(prefix="/api", tags=["wagers"])


# ────────────────────────────────────────────────────────────
# Propositions
# ────────────────────────────────────────────────────────────

class OpenPropositionRequest(BaseModel):
    text: str = Field(..., min_length=3)
    stake: int = Field(..., gt=0)
    participant_ids: List[str] = Field(..., min_length=2)
    expires_at: datetime
    stakes: Optional[Dict[str, int]] = None


@router.post("/propositions")
def create_proposition(req: OpenPropositionRequest, db: Session = Depends(get_db)):
    with atomic(db):
        pid = open_proposition(
            db, req.text, req.stake, req.participant_ids, req.expires_at, stakes=req.stakes
        )
    return {"proposition_id": pid}


@router.get("/propositions/{proposition_id}")
def read_proposition(proposition_id: int, db: Session = Depends(get_db)):
    prop = get_proposition(db, proposition_id)
    prop["expires_at"] = iso(prop["expires_at"])
    return prop


class VoteRequest(BaseModel):
    participant_id: str
    vote: str = Field(..., pattern="^(yes|no)$")


@router.post("/propositions/{proposition_id}/votes")
def vote(proposition_id: int, req: VoteRequest, db: Session = Depends(get_db)):
    with atomic(db):
        outcome = cast_vote(db, proposition_id, req.participant_id, req.vote)
    return {
        "proposition_id": outcome.proposition_id,
        "status": outcome.status,
        "contest_id": outcome.contest_id,
    }


# ────────────────────────────────────────────────────────────
# Contests
# ────────────────────────────────────────────────────────────

@router.get("/contests/{contest_id}")
def read_contest(contest_id: int, db: Session = Depends(get_db)):
    return get_contest(db, contest_id)


class SubmitProofRequest(BaseModel):
    prover_id: str
    artifact_ref: str = Field(..., min_length=1, max_length=2048)
    media_kind: str = Field(default="photo", pattern="^(photo|video)$")
    view_duration_hours: int = Field(default=12, ge=1, le=72)
    view_once: bool = False
    captured_at: Optional[datetime] = None
    device_info: Optional[str] = Field(default=None, max_length=500)
    location_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    location_lng: Optional[float] = Field(default=None, ge=-180, le=180)


@router.post("/contests/{contest_id}/proof")
def post_proof(contest_id: int, req: SubmitProofRequest, db: Session = Depends(get_db)):
    meta = CaptureMetadata(
        captured_at=to_ms(req.captured_at) if req.captured_at else None,
        device_info=req.device_info,
        location_lat=req.location_lat,
        location_lng=req.location_lng,
    )
    with atomic(db):
        proof_id = submit_proof(
            db,
            contest_id,
            req.prover_id,
            req.artifact_ref,
            media_kind=req.media_kind,
            view_duration_hours=req.view_duration_hours,
            view_once=req.view_once,
            metadata=meta,
        )
    return {"contest_id": contest_id, "proof_id": proof_id, "status": "proof_submitted"}


class ViewProofRequest(BaseModel):
    viewer_id: str


@router.post("/contests/{contest_id}/proof/view")
def post_view_proof(
    contest_id: int,
    req: ViewProofRequest,
    db: Session = Depends(get_db),
    store: ArtifactStore = Depends(get_artifact_store),
):
    with atomic(db):
        grant = view_proof(db, contest_id, req.viewer_id, store=store)
    return {
        "proof_id": grant.proof_id,
        "url": grant.url,
        "grant_expires_at": iso(grant.grant_expires_at),
        "views_remaining": grant.views_remaining,
        "destroyed": grant.destroyed,
    }


class ReviewRequest(BaseModel):
    reviewer_id: str


@router.post("/contests/{contest_id}/review")
def post_review(contest_id: int, req: ReviewRequest, db: Session = Depends(get_db)):
    with atomic(db):
        begin_review(db, contest_id, req.reviewer_id)
    return {"contest_id": contest_id, "status": "reviewing"}


class DisputeRequest(BaseModel):
    disputer_id: str
    reason: str = Field(..., min_length=1, max_length=1000)


@router.post("/contests/{contest_id}/dispute")
def post_dispute(contest_id: int, req: DisputeRequest, db: Session = Depends(get_db)):
    with atomic(db):
        dispute(db, contest_id, req.disputer_id, req.reason)
    return {"contest_id": contest_id, "status": "disputed"}


class ResolveRequest(BaseModel):
    resolver_id: str
    proof_accepted: bool
    note: Optional[str] = Field(default=None, max_length=1000)


@router.post("/contests/{contest_id}/resolve")
def post_resolve(contest_id: int, req: ResolveRequest, db: Session = Depends(get_db)):
    with atomic(db):
        return resolve(db, contest_id, req.proof_accepted, req.resolver_id, note=req.note)


class ForfeitRequest(BaseModel):
    participant_id: str


@router.post("/contests/{contest_id}/forfeit")
def post_forfeit(contest_id: int, req: ForfeitRequest, db: Session = Depends(get_db)):
    with atomic(db):
        return forfeit(db, contest_id, req.participant_id)
