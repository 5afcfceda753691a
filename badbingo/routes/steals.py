# badbingo/routes/steals.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..db import atomic, get_db
from ..steals import (
    DEFAULT_POLICY,
    active_alerts,
    complete,
    defend,
    get_steal,
    initiate,
    resolve_steal,
)

router = APIRouter(prefix="/api/steals", tags=["steals"])


def get_steal_policy():
    return DEFAULT_POLICY


class InitiateRequest(BaseModel):
    attacker_id: str
    target_id: str


@router.post("")
def post_steal(req: InitiateRequest, db: Session = Depends(get_db), policy=Depends(get_steal_policy)):
    with atomic(db):
        return initiate(db, req.attacker_id, req.target_id, policy=policy)


@router.get("/alerts/{target_id}")
def alerts(target_id: str, db: Session = Depends(get_db)):
    return {"alerts": active_alerts(db, target_id)}


@router.get("/{steal_id}")
def read_steal(steal_id: int, db: Session = Depends(get_db)):
    return get_steal(db, steal_id)


class DefendRequest(BaseModel):
    defender_id: str


@router.post("/{steal_id}/defend")
def post_defend(steal_id: int, req: DefendRequest, db: Session = Depends(get_db)):
    with atomic(db):
        return defend(db, steal_id, req.defender_id)


class CompleteRequest(BaseModel):
    attacker_id: str
    minigame_success: bool


@router.post("/{steal_id}/complete")
def post_complete(steal_id: int, req: CompleteRequest, db: Session = Depends(get_db)):
    with atomic(db):
        return complete(db, steal_id, req.attacker_id, req.minigame_success)


@router.post("/{steal_id}/resolve")
def post_resolve(steal_id: int, db: Session = Depends(get_db)):
    with atomic(db):
        return resolve_steal(db, steal_id)
