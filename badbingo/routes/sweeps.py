# badbingo/routes/sweeps.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..sweeps import SWEEP_NAMES, run_all, run_sweep

router = APIRouter(prefix="/api/sweeps", tags=["sweeps"])


@router.post("")
def post_all(db: Session = Depends(get_db)):
    return {"results": [r.as_dict() for r in run_all(db)]}


@router.post("/{name}")
def post_sweep(name: str, db: Session = Depends(get_db)):
    if name not in SWEEP_NAMES:
        raise HTTPException(404, f"Unknown sweep {name!r}")
    return run_sweep(db, name).as_dict()
