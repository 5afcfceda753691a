# badbingo/routes/wallet.py

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..config import DEFAULT_STARTING_BALANCE
from ..db import atomic, get_db
from ..debts import accrue_interest, borrow, can_borrow, list_debts, repay, total_debt
from ..directory import SqlAccountDirectory, open_account, touch
from ..ledger import claim_allowance, get_balance, history, replay_balance

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


# ────────────────────────────────────────────────────────────
# Accounts
# ────────────────────────────────────────────────────────────

class OpenAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1, max_length=64)
    balance: int = Field(default=DEFAULT_STARTING_BALANCE, ge=0)
    trust_score: int = Field(default=50, ge=0, le=100)


@router.post("/accounts")
def post_account(req: OpenAccountRequest, db: Session = Depends(get_db)):
    with atomic(db):
        return open_account(db, req.account_id, balance=req.balance, trust_score=req.trust_score)


@router.get("/accounts/{account_id}")
def read_account(account_id: str, db: Session = Depends(get_db)):
    acct = SqlAccountDirectory().get_account(db, account_id)
    acct["total_debt"] = total_debt(db, account_id)
    return acct


@router.post("/accounts/{account_id}/heartbeat")
def heartbeat(account_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        touch(db, account_id)
    return {"ok": True}


@router.post("/accounts/{account_id}/allowance")
def post_allowance(account_id: str, db: Session = Depends(get_db)):
    with atomic(db):
        balance = claim_allowance(db, account_id)
    return {"balance": balance}


@router.get("/accounts/{account_id}/history")
def read_history(account_id: str, limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return {"transactions": [dict(r) for r in history(db, account_id, limit=limit)]}


@router.get("/accounts/{account_id}/verify")
def verify(account_id: str, db: Session = Depends(get_db)):
    balance = get_balance(db, account_id)
    replayed = replay_balance(db, account_id)
    return {"balance": balance, "replayed": replayed, "ok": balance == replayed}


# ────────────────────────────────────────────────────────────
# Debts
# ────────────────────────────────────────────────────────────

@router.get("/accounts/{account_id}/debts")
def read_debts(account_id: str, db: Session = Depends(get_db)):
    return {"debts": list_debts(db, account_id), "total": total_debt(db, account_id)}


@router.get("/accounts/{account_id}/can-borrow")
def read_can_borrow(account_id: str, amount: int = Query(..., gt=0), db: Session = Depends(get_db)):
    check = can_borrow(db, account_id, amount)
    return {
        "allowed": check.allowed,
        "reason": check.reason,
        "max_borrowable": check.max_borrowable,
        "current_debt": check.current_debt,
    }


class BorrowRequest(BaseModel):
    borrower_id: str
    amount: int = Field(..., gt=0)


@router.post("/borrow")
def post_borrow(req: BorrowRequest, db: Session = Depends(get_db)):
    with atomic(db):
        debt_id = borrow(db, req.borrower_id, req.amount)
    return {"debt_id": debt_id}


class RepayRequest(BaseModel):
    payer_id: str
    amount: int = Field(..., gt=0)


@router.post("/debts/{debt_id}/repay")
def post_repay(debt_id: int, req: RepayRequest, db: Session = Depends(get_db)):
    with atomic(db):
        remaining = repay(db, debt_id, req.payer_id, req.amount)
    return {"debt_id": debt_id, "outstanding": remaining}


@router.post("/debts/{debt_id}/accrue")
def post_accrue(debt_id: int, db: Session = Depends(get_db)):
    with atomic(db):
        r = accrue_interest(db, debt_id)
    return {
        "debt_id": r.debt_id,
        "interest": r.interest,
        "accrued_interest": r.accrued_interest,
        "outstanding": r.outstanding,
        "accrued": r.accrued,
        "overdue_triggered": r.overdue_triggered,
    }
