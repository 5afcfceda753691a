# badbingo/events.py
"""
Domain events, outbox style.

``emit`` writes the event row inside the caller's unit of work, so an
event exists if and only if the state change that produced it committed.
``dispatch_pending`` hands undelivered rows to a notifier later; the
engine never blocks on delivery.
"""
import json
import logging
from typing import ClassVar, List, Optional, Protocol

import requests
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from .config import NOTIFY_BATCH_SIZE, NOTIFY_TIMEOUT, NOTIFY_WEBHOOK_URL
from .util import now_ms

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────
# Event payloads
# ────────────────────────────────────────────────────────────

class DomainEvent(BaseModel):
    kind: ClassVar[str] = "event"
    aggregate_type: ClassVar[str] = "none"
    # stored on the outbox row and forwarded to the notifier as a priority
    critical: ClassVar[bool] = False

    def aggregate_id(self) -> int:
        raise NotImplementedError


class ContestCreated(DomainEvent):
    kind: ClassVar[str] = "ContestCreated"
    aggregate_type: ClassVar[str] = "contest"

    contest_id: int
    proposition_id: int
    participant_a: str
    participant_b: str
    prover_id: str
    pot: int
    proof_deadline: int

    def aggregate_id(self) -> int:
        return self.contest_id


class ProofSubmitted(DomainEvent):
    kind: ClassVar[str] = "ProofSubmitted"
    aggregate_type: ClassVar[str] = "contest"

    contest_id: int
    proof_id: int
    prover_id: str
    reviewer_id: str
    view_once: bool
    expires_at: int

    def aggregate_id(self) -> int:
        return self.contest_id


class ContestResolved(DomainEvent):
    kind: ClassVar[str] = "ContestResolved"
    aggregate_type: ClassVar[str] = "contest"

    contest_id: int
    status: str
    winner_id: str
    loser_id: str
    pot: int
    seized: int = 0

    def aggregate_id(self) -> int:
        return self.contest_id


class StealAlertOpened(DomainEvent):
    kind: ClassVar[str] = "StealAlertOpened"
    aggregate_type: ClassVar[str] = "steal"

    steal_id: int
    attacker_id: str
    target_id: str
    window_end: int
    potential_amount: int

    def aggregate_id(self) -> int:
        return self.steal_id


class StealResolved(DomainEvent):
    kind: ClassVar[str] = "StealResolved"
    aggregate_type: ClassVar[str] = "steal"

    steal_id: int
    attacker_id: str
    target_id: str
    status: str
    amount: int

    def aggregate_id(self) -> int:
        return self.steal_id


class DebtOverdue(DomainEvent):
    kind: ClassVar[str] = "DebtOverdue"
    aggregate_type: ClassVar[str] = "debt"
    critical: ClassVar[bool] = True

    debt_id: int
    borrower_id: str
    amount_owed: int
    due_at: int
    trust_penalty: int

    def aggregate_id(self) -> int:
        return self.debt_id


class RepoSeized(DomainEvent):
    kind: ClassVar[str] = "RepoSeized"
    aggregate_type: ClassVar[str] = "debt"

    debt_id: int
    borrower_id: str
    amount: int
    remaining: int

    def aggregate_id(self) -> int:
        return self.debt_id


# ────────────────────────────────────────────────────────────
# Outbox
# ────────────────────────────────────────────────────────────

def emit(db: Session, event: DomainEvent, *, now=None) -> None:
    db.execute(
        text(
            "INSERT INTO domain_event (kind, aggregate_type, aggregate_id, payload, critical, created_at) "
            "VALUES (:k, :at, :aid, :p, :crit, :ts)"
        ),
        {
            "k": event.kind,
            "at": event.aggregate_type,
            "aid": event.aggregate_id(),
            "p": event.model_dump_json(),
            "crit": event.critical,
            "ts": now_ms(now),
        },
    )
    logger.debug("queued %s for %s %s", event.kind, event.aggregate_type, event.aggregate_id())


def pending_events(db: Session, *, limit: int = NOTIFY_BATCH_SIZE):
    return db.execute(
        text(
            "SELECT id, kind, aggregate_type, aggregate_id, payload, critical, attempts "
            "FROM domain_event WHERE delivered_at IS NULL ORDER BY id LIMIT :n"
        ),
        {"n": limit},
    ).mappings().all()


def events_for(db: Session, aggregate_type: str, aggregate_id: int) -> List[dict]:
    rows = db.execute(
        text(
            "SELECT kind, payload FROM domain_event "
            "WHERE aggregate_type = :t AND aggregate_id = :id ORDER BY id"
        ),
        {"t": aggregate_type, "id": aggregate_id},
    ).fetchall()
    return [{"kind": r[0], **json.loads(r[1])} for r in rows]


# ────────────────────────────────────────────────────────────
# Notifiers
# ────────────────────────────────────────────────────────────

class Notifier(Protocol):
    def send(self, kind: str, payload: dict, *, critical: bool = False) -> None: ...


class LogNotifier:
    """Used when no webhook is configured."""

    def send(self, kind: str, payload: dict, *, critical: bool = False) -> None:
        if critical:
            logger.warning("critical event %s: %s", kind, payload)
        else:
            logger.info("event %s: %s", kind, payload)


class WebhookNotifier:
    def __init__(self, url: str, timeout: float = NOTIFY_TIMEOUT, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.http = session or requests.Session()

    def send(self, kind: str, payload: dict, *, critical: bool = False) -> None:
        body = {"kind": kind, "critical": critical, "payload": payload}
        r = self.http.post(self.url, json=body, timeout=self.timeout)
        r.raise_for_status()


def default_notifier() -> Notifier:
    if NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(NOTIFY_WEBHOOK_URL)
    return LogNotifier()


def dispatch_pending(db: Session, notifier: Optional[Notifier] = None, *, now=None, limit: int = NOTIFY_BATCH_SIZE) -> int:
    """
    Deliver undelivered events oldest first. Each row commits on its own;
    a failed delivery bumps attempts and is retried on the next run.
    Returns the number delivered.
    """
    notifier = notifier or default_notifier()
    delivered = 0
    for ev in pending_events(db, limit=limit):
        try:
            notifier.send(ev["kind"], json.loads(ev["payload"]), critical=bool(ev["critical"]))
        except Exception as e:
            logger.warning("Failed to deliver event %d (%s): %s", ev["id"], ev["kind"], e)
            db.execute(
                text(
                    "UPDATE domain_event SET attempts = attempts + 1, last_error = :err "
                    "WHERE id = :id"
                ),
                {"id": ev["id"], "err": str(e)[:500]},
            )
            db.commit()
            continue
        res = db.execute(
            text(
                "UPDATE domain_event SET delivered_at = :ts, attempts = attempts + 1 "
                "WHERE id = :id AND delivered_at IS NULL"
            ),
            {"id": ev["id"], "ts": now_ms(now)},
        )
        db.commit()
        delivered += res.rowcount
    if delivered:
        logger.info("Delivered %d events", delivered)
    return delivered
