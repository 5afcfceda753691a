# badbingo/transitions.py
"""
Compare-and-swap status writes plus persisted idempotency keys.

Every terminal transition in the engine goes through ``compare_and_set``:
the UPDATE only matches rows still in one of the expected source states,
so a concurrent writer that got there first leaves rowcount 0 and the
loser gets StaleState instead of overwriting. ``record_transition`` adds a
unique (entity_type, entity_id, transition) row in the same unit of work.
"""
import logging
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import StaleState
from .util import now_ms

logger = logging.getLogger(__name__)

# table names are fixed here, never taken from input
_TABLES = {
    "proposition": "proposition",
    "contest": "contest",
    "proof": "proof",
    "steal": "steal_attempt",
    "debt": "debt",
}


def compare_and_set(
    db: Session,
    entity: str,
    entity_id: int,
    expected: Iterable[str],
    new_status: str,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    table = _TABLES[entity]
    extra = dict(extra or {})
    sets = ", ".join(["status = :new_status"] + [f"{col} = :{col}" for col in extra])
    stmt = text(
        f"UPDATE {table} SET {sets} WHERE id = :id AND status IN :expected"
    ).bindparams(bindparam("expected", expanding=True))
    params = {"id": entity_id, "new_status": new_status, "expected": list(expected), **extra}
    res = db.execute(stmt, params)
    if res.rowcount == 0:
        logger.info("%s %s: lost race moving to %s", entity, entity_id, new_status)
        raise StaleState(
            f"{entity} {entity_id} is no longer in {sorted(params['expected'])}",
            entity=entity,
            entity_id=entity_id,
        )


def record_transition(db: Session, entity: str, entity_id: int, transition: str, *, now=None) -> None:
    """Insert the idempotency key; a duplicate means someone already did this."""
    try:
        db.execute(
            text(
                "INSERT INTO entity_transition (entity_type, entity_id, transition, created_at) "
                "VALUES (:t, :id, :tr, :ts)"
            ),
            {"t": entity, "id": entity_id, "tr": transition, "ts": now_ms(now)},
        )
    except IntegrityError:
        raise StaleState(
            f"{entity} {entity_id} already {transition}",
            entity=entity,
            entity_id=entity_id,
        )
