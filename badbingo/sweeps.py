# badbingo/sweeps.py
"""
Scheduler entry points.

Each sweep walks the entities that are due and transitions them one at a
time, committing per entity. Entity transitions guard themselves with
compare-and-swap, so overlapping or repeated sweeps converge on the same
end state; losing a race is counted as ``skipped``, not an error.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from sqlalchemy.orm import Session

from .config import SWEEP_INTERVAL_SECONDS
from .errors import InvalidStateTransition, StaleState

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    name: str
    processed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


def run_each(db: Session, result: SweepResult, ids: Iterable, fn: Callable) -> SweepResult:
    for entity_id in ids:
        try:
            fn(entity_id)
            db.commit()
            result.processed += 1
        except (StaleState, InvalidStateTransition) as e:
            db.rollback()
            result.skipped += 1
            logger.debug("%s: %s already handled (%s)", result.name, entity_id, e)
        except Exception as e:
            db.rollback()
            logger.exception("%s failed on %s: %s", result.name, entity_id, e)
            result.errors.append(f"{entity_id}: {e}")
    if result.processed or result.errors:
        logger.info(
            "%s: processed=%d skipped=%d errors=%d",
            result.name, result.processed, result.skipped, len(result.errors),
        )
    return result


def _registry() -> Dict[str, Callable]:
    from .contests import expire_overdue_contests
    from .debts import accrue_all_interest
    from .proofs import cleanup_expired_proofs
    from .propositions import expire_propositions
    from .steals import resolve_expired_steals

    return {
        "contests": expire_overdue_contests,
        "interest": accrue_all_interest,
        "proofs": cleanup_expired_proofs,
        "propositions": expire_propositions,
        "steals": resolve_expired_steals,
    }


SWEEP_NAMES = ("contests", "interest", "proofs", "propositions", "steals", "events")


def run_sweep(db: Session, name: str, *, now=None) -> SweepResult:
    if name == "events":
        from .events import dispatch_pending

        delivered = dispatch_pending(db, now=now)
        return SweepResult(name="events", processed=delivered)
    try:
        fn = _registry()[name]
    except KeyError:
        raise ValueError(f"unknown sweep {name!r}")
    return fn(db, now=now)


def run_all(db: Session, *, now=None) -> List[SweepResult]:
    # events last so everything the other sweeps emitted goes out this round
    return [run_sweep(db, name, now=now) for name in SWEEP_NAMES]


async def run_sweeper(interval: int = SWEEP_INTERVAL_SECONDS):
    if interval <= 0:
        logger.warning("Sweeper disabled: SWEEP_INTERVAL_SECONDS not set")
        return

    from .db import get_session_factory

    SessionLocal = get_session_factory()

    def _sweep_once():
        db = SessionLocal()
        try:
            return run_all(db)
        finally:
            db.close()

    logger.info("Sweeper running (every %ds)", interval)
    while True:
        try:
            await asyncio.to_thread(_sweep_once)
        except Exception as e:
            logger.exception("Sweeper error: %s", e)
        await asyncio.sleep(interval)
