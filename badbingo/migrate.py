import logging
import sys

from sqlalchemy import create_engine, text

from .config import DATABASE_URL, HOUSE_ACCOUNT_ID
from .schema import metadata
from .util import now_ms

logger = logging.getLogger(__name__)


def _get_engine():
    if not DATABASE_URL:
        raise SystemExit("DATABASE_URL is not set")
    return create_engine(DATABASE_URL, future=True)


def ensure_house_account(conn, *, now=None):
    """The house account collects forfeited stakes. Idempotent."""
    row = conn.execute(
        text("SELECT id FROM account WHERE id = :id"), {"id": HOUSE_ACCOUNT_ID}
    ).first()
    if row:
        return
    conn.execute(
        text(
            "INSERT INTO account (id, balance, trust_score, created_at) "
            "VALUES (:id, 0, 100, :ts)"
        ),
        {"id": HOUSE_ACCOUNT_ID, "ts": now_ms(now)},
    )
    logger.info("created house account %s", HOUSE_ACCOUNT_ID)


def reset_db(engine=None):
    """
    Drop and recreate every engine table.
    DESTRUCTIVE. Intended for dev/test only.
    """
    engine = engine or _get_engine()
    metadata.drop_all(engine)
    logger.info("database reset complete")


def run_migrations(engine=None):
    engine = engine or _get_engine()
    metadata.create_all(engine)
    with engine.begin() as conn:
        ensure_house_account(conn)
    logger.info("schema up to date (%d tables)", len(metadata.tables))


def main():
    """
    Usage:
      python -m badbingo.migrate        # create tables + house account
      python -m badbingo.migrate reset  # DROP all tables, then recreate
    """
    logging.basicConfig(level=logging.INFO)
    if len(sys.argv) > 1 and sys.argv[1] == "reset":
        engine = _get_engine()
        reset_db(engine)
        run_migrations(engine)
        return

    run_migrations()


if __name__ == "__main__":
    main()
