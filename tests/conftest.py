from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker

from badbingo.directory import open_account
from badbingo.migrate import ensure_house_account
from badbingo.schema import metadata
from badbingo.util import to_ms

# noon UTC so the hour-of-day steal term is zero
T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(**delta) -> datetime:
    return T0 + timedelta(**delta)


class FakeStore:
    """Artifact store double: records grants and deletions."""

    def __init__(self):
        self.grants = []
        self.deleted = []
        self.fail_grants = False

    def grant_url(self, ref, ttl_seconds, *, now_ms):
        if self.fail_grants:
            raise RuntimeError("storage unavailable")
        url = f"https://signed.test/{ref.value}?exp={now_ms // 1000 + ttl_seconds}"
        self.grants.append(url)
        return url

    def delete(self, ref):
        self.deleted.append(ref.value)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.sent = []
        self.critical = []
        self.fail = fail

    def send(self, kind, payload, *, critical=False):
        if self.fail:
            raise RuntimeError("webhook down")
        self.sent.append((kind, payload))
        if critical:
            self.critical.append(kind)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'engine.db'}", future=True)
    metadata.create_all(eng)
    with eng.begin() as conn:
        ensure_house_account(conn, now=T0)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def other_db(session_factory):
    """A second, independent session for interleaving tests."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def store():
    return FakeStore()


LOCK_MARKER = " /* FOR UPDATE */"


@pytest.fixture
def lock_trace(engine, monkeypatch):
    """
    Ordered (action, table) pairs for row locks and account writes.

    sqlite has no row locks, so the lock suffix is swapped for a comment
    that marks the statement instead.
    """
    from badbingo import contests, debts, ledger, repo

    for module in (contests, debts, ledger, repo):
        monkeypatch.setattr(module, "for_update", lambda db: LOCK_MARKER)

    trace = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if LOCK_MARKER in statement:
            trace.append(("lock", statement.split(" FROM ", 1)[1].split()[0]))
        elif statement.lstrip().startswith("UPDATE account"):
            trace.append(("write", "account"))

    event.listen(engine, "before_cursor_execute", record)
    yield trace
    event.remove(engine, "before_cursor_execute", record)


@pytest.fixture
def make_account(db):
    def _make(account_id, balance=1000, trust=50, last_active=None):
        open_account(db, account_id, balance=balance, trust_score=trust, now=T0)
        db.execute(
            text("UPDATE account SET last_active_at = :ts WHERE id = :id"),
            {"id": account_id, "ts": to_ms(last_active) if last_active else None},
        )
        db.commit()
        return account_id

    return _make


def balance_of(db, account_id):
    return db.execute(
        text("SELECT balance FROM account WHERE id = :id"), {"id": account_id}
    ).scalar_one()


def account_row(db, account_id):
    return db.execute(
        text("SELECT * FROM account WHERE id = :id"), {"id": account_id}
    ).mappings().one()


def tx_kinds(db, account_id):
    return [
        r[0]
        for r in db.execute(
            text("SELECT kind FROM ledger_transaction WHERE account_id = :id ORDER BY id"),
            {"id": account_id},
        ).fetchall()
    ]


def matched_contest(db, prover="alice", counter="bob", stake=50, now=T0):
    """Open a two-party proposition and vote it into a contest. Returns the contest id."""
    from badbingo.propositions import cast_vote, open_proposition

    pid = open_proposition(db, "Alice eats a raw onion", stake, [prover, counter], now + timedelta(hours=1), now=now)
    cast_vote(db, pid, prover, "yes", now=now)
    outcome = cast_vote(db, pid, counter, "no", now=now)
    db.commit()
    return outcome.contest_id
