# tests/test_ledger.py
"""Ledger mutations, payouts and the replay invariant."""
import pytest
from sqlalchemy import text

from badbingo.db import atomic
from badbingo.errors import InsufficientFunds, InvalidStateTransition, NotFound, ValidationError
from badbingo.ledger import (
    TxKind,
    claim_allowance,
    credit,
    debit,
    history,
    payout,
    replay_balance,
    verify_account,
)

from conftest import T0, account_row, at, balance_of, tx_kinds


# ────────────────────────────────────────────────────────────
# Debit / credit
# ────────────────────────────────────────────────────────────

class TestDebitCredit:
    def test_opening_balance_is_a_transaction(self, db, make_account):
        make_account("alice", balance=500)
        assert balance_of(db, "alice") == 500
        assert tx_kinds(db, "alice") == ["opening-balance"]
        assert verify_account(db, "alice")

    def test_debit_returns_new_balance_and_records(self, db, make_account):
        make_account("alice", balance=500)
        with atomic(db):
            new_balance = debit(db, "alice", 120, TxKind.STAKE_LOCK, reference=("proposition", 7), now=T0)
        assert new_balance == 380
        row = db.execute(
            text("SELECT amount, balance_after, reference_type, reference_id FROM ledger_transaction "
                 "WHERE account_id = 'alice' ORDER BY id DESC LIMIT 1")
        ).one()
        assert tuple(row) == (-120, 380, "proposition", 7)

    def test_debit_never_goes_negative(self, db, make_account):
        make_account("alice", balance=100)
        with pytest.raises(InsufficientFunds) as exc:
            with atomic(db):
                debit(db, "alice", 101, TxKind.STAKE_LOCK, now=T0)
        assert exc.value.context["balance"] == 100
        assert balance_of(db, "alice") == 100
        assert tx_kinds(db, "alice") == ["opening-balance"]

    def test_debit_exact_balance(self, db, make_account):
        make_account("alice", balance=100)
        with atomic(db):
            assert debit(db, "alice", 100, TxKind.STAKE_LOCK, now=T0) == 0

    def test_credit(self, db, make_account):
        make_account("alice", balance=0)
        with atomic(db):
            assert credit(db, "alice", 40, TxKind.ALLOWANCE, now=T0) == 40
        assert verify_account(db, "alice")

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_rejects_non_positive_amounts(self, db, make_account, amount):
        make_account("alice")
        with pytest.raises(ValidationError):
            debit(db, "alice", amount, TxKind.STAKE_LOCK)

    def test_unknown_account(self, db):
        with pytest.raises(NotFound):
            credit(db, "ghost", 10, TxKind.ALLOWANCE)
        with pytest.raises(NotFound):
            debit(db, "ghost", 10, TxKind.STAKE_LOCK)


# ────────────────────────────────────────────────────────────
# Payout
# ────────────────────────────────────────────────────────────

class TestPayout:
    def test_winner_gets_full_pot_loser_gets_zero_entry(self, db, make_account):
        make_account("alice", balance=950)
        make_account("bob", balance=950)
        with atomic(db):
            payout(db, "alice", "bob", 100, contest_id=3, now=T0)
        assert balance_of(db, "alice") == 1050
        assert balance_of(db, "bob") == 950
        loss = db.execute(
            text("SELECT amount, kind FROM ledger_transaction WHERE account_id = 'bob' ORDER BY id DESC LIMIT 1")
        ).one()
        assert tuple(loss) == (0, "contest-loss")

    def test_running_totals(self, db, make_account):
        make_account("alice")
        make_account("bob")
        with atomic(db):
            payout(db, "alice", "bob", 10, contest_id=1, now=T0)
            payout(db, "alice", "bob", 10, contest_id=2, now=T0)
            payout(db, "bob", "alice", 10, contest_id=3, now=T0)
        alice = account_row(db, "alice")
        bob = account_row(db, "bob")
        assert (alice["wins"], alice["losses"], alice["win_streak"], alice["best_win_streak"]) == (2, 1, 0, 2)
        assert (bob["wins"], bob["losses"], bob["win_streak"], bob["best_win_streak"]) == (1, 2, 1, 1)
        assert alice["total_clashes"] == bob["total_clashes"] == 3
        assert alice["total_earnings"] == 20


# ────────────────────────────────────────────────────────────
# Allowance
# ────────────────────────────────────────────────────────────

class TestAllowance:
    def test_claim_once_per_window(self, db, make_account):
        make_account("alice", balance=0)
        with atomic(db):
            assert claim_allowance(db, "alice", now=T0) == 100
        with pytest.raises(InvalidStateTransition):
            with atomic(db):
                claim_allowance(db, "alice", now=at(hours=47))
        with atomic(db):
            assert claim_allowance(db, "alice", now=at(hours=48)) == 200
        assert verify_account(db, "alice")


# ────────────────────────────────────────────────────────────
# Replay invariant
# ────────────────────────────────────────────────────────────

class TestReplay:
    def test_mixed_sequence_replays_exactly(self, db, make_account):
        make_account("alice", balance=300)
        make_account("bob", balance=300)
        with atomic(db):
            debit(db, "alice", 50, TxKind.STAKE_LOCK, now=T0)
            debit(db, "bob", 50, TxKind.STAKE_LOCK, now=T0)
            payout(db, "bob", "alice", 100, contest_id=1, now=T0)
            credit(db, "alice", 100, TxKind.ALLOWANCE, now=T0)
        with pytest.raises(InsufficientFunds):
            with atomic(db):
                debit(db, "alice", 40, TxKind.STAKE_LOCK, now=T0)
                debit(db, "alice", 10_000, TxKind.STAKE_LOCK, now=T0)
        for acct in ("alice", "bob"):
            assert replay_balance(db, acct) == balance_of(db, acct)
        assert balance_of(db, "alice") == 350
        assert balance_of(db, "bob") == 350

    def test_history_is_newest_first(self, db, make_account):
        make_account("alice", balance=10)
        with atomic(db):
            credit(db, "alice", 5, TxKind.ALLOWANCE, now=T0)
        rows = history(db, "alice")
        assert [r["kind"] for r in rows] == ["allowance", "opening-balance"]
