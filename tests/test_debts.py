# tests/test_debts.py
import pytest

from badbingo.db import atomic
from badbingo.debts import (
    accrue_all_interest,
    accrue_interest,
    apply_payment,
    borrow,
    can_borrow,
    compute_interest,
    get_debt,
    list_debts,
    repay,
    total_debt,
)
from badbingo.errors import (
    BorrowDenied,
    InvalidStateTransition,
    NotAParticipant,
    StaleState,
    ValidationError,
)
from badbingo.events import events_for
from badbingo.ledger import TxKind, debit, verify_account

from conftest import T0, account_row, at, balance_of, tx_kinds


def _borrow(db, account_id="alice", amount=100, now=T0):
    with atomic(db):
        return borrow(db, account_id, amount, now=now)


# ────────────────────────────────────────────────────────────
# Interest arithmetic
# ────────────────────────────────────────────────────────────

class TestComputeInterest:
    @pytest.mark.parametrize(
        "owed,rounding,expected",
        [
            (100, "ceil", 10),
            (121, "ceil", 13),
            (121, "floor", 12),
            (5, "ceil", 1),
            (5, "floor", 0),
            (0, "ceil", 0),
        ],
    )
    def test_rounding(self, owed, rounding, expected):
        assert compute_interest(owed, 1000, rounding) == expected


# ────────────────────────────────────────────────────────────
# Borrowing
# ────────────────────────────────────────────────────────────

class TestBorrow:
    def test_borrow_credits_and_records(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        debt = get_debt(db, debt_id)
        assert debt["status"] == "active"
        assert debt["due_at"] == debt["created_at"] + 7 * 24 * 3600 * 1000
        assert balance_of(db, "alice") == 1100
        assert tx_kinds(db, "alice")[-1] == "borrow"
        assert total_debt(db, "alice") == 100

    def test_low_trust_is_denied(self, db, make_account):
        make_account("alice", trust=29)
        check = can_borrow(db, "alice", 10)
        assert not check.allowed
        assert check.max_borrowable == 0
        with pytest.raises(BorrowDenied):
            borrow(db, "alice", 10, now=T0)

    def test_eligibility_comes_from_injected_directory(self, db, make_account):
        make_account("alice", trust=29)

        class TrustedDirectory:
            def get_account(self, db, account_id):
                return {"id": account_id, "trust_score": 80, "balance": 100}

            def is_recently_active(self, db, account_id, *, now=None):
                return True

        directory = TrustedDirectory()
        assert can_borrow(db, "alice", 200, directory=directory).allowed
        assert not can_borrow(db, "alice", 201, directory=directory).allowed
        with atomic(db):
            debt_id = borrow(db, "alice", 150, directory=directory, now=T0)
        assert get_debt(db, debt_id)["principal"] == 150

    def test_ratio_cap_reports_max_borrowable(self, db, make_account):
        make_account("alice", balance=100)
        _borrow(db, amount=50)
        # 2 x 150 balance - 50 owed
        with pytest.raises(BorrowDenied) as exc:
            borrow(db, "alice", 251, now=T0)
        assert exc.value.max_borrowable == 250
        assert can_borrow(db, "alice", 250).allowed


# ────────────────────────────────────────────────────────────
# Accrual / overdue
# ────────────────────────────────────────────────────────────

class TestAccrual:
    def test_three_days_compounding_ceil(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        for day in (1, 2, 3):
            with atomic(db):
                result = accrue_interest(db, debt_id, now=at(days=day))
            assert result.accrued
        assert result.accrued_interest == 34
        assert result.outstanding == 134
        assert tx_kinds(db, "alice").count("interest") == 3
        assert verify_account(db, "alice")

    def test_three_days_compounding_floor(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        for day in (1, 2, 3):
            with atomic(db):
                result = accrue_interest(db, debt_id, rounding="floor", now=at(days=day))
        assert result.accrued_interest == 33

    def test_within_window_is_noop(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with atomic(db):
            accrue_interest(db, debt_id, now=at(days=1))
        with atomic(db):
            result = accrue_interest(db, debt_id, now=at(days=1, hours=23))
        assert not result.accrued
        assert result.accrued_interest == 10

    def test_overdue_triggers_once(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with atomic(db):
            result = accrue_interest(db, debt_id, now=at(days=8))
        assert result.overdue_triggered
        debt = get_debt(db, debt_id)
        assert debt["repo_triggered"]
        assert account_row(db, "alice")["trust_score"] == 40
        with atomic(db):
            again = accrue_interest(db, debt_id, now=at(days=9))
        assert not again.overdue_triggered
        assert account_row(db, "alice")["trust_score"] == 40
        assert [e["kind"] for e in events_for(db, "debt", debt_id)] == ["DebtOverdue"]

    def test_not_overdue_at_due_time(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with atomic(db):
            result = accrue_interest(db, debt_id, now=at(days=7))
        assert not result.overdue_triggered

    def test_sweep_runs_all_active(self, db, make_account):
        make_account("alice")
        make_account("bob")
        _borrow(db, "alice")
        _borrow(db, "bob", amount=200)
        result = accrue_all_interest(db, now=at(days=1))
        assert (result.processed, result.errors) == (2, [])
        assert [d["accrued_interest"] for d in list_debts(db, "bob")] == [20]


# ────────────────────────────────────────────────────────────
# Repayment
# ────────────────────────────────────────────────────────────

class TestRepay:
    def test_partial_then_full(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with atomic(db):
            assert repay(db, debt_id, "alice", 40, now=at(hours=1)) == 60
        with atomic(db):
            assert repay(db, debt_id, "alice", 60, now=at(hours=2)) == 0
        debt = get_debt(db, debt_id)
        assert debt["status"] == "repaid"
        assert balance_of(db, "alice") == 1000
        assert total_debt(db, "alice") == 0
        with pytest.raises(InvalidStateTransition):
            repay(db, debt_id, "alice", 1, now=at(hours=3))

    def test_full_repayment_clears_repo_flag(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with atomic(db):
            accrue_interest(db, debt_id, now=at(days=8))
        with atomic(db):
            repay(db, debt_id, "alice", 110, now=at(days=8, hours=1))
        assert not get_debt(db, debt_id)["repo_triggered"]

    def test_overpayment_rejected(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        with pytest.raises(ValidationError) as exc:
            repay(db, debt_id, "alice", 101, now=at(hours=1))
        assert exc.value.context["outstanding"] == 100

    def test_only_borrower_repays(self, db, make_account):
        make_account("alice")
        make_account("bob")
        debt_id = _borrow(db)
        with pytest.raises(NotAParticipant):
            repay(db, debt_id, "bob", 10, now=at(hours=1))

    def test_debt_row_locked_before_account_writes(self, db, make_account, lock_trace):
        make_account("alice")
        debt_id = _borrow(db)
        lock_trace.clear()
        with atomic(db):
            repay(db, debt_id, "alice", 10, now=at(hours=1))
        with atomic(db):
            accrue_interest(db, debt_id, now=at(days=8))
        assert lock_trace == [
            ("lock", "debt"),
            ("write", "account"),
            ("lock", "debt"),
            ("write", "account"),
        ]

    def test_stale_payment_guard(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        snapshot = get_debt(db, debt_id)
        with atomic(db):
            repay(db, debt_id, "alice", 10, now=at(hours=1))
        with pytest.raises(StaleState):
            apply_payment(db, snapshot, 10, now=at(hours=1))


# ────────────────────────────────────────────────────────────
# Severe overdue seizure
# ────────────────────────────────────────────────────────────

class TestSevereSeizure:
    def test_seizure_clears_debt(self, db, make_account):
        make_account("alice")
        debt_id = _borrow(db)
        result = accrue_all_interest(db, now=at(days=15))
        assert result.errors == []
        debt = get_debt(db, debt_id)
        assert debt["status"] == "repaid"
        assert debt["seized_amount"] == 110
        assert balance_of(db, "alice") == 990
        assert verify_account(db, "alice")
        kinds = [e["kind"] for e in events_for(db, "debt", debt_id)]
        assert kinds == ["DebtOverdue", "RepoSeized"]

    def test_partial_seizure_defaults(self, db, make_account):
        make_account("alice", balance=20)
        debt_id = _borrow(db, amount=30)
        with atomic(db):
            debit(db, "alice", 40, TxKind.STAKE_LOCK, now=at(hours=1))
        accrue_all_interest(db, now=at(days=15))
        debt = get_debt(db, debt_id)
        # 30 + 3 interest, 5 seized from a balance of 10
        assert debt["status"] == "defaulted"
        assert debt["seized_amount"] == 5
        assert balance_of(db, "alice") == 5
        assert total_debt(db, "alice") == 28

        accrue_all_interest(db, now=at(days=16))
        assert get_debt(db, debt_id)["seized_amount"] == 5

        with atomic(db):
            assert repay(db, debt_id, "alice", 5, now=at(days=16)) == 23
