# badbingo/schema.py
"""
Table layout, declared once so create_all works on Postgres and sqlite.

All *_at columns hold epoch milliseconds (BIGINT). Queries elsewhere are
plain text() SQL against these names.
"""
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    false,
    true,
)

metadata = MetaData()

account = Table(
    "account",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("balance", BigInteger, nullable=False, server_default="0"),
    Column("trust_score", Integer, nullable=False, server_default="50"),
    Column("wins", Integer, nullable=False, server_default="0"),
    Column("losses", Integer, nullable=False, server_default="0"),
    Column("win_streak", Integer, nullable=False, server_default="0"),
    Column("best_win_streak", Integer, nullable=False, server_default="0"),
    Column("total_clashes", Integer, nullable=False, server_default="0"),
    Column("total_earnings", BigInteger, nullable=False, server_default="0"),
    Column("steals_successful", Integer, nullable=False, server_default="0"),
    Column("steals_defended", Integer, nullable=False, server_default="0"),
    Column("times_caught", Integer, nullable=False, server_default="0"),
    Column("times_robbed", Integer, nullable=False, server_default="0"),
    Column("last_active_at", BigInteger),
    Column("last_allowance_at", BigInteger),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", BigInteger, nullable=False),
    CheckConstraint("balance >= 0", name="ck_account_balance_nonneg"),
    CheckConstraint("trust_score >= 0 AND trust_score <= 100", name="ck_account_trust_range"),
)

ledger_transaction = Table(
    "ledger_transaction",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(64), ForeignKey("account.id"), nullable=False, index=True),
    Column("amount", BigInteger, nullable=False),
    Column("balance_after", BigInteger, nullable=False),
    Column("kind", String(32), nullable=False),
    Column("reference_type", String(32)),
    Column("reference_id", Integer),
    Column("description", Text),
    Column("created_at", BigInteger, nullable=False),
)

proposition = Table(
    "proposition",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("text", Text, nullable=False),
    Column("stake", BigInteger, nullable=False),
    Column("status", String(16), nullable=False, server_default="open"),
    Column("expires_at", BigInteger, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("resolved_at", BigInteger),
    CheckConstraint("stake > 0", name="ck_proposition_stake_pos"),
)

proposition_participant = Table(
    "proposition_participant",
    metadata,
    Column("proposition_id", Integer, ForeignKey("proposition.id"), primary_key=True),
    Column("account_id", String(64), ForeignKey("account.id"), primary_key=True),
    Column("position", Integer, nullable=False),
    Column("stake", BigInteger, nullable=False),
    Column("vote", String(3)),
    Column("voted_at", BigInteger),
    Column("stake_state", String(16), nullable=False, server_default="locked"),
)

contest = Table(
    "contest",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("proposition_id", Integer, ForeignKey("proposition.id"), nullable=False, unique=True),
    Column("participant_a", String(64), ForeignKey("account.id"), nullable=False),
    Column("participant_b", String(64), ForeignKey("account.id"), nullable=False),
    Column("vote_a", String(3), nullable=False),
    Column("vote_b", String(3), nullable=False),
    Column("stake_a", BigInteger, nullable=False),
    Column("stake_b", BigInteger, nullable=False),
    Column("pot", BigInteger, nullable=False),
    Column("prover_id", String(64), ForeignKey("account.id"), nullable=False),
    Column("status", String(16), nullable=False, server_default="pending_proof"),
    Column("proof_id", Integer),
    Column("proof_deadline", BigInteger, nullable=False),
    Column("proof_submitted_at", BigInteger),
    Column("proof_viewed_at", BigInteger),
    Column("reviewer_id", String(64)),
    Column("winner_id", String(64)),
    Column("loser_id", String(64)),
    Column("resolved_at", BigInteger),
    Column("resolution_note", Text),
    Column("disputed_by", String(64)),
    Column("dispute_reason", Text),
    Column("disputed_at", BigInteger),
    Column("created_at", BigInteger, nullable=False),
)

proof = Table(
    "proof",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("contest_id", Integer, ForeignKey("contest.id"), nullable=False, unique=True),
    Column("uploader_id", String(64), ForeignKey("account.id"), nullable=False),
    Column("ref_kind", String(16), nullable=False),
    Column("ref_value", Text, nullable=False),
    Column("media_kind", String(8), nullable=False, server_default="photo"),
    Column("captured_at", BigInteger),
    Column("device_info", Text),
    Column("location_lat", Float),
    Column("location_lng", Float),
    Column("view_duration_hours", Integer, nullable=False),
    Column("max_views", Integer, nullable=False),
    Column("view_count", Integer, nullable=False, server_default="0"),
    Column("expires_at", BigInteger, nullable=False),
    Column("destroyed", Boolean, nullable=False, server_default=false()),
    Column("destroyed_at", BigInteger),
    Column("first_viewed_at", BigInteger),
    Column("last_granted_at", BigInteger),
    Column("artifact_deleted", Boolean, nullable=False, server_default=false()),
    Column("created_at", BigInteger, nullable=False),
)

steal_attempt = Table(
    "steal_attempt",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("attacker_id", String(64), ForeignKey("account.id"), nullable=False, index=True),
    Column("target_id", String(64), ForeignKey("account.id"), nullable=False, index=True),
    Column("steal_percentage", Integer, nullable=False),
    Column("potential_amount", BigInteger, nullable=False),
    Column("actual_amount", BigInteger),
    Column("target_online", Boolean, nullable=False),
    Column("window_start", BigInteger),
    Column("window_end", BigInteger),
    Column("was_defended", Boolean, nullable=False, server_default=false()),
    Column("defended_at", BigInteger),
    Column("minigame_passed", Boolean),
    Column("status", String(16), nullable=False, server_default="in_progress"),
    Column("attacker_penalty", BigInteger, nullable=False, server_default="0"),
    Column("defender_bonus", BigInteger, nullable=False, server_default="0"),
    Column("created_at", BigInteger, nullable=False),
    Column("completed_at", BigInteger),
)

debt = Table(
    "debt",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("borrower_id", String(64), ForeignKey("account.id"), nullable=False, index=True),
    Column("principal", BigInteger, nullable=False),
    Column("interest_rate_bps", Integer, nullable=False),
    Column("accrued_interest", BigInteger, nullable=False, server_default="0"),
    Column("amount_repaid", BigInteger, nullable=False, server_default="0"),
    Column("status", String(16), nullable=False, server_default="active"),
    Column("repo_triggered", Boolean, nullable=False, server_default=false()),
    Column("repo_triggered_at", BigInteger),
    Column("seized_amount", BigInteger, nullable=False, server_default="0"),
    Column("severe_seizure_at", BigInteger),
    Column("due_at", BigInteger, nullable=False),
    Column("last_interest_accrual_at", BigInteger, nullable=False),
    Column("created_at", BigInteger, nullable=False),
)

domain_event = Table(
    "domain_event",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("kind", String(32), nullable=False),
    Column("aggregate_type", String(32), nullable=False),
    Column("aggregate_id", Integer, nullable=False),
    Column("payload", Text, nullable=False),
    Column("critical", Boolean, nullable=False, server_default=false()),
    Column("created_at", BigInteger, nullable=False),
    Column("delivered_at", BigInteger),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_error", Text),
)

entity_transition = Table(
    "entity_transition",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("entity_type", String(32), nullable=False),
    Column("entity_id", Integer, nullable=False),
    Column("transition", String(32), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    UniqueConstraint("entity_type", "entity_id", "transition", name="uq_entity_transition"),
)
