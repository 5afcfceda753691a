# badbingo/config.py
from dotenv import load_dotenv
import os

load_dotenv()

# ------------------------------------------------------------
# App / DB
# ------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HOUSE_ACCOUNT_ID = os.getenv("HOUSE_ACCOUNT_ID", "house")
DEFAULT_STARTING_BALANCE = int(os.getenv("DEFAULT_STARTING_BALANCE", "1000"))

# ------------------------------------------------------------
# Allowance
# ------------------------------------------------------------
ALLOWANCE_AMOUNT = int(os.getenv("ALLOWANCE_AMOUNT", "100"))
ALLOWANCE_HOURS = int(os.getenv("ALLOWANCE_HOURS", "48"))

# ------------------------------------------------------------
# Contests / proofs
# ------------------------------------------------------------
PROOF_DEADLINE_HOURS = int(os.getenv("PROOF_DEADLINE_HOURS", "24"))
PROOF_VIEW_HOURS = int(os.getenv("PROOF_VIEW_HOURS", "12"))
PROOF_MAX_VIEW_HOURS = int(os.getenv("PROOF_MAX_VIEW_HOURS", "72"))
UNLIMITED_VIEWS = int(os.getenv("UNLIMITED_VIEWS", "999"))
PROOF_PATH_PREFIX = os.getenv("PROOF_PATH_PREFIX", "proofs/")
PROOF_GRANT_TTL_SECONDS = int(os.getenv("PROOF_GRANT_TTL_SECONDS", "60"))

ARTIFACT_BASE_URL = os.getenv("ARTIFACT_BASE_URL", "http://localhost:9000/storage")
ARTIFACT_SIGNING_SECRET = os.getenv("ARTIFACT_SIGNING_SECRET", "dev-secret")
ARTIFACT_API_TOKEN = os.getenv("ARTIFACT_API_TOKEN", "")

# ------------------------------------------------------------
# Steals
# ------------------------------------------------------------
STEAL_MIN_TARGET_BALANCE = int(os.getenv("STEAL_MIN_TARGET_BALANCE", "10"))
ONLINE_WINDOW_SECONDS = int(os.getenv("ONLINE_WINDOW_SECONDS", "300"))
DEFENSE_WINDOW_SECONDS = int(os.getenv("DEFENSE_WINDOW_SECONDS", "16"))
STEAL_PENALTY_MULTIPLIER = int(os.getenv("STEAL_PENALTY_MULTIPLIER", "2"))
DEFEND_BONUS = int(os.getenv("DEFEND_BONUS", "0"))
MINIGAME_GRACE_SECONDS = int(os.getenv("MINIGAME_GRACE_SECONDS", "120"))

# ------------------------------------------------------------
# Debt
# ------------------------------------------------------------
DEBT_DAILY_RATE_BPS = int(os.getenv("DEBT_DAILY_RATE_BPS", "1000"))  # 10%/day
DEBT_TERM_DAYS = int(os.getenv("DEBT_TERM_DAYS", "7"))
INTEREST_WINDOW_HOURS = int(os.getenv("INTEREST_WINDOW_HOURS", "24"))
INTEREST_ROUNDING = os.getenv("INTEREST_ROUNDING", "ceil").lower()
MIN_BORROW_TRUST = int(os.getenv("MIN_BORROW_TRUST", "30"))
MAX_DEBT_RATIO = int(os.getenv("MAX_DEBT_RATIO", "2"))
REPO_TRUST_PENALTY = int(os.getenv("REPO_TRUST_PENALTY", "10"))
REPO_SEIZURE_FRACTION = float(os.getenv("REPO_SEIZURE_FRACTION", "0.5"))
SEVERE_OVERDUE_DAYS = int(os.getenv("SEVERE_OVERDUE_DAYS", "7"))

# ------------------------------------------------------------
# Notifications / scheduler
# ------------------------------------------------------------
NOTIFY_WEBHOOK_URL = os.getenv("NOTIFY_WEBHOOK_URL", "")
NOTIFY_TIMEOUT = float(os.getenv("NOTIFY_TIMEOUT", "5"))
NOTIFY_BATCH_SIZE = int(os.getenv("NOTIFY_BATCH_SIZE", "100"))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "0"))
