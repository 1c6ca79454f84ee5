# ======================================
# config.py
# (Loads environment configuration)
# ======================================
import os
from decimal import Decimal
from dotenv import load_dotenv

# Load .env when running locally
load_dotenv()

# ----------------------
# Runtime
# ----------------------
ENVIRONMENT = os.getenv("ENVIRONMENT", "production").lower()
DEBUG = ENVIRONMENT == "development"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SENTRY_DSN = os.getenv("SENTRY_DSN")

# ----------------------
# Storage
# ----------------------
DATABASE_URL = os.getenv("DATABASE_URL")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# ----------------------
# Question generation
# ----------------------
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-3.5-turbo")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
GENERATION_TIMEOUT_SECONDS = float(os.getenv("GENERATION_TIMEOUT_SECONDS", "30"))

# ----------------------
# Question cache
# ----------------------
FAST_CACHE_TTL_SECONDS = int(os.getenv("FAST_CACHE_TTL_SECONDS", "3600"))
DURABLE_CACHE_TTL_HOURS = int(os.getenv("DURABLE_CACHE_TTL_HOURS", "24"))
DEFAULT_QUESTION_COUNT = int(os.getenv("DEFAULT_QUESTION_COUNT", "10"))
MAX_QUESTIONS_PER_SET = int(os.getenv("MAX_QUESTIONS_PER_SET", "20"))

# ----------------------
# Rewards
# ----------------------
REWARD_UNIT_PER_QUESTION = Decimal(os.getenv("REWARD_UNIT_PER_QUESTION", "2.00"))
AVG_SECONDS_PER_QUESTION = int(os.getenv("AVG_SECONDS_PER_QUESTION", "30"))
TIME_BONUS_PER_MINUTE = Decimal(os.getenv("TIME_BONUS_PER_MINUTE", "0.50"))
STREAK_WIN_ACCURACY = Decimal(os.getenv("STREAK_WIN_ACCURACY", "0.7"))
STREAK_BONUS_PER_WIN = Decimal(os.getenv("STREAK_BONUS_PER_WIN", "2.00"))
STREAK_WINDOW_HOURS = int(os.getenv("STREAK_WINDOW_HOURS", "24"))

# ----------------------
# Sessions & wallet
# ----------------------
SESSION_MAX_AGE_HOURS = int(os.getenv("SESSION_MAX_AGE_HOURS", "2"))
PENDING_PAYMENT_MAX_AGE_HOURS = int(os.getenv("PENDING_PAYMENT_MAX_AGE_HOURS", "24"))
QUIZ_ENTRY_FEE = Decimal(os.getenv("QUIZ_ENTRY_FEE", "1.00"))
MINIMUM_DEPOSIT = Decimal(os.getenv("MINIMUM_DEPOSIT", "1.00"))
LEDGER_CURRENCY = os.getenv("LEDGER_CURRENCY", "USD")

# ----------------------
# Flutterwave
# ----------------------
FLW_BASE_URL = os.getenv("FLW_BASE_URL", "https://api.flutterwave.com/v3")
FLW_SECRET_KEY = os.getenv("FLW_SECRET_KEY")
FLW_SECRET_HASH = os.getenv("FLW_SECRET_HASH")  # used to validate webhook requests
FLW_REDIRECT_URL = os.getenv("FLW_REDIRECT_URL", "https://quizgate.app/payments/redirect")

REQUIRED_ENV_VARS = ("DATABASE_URL", "OPENAI_API_KEY", "FLW_SECRET_KEY", "FLW_SECRET_HASH")


def validate_config() -> None:
    """Fail fast at startup when a required secret is missing."""
    for name in REQUIRED_ENV_VARS:
        if not os.getenv(name):
            raise RuntimeError(f"❌ Missing {name} env var")
