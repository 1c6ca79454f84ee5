# ===========================================================
# utils/cache_keys.py
# Pure derivations applied when building a new cache record
# ===========================================================
import hashlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal

DURABLE_KEY_PREFIX = "ai_questions"
FAST_KEY_PREFIX = "ai_questions_fast"

# Cost per token by model tier
COST_PER_TOKEN = {
    "gpt-4": Decimal("0.00003"),
    "default": Decimal("0.000002"),
}


def hour_bucket(at: datetime) -> int:
    """floor(unix seconds / 3600). Naive datetimes are read as UTC."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return int(at.timestamp()) // 3600


def durable_cache_key(category: str, difficulty: str, at: datetime) -> str:
    return f"{DURABLE_KEY_PREFIX}:{category}:{difficulty}:{hour_bucket(at)}"


def fast_cache_key(category: str, difficulty: str, count: int) -> str:
    digest = hashlib.sha256(f"{category}:{difficulty}:{count}".encode("utf-8")).hexdigest()[:32]
    return f"{FAST_KEY_PREFIX}:{digest}"


def expiry_for(created_at: datetime, ttl_hours: int = 24) -> datetime:
    """Fixed once at creation; never extended."""
    return created_at + timedelta(hours=ttl_hours)


def generation_cost(model: str, tokens_used: int) -> Decimal:
    rate = COST_PER_TOKEN["gpt-4"] if "gpt-4" in (model or "") else COST_PER_TOKEN["default"]
    return rate * max(0, int(tokens_used or 0))
