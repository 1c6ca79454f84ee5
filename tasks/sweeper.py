# ========================================================
# tasks/sweeper.py
# ========================================================
"""
Sweeper tasks:
- deactivate expired question sets (durable cache tier)
- abandon quiz sessions left active past their maximum age
- fail deposits still pending past their maximum age

Each sweep is idempotent and safe to run next to live reads.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)

CACHE_SWEEP_INTERVAL_SECONDS = 60 * 15     # 15m
SESSION_SWEEP_INTERVAL_SECONDS = 60 * 10   # 10m
PAYMENT_SWEEP_INTERVAL_SECONDS = 60 * 60   # 1h


async def run_forever(name: str, sweep, interval_seconds: float):
    """Run `sweep()` every `interval_seconds`; errors are logged, never fatal."""
    while True:
        try:
            await sweep()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"{name} task error: {e}")
        await asyncio.sleep(interval_seconds)


async def expire_question_sets(question_cache) -> int:
    count = await question_cache.deactivate_expired()
    if not count:
        logger.debug("No expired question sets to deactivate.")
    return count


async def abandon_stale_sessions(quiz_sessions) -> int:
    count = await quiz_sessions.abandon_stale()
    if not count:
        logger.debug("No stale quiz sessions to abandon.")
    return count


async def expire_pending_payments(payments) -> int:
    count = await payments.expire_stale_pending()
    if not count:
        logger.debug("No pending payments to expire.")
    return count


async def run_all_sweeps(components) -> dict:
    """One pass of every sweep; run once at startup to catch up after downtime."""
    return {
        "question_sets": await expire_question_sets(components.question_cache),
        "sessions": await abandon_stale_sessions(components.quiz_sessions),
        "payments": await expire_pending_payments(components.payments),
    }
