# ========================================================
# tasks/periodic_tasks.py
# ========================================================
"""
Periodic background task manager for:
- Question cache expiry
- Stale quiz session abandonment
- Sweeper for pending payments
"""
import asyncio
import logging

from . import sweeper

logger = logging.getLogger(__name__)


# ------------------------------------------
# Start All Tasks
# --------------------------------------------
async def start_all_tasks(components, loop: asyncio.AbstractEventLoop = None) -> list[asyncio.Task]:
    """
    Boot all repeating service loops (non-blocking)
    """
    if loop is None:
        loop = asyncio.get_running_loop()

    tasks = [
        loop.create_task(
            sweeper.run_forever(
                "CacheExpiry",
                lambda: sweeper.expire_question_sets(components.question_cache),
                sweeper.CACHE_SWEEP_INTERVAL_SECONDS,
            ),
            name="CacheExpiryLoop",
        ),
        loop.create_task(
            sweeper.run_forever(
                "SessionSweeper",
                lambda: sweeper.abandon_stale_sessions(components.quiz_sessions),
                sweeper.SESSION_SWEEP_INTERVAL_SECONDS,
            ),
            name="SessionSweeperLoop",
        ),
        loop.create_task(
            sweeper.run_forever(
                "PaymentSweeper",
                lambda: sweeper.expire_pending_payments(components.payments),
                sweeper.PAYMENT_SWEEP_INTERVAL_SECONDS,
            ),
            name="PaymentSweeperLoop",
        ),
    ]

    logger.info("🚀 All periodic background tasks are now running")
    return tasks
