# ==================================================================
# services/settlement.py
# Reward formula + atomic wallet/ledger settlement for finished quizzes
# ==================================================================
import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, ROUND_FLOOR

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import DuplicateSettlement, SessionNotActive, SessionNotFound
from helpers import get_user_by_id, to_money, mask_sensitive
from models import QuizSession, Transaction
from utils.clock import utcnow
from utils.metadata import clean_metadata

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def reward_reference(session_id) -> str:
    return f"REWARD_{session_id}"


@dataclass(frozen=True)
class RewardPolicy:
    unit_per_question: Decimal = Decimal("2.00")
    avg_seconds_per_question: int = 30
    per_minute_rate: Decimal = Decimal("0.50")
    win_accuracy: Decimal = Decimal("0.7")
    per_win_bonus: Decimal = Decimal("2.00")
    streak_window_hours: int = 24


@dataclass(frozen=True)
class RewardBreakdown:
    base: Decimal
    time_bonus: Decimal
    streak_bonus: Decimal
    total: Decimal

    def to_dict(self) -> dict:
        return {
            "base": str(self.base),
            "time_bonus": str(self.time_bonus),
            "streak_bonus": str(self.streak_bonus),
            "total": str(self.total),
        }


# ===============================================================
# Pure formula
# ===============================================================
def calculate_reward(
    correct: int,
    total_questions: int,
    time_spent_seconds: float,
    recent_wins: int,
    policy: RewardPolicy = RewardPolicy(),
) -> RewardBreakdown:
    """
    base        = floor(total × unit × accuracy × 100) / 100
    time_bonus  = max(0, (expected − spent) / 60 × per_minute_rate)
    streak      = recent_wins × per_win_bonus
    total       = round(base + time_bonus + streak, 2), never negative
    """
    if total_questions <= 0:
        return RewardBreakdown(ZERO, ZERO, ZERO, to_money(ZERO))

    accuracy = Decimal(correct) / Decimal(total_questions)
    base = (Decimal(total_questions) * policy.unit_per_question * accuracy * HUNDRED).to_integral_value(
        rounding=ROUND_FLOOR
    ) / HUNDRED

    expected = Decimal(total_questions * policy.avg_seconds_per_question)
    spent = Decimal(str(max(0.0, float(time_spent_seconds))))
    time_bonus = max(ZERO, (expected - spent) / Decimal(60) * policy.per_minute_rate)

    streak_bonus = Decimal(max(0, int(recent_wins))) * policy.per_win_bonus

    total = to_money(max(ZERO, base + time_bonus + streak_bonus))
    return RewardBreakdown(
        base=to_money(base),
        time_bonus=to_money(time_bonus),
        streak_bonus=to_money(streak_bonus),
        total=total,
    )


def is_win(score: int, total_questions: int, win_accuracy: Decimal) -> bool:
    if not total_questions:
        return False
    return Decimal(score) / Decimal(total_questions) >= win_accuracy


class SettlementEngine:
    def __init__(self, session_factory, policy: RewardPolicy = RewardPolicy(), currency: str = "USD", clock=utcnow):
        self.session_factory = session_factory
        self.policy = policy
        self.currency = currency
        self.clock = clock

    # ---------------------------------------------------------------
    # Streak: prior wins by the same user in the trailing window,
    # evaluated at settlement time
    # ---------------------------------------------------------------
    async def count_recent_wins(self, session: AsyncSession, quiz_session: QuizSession, now) -> int:
        since = now - timedelta(hours=self.policy.streak_window_hours)
        result = await session.execute(
            select(QuizSession.score, QuizSession.total_questions).where(
                QuizSession.user_id == quiz_session.user_id,
                QuizSession.id != quiz_session.id,
                QuizSession.status == "completed",
                QuizSession.time_completed >= since,
            )
        )
        return sum(
            1 for score, total in result.all()
            if is_win(score or 0, total or 0, self.policy.win_accuracy)
        )

    async def find_reward_transaction(self, session: AsyncSession, session_id) -> Transaction | None:
        result = await session.execute(
            select(Transaction).where(Transaction.payment_reference == reward_reference(session_id))
        )
        return result.scalar_one_or_none()

    # ===============================================================
    # settle(): runs INSIDE the caller's open transaction
    # ===============================================================
    async def settle(self, session: AsyncSession, quiz_session: QuizSession, now=None) -> Decimal:
        """
        Credit the reward for a completed session and append the ledger row.

        Must be called inside `async with session.begin()` together with the
        status transition, so scoring, wallet increment and ledger insert
        commit or roll back as one unit.
        Raises DuplicateSettlement when REWARD_<session_id> already exists.
        """
        if quiz_session.status != "completed":
            raise SessionNotActive("Only completed sessions can be settled")

        now = now or quiz_session.time_completed or self.clock()

        existing = await self.find_reward_transaction(session, quiz_session.id)
        if existing is not None:
            raise DuplicateSettlement(reward=existing.amount)

        started = quiz_session.time_started or now
        finished = quiz_session.time_completed or now
        recent_wins = await self.count_recent_wins(session, quiz_session, now)

        breakdown = calculate_reward(
            correct=quiz_session.score,
            total_questions=quiz_session.total_questions,
            time_spent_seconds=(finished - started).total_seconds(),
            recent_wins=recent_wins,
            policy=self.policy,
        )

        # Re-read the balance under a row lock inside this transaction
        user = await get_user_by_id(session, quiz_session.user_id, for_update=True)
        if user is None:
            raise SessionNotFound("Quiz session owner not found")

        user.wallet_balance = to_money((user.wallet_balance or ZERO) + breakdown.total)
        session.add(Transaction(
            user_id=user.id,
            amount=breakdown.total,
            currency=self.currency,
            type="credit",
            status="completed",
            payment_method="system",
            payment_reference=reward_reference(quiz_session.id),
            description=f"Quiz reward for {quiz_session.category}",
            extra_data=clean_metadata({
                "session_id": str(quiz_session.id),
                "score": quiz_session.score,
                "total_questions": quiz_session.total_questions,
                "recent_wins": recent_wins,
                "breakdown": breakdown.to_dict(),
            }),
        ))
        quiz_session.reward_earned = breakdown.total

        try:
            await session.flush()
        except IntegrityError as e:
            # A concurrent settle inserted the same reference first
            raise DuplicateSettlement() from e

        logger.info(
            f"💰 Settled session {quiz_session.id}: reward={breakdown.total} "
            f"(base={breakdown.base}, time={breakdown.time_bonus}, streak={breakdown.streak_bonus}) "
            f"→ user {mask_sensitive(str(user.id))}"
        )
        return breakdown.total

    # ---------------------------------------------------------------
    # Standalone re-invocation (own transaction)
    # ---------------------------------------------------------------
    async def settle_session(self, session_id) -> Decimal:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(QuizSession)
                    .where(QuizSession.id == session_id)
                    .with_for_update()
                )
                quiz_session = result.scalar_one_or_none()
                if quiz_session is None:
                    raise SessionNotFound()
                return await self.settle(session, quiz_session)

