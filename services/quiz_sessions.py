# ==================================================================
# services/quiz_sessions.py
# Quiz session state machine: active → completed | abandoned
# ==================================================================
import copy
import logging
from datetime import timedelta

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from errors import (
    DuplicateSettlement,
    InvalidQuestionIndex,
    InvalidRequest,
    PaymentNotVerified,
    SessionNotActive,
    SessionNotFound,
)
from helpers import mask_sensitive, to_money
from models import QuizSession, Transaction
from services.generators.types import ANSWER_LABELS
from utils.clock import utcnow

logger = logging.getLogger(__name__)

ACTIVE = "active"
COMPLETED = "completed"
ABANDONED = "abandoned"

# Ledger rows written by the service itself (rewards, entry fees)
SYSTEM_PAYMENT_METHODS = ("system", "wallet")


# ===============================================================
# Scoring & read views (pure)
# ===============================================================
def score_answers(questions: list, user_answers: list) -> int:
    """Full re-scan of every answer against the snapshot."""
    answers = user_answers or []
    return sum(
        1 for index, question in enumerate(questions or [])
        if index < len(answers) and answers[index] and answers[index] == question.get("correct_option")
    )


def session_view(quiz_session: QuizSession) -> dict:
    """
    Read-only projection honoring the answer-reveal policy:
    correct options and explanations appear only once the session is completed.
    """
    answers = quiz_session.user_answers or []
    completed = quiz_session.status == COMPLETED

    questions = []
    for index, question in enumerate(quiz_session.questions or []):
        user_answer = answers[index] if index < len(answers) and answers[index] else None
        item = {
            "index": index,
            "prompt": question.get("prompt"),
            "options": list(question.get("options") or []),
            "user_answer": user_answer,
            "is_answered": user_answer is not None,
        }
        if question.get("time_limit_seconds") is not None:
            item["time_limit_seconds"] = question["time_limit_seconds"]
        if completed:
            item["correct_option"] = question.get("correct_option")
            item["explanation"] = question.get("explanation")
            item["is_correct"] = user_answer == question.get("correct_option")
        questions.append(item)

    return {
        "id": str(quiz_session.id),
        "category": quiz_session.category,
        "difficulty": quiz_session.difficulty,
        "status": quiz_session.status,
        "total_questions": quiz_session.total_questions,
        "answered": sum(1 for a in answers if a),
        "score": quiz_session.score if completed else None,
        "reward_earned": str(quiz_session.reward_earned) if completed else None,
        "time_started": quiz_session.time_started.isoformat() if quiz_session.time_started else None,
        "time_completed": quiz_session.time_completed.isoformat() if quiz_session.time_completed else None,
        "questions": questions,
    }


class QuizSessionService:
    def __init__(
        self,
        session_factory,
        question_cache,
        settlement,
        default_question_count: int = 10,
        max_age_hours: int = 2,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.question_cache = question_cache
        self.settlement = settlement
        self.default_question_count = default_question_count
        self.max_age_hours = max_age_hours
        self.clock = clock

    async def _load(self, session, session_id, for_update: bool = False) -> QuizSession | None:
        stmt = select(QuizSession).where(QuizSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _by_payment_reference(self, session, user_id, payment_reference) -> QuizSession | None:
        result = await session.execute(
            select(QuizSession).where(
                QuizSession.payment_reference == payment_reference,
                QuizSession.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    # ===============================================================
    # STEP 1: Start (requires a completed payment transaction)
    # ===============================================================
    async def start(self, user_id, category: str, difficulty: str, payment_reference: str) -> QuizSession:
        """
        Create an active session with a snapshot of freshly resolved questions.

        Retrying with the same payment reference returns the session it
        already paid for instead of creating another one. The entry-fee
        debit is coordinated by the caller (see WalletService.charge_entry_fee).
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction.id).where(
                    Transaction.payment_reference == payment_reference,
                    Transaction.user_id == user_id,
                    Transaction.status == "completed",
                    # Only gateway deposits unlock a quiz; reward and fee rows never do
                    Transaction.type == "credit",
                    Transaction.payment_method.notin_(SYSTEM_PAYMENT_METHODS),
                )
            )
            if result.scalar_one_or_none() is None:
                logger.warning(f"🚫 Quiz start without verified payment {mask_sensitive(payment_reference)}")
                raise PaymentNotVerified()

            existing = await self._by_payment_reference(session, user_id, payment_reference)
            if existing is not None:
                logger.info(f"ℹ️ Payment {mask_sensitive(payment_reference)} already started session {existing.id}")
                return existing

        # No DB transaction is held across cache lookups or generation
        resolved = await self.question_cache.get_questions(category, difficulty, self.default_question_count)

        quiz_session = QuizSession(
            user_id=user_id,
            category=category.strip().lower(),
            difficulty=difficulty.strip().lower(),
            questions=copy.deepcopy(resolved.questions),
            user_answers=[],
            score=0,
            total_questions=len(resolved.questions),
            status=ACTIVE,
            payment_reference=payment_reference,
            reward_earned=to_money(0),
            time_started=self.clock(),
        )

        async with self.session_factory() as session:
            try:
                async with session.begin():
                    session.add(quiz_session)
            except IntegrityError:
                # Concurrent start with the same payment reference won the race
                await session.rollback()
                existing = await self._by_payment_reference(session, user_id, payment_reference)
                if existing is None:
                    raise
                return existing

        logger.info(
            f"🎮 Quiz session {quiz_session.id} started: {quiz_session.category}/{quiz_session.difficulty} "
            f"x{quiz_session.total_questions} (source={resolved.source}, key={resolved.cache_key})"
        )
        return quiz_session

    # ===============================================================
    # STEP 2: Submit one answer (last write wins per index)
    # ===============================================================
    async def submit_answer(self, session_id, question_index: int, answer: str, user_id=None) -> dict:
        answer = (answer or "").strip().upper()
        if answer not in ANSWER_LABELS:
            raise InvalidRequest("Answer must be one of A, B, C, D")

        async with self.session_factory() as session:
            async with session.begin():
                quiz_session = await self._load(session, session_id, for_update=True)
                if quiz_session is None or (user_id is not None and quiz_session.user_id != user_id):
                    raise SessionNotFound()
                if quiz_session.status != ACTIVE:
                    raise SessionNotActive()
                if not isinstance(question_index, int) or not (0 <= question_index < quiz_session.total_questions):
                    raise InvalidQuestionIndex()

                answers = list(quiz_session.user_answers or [])
                if len(answers) <= question_index:
                    answers.extend([""] * (question_index + 1 - len(answers)))
                answers[question_index] = answer
                # Reassign so the JSON column is flagged dirty
                quiz_session.user_answers = answers

                question = quiz_session.questions[question_index]

        return {
            "question_index": question_index,
            "answer": answer,
            "is_correct": answer == question.get("correct_option"),
            "explanation": question.get("explanation"),
        }

    # ===============================================================
    # STEP 3: Complete: score, transition and settle as one unit
    # ===============================================================
    async def complete(self, session_id, user_id) -> dict:
        async with self.session_factory() as session:
            async with session.begin():
                quiz_session = await self._load(session, session_id, for_update=True)
                if quiz_session is None or quiz_session.user_id != user_id:
                    raise SessionNotFound()

                if quiz_session.status == COMPLETED:
                    raise DuplicateSettlement(reward=quiz_session.reward_earned)
                if quiz_session.status != ACTIVE:
                    raise SessionNotActive()

                now = self.clock()
                quiz_session.score = score_answers(quiz_session.questions, quiz_session.user_answers)
                quiz_session.status = COMPLETED
                quiz_session.time_completed = now
                await session.flush()

                reward = await self.settlement.settle(session, quiz_session, now=now)

        total = quiz_session.total_questions
        logger.info(
            f"🏁 Session {quiz_session.id} completed: {quiz_session.score}/{total}, reward={reward}"
        )
        return {
            "session_id": str(quiz_session.id),
            "score": quiz_session.score,
            "total": total,
            "percentage": round(quiz_session.score / total * 100, 2) if total else 0.0,
            "reward": reward,
        }

    # ===============================================================
    # Background sweep: stale active sessions never settle
    # ===============================================================
    async def abandon_stale(self) -> int:
        cutoff = self.clock() - timedelta(hours=self.max_age_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                update(QuizSession)
                .where(QuizSession.status == ACTIVE, QuizSession.time_started < cutoff)
                .values(status=ABANDONED)
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Abandoned {result.rowcount} stale quiz sessions.")
        return result.rowcount

    # ===============================================================
    # Read-only queries
    # ===============================================================
    async def get_view(self, session_id, user_id) -> dict:
        async with self.session_factory() as session:
            quiz_session = await self._load(session, session_id)
        if quiz_session is None or quiz_session.user_id != user_id:
            raise SessionNotFound()
        return session_view(quiz_session)

    async def history(self, user_id, status: str | None = None, page: int = 1, limit: int = 10) -> dict:
        page = max(1, int(page))
        limit = min(max(1, int(limit)), 100)

        filters = [QuizSession.user_id == user_id]
        if status:
            filters.append(QuizSession.status == status)

        async with self.session_factory() as session:
            total = (await session.execute(select(func.count(QuizSession.id)).where(*filters))).scalar() or 0
            result = await session.execute(
                select(QuizSession)
                .where(*filters)
                .order_by(QuizSession.time_started.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            rows = result.scalars().all()

        return {
            "sessions": [
                {
                    "id": str(s.id),
                    "category": s.category,
                    "difficulty": s.difficulty,
                    "status": s.status,
                    "score": s.score if s.status == COMPLETED else None,
                    "total_questions": s.total_questions,
                    "reward_earned": str(s.reward_earned),
                    "time_started": s.time_started.isoformat() if s.time_started else None,
                }
                for s in rows
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
