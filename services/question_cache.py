# ==================================================================
# services/question_cache.py
# Two-tier question cache: durable (DB, 24h) → fast (Redis, 1h) → generate
# ==================================================================
import copy
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from sqlalchemy import select, update, func, case
from sqlalchemy.exc import SQLAlchemyError

from errors import InvalidRequest
from models import QuestionSet
from services.generators.service import validate_question_set
from services.generators.types import DIFFICULTIES, GeneratedBatch
from utils.cache_keys import durable_cache_key, fast_cache_key, expiry_for, generation_cost
from utils.clock import utcnow

logger = logging.getLogger(__name__)

QUIZ_CATEGORIES = (
    "science", "technology", "history", "geography",
    "sports", "entertainment", "politics", "art",
    "literature", "mathematics", "biology", "physics",
    "chemistry", "general-knowledge", "programming",
)


@dataclass
class CachedQuestions:
    questions: List[dict]
    cache_key: str
    source: str  # "durable" | "fast" | "generated"


# ------------------------------------------------------------
# Request normalization
# ------------------------------------------------------------
def normalize_request(category: str, difficulty: str, count: int, max_questions: int = 20):
    category = (category or "").strip().lower()
    difficulty = (difficulty or "").strip().lower()

    if category not in QUIZ_CATEGORIES:
        raise InvalidRequest(f"Unsupported category: {category or '<empty>'}")
    if difficulty not in DIFFICULTIES:
        raise InvalidRequest(f"Unsupported difficulty: {difficulty or '<empty>'}")
    if not isinstance(count, int) or isinstance(count, bool) or not (1 <= count <= max_questions):
        raise InvalidRequest(f"Question count must be within [1, {max_questions}]")
    return category, difficulty, count


# ------------------------------------------------------------
# Record construction (derived fields computed explicitly here)
# ------------------------------------------------------------
def build_question_set(
    batch: GeneratedBatch,
    category: str,
    difficulty: str,
    now: datetime,
    ttl_hours: int = 24,
) -> QuestionSet:
    return QuestionSet(
        category=category,
        difficulty=difficulty,
        questions=copy.deepcopy(batch.questions),
        ai_model=batch.model,
        ai_prompt=batch.prompt,
        tokens_used=batch.tokens_used,
        cost=generation_cost(batch.model, batch.tokens_used),
        cache_key=durable_cache_key(category, difficulty, now),
        is_active=True,
        usage_count=0,
        created_at=now,
        expires_at=expiry_for(now, ttl_hours),
        extra_data={
            "response_time_ms": batch.response_time_ms,
            "question_count": len(batch.questions),
        },
    )


class QuestionCacheEngine:
    """
    Resolves "N questions for (category, difficulty)".

    Order: newest active durable entry with enough questions, then the
    fast tier keyed by (category, difficulty, count), then one generation
    call written back through both tiers. Concurrent misses may each
    generate; every result is a valid entry of its own.
    """

    def __init__(
        self,
        session_factory,
        fast_cache,
        generation,
        fast_ttl_seconds: int = 3600,
        durable_ttl_hours: int = 24,
        max_questions: int = 20,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.fast_cache = fast_cache
        self.generation = generation
        self.fast_ttl_seconds = fast_ttl_seconds
        self.durable_ttl_hours = durable_ttl_hours
        self.max_questions = max_questions
        self.clock = clock

    # ===============================================================
    # Main entry point
    # ===============================================================
    async def get_questions(self, category: str, difficulty: str, count: int) -> CachedQuestions:
        category, difficulty, count = normalize_request(category, difficulty, count, self.max_questions)
        now = self.clock()

        hit = await self._lookup_durable(category, difficulty, count, now)
        if hit:
            logger.info(f"📦 Durable cache hit {hit.cache_key} ({count} questions)")
            return hit

        hit = await self._lookup_fast(category, difficulty, count)
        if hit:
            logger.info(f"⚡ Fast cache hit for {category}/{difficulty} x{count}")
            return hit

        return await self._generate_and_store(category, difficulty, count, now)

    # ---------------------------------------------------------------
    # Tier 1: durable
    # ---------------------------------------------------------------
    async def _lookup_durable(self, category, difficulty, count, now) -> CachedQuestions | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(QuestionSet)
                    .where(
                        QuestionSet.category == category,
                        QuestionSet.difficulty == difficulty,
                        QuestionSet.is_active.is_(True),
                        QuestionSet.expires_at > now,
                    )
                    .order_by(QuestionSet.created_at.desc())
                    .limit(1)
                )
                entry = result.scalar_one_or_none()
                if entry is None or entry.question_count < count:
                    return None

                await session.execute(
                    update(QuestionSet)
                    .where(QuestionSet.id == entry.id)
                    .values(usage_count=QuestionSet.usage_count + 1, last_used=now)
                )
                await session.commit()

                return CachedQuestions(
                    questions=copy.deepcopy(entry.questions[:count]),
                    cache_key=entry.cache_key,
                    source="durable",
                )
        except SQLAlchemyError as e:
            logger.error(f"Durable cache lookup failed for {category}/{difficulty}: {e}")
            return None

    # ---------------------------------------------------------------
    # Tier 2: fast
    # ---------------------------------------------------------------
    async def _lookup_fast(self, category, difficulty, count) -> CachedQuestions | None:
        payload = await self.fast_cache.get_json(fast_cache_key(category, difficulty, count))
        if not isinstance(payload, dict):
            return None

        questions = payload.get("questions")
        if payload.get("category") != category or payload.get("difficulty") != difficulty:
            logger.warning(f"⚠️ Fast cache entry for {category}/{difficulty} carries another pair; ignoring")
            return None

        ok, reason = validate_question_set(questions, self.max_questions)
        if not ok or len(questions) < count:
            logger.warning(f"⚠️ Ignoring invalid fast cache entry for {category}/{difficulty}: {reason}")
            return None

        return CachedQuestions(
            questions=questions[:count],
            cache_key=payload.get("cache_key") or "",
            source="fast",
        )

    # ---------------------------------------------------------------
    # Tier 3: generate and write back through both tiers
    # ---------------------------------------------------------------
    async def _generate_and_store(self, category, difficulty, count, now) -> CachedQuestions:
        # Raises GenerationFailed; nothing is cached in that case
        batch = await self.generation.generate_batch(category, difficulty, count)

        entry = build_question_set(batch, category, difficulty, now, self.durable_ttl_hours)
        cache_key = entry.cache_key

        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
            logger.info(
                f"🆕 Cached generated questions {cache_key} "
                f"(count={len(batch.questions)}, tokens={batch.tokens_used}, cost={entry.cost})"
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist generated questions {cache_key}: {e}")

        questions = copy.deepcopy(batch.questions[:count])
        await self.fast_cache.set_json(
            fast_cache_key(category, difficulty, count),
            {
                "category": category,
                "difficulty": difficulty,
                "cache_key": cache_key,
                "questions": questions,
            },
            ttl_seconds=self.fast_ttl_seconds,
        )

        return CachedQuestions(questions=questions, cache_key=cache_key, source="generated")

    # ===============================================================
    # Invalidation & expiry (soft: rows are kept for audit/cost)
    # ===============================================================
    async def invalidate(self, category: str, difficulty: str | None = None) -> int:
        category = (category or "").strip().lower()
        difficulty = difficulty.strip().lower() if difficulty else None

        stmt = (
            update(QuestionSet)
            .where(QuestionSet.category == category, QuestionSet.is_active.is_(True))
            .values(is_active=False)
        )
        if difficulty:
            stmt = stmt.where(QuestionSet.difficulty == difficulty)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        difficulties = [difficulty] if difficulty else list(DIFFICULTIES)
        keys = [
            fast_cache_key(category, d, n)
            for d in difficulties
            for n in range(1, self.max_questions + 1)
        ]
        await self.fast_cache.delete(*keys)

        logger.info(f"🧹 Invalidated {result.rowcount} cache entries for {category}/{difficulty or '*'}")
        return result.rowcount

    async def deactivate_expired(self) -> int:
        """Idempotent; reads never return expired rows regardless of this sweep."""
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(QuestionSet)
                .where(QuestionSet.is_active.is_(True), QuestionSet.expires_at <= now)
                .values(is_active=False)
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"Deactivated {result.rowcount} expired question sets.")
        return result.rowcount

    # ===============================================================
    # Telemetry
    # ===============================================================
    async def cache_stats(self) -> dict:
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.count(QuestionSet.id),
                    func.coalesce(func.sum(case((QuestionSet.is_active.is_(True), 1), else_=0)), 0),
                    func.coalesce(func.sum(QuestionSet.usage_count), 0),
                    func.coalesce(func.sum(QuestionSet.cost), 0),
                )
            )
            total, active, usage, cost = result.one()

        return {
            "total_cached": int(total or 0),
            "active_cached": int(active or 0),
            "total_usage": int(usage or 0),
            "total_cost": float(cost or 0),
        }

    async def usage_by_category(self) -> List[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QuestionSet.category, QuestionSet.usage_count, QuestionSet.questions)
            )
            rows = result.all()

        usage = {}
        for category, usage_count, questions in rows:
            bucket = usage.setdefault(category, {"category": category, "usage_count": 0, "question_count": 0})
            bucket["usage_count"] += usage_count or 0
            bucket["question_count"] += len(questions or [])

        return sorted(usage.values(), key=lambda r: r["usage_count"], reverse=True)
