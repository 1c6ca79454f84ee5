import json

import pytest
from sqlalchemy import func, select, update

from errors import GenerationFailed, InvalidRequest
from models import QuestionSet
from services.question_cache import normalize_request
from tests.fakes import raw_question
from utils.cache_keys import durable_cache_key, fast_cache_key


async def count_sets(session_factory, **filters):
    async with session_factory() as session:
        stmt = select(func.count(QuestionSet.id))
        for name, value in filters.items():
            stmt = stmt.where(getattr(QuestionSet, name) == value)
        return (await session.execute(stmt)).scalar()


async def test_miss_generates_and_writes_both_tiers(question_cache, generator, redis_client, session_factory, clock):
    result = await question_cache.get_questions("Science", "EASY", 10)

    assert result.source == "generated"
    assert len(result.questions) == 10
    assert result.cache_key == durable_cache_key("science", "easy", clock())
    assert len(generator.calls) == 1

    async with session_factory() as session:
        entry = (await session.execute(select(QuestionSet))).scalar_one()
    assert entry.cache_key == result.cache_key
    assert entry.tokens_used == 500
    assert entry.ai_prompt and "science" in entry.ai_prompt
    assert entry.extra_data["question_count"] == 10
    assert entry.expires_at > clock()

    key = fast_cache_key("science", "easy", 10)
    assert redis_client.ttls[key] == 3600
    payload = json.loads(redis_client.store[key])
    assert payload["category"] == "science"
    assert payload["difficulty"] == "easy"
    assert len(payload["questions"]) == 10


async def test_same_hour_requests_share_durable_key(question_cache, generator, clock):
    first = await question_cache.get_questions("science", "easy", 10)
    clock.advance(minutes=30)
    second = await question_cache.get_questions("science", "easy", 10)

    assert second.source == "durable"
    assert second.cache_key == first.cache_key
    assert len(generator.calls) == 1


async def test_durable_hit_slices_and_counts_usage(question_cache, generator, session_factory):
    await question_cache.get_questions("history", "medium", 10)
    result = await question_cache.get_questions("history", "medium", 4)

    assert result.source == "durable"
    assert len(result.questions) == 4
    assert len(generator.calls) == 1

    async with session_factory() as session:
        entry = (await session.execute(select(QuestionSet))).scalar_one()
    assert entry.usage_count == 1
    assert entry.last_used is not None


async def test_durable_entry_too_small_falls_through(question_cache, generator):
    await question_cache.get_questions("history", "medium", 3)
    result = await question_cache.get_questions("history", "medium", 8)

    assert result.source == "generated"
    assert len(result.questions) == 8
    assert len(generator.calls) == 2


async def test_fast_tier_serves_when_durable_misses(question_cache, generator, session_factory):
    await question_cache.get_questions("art", "hard", 5)

    # Retire the durable row only; the fast entry stays
    async with session_factory() as session:
        await session.execute(update(QuestionSet).values(is_active=False))
        await session.commit()

    result = await question_cache.get_questions("art", "hard", 5)
    assert result.source == "fast"
    assert len(result.questions) == 5
    assert len(generator.calls) == 1


async def test_fast_entry_for_another_pair_is_ignored(question_cache, generator, redis_client):
    questions = [
        {"prompt": "Q?", "options": ["a", "b", "c", "d"], "correct_option": "A"},
    ] * 5
    redis_client.store[fast_cache_key("art", "hard", 5)] = json.dumps(
        {"category": "sports", "difficulty": "hard", "cache_key": "x", "questions": questions}
    )

    result = await question_cache.get_questions("art", "hard", 5)
    assert result.source == "generated"
    assert len(generator.calls) == 1


async def test_invalid_generation_is_never_cached(question_cache, generator, redis_client, session_factory):
    bad = [raw_question(i) for i in range(5)]
    bad[2]["options"] = ["only", "three", "options"]
    generator.content = json.dumps(bad)

    with pytest.raises(GenerationFailed):
        await question_cache.get_questions("science", "easy", 5)

    assert await count_sets(session_factory) == 0
    assert redis_client.store == {}


async def test_redis_outage_fails_open(question_cache, generator, redis_client):
    redis_client.fail = True

    first = await question_cache.get_questions("physics", "easy", 6)
    second = await question_cache.get_questions("physics", "easy", 6)

    assert first.source == "generated"
    assert second.source == "durable"
    assert len(generator.calls) == 1


async def test_invalidate_soft_deletes_and_clears_fast_tier(question_cache, generator, redis_client, session_factory):
    await question_cache.get_questions("science", "easy", 10)
    await question_cache.get_questions("science", "hard", 10)
    await question_cache.get_questions("history", "easy", 10)

    assert await question_cache.invalidate("science", "easy") == 1
    assert fast_cache_key("science", "easy", 10) not in redis_client.store
    assert fast_cache_key("science", "hard", 10) in redis_client.store

    assert await question_cache.invalidate("science") == 1
    assert await count_sets(session_factory) == 3
    assert await count_sets(session_factory, is_active=True) == 1

    result = await question_cache.get_questions("science", "easy", 10)
    assert result.source == "generated"
    assert len(generator.calls) == 4


async def test_expired_entries_are_skipped_and_swept(question_cache, generator, session_factory, clock):
    await question_cache.get_questions("geography", "easy", 5)
    clock.advance(hours=25)

    assert await question_cache.deactivate_expired() == 1
    assert await question_cache.deactivate_expired() == 0
    assert await count_sets(session_factory, is_active=True) == 0


async def test_expired_entry_not_returned_before_sweep(question_cache, generator, redis_client, clock):
    await question_cache.get_questions("geography", "easy", 5)
    redis_client.store.clear()
    clock.advance(hours=24)

    result = await question_cache.get_questions("geography", "easy", 5)
    assert result.source == "generated"
    assert len(generator.calls) == 2


async def test_cache_stats_and_usage(question_cache):
    await question_cache.get_questions("science", "easy", 10)
    await question_cache.get_questions("science", "easy", 5)
    await question_cache.get_questions("history", "easy", 4)

    stats = await question_cache.cache_stats()
    assert stats["total_cached"] == 2
    assert stats["active_cached"] == 2
    assert stats["total_usage"] == 1
    assert stats["total_cost"] == pytest.approx(0.002)

    usage = await question_cache.usage_by_category()
    assert usage[0] == {"category": "science", "usage_count": 1, "question_count": 10}
    assert usage[1]["category"] == "history"


@pytest.mark.parametrize(
    "category, difficulty, count",
    [("cooking", "easy", 5), ("science", "extreme", 5), ("science", "easy", 0), ("science", "easy", 21)],
)
def test_normalize_request_rejects_bad_input(category, difficulty, count):
    with pytest.raises(InvalidRequest):
        normalize_request(category, difficulty, count)
