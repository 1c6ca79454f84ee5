import uuid

import pytest

from errors import (
    DuplicateSettlement,
    InvalidQuestionIndex,
    InvalidRequest,
    PaymentNotVerified,
    SessionNotActive,
    SessionNotFound,
)
from services.quiz_sessions import score_answers


@pytest.fixture
async def paid(user, add_transaction):
    await add_transaction(user.id, "FLW-paid-1")
    return "FLW-paid-1"


async def test_start_requires_completed_payment(quiz_sessions, user, add_transaction):
    with pytest.raises(PaymentNotVerified):
        await quiz_sessions.start(user.id, "science", "easy", "FLW-missing")

    await add_transaction(user.id, "FLW-pending", status="pending")
    with pytest.raises(PaymentNotVerified):
        await quiz_sessions.start(user.id, "science", "easy", "FLW-pending")


async def test_start_rejects_someone_elses_payment(quiz_sessions, make_user, add_transaction):
    owner = await make_user("0.00")
    other = await make_user("0.00")
    await add_transaction(owner.id, "FLW-owner")

    with pytest.raises(PaymentNotVerified):
        await quiz_sessions.start(other.id, "science", "easy", "FLW-owner")


async def test_start_snapshots_default_question_count(quiz_sessions, user, paid, clock):
    qs = await quiz_sessions.start(user.id, "Science", "Easy", paid)

    assert qs.status == "active"
    assert qs.category == "science"
    assert qs.total_questions == 10
    assert len(qs.questions) == 10
    assert qs.user_answers == []
    assert qs.time_started == clock()


async def test_start_is_idempotent_per_payment(quiz_sessions, user, paid, generator):
    first = await quiz_sessions.start(user.id, "science", "easy", paid)
    second = await quiz_sessions.start(user.id, "science", "easy", paid)

    assert first.id == second.id
    assert len(generator.calls) == 1


async def test_submit_answer_feedback_and_validation(quiz_sessions, user, paid):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)

    result = await quiz_sessions.submit_answer(qs.id, 2, "a")
    assert result == {
        "question_index": 2,
        "answer": "A",
        "is_correct": True,
        "explanation": "Because A.",
    }
    assert "correct_option" not in result

    with pytest.raises(InvalidQuestionIndex):
        await quiz_sessions.submit_answer(qs.id, 10, "A")
    with pytest.raises(InvalidQuestionIndex):
        await quiz_sessions.submit_answer(qs.id, -1, "A")
    with pytest.raises(InvalidRequest):
        await quiz_sessions.submit_answer(qs.id, 0, "E")


async def test_unknown_session(quiz_sessions, user):
    with pytest.raises(SessionNotFound):
        await quiz_sessions.submit_answer(uuid.uuid4(), 0, "A")
    with pytest.raises(SessionNotFound):
        await quiz_sessions.complete(uuid.uuid4(), user.id)


async def test_complete_rescans_every_answer(quiz_sessions, user, paid):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)

    # Revised answers: last write wins per index
    await quiz_sessions.submit_answer(qs.id, 0, "B")
    await quiz_sessions.submit_answer(qs.id, 0, "A")
    await quiz_sessions.submit_answer(qs.id, 5, "A")
    await quiz_sessions.submit_answer(qs.id, 7, "C")
    await quiz_sessions.submit_answer(qs.id, 9, "A")

    result = await quiz_sessions.complete(qs.id, user.id)

    assert result["score"] == 3
    assert result["total"] == 10
    assert result["percentage"] == 30.0


async def test_complete_belongs_to_owner(quiz_sessions, user, paid, make_user):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)
    stranger = await make_user()

    with pytest.raises(SessionNotFound):
        await quiz_sessions.complete(qs.id, stranger.id)


async def test_terminal_sessions_reject_further_changes(quiz_sessions, user, paid):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)
    first = await quiz_sessions.complete(qs.id, user.id)

    with pytest.raises(SessionNotActive):
        await quiz_sessions.submit_answer(qs.id, 0, "A")
    with pytest.raises(DuplicateSettlement) as exc:
        await quiz_sessions.complete(qs.id, user.id)
    assert exc.value.reward == first["reward"]


async def test_read_view_reveals_answers_only_after_completion(quiz_sessions, user, paid):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)
    await quiz_sessions.submit_answer(qs.id, 0, "B")

    active = await quiz_sessions.get_view(qs.id, user.id)
    assert active["status"] == "active"
    assert active["score"] is None
    assert active["answered"] == 1
    assert active["questions"][0]["user_answer"] == "B"
    assert all("correct_option" not in q for q in active["questions"])
    assert all("explanation" not in q for q in active["questions"])

    await quiz_sessions.complete(qs.id, user.id)
    done = await quiz_sessions.get_view(qs.id, user.id)
    assert done["status"] == "completed"
    assert all(q["correct_option"] == "A" for q in done["questions"])
    assert done["questions"][0]["is_correct"] is False
    assert done["questions"][1]["user_answer"] is None


async def test_stale_sessions_are_abandoned_and_never_settle(quiz_sessions, user, paid, clock):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)

    clock.advance(hours=1)
    assert await quiz_sessions.abandon_stale() == 0

    clock.advance(hours=2)
    assert await quiz_sessions.abandon_stale() == 1
    assert await quiz_sessions.abandon_stale() == 0

    with pytest.raises(SessionNotActive):
        await quiz_sessions.complete(qs.id, user.id)

    view = await quiz_sessions.get_view(qs.id, user.id)
    assert view["status"] == "abandoned"
    assert all("correct_option" not in q for q in view["questions"])


async def test_history_paginates_and_filters(quiz_sessions, user, add_transaction, clock):
    for n in range(3):
        await add_transaction(user.id, f"FLW-h{n}")
        qs = await quiz_sessions.start(user.id, "science", "easy", f"FLW-h{n}")
        clock.advance(minutes=1)
        if n == 0:
            await quiz_sessions.complete(qs.id, user.id)

    page = await quiz_sessions.history(user.id, page=1, limit=2)
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert len(page["sessions"]) == 2

    completed = await quiz_sessions.history(user.id, status="completed")
    assert completed["pagination"]["total"] == 1
    assert completed["sessions"][0]["score"] == 0


def test_score_answers_ignores_blanks_and_missing():
    questions = [{"correct_option": c} for c in "ABCD"]
    assert score_answers(questions, ["A", "", "C"]) == 2
    assert score_answers(questions, []) == 0
    assert score_answers(questions, ["A", "B", "C", "D", "A"]) == 4


async def test_reward_and_fee_rows_do_not_unlock_a_session(quiz_sessions, wallet, user, paid):
    qs = await quiz_sessions.start(user.id, "science", "easy", paid)
    await wallet.charge_entry_fee(user.id, str(qs.id))
    await quiz_sessions.complete(qs.id, user.id)

    with pytest.raises(PaymentNotVerified):
        await quiz_sessions.start(user.id, "science", "easy", f"REWARD_{qs.id}")
    with pytest.raises(PaymentNotVerified):
        await quiz_sessions.start(user.id, "science", "easy", f"quiz_fee_{qs.id}")
