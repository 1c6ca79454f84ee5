import json

import httpx
import pytest

from errors import GenerationFailed
from services.generators.openai_chat import ChatCompletionsGenerator
from services.generators.service import (
    GenerationService,
    build_prompt,
    normalize_question,
    parse_response,
    validate_question,
    validate_question_set,
)
from tests.fakes import raw_question


def test_prompt_mentions_count_category_and_difficulty():
    prompt = build_prompt("science", "easy", 10)
    assert "Generate 10 multiple-choice science questions at easy difficulty level." in prompt
    assert '"correctAnswer": "A"' in prompt


def test_normalize_question_accepts_model_key_variants():
    q = normalize_question({
        "question": " What is H2O? ",
        "choices": {"A": "Water", "B": "Salt", "C": "Gold", "D": "Iron"},
        "answer": "a",
        "explanation": "Two hydrogens, one oxygen.",
    })
    assert q == {
        "prompt": "What is H2O?",
        "options": ["Water", "Salt", "Gold", "Iron"],
        "correct_option": "A",
        "explanation": "Two hydrogens, one oxygen.",
    }


def test_validate_question_rejects_bad_shapes():
    good = normalize_question(raw_question(0))
    assert validate_question(good) == (True, "")

    three_options = dict(good, options=good["options"][:3])
    assert validate_question(three_options)[0] is False

    blank_option = dict(good, options=["a", "b", "  ", "d"])
    assert validate_question(blank_option)[0] is False

    bad_label = dict(good, correct_option="E")
    assert validate_question(bad_label)[0] is False


def test_validate_question_set_bounds():
    q = normalize_question(raw_question(0))
    assert validate_question_set([q])[0] is True
    assert validate_question_set([])[0] is False
    assert validate_question_set([q] * 21)[0] is False
    assert validate_question_set([q] * 21, max_questions=25)[0] is True


def test_parse_response_strips_fences_and_unwraps_questions():
    fenced = "```json\n" + json.dumps([raw_question(0, "C")]) + "\n```"
    assert parse_response(fenced)[0]["correct_option"] == "C"

    wrapped = json.dumps({"questions": [raw_question(1, "D")]})
    assert parse_response(wrapped)[0]["prompt"] == "Question 1?"


@pytest.mark.parametrize("content", ["not json", '{"foo": 1}', ""])
def test_parse_response_rejects_malformed_content(content):
    with pytest.raises(GenerationFailed):
        parse_response(content)


async def test_generate_batch_returns_validated_questions(generator, generation):
    batch = await generation.generate_batch("science", "easy", 5)

    assert len(batch.questions) == 5
    assert all(q["correct_option"] == "A" for q in batch.questions)
    assert batch.model == "gpt-3.5-turbo"
    assert batch.tokens_used == 500
    assert "science" in batch.prompt
    assert generator.calls == [("science", "easy", 5)]


async def test_generate_batch_rejects_invalid_set(generator, generation):
    bad = raw_question(0)
    bad["options"] = bad["options"][:3]
    generator.content = json.dumps([bad])

    with pytest.raises(GenerationFailed):
        await generation.generate_batch("science", "easy", 1)


async def test_generate_batch_rejects_short_batch(generator, generation):
    generator.shortfall = 2
    with pytest.raises(GenerationFailed):
        await generation.generate_batch("science", "easy", 5)


async def test_generate_batch_times_out(generator):
    generator.delay = 0.5
    service = GenerationService(generator, timeout_seconds=0.05)

    with pytest.raises(GenerationFailed, match="timed out"):
        await service.generate_batch("science", "easy", 3)


async def test_generate_batch_wraps_transport_errors(generator, generation):
    generator.error = httpx.ConnectError("connection refused")
    with pytest.raises(GenerationFailed):
        await generation.generate_batch("science", "easy", 3)


async def test_chat_completions_generator_posts_prompt():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "chatcmpl-1",
            "model": "gpt-4o-mini",
            "choices": [{"message": {"role": "assistant", "content": "[]"}}],
            "usage": {"total_tokens": 321},
        })

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://llm.test/v1")
    gen = ChatCompletionsGenerator(api_key="sk-test", model="gpt-4o-mini", client=client)

    result = await gen.generate("science", "easy", 3, "PROMPT")
    await gen.aclose()

    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "PROMPT"}
    assert result.content == "[]"
    assert result.tokens_used == 321
    assert result.model == "gpt-4o-mini"


async def test_chat_completions_generator_raises_on_empty_content():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://llm.test/v1")
    gen = ChatCompletionsGenerator(api_key="sk-test", client=client)

    with pytest.raises(ValueError):
        await gen.generate("science", "easy", 3, "PROMPT")
    await gen.aclose()
