# =======================================================================
# services/generators/service.py
# =======================================================================
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Tuple

import httpx

from errors import GenerationFailed
from services.generators.types import ANSWER_LABELS, GeneratedBatch

logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"```(?:json)?\s*|\s*```", re.IGNORECASE)

PROMPT_TEMPLATE = """
Generate {count} multiple-choice {category} questions at {difficulty} difficulty level.
Each question should have:
- A clear and concise question
- 4 plausible options (labeled A, B, C, D)
- One correct answer (specify the letter A, B, C, or D)
- A brief explanation

Return ONLY valid JSON in this exact format:
[
  {{
    "question": "Question text?",
    "options": ["Option A", "Option B", "Option C", "Option D"],
    "correctAnswer": "A",
    "explanation": "Brief explanation of the correct answer"
  }}
]

Ensure questions are diverse, educational, and appropriate for {difficulty} level.
"""


def build_prompt(category: str, difficulty: str, count: int) -> str:
    return PROMPT_TEMPLATE.format(category=category, difficulty=difficulty, count=count).strip()


def _pick(d: dict, *keys, default=None):
    """Return the first non-empty value among keys."""
    for k in keys:
        v = d.get(k)
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return default


# ------------------------------------------------------------
# Normalize one raw item into the stored question shape
# ------------------------------------------------------------
def normalize_question(item: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(item, dict):
        return item

    options = _pick(item, "options", "choices", default=[])
    if isinstance(options, dict):
        # {"A": "...", "B": "..."} → ordered list
        options = [options.get(label, "") for label in ANSWER_LABELS]
    if not isinstance(options, list):
        options = []

    question = {
        "prompt": str(_pick(item, "prompt", "question", default="")).strip(),
        "options": [str(o).strip() if o is not None else "" for o in options],
        "correct_option": str(_pick(item, "correct_option", "correctAnswer", "answer", default="")).strip().upper(),
    }

    explanation = _pick(item, "explanation")
    if explanation is not None:
        question["explanation"] = str(explanation).strip()

    topic = _pick(item, "topic")
    if topic is not None:
        question["topic"] = str(topic).strip()

    time_limit = _pick(item, "time_limit_seconds", "timeLimit")
    if time_limit is not None:
        try:
            question["time_limit_seconds"] = int(time_limit)
        except (TypeError, ValueError):
            pass

    return question


# ------------------------------------------------------------
# Validate question format
# ------------------------------------------------------------
def validate_question(q: Dict[str, Any]) -> Tuple[bool, str]:
    if not isinstance(q, dict):
        return False, "not a dict"
    if not isinstance(q.get("prompt"), str) or not q["prompt"].strip():
        return False, "missing prompt"

    options = q.get("options")
    if not isinstance(options, list) or len(options) != 4:
        return False, "options must be length 4"
    if not all(isinstance(o, str) and o.strip() for o in options):
        return False, "options must be non-empty"

    if q.get("correct_option") not in ANSWER_LABELS:
        return False, "correct_option must be one of A, B, C, D"
    return True, ""


def validate_question_set(questions: List[dict], max_questions: int = 20) -> Tuple[bool, str]:
    if not isinstance(questions, list) or not (1 <= len(questions) <= max_questions):
        return False, f"question count must be within [1, {max_questions}]"
    for index, q in enumerate(questions):
        ok, reason = validate_question(q)
        if not ok:
            return False, f"question {index}: {reason}"
    return True, ""


def parse_response(content: str) -> List[dict]:
    """Strip code fences, parse the JSON array and normalize every item."""
    clean = FENCE_PATTERN.sub("", content or "").strip()
    try:
        data = json.loads(clean)
    except json.JSONDecodeError as e:
        raise GenerationFailed("Invalid AI response format") from e

    if isinstance(data, dict) and isinstance(data.get("questions"), list):
        data = data["questions"]
    if not isinstance(data, list):
        raise GenerationFailed("AI response is not an array")

    return [normalize_question(item) for item in data]


# =======================================================================
# Generation service: owns prompt, parsing, validation and the timeout
# =======================================================================
class GenerationService:
    def __init__(self, generator, timeout_seconds: float = 30.0, max_questions: int = 20):
        self.generator = generator
        self.timeout_seconds = timeout_seconds
        self.max_questions = max_questions

    async def generate_batch(self, category: str, difficulty: str, count: int) -> GeneratedBatch:
        """
        Ask the collaborator for `count` questions and return a validated batch.

        Raises GenerationFailed on timeout, transport errors, malformed JSON,
        invalid questions, or fewer questions than requested.
        """
        prompt = build_prompt(category, difficulty, count)
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(
                self.generator.generate(category, difficulty, count, prompt),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ Generation timed out after {self.timeout_seconds}s for {category}/{difficulty}")
            raise GenerationFailed("Question generation timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"🚫 Generation request failed for {category}/{difficulty}: {e}")
            raise GenerationFailed() from e
        except GenerationFailed:
            raise
        except Exception as e:
            logger.exception(f"❌ Generation collaborator error for {category}/{difficulty}")
            raise GenerationFailed() from e

        questions = parse_response(result.content)

        ok, reason = validate_question_set(questions, self.max_questions)
        if not ok:
            logger.warning(f"⚠️ Rejected generated set for {category}/{difficulty}: {reason}")
            raise GenerationFailed(f"Generated questions failed validation: {reason}")

        if len(questions) < count:
            logger.warning(
                f"⚠️ Generator returned {len(questions)} of {count} questions for {category}/{difficulty}"
            )
            raise GenerationFailed(f"Generator returned {len(questions)} of {count} questions")

        return GeneratedBatch(
            questions=questions,
            model=result.model,
            prompt=prompt,
            tokens_used=result.tokens_used,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )
