# =================================================================
# services/generators/types.py
# ================================================================
from dataclasses import dataclass
from typing import List, Optional

ANSWER_LABELS = ("A", "B", "C", "D")
DIFFICULTIES = ("easy", "medium", "hard")


@dataclass
class GeneratedText:
    content: str
    model: str
    tokens_used: int = 0
    raw: Optional[dict] = None


@dataclass
class GeneratedBatch:
    questions: List[dict]
    model: str
    prompt: str
    tokens_used: int = 0
    response_time_ms: int = 0
