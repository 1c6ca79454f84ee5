# ==========================================================
# services/generators/openai_chat.py
# OpenAI-compatible chat completions (POST /chat/completions)
# ==========================================================
from __future__ import annotations

import logging

import httpx

from services.generators.types import GeneratedText

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a quiz question generator. Always return valid JSON format only."


class ChatCompletionsGenerator:
    """
    Pure text-in/text-out collaborator.

    Holds one httpx.AsyncClient for the process; build it once at startup
    and pass it to GenerationService.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        temperature: float = 0.7,
        max_tokens: int = 2000,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def generate(self, category: str, difficulty: str, count: int, prompt: str) -> GeneratedText:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        resp = await self._client.post("/chat/completions", json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()

        choices = data.get("choices") or []
        content = ((choices[0] if choices else {}).get("message") or {}).get("content")
        if not content:
            raise ValueError("No response content from generation service")

        usage = data.get("usage") or {}
        logger.debug(
            f"🧠 Chat completion for {category}/{difficulty} x{count}: "
            f"tokens={usage.get('total_tokens', 0)}"
        )
        return GeneratedText(
            content=content,
            model=data.get("model") or self.model,
            tokens_used=int(usage.get("total_tokens") or 0),
            raw={"id": data.get("id")},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
