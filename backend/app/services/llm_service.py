"""LLM service for OpenAI chat completions."""

from __future__ import annotations

import asyncio
import logging

from openai import AsyncOpenAI, OpenAIError

from app.core.config import settings

logger = logging.getLogger(__name__)


class LLMUnavailable(RuntimeError):
    """Raised when no completion could be obtained (missing key, timeout, provider error)."""


class LLMService:
    def __init__(self, client: AsyncOpenAI | None = None) -> None:
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.openai_api_key.strip():
                raise LLMUnavailable("OpenAI API key not configured")
            self._client = AsyncOpenAI(
                api_key=settings.openai_api_key.strip(),
                timeout=settings.llm_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        system_prompt: str = "",
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the completion text, or raise ``LLMUnavailable``."""
        client = self._get_client()

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        timeout = max(1.0, float(settings.llm_timeout_seconds))
        try:
            response = await asyncio.wait_for(
                client.chat.completions.create(
                    model=settings.llm_model,
                    messages=messages,
                    temperature=settings.llm_temperature if temperature is None else temperature,
                    max_tokens=max_tokens or settings.llm_max_tokens,
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LLMUnavailable(f"LLM call timed out after {timeout:.0f}s") from exc
        except OpenAIError as exc:
            raise LLMUnavailable(f"LLM API call failed: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise LLMUnavailable("LLM returned an empty completion")
        return content.strip()


llm_service = LLMService()
