"""OpenAI-compatible text generation with a small fixed retry budget."""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Any, Callable, List, Optional, Protocol, Sequence

import openai

from app.core.config import settings
from app.core.errors import AllBackendsExhausted
from app.observability.metrics import log_metric
from app.observability.tracing import trace

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    """Anything that turns a prompt into raw text or raises GenerationError."""

    def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
    ) -> str:
        ...


class TextGenerationClient:
    """Issue prompts against a ranked list of chat models.

    Every model gets ``max_retries`` attempts separated by a fixed delay. The first
    non-empty completion wins; when all combinations fail ``AllBackendsExhausted``
    carries the last underlying error.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        models: Optional[Sequence[str]] = None,
        max_tokens: int = 500,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        temperature: float = 0.7,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self.models: List[str] = list(models or [])
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.temperature = temperature
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "TextGenerationClient":
        api_key = settings.openai_api_key
        client = openai.OpenAI(api_key=api_key, base_url=settings.openai_base_url) if api_key else None
        if client is None:
            logger.info("OPENAI_API_KEY missing; planning stages will use deterministic fallbacks.")
        return cls(
            client,
            models=settings.llm_models,
            max_tokens=settings.llm_max_tokens,
            max_retries=settings.llm_max_retries,
            retry_delay_ms=settings.llm_retry_delay_ms,
            temperature=settings.llm_temperature,
        )

    @property
    def available(self) -> bool:
        return self._client is not None and bool(self.models)

    def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
    ) -> str:
        if self._client is None:
            raise AllBackendsExhausted("No text-generation backend configured")

        candidates = [model] if model else list(self.models)
        if not candidates:
            raise AllBackendsExhausted("No candidate models configured")

        tokens = max_tokens or self.max_tokens
        retries = max(1, max_retries if max_retries is not None else self.max_retries)
        delay_ms = retry_delay_ms if retry_delay_ms is not None else self.retry_delay_ms
        last_error: Optional[BaseException] = None

        for candidate in candidates:
            for attempt in range(1, retries + 1):
                try:
                    with trace("llm.generate", metadata={"model": candidate, "attempt": attempt}):
                        text = self._complete(candidate, prompt, tokens)
                    logger.debug("Model %s answered on attempt %s", candidate, attempt)
                    return text
                except Exception as exc:
                    last_error = exc
                    logger.warning("Model %s attempt %s/%s failed: %s", candidate, attempt, retries, exc)
                    log_metric("llm.attempt.failed", 1, {"model": candidate, "attempt": attempt})
                    if attempt < retries and delay_ms > 0:
                        self._sleep(delay_ms / 1000)

        log_metric("llm.exhausted", 1, {"models": len(candidates)})
        raise AllBackendsExhausted(f"All models failed. Last error: {last_error}", last_error=last_error)

    def _complete(self, model: str, prompt: str, max_tokens: int) -> str:
        completion = self._client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens,
            temperature=self.temperature,
        )
        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            raise ValueError("empty completion")
        return content


@lru_cache
def get_text_generator() -> TextGenerationClient:
    """Return the process-wide generation client built from settings."""
    return TextGenerationClient.from_settings()
