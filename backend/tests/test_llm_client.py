"""Tests for the multi-model generation client and its retry budget."""
from __future__ import annotations

from types import SimpleNamespace
from typing import List

import pytest

from app.core.errors import AllBackendsExhausted
from app.llm.client import TextGenerationClient


class _FakeCompletions:
    def __init__(self, outcomes: List[object]):
        self.outcomes = list(outcomes)
        self.calls: List[dict] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        message = SimpleNamespace(content=outcome)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class _FakeOpenAI:
    def __init__(self, outcomes: List[object]):
        self.completions = _FakeCompletions(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)


def _client(outcomes, models=("gpt-4o-mini",), max_retries=3):
    sleeps: List[float] = []
    fake = _FakeOpenAI(outcomes)
    client = TextGenerationClient(
        fake,
        models=list(models),
        max_retries=max_retries,
        retry_delay_ms=1000,
        sleep=sleeps.append,
    )
    return client, fake.completions, sleeps


def test_first_successful_completion_is_returned() -> None:
    client, completions, sleeps = _client(["hello"])

    assert client.generate("Say hello") == "hello"
    assert len(completions.calls) == 1
    call = completions.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["max_tokens"] == 500
    assert call["temperature"] == 0.7
    assert call["messages"] == [{"role": "user", "content": "Say hello"}]
    assert sleeps == []


def test_retries_same_model_with_fixed_delay() -> None:
    client, completions, sleeps = _client([RuntimeError("429"), RuntimeError("500"), "ok"])

    assert client.generate("prompt") == "ok"
    assert len(completions.calls) == 3
    assert sleeps == [1.0, 1.0]


def test_moves_to_next_model_after_retries_run_out() -> None:
    client, completions, sleeps = _client(
        [RuntimeError("a1"), RuntimeError("a2"), "from b"],
        models=("model-a", "model-b"),
        max_retries=2,
    )

    assert client.generate("prompt") == "from b"
    assert [call["model"] for call in completions.calls] == ["model-a", "model-a", "model-b"]
    assert sleeps == [1.0]


def test_exhaustion_carries_last_error() -> None:
    last = RuntimeError("b2 failed")
    client, completions, sleeps = _client(
        [RuntimeError("a1"), RuntimeError("a2"), RuntimeError("b1"), last],
        models=("model-a", "model-b"),
        max_retries=2,
    )

    with pytest.raises(AllBackendsExhausted) as excinfo:
        client.generate("prompt")

    assert excinfo.value.last_error is last
    assert "All models failed" in str(excinfo.value)
    assert "b2 failed" in str(excinfo.value)
    assert len(completions.calls) == 4
    assert sleeps == [1.0, 1.0]


def test_empty_completion_counts_as_failure() -> None:
    client, completions, _ = _client(["   ", "real text"])

    assert client.generate("prompt") == "real text"
    assert len(completions.calls) == 2


def test_explicit_model_and_token_budget_override_defaults() -> None:
    client, completions, _ = _client(["done"], models=("model-a", "model-b"))

    client.generate("prompt", model="custom-model", max_tokens=1200)

    assert completions.calls[0]["model"] == "custom-model"
    assert completions.calls[0]["max_tokens"] == 1200


def test_missing_backend_fails_fast() -> None:
    sleeps: List[float] = []
    client = TextGenerationClient(None, models=["gpt-4o-mini"], sleep=sleeps.append)

    assert client.available is False
    with pytest.raises(AllBackendsExhausted):
        client.generate("prompt")
    assert sleeps == []
