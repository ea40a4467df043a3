"""Reviewer implementations."""

from __future__ import annotations

import hashlib
import importlib
import os
import time
from collections.abc import Mapping, Sequence
from typing import Protocol, cast

from execution_core.schemas import ReviewerSettings

from .base import BaseReviewer, ReviewResponse
from .retry import RetryPolicy


class _ChatCompletions(Protocol):
    def create(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> object: ...


class _Chat(Protocol):
    completions: _ChatCompletions


class _OpenAIClient(Protocol):
    chat: _Chat


def _load_openai_client(
    api_key: str | None,
    base_url: str | None,
    timeout_seconds: float,
) -> _OpenAIClient:
    try:
        module = importlib.import_module("openai")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency at runtime
        raise ImportError("openai is required to use OpenAIReviewer (pip install .[review])") from exc
    openai_client = getattr(module, "OpenAI", None)
    if openai_client is None:
        raise ImportError("openai.OpenAI client is unavailable")
    return cast(
        _OpenAIClient,
        openai_client(api_key=api_key, base_url=base_url, timeout=timeout_seconds),
    )


def _extract_usage(raw_usage: object) -> dict[str, int]:
    if raw_usage is None:
        return {}
    model_dump = getattr(raw_usage, "model_dump", None)
    if callable(model_dump):
        raw_usage = model_dump()
    if not isinstance(raw_usage, Mapping):
        return {}
    typed_usage = cast(Mapping[str, object], raw_usage)
    return {
        key: int(value)
        for key, value in typed_usage.items()
        if isinstance(value, (int, float)) and not isinstance(value, bool)
    }


def _extract_text(response: object) -> str:
    choices = cast(Sequence[object] | None, getattr(response, "choices", None))
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None) if message is not None else None
    return str(content) if content is not None else ""


class OpenAIReviewer(BaseReviewer):
    """OpenAI-compatible reviewer; point ``base_url`` at a local server to keep output on-host."""

    def __init__(
        self,
        model_name: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_seconds: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        temperature: float = 0.0,
        max_tokens: int = 400,
        reviewer_id: str = "openai",
    ) -> None:
        super().__init__(
            reviewer_id=reviewer_id,
            model_name=model_name,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        # Local OpenAI-compatible servers accept any key.
        api_key_value = api_key or os.getenv("OPENAI_API_KEY") or ("unused" if base_url else None)
        self._client = _load_openai_client(api_key_value, base_url, timeout_seconds)
        self._base_url = base_url
        self._timeout_seconds = timeout_seconds
        self._retry_policy = retry_policy

    def generate(self, prompt: str, temperature: float, max_tokens: int) -> ReviewResponse:
        def _call() -> object:
            return self._client.chat.completions.create(
                model=self.model_name,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )

        start = time.perf_counter()
        response = _call() if self._retry_policy is None else self._retry_policy.execute(_call)
        latency_ms = (time.perf_counter() - start) * 1000
        return ReviewResponse(
            text=_extract_text(response),
            usage=_extract_usage(getattr(response, "usage", None)),
            latency_ms=latency_ms,
            model_id=str(getattr(response, "model", None) or self.model_name),
        )

    def get_reviewer_info(self) -> dict[str, object]:
        return {
            "reviewer_id": self.reviewer_id,
            "reviewer_type": "openai",
            "model_name": self.model_name,
            "base_url": self._base_url,
            "timeout_seconds": self._timeout_seconds,
        }


class FakeReviewer(BaseReviewer):
    """Deterministic fake reviewer for offline tests."""

    def __init__(self, model_name: str = "fake-model", fail: bool = False) -> None:
        super().__init__(reviewer_id="fake", model_name=model_name)
        self.fail = fail
        self.prompts: list[str] = []

    def generate(self, prompt: str, temperature: float, max_tokens: int) -> ReviewResponse:
        self.prompts.append(prompt)
        if self.fail:
            raise ConnectionError("fake reviewer unavailable")
        prompt_hash = hashlib.sha256(prompt.encode("utf-8")).hexdigest()
        text = (
            '{"leak_suspected": false, '
            f'"summary": "No credential-like values found ({prompt_hash[:8]})."}}'
        )
        return ReviewResponse(
            text=text,
            usage={"prompt_tokens": len(prompt.split()), "completion_tokens": len(text.split())},
            model_id=self.model_name,
        )

    def get_reviewer_info(self) -> dict[str, object]:
        return {"reviewer_id": self.reviewer_id, "reviewer_type": "fake", "model_name": self.model_name}


def create_reviewer(
    settings: ReviewerSettings,
    retry_policy: RetryPolicy | None = None,
) -> BaseReviewer | None:
    """Build the configured reviewer, or None when review is disabled."""
    if not settings.enabled:
        return None
    provider_type = settings.provider_type.lower()
    if provider_type == "openai":
        return OpenAIReviewer(
            model_name=settings.model_name,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout_seconds=settings.timeout_seconds,
            retry_policy=retry_policy or RetryPolicy(max_retries=settings.max_retries),
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
    if provider_type == "fake":
        return FakeReviewer(model_name=settings.model_name)
    raise ValueError(f"Unsupported reviewer type: {settings.provider_type}")
