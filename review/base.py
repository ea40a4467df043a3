"""Base reviewer interface and response schema."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import cast

from .prompts import build_review_prompt

logger = logging.getLogger(__name__)


def _coerce_usage(value: object) -> dict[str, int]:
    if not isinstance(value, Mapping):
        return {}
    usage: dict[str, int] = {}
    typed_value = cast(Mapping[str, object], value)
    for key, item in typed_value.items():
        if isinstance(item, bool):
            usage[key] = int(item)
        elif isinstance(item, (int, float)):
            usage[key] = int(item)
        elif isinstance(item, str):
            try:
                usage[key] = int(float(item))
            except ValueError:
                continue
    return usage


def parse_verdict(text: str) -> dict[str, object]:
    """Pull the JSON object out of a model reply, tolerating code fences."""
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return {}
    try:
        loaded = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return {}
    return dict(loaded) if isinstance(loaded, dict) else {}


@dataclass(frozen=True)
class ReviewResponse:
    text: str
    verdict: dict[str, object] = field(default_factory=dict)
    usage: dict[str, int] = field(default_factory=dict)
    latency_ms: float = 0.0
    model_id: str = ""

    @property
    def leak_suspected(self) -> bool:
        return bool(self.verdict.get("leak_suspected", False))

    def to_dict(self) -> dict[str, object]:
        return {
            "text": self.text,
            "verdict": dict(self.verdict),
            "usage": dict(self.usage),
            "latency_ms": self.latency_ms,
            "model_id": self.model_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ReviewResponse":
        verdict = payload.get("verdict")
        latency = payload.get("latency_ms", 0.0)
        return cls(
            text=str(payload.get("text", "")),
            verdict=dict(cast(Mapping[str, object], verdict)) if isinstance(verdict, Mapping) else {},
            usage=_coerce_usage(payload.get("usage")),
            latency_ms=float(latency) if isinstance(latency, (int, float)) else 0.0,
            model_id=str(payload.get("model_id", "")),
        )


class BaseReviewer(ABC):
    """Abstract interface for output reviewers."""

    reviewer_id: str
    model_name: str

    def __init__(
        self,
        reviewer_id: str,
        model_name: str,
        temperature: float = 0.0,
        max_tokens: int = 400,
    ) -> None:
        self.reviewer_id = reviewer_id
        self.model_name = model_name
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._metrics = {"calls": 0, "errors": 0, "total_latency_ms": 0.0}

    @abstractmethod
    def generate(self, prompt: str, temperature: float, max_tokens: int) -> ReviewResponse:
        """Generate a completion for the prompt."""

    @abstractmethod
    def get_reviewer_info(self) -> dict[str, object]:
        """Return metadata about the reviewer/model."""

    def review(self, stdout: str, stderr: str = "") -> ReviewResponse:
        """Review sanitized output. Callers must never pass raw results."""
        prompt = build_review_prompt(stdout, stderr)
        start = time.perf_counter()
        self._metrics["calls"] += 1
        try:
            response = self.generate(prompt, self.temperature, self.max_tokens)
        except Exception:
            self._metrics["errors"] += 1
            raise
        finally:
            self._metrics["total_latency_ms"] += (time.perf_counter() - start) * 1000
        if not response.verdict:
            verdict = parse_verdict(response.text)
            if verdict:
                response = ReviewResponse(
                    text=response.text,
                    verdict=verdict,
                    usage=response.usage,
                    latency_ms=response.latency_ms,
                    model_id=response.model_id,
                )
        logger.info("Review by %s finished (leak suspected: %s)", self.reviewer_id, response.leak_suspected)
        return response

    def get_metrics(self) -> dict[str, object]:
        metrics: dict[str, object] = dict(self._metrics)
        calls = int(self._metrics["calls"])
        metrics["avg_latency_ms"] = float(self._metrics["total_latency_ms"]) / calls if calls else 0.0
        return metrics
