"""
Token usage accounting for LLM-backed guardrails.

Checks that call a model report ``info["token_usage"]``; these helpers
extract usage from provider responses and sum it across results.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by a single guardrail call."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    unavailable_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data: dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.unavailable_reason is not None:
            data["unavailable_reason"] = self.unavailable_reason
        return data


@dataclass(frozen=True)
class TokenUsageSummary:
    """Token usage summed over several guardrails."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


def _read(source: Any, key: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(key)
    return getattr(source, key, None)


def _number(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _pick(usage: Any, *keys: str) -> int | None:
    for key in keys:
        value = _number(_read(usage, key))
        if value is not None:
            return value
    return None


def extract_token_usage(response: Any) -> TokenUsage:
    """Extract token usage from a chat-completions or responses API object."""
    usage = _read(response, "usage")
    if not usage:
        return TokenUsage(unavailable_reason="Token usage not available for this model provider")

    prompt = _pick(usage, "prompt_tokens", "input_tokens")
    completion = _pick(usage, "completion_tokens", "output_tokens")
    total = _pick(usage, "total_tokens")

    if prompt is None and completion is None and total is None:
        return TokenUsage(unavailable_reason="Token usage data not populated in response")

    return TokenUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def aggregate_token_usage(infos: Iterable[Mapping[str, Any] | None]) -> TokenUsageSummary:
    """Sum ``token_usage`` entries across guardrail info maps.

    Returns an all-``None`` summary when no info carries usable numbers.
    """
    prompt = completion = total = 0
    has_data = False

    for info in infos:
        if not info:
            continue
        usage = info.get("token_usage")
        if usage is None:
            continue

        p = _number(_read(usage, "prompt_tokens"))
        c = _number(_read(usage, "completion_tokens"))
        t = _number(_read(usage, "total_tokens"))
        if p is None and c is None and t is None:
            continue

        has_data = True
        prompt += p or 0
        completion += c or 0
        total += t or 0

    if not has_data:
        return TokenUsageSummary()
    return TokenUsageSummary(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
