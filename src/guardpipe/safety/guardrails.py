"""
Built-in guardrails for guardpipe.

Heuristic, regex-based checks registered on the default registry:
- Keyword filtering
- PII detection (masking or blocking)
- Prompt injection cues
"""

from __future__ import annotations

import re
from typing import Any, Pattern

from pydantic import BaseModel, ConfigDict, Field, field_validator

from guardpipe.core.models import ConversationEntry, GuardrailResult
from guardpipe.safety.registry import default_spec_registry
from guardpipe.utils.content import extract_text_from_message

# ---- keywords ------------------------------------------------------------


class KeywordsConfig(BaseModel):
    """Configuration for the keyword filter."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    keywords: list[str] = Field(min_length=1)


def _keyword_pattern(keyword: str) -> str:
    escaped = re.escape(keyword)
    # Word boundaries only where the keyword edge is itself a word character
    left = r"(?<!\w)" if re.match(r"\w", keyword[0]) else ""
    right = r"(?!\w)" if re.match(r"\w", keyword[-1]) else ""
    return f"{left}{escaped}{right}"


def keywords_check(ctx: Any, text: str, config: KeywordsConfig) -> GuardrailResult:
    """Trip when any configured keyword appears in ``text``."""
    sanitized = [k.rstrip(".,!?;:") for k in config.keywords]
    entries = [k for k in sanitized if k]

    matches: list[str] = []
    if entries:
        pattern = re.compile("|".join(_keyword_pattern(k) for k in entries), re.IGNORECASE)
        seen: set[str] = set()
        for match in pattern.finditer(text):
            matched = match.group()
            if matched.lower() not in seen:
                seen.add(matched.lower())
                matches.append(matched)

    return GuardrailResult(
        tripwire_triggered=bool(matches),
        info={
            "matched_keywords": matches,
            "original_keywords": list(config.keywords),
            "sanitized_keywords": sanitized,
            "total_keywords": len(config.keywords),
            "text_length": len(text),
            **({"reason": f"Blocked keyword detected: {matches[0]}"} if matches else {}),
        },
    )


# ---- PII -------------------------------------------------------------------

PII_PATTERNS: dict[str, str] = {
    "EMAIL_ADDRESS": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    "US_SSN": r"\b\d{3}-\d{2}-\d{4}\b",
    "CREDIT_CARD": r"\b(?:\d{4}[-\s]?){3}\d{4}\b",
    "PHONE_NUMBER": r"(?<!\d)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
    "IP_ADDRESS": r"\b(?:\d{1,3}\.){3}\d{1,3}\b",
}


class PIIConfig(BaseModel):
    """Configuration for PII detection.

    ``block=False`` (default) only reports entities so pre-flight can mask
    them; ``block=True`` trips when any entity is found.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    entities: list[str] = Field(default_factory=lambda: list(PII_PATTERNS))
    block: bool = False

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, v: list[str]) -> list[str]:
        unknown = [e for e in v if e not in PII_PATTERNS]
        if unknown:
            raise ValueError(f"Unknown PII entities: {unknown}. Must be in {sorted(PII_PATTERNS)}")
        return v


_PII_COMPILED: dict[str, Pattern] = {
    name: re.compile(pattern, re.IGNORECASE) for name, pattern in PII_PATTERNS.items()
}


def detect_pii(text: str, entities: list[str]) -> dict[str, list[str]]:
    """Find PII values per entity type, in order of appearance, deduplicated."""
    detected: dict[str, list[str]] = {}
    claimed: list[tuple[int, int]] = []

    # Earlier entity types in PII_PATTERNS take precedence over overlapping later ones
    for entity in (e for e in PII_PATTERNS if e in entities):
        values: list[str] = []
        for match in _PII_COMPILED[entity].finditer(text):
            start, end = match.span()
            if any(start < c_end and c_start < end for c_start, c_end in claimed):
                continue
            claimed.append((start, end))
            if match.group() not in values:
                values.append(match.group())
        if values:
            detected[entity] = values
    return detected


def pii_check(ctx: Any, text: str, config: PIIConfig) -> GuardrailResult:
    """Detect PII; trips only in blocking mode."""
    detected = detect_pii(text, config.entities)
    has_pii = bool(detected)
    info: dict[str, Any] = {
        "detected_entities": detected,
        "entity_types_checked": list(config.entities),
        "block_mode": config.block,
        "pii_detected": has_pii,
    }
    if has_pii:
        info["reason"] = f"PII detected: {', '.join(detected)}"
    return GuardrailResult(tripwire_triggered=config.block and has_pii, info=info)


# ---- prompt injection ----------------------------------------------------

INJECTION_PATTERNS = [
    # System prompt overrides
    r"ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?)",
    r"disregard\s+(all\s+)?(previous|above|prior)",
    r"forget\s+(everything|all)\s+(you|that)",
    r"new\s+instructions?:",
    r"system\s*:\s*you\s+are",

    # Role manipulation
    r"you\s+are\s+now\s+(in\s+)?(\w+\s+)?mode",
    r"pretend\s+(to\s+be|you\s+are)",

    # Delimiter attacks
    r"```\s*(system|instruction)",
    r"<\|?(system|im_start|im_end)\|?>",
    r"\[\s*(INST|SYS|SYSTEM)\s*\]",

    # Jailbreak attempts
    r"(DAN|jailbreak|bypass)\s+(mode|prompt)",
    r"do\s+anything\s+now",
]


class PromptInjectionConfig(BaseModel):
    """Configuration for prompt injection heuristics."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    custom_patterns: list[str] = Field(default_factory=list)
    max_turns: int = Field(default=10, gt=0)

    @field_validator("custom_patterns")
    @classmethod
    def validate_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid regex {pattern!r}: {e}") from e
        return v


_INJECTION_COMPILED = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]


def prompt_injection_check(
    ctx: Any, text: str, config: PromptInjectionConfig
) -> GuardrailResult:
    """Look for injection cues in the text and recent user turns."""
    patterns = _INJECTION_COMPILED + [re.compile(p, re.IGNORECASE) for p in config.custom_patterns]

    history: list[ConversationEntry] = []
    get_history = getattr(ctx, "get_conversation_history", None)
    if callable(get_history):
        history = get_history()[-config.max_turns:]

    candidates = [text] + [
        extract_text_from_message(entry) for entry in history if entry.role == "user"
    ]

    detections = []
    for pattern in patterns:
        for candidate in candidates:
            match = pattern.search(candidate)
            if match:
                detections.append({
                    "pattern": pattern.pattern[:50],
                    "match": match.group()[:100],
                })
                break

    confidence = min(1.0, len(detections) / 3) if detections else 0.0
    info: dict[str, Any] = {
        "detections": detections,
        "confidence": confidence,
        "turns_checked": len(candidates),
    }
    if detections:
        info["reason"] = "Potential prompt injection detected"
    return GuardrailResult(tripwire_triggered=bool(detections), info=info)


default_spec_registry.register(
    "Keyword Filter",
    keywords_check,
    "Checks for specified keywords in text",
    config_validator=KeywordsConfig,
    metadata={"engine": "regex"},
)

default_spec_registry.register(
    "Contains PII",
    pii_check,
    "Detects personally identifiable information; masks in pre-flight or blocks",
    config_validator=PIIConfig,
    metadata={"engine": "regex"},
)

default_spec_registry.register(
    "Prompt Injection Heuristics",
    prompt_injection_check,
    "Flags common prompt injection phrasing in the latest input and recent user turns",
    config_validator=PromptInjectionConfig,
    metadata={"engine": "regex", "uses_conversation_history": True},
)
