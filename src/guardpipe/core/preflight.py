"""
Pre-flight payload modification.

Entities detected by pre-flight guardrails are masked in the payload
before it reaches the model. Only the latest user message is rewritten;
everything else is passed through as the same objects.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any, TypeVar

from guardpipe.core.models import GuardrailResult
from guardpipe.utils.content import extract_latest_user_text_message, is_text

Payload = TypeVar("Payload", str, list)


def collect_masking_map(results: Iterable[GuardrailResult]) -> dict[str, str]:
    """Map every detected entity value to its ``<ENTITY_TYPE>`` token."""
    mapping: dict[str, str] = {}
    for result in results:
        detected = result.detected_entities
        if not isinstance(detected, Mapping):
            continue
        for entity_type, values in detected.items():
            for value in values or ():
                if value:
                    mapping[value] = f"<{entity_type}>"
    return mapping


def mask_text(text: str, mapping: Mapping[str, str]) -> str:
    """Replace literal occurrences, longest originals first."""
    if not isinstance(text, str):
        return text
    masked = text
    for original in sorted(mapping, key=len, reverse=True):
        if original in masked:
            masked = masked.replace(original, mapping[original])
    return masked


def _mask_content(content: Any, mapping: Mapping[str, str]) -> Any:
    if isinstance(content, str):
        return mask_text(content, mapping)
    if isinstance(content, Sequence):
        parts = []
        for part in content:
            if is_text(part) and isinstance(part, Mapping):
                masked = mask_text(part.get("text", ""), mapping)
                parts.append(part if masked == part.get("text") else {**part, "text": masked})
            else:
                parts.append(part)
        if all(new is old for new, old in zip(parts, content)):
            return content
        return parts
    return content


def apply_preflight_modifications(
    data: Payload,
    preflight_results: Sequence[GuardrailResult],
) -> Payload:
    """
    Mask entities surfaced by pre-flight results.

    Args:
        data: Either a text string or a list of message dicts
        preflight_results: Results of the ``pre_flight`` stage

    Returns:
        The masked payload, or ``data`` itself when nothing was masked
    """
    if not preflight_results:
        return data

    mapping = collect_masking_map(preflight_results)
    if not mapping:
        return data

    if isinstance(data, str):
        return mask_text(data, mapping)

    _, latest_idx = extract_latest_user_text_message(data)
    if latest_idx == -1:
        return data

    message = data[latest_idx]
    if not isinstance(message, Mapping):
        return data

    content = message.get("content")
    masked = _mask_content(content, mapping)
    if masked is content:
        return data

    modified = list(data)
    modified[latest_idx] = {**message, "content": masked}
    return modified
