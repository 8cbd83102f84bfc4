"""
Content helpers for text guardrails.

Messages may arrive as plain dicts (chat/responses API payloads) or as
objects exposing ``role``/``content``; both are read the same way here.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from guardpipe.core.models import ConversationEntry

TEXT_CONTENT_TYPES = frozenset({"input_text", "text", "output_text", "summary_text"})


def read_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a mapping or attribute of an object."""
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def is_text(part: Any) -> bool:
    """Check if a content part is text-based."""
    return read_field(part, "type") in TEXT_CONTENT_TYPES


def has_text_content(message: Any) -> bool:
    """Check if a message carries any text."""
    content = read_field(message, "content")
    if isinstance(content, str):
        return True
    if isinstance(content, Sequence):
        return any(is_text(part) for part in content)
    return False


def extract_text_from_message(message: Any) -> str:
    """Extract the text of a message, joining text parts with spaces."""
    content = read_field(message, "content")
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, Sequence):
        texts = [read_field(part, "text") or "" for part in content if is_text(part)]
        return " ".join(texts).strip()
    return ""


def filter_to_text_only(messages: Sequence[Any]) -> list[ConversationEntry]:
    """Keep only messages with text, as normalized entries.

    Non-text parts are dropped from structured content.
    """
    entries: list[ConversationEntry] = []
    for message in messages:
        if not has_text_content(message):
            continue
        content = read_field(message, "content")
        if not isinstance(content, str):
            content = [dict(part) if isinstance(part, Mapping) else {
                "type": read_field(part, "type"),
                "text": read_field(part, "text"),
            } for part in content if is_text(part)]
        entries.append(ConversationEntry(role=str(read_field(message, "role")), content=content))
    return entries


def extract_latest_user_text_message(messages: Sequence[Any]) -> tuple[str, int]:
    """Find the most recent user message that has text.

    Returns:
        Tuple of (message_text, index into ``messages``); index is -1 if none.
    """
    for idx in range(len(messages) - 1, -1, -1):
        message = messages[idx]
        if read_field(message, "role") != "user":
            continue
        text = extract_text_from_message(message)
        if text:
            return text, idx
    return "", -1


def extract_response_text(response: Any) -> str:
    """Extract text from a completion, chat completion, chunk or responses object."""
    if response is None:
        return ""
    if isinstance(response, str):
        return response

    output_text = read_field(response, "output_text")
    if isinstance(output_text, str):
        return output_text

    # Responses API streaming events carry the text in ``delta``
    if read_field(response, "type") == "response.output_text.delta":
        return read_field(response, "delta") or ""

    choices = read_field(response, "choices")
    if not choices:
        return ""

    choice = choices[0]
    message = read_field(choice, "message")
    if message is not None:
        return read_field(message, "content") or ""

    text = read_field(choice, "text")
    if text:
        return text

    delta = read_field(choice, "delta")
    if delta is not None:
        return read_field(delta, "content") or ""

    return ""
