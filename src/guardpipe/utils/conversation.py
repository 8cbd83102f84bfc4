"""
Conversation history normalization.

Raw payloads are turned into ``ConversationEntry`` values once, at the
boundary, so guardrails never have to branch over response shapes.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from guardpipe.core.models import ConversationEntry
from guardpipe.utils.content import read_field

POSSIBLE_CONVERSATION_KEYS = (
    "messages",
    "conversation",
    "conversation_history",
    "recent_messages",
    "turns",
    "output",
    "outputs",
)


def parse_conversation_input(raw_input: Any) -> list[Any]:
    """Parse conversation-like input into a flat list of message objects.

    Accepts JSON strings, lists, or mappings embedding a conversation list
    under one of ``POSSIBLE_CONVERSATION_KEYS``. Returns ``[]`` when nothing
    conversation-like is found.
    """
    if raw_input is None:
        return []
    if isinstance(raw_input, str):
        trimmed = raw_input.strip()
        if not trimmed:
            return []
        try:
            return parse_conversation_input(json.loads(trimmed))
        except json.JSONDecodeError:
            return []
    if isinstance(raw_input, Mapping):
        for key in POSSIBLE_CONVERSATION_KEYS:
            value = raw_input.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, Mapping):
                nested = parse_conversation_input(value)
                if nested:
                    return nested
        return []
    if isinstance(raw_input, Sequence):
        return list(raw_input)
    return []


def _to_entry(item: Any) -> ConversationEntry | None:
    if isinstance(item, ConversationEntry):
        return item
    role = read_field(item, "role")
    if not role:
        return None
    content = read_field(item, "content")
    if content is None:
        content = ""
    elif not isinstance(content, str):
        content = [
            dict(part) if isinstance(part, Mapping) else {
                "type": read_field(part, "type"),
                "text": read_field(part, "text"),
            }
            for part in content
        ]
    return ConversationEntry(role=str(role), content=content)


def normalize_conversation(data: str | Sequence[Any] | None) -> list[ConversationEntry]:
    """Normalize a string or message list into conversation entries.

    A bare string becomes a single user entry. Items without a role (tool
    calls, reasoning items) are dropped.
    """
    if data is None:
        return []
    if isinstance(data, str):
        return [ConversationEntry.user(data)]
    entries = []
    for item in data:
        entry = _to_entry(item)
        if entry is not None:
            entries.append(entry)
    return entries


def merge_conversation_with_items(
    history: Sequence[ConversationEntry],
    items: Sequence[Any],
) -> list[ConversationEntry]:
    """Return ``history`` followed by ``items`` normalized."""
    return [*history, *normalize_conversation(items)]


def append_assistant_output(
    history: Sequence[ConversationEntry] | None,
    text: str,
) -> list[ConversationEntry]:
    """Copy of ``history`` with an assistant entry appended."""
    return [*(history or []), ConversationEntry.assistant(text)]


def append_llm_response(
    history: Sequence[ConversationEntry] | None,
    llm_response: Any,
) -> list[ConversationEntry]:
    """Copy of ``history`` extended with the messages of an LLM response.

    Responses API objects contribute their ``output`` items that carry a
    role; chat completions contribute ``choices[0].message``.
    """
    updated = list(history or [])

    output = read_field(llm_response, "output")
    if isinstance(output, list):
        updated.extend(normalize_conversation(output))
        return updated

    choices = read_field(llm_response, "choices")
    if choices:
        message = read_field(choices[0], "message")
        if message is not None and read_field(message, "content"):
            updated.append(
                ConversationEntry(
                    role=str(read_field(message, "role") or "assistant"),
                    content=read_field(message, "content"),
                )
            )
    return updated
