"""
Guardrail execution contexts.

The shared context carries the LLM client used by model-backed checks and
is never mutated. Stages that need conversation history get a fresh
``ConversationContext`` per invocation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, field_validator

from guardpipe.core.exceptions import ContextValidationError
from guardpipe.core.models import ConversationEntry

if TYPE_CHECKING:
    from guardpipe.safety.spec import ConfiguredGuardrail


@dataclass(frozen=True)
class GuardrailLLMContext:
    """Default context: exposes the client LLM-backed guardrails call."""

    guardrail_llm: Any = None


@dataclass(frozen=True)
class ConversationContext(GuardrailLLMContext):
    """Context that also exposes the conversation so far."""

    conversation_history: tuple[ConversationEntry, ...] = field(default_factory=tuple)

    def get_conversation_history(self) -> list[ConversationEntry]:
        """Get the conversation history as a list."""
        return list(self.conversation_history)


class LLMContextRequirements(BaseModel):
    """Context requirements for guardrails that call a model."""

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="ignore")

    guardrail_llm: Any

    @field_validator("guardrail_llm")
    @classmethod
    def require_client(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("guardrail_llm must not be None")
        return v


def create_context_with_conversation(
    base: GuardrailLLMContext,
    conversation_history: Sequence[ConversationEntry],
) -> ConversationContext:
    """Build a new context sharing ``base``'s client with the given history."""
    return ConversationContext(
        guardrail_llm=base.guardrail_llm,
        conversation_history=tuple(conversation_history),
    )


def create_default_context(**client_kwargs: Any) -> GuardrailLLMContext:
    """Create a context backed by a fresh ``AsyncOpenAI`` client."""
    from openai import AsyncOpenAI

    return GuardrailLLMContext(guardrail_llm=AsyncOpenAI(**client_kwargs))


def validate_guardrail_context(guardrail: ConfiguredGuardrail, ctx: Any) -> None:
    """
    Validate a context against a guardrail's declared requirements.

    Raises:
        ContextValidationError: If ``ctx`` does not satisfy the validator
    """
    try:
        guardrail.definition.context_validator.parse(ctx)
    except Exception as e:
        raise ContextValidationError(
            f"Context for '{guardrail.name}' guardrail does not satisfy its "
            f"requirements ({type(ctx).__name__}): {e}"
        ) from e
