"""
Core data models for guardpipe.

Defines the result, configuration and conversation types shared by the
registry, the stage orchestrator and the streaming checker.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from guardpipe.utils.usage import TokenUsageSummary, aggregate_token_usage

TEXT_PLAIN = "text/plain"

StageName = Literal["pre_flight", "input", "output"]

STAGE_NAMES: tuple[StageName, ...] = ("pre_flight", "input", "output")


class InfoKey(str, Enum):
    """Well-known keys of ``GuardrailResult.info``."""

    STAGE_NAME = "stage_name"
    GUARDRAIL_NAME = "guardrail_name"
    MEDIA_TYPE = "media_type"
    DETECTED_CONTENT_TYPE = "detected_content_type"
    DETECTED_ENTITIES = "detected_entities"
    CONFIDENCE = "confidence"
    REASON = "reason"
    CHECKED_TEXT = "checked_text"
    ERROR = "error"
    TOKEN_USAGE = "token_usage"


def merge_info(info: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    """Return a new info map with ``extra`` filled in under ``info``.

    Keys already present in ``info`` win; ``extra`` only adds missing keys.
    """
    return {**extra, **info}


@dataclass(frozen=True)
class GuardrailResult:
    """Outcome of one guardrail check."""

    tripwire_triggered: bool
    info: dict[str, Any] = field(default_factory=dict)
    execution_failed: bool = False
    original_exception: BaseException | None = None

    @property
    def stage_name(self) -> str | None:
        return self.info.get(InfoKey.STAGE_NAME.value)

    @property
    def guardrail_name(self) -> str | None:
        return self.info.get(InfoKey.GUARDRAIL_NAME.value)

    @property
    def confidence(self) -> float | None:
        return self.info.get(InfoKey.CONFIDENCE.value)

    @property
    def reason(self) -> str | None:
        return self.info.get(InfoKey.REASON.value)

    @property
    def detected_entities(self) -> dict[str, list[str]]:
        return self.info.get(InfoKey.DETECTED_ENTITIES.value) or {}

    def with_info(self, **extra: Any) -> GuardrailResult:
        """Copy of this result with ``extra`` merged in without overwriting."""
        return replace(self, info=merge_info(self.info, extra))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data: dict[str, Any] = {
            "tripwire_triggered": self.tripwire_triggered,
            "info": self.info,
        }
        if self.execution_failed:
            data["execution_failed"] = True
            data["error"] = repr(self.original_exception)
        return data


class GuardrailConfig(BaseModel):
    """A single guardrail entry inside a bundle."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class GuardrailBundle(BaseModel):
    """Ordered list of guardrails for one stage."""

    model_config = ConfigDict(frozen=True)

    version: int | None = None
    stage_name: str | None = None
    guardrails: list[GuardrailConfig] = Field(default_factory=list)


class PipelineConfig(BaseModel):
    """Guardrail bundles for every pipeline stage.

    Unknown top-level keys are rejected so that a misspelled stage name
    fails at setup instead of silently disabling a stage.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int | None = None
    pre_flight: GuardrailBundle | None = None
    input: GuardrailBundle | None = None
    output: GuardrailBundle | None = None

    def bundle(self, stage_name: StageName) -> GuardrailBundle | None:
        """Get the bundle for a stage."""
        return getattr(self, stage_name)


class ConversationEntry(BaseModel):
    """One normalized conversation message."""

    model_config = ConfigDict(frozen=True)

    role: str
    content: str | list[dict[str, Any]]

    @classmethod
    def user(cls, content: str) -> "ConversationEntry":
        """Create a user entry."""
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "ConversationEntry":
        """Create an assistant entry."""
        return cls(role="assistant", content=content)


@dataclass
class GuardrailResults:
    """Guardrail results organized by pipeline stage."""

    preflight: list[GuardrailResult] = field(default_factory=list)
    input: list[GuardrailResult] = field(default_factory=list)
    output: list[GuardrailResult] = field(default_factory=list)

    @property
    def all_results(self) -> list[GuardrailResult]:
        """All results, pre-flight first."""
        return [*self.preflight, *self.input, *self.output]

    @property
    def tripwires_triggered(self) -> bool:
        """Check if any guardrail tripped."""
        return any(r.tripwire_triggered for r in self.all_results)

    @property
    def triggered_results(self) -> list[GuardrailResult]:
        """Only the results that tripped."""
        return [r for r in self.all_results if r.tripwire_triggered]

    @property
    def total_token_usage(self) -> TokenUsageSummary:
        """Token usage summed over every result that reported it."""
        return aggregate_token_usage(r.info for r in self.all_results)


@dataclass(frozen=True)
class StreamFinal:
    """Synthetic payload emitted at the end of a guarded stream."""

    accumulated_text: str
    type: str = "final"


@dataclass
class GuardrailsResponse:
    """An LLM response (or stream chunk) decorated with guardrail results.

    Attribute access falls through to the wrapped response, so callers can
    read ``response.choices`` or ``response.output_text`` as usual.
    """

    llm_response: Any
    guardrail_results: GuardrailResults

    def __getattr__(self, name: str) -> Any:
        # Only reached for attributes not defined on the dataclass itself.
        if name.startswith("__") or name in ("llm_response", "guardrail_results"):
            raise AttributeError(name)
        return getattr(self.llm_response, name)
