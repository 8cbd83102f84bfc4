"""
Guardrail specifications and configured guardrails.

A ``GuardrailSpec`` is the immutable, registered description of a check:
its name, media type, validators and check function. Instantiating a spec
with raw configuration produces a ``ConfiguredGuardrail`` that pipelines
execute.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar, Union

from pydantic import BaseModel

from guardpipe.core.exceptions import GuardrailConfigError
from guardpipe.core.models import TEXT_PLAIN, GuardrailResult

TContext = TypeVar("TContext")
TIn = TypeVar("TIn")
TCfg = TypeVar("TCfg")

CheckFn = Callable[
    [TContext, TIn, TCfg],
    Union[GuardrailResult, Awaitable[GuardrailResult]],
]


class Validator(Protocol):
    """Anything that normalizes a value or raises on invalid input."""

    def parse(self, value: Any) -> Any: ...


class ModelValidator:
    """Adapts a pydantic model class to the ``Validator`` protocol."""

    def __init__(self, model: type[BaseModel], from_attributes: bool = False):
        self.model = model
        self.from_attributes = from_attributes

    def parse(self, value: Any) -> BaseModel:
        if isinstance(value, self.model):
            return value
        return self.model.model_validate(value, from_attributes=self.from_attributes)

    def json_schema(self) -> dict[str, Any]:
        return self.model.model_json_schema()

    def __repr__(self) -> str:
        return f"ModelValidator({self.model.__name__})"


class _EmptyConfig:
    """Accepts any mapping and passes it through as a dict."""

    def parse(self, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise TypeError(f"config must be a mapping, got {type(value).__name__}")
        return dict(value)

    def __repr__(self) -> str:
        return "NO_CONFIG"


class _EmptyContext:
    """Accepts any context unchanged."""

    def parse(self, value: Any) -> Any:
        return value

    def __repr__(self) -> str:
        return "NO_CONTEXT_REQUIREMENTS"


NO_CONFIG: Validator = _EmptyConfig()
NO_CONTEXT_REQUIREMENTS: Validator = _EmptyContext()


def as_validator(
    validator: Validator | type[BaseModel] | None,
    default: Validator,
    from_attributes: bool = False,
) -> Validator:
    """Resolve a validator argument, wrapping pydantic models."""
    if validator is None:
        return default
    if isinstance(validator, type) and issubclass(validator, BaseModel):
        return ModelValidator(validator, from_attributes=from_attributes)
    if not callable(getattr(validator, "parse", None)):
        raise TypeError(f"validator must expose parse(value): {validator!r}")
    return validator


@dataclass(frozen=True)
class SpecMetadata:
    """Descriptive metadata attached to a guardrail spec."""

    engine: str | None = None
    uses_conversation_history: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_value(cls, value: "SpecMetadata | Mapping[str, Any] | None") -> "SpecMetadata":
        if value is None:
            return cls()
        if isinstance(value, SpecMetadata):
            return value
        data = dict(value)
        return cls(
            engine=data.pop("engine", None),
            uses_conversation_history=bool(data.pop("uses_conversation_history", False)),
            extra=data,
        )


@dataclass(frozen=True)
class GuardrailSpec(Generic[TContext, TIn, TCfg]):
    """Immutable descriptor for a registered guardrail.

    Only guardrails whose ``media_type`` equals the detected content type
    of the payload are executed; use ``text/plain`` for text checks.
    """

    name: str
    description: str
    check_fn: CheckFn
    media_type: str = TEXT_PLAIN
    config_validator: Validator = NO_CONFIG
    context_validator: Validator = NO_CONTEXT_REQUIREMENTS
    metadata: SpecMetadata = field(default_factory=SpecMetadata)

    @property
    def has_config(self) -> bool:
        return self.config_validator is not NO_CONFIG

    @property
    def has_context(self) -> bool:
        return self.context_validator is not NO_CONTEXT_REQUIREMENTS

    def schema(self) -> dict[str, Any]:
        """JSON schema of the config, when the validator can describe one."""
        describe = getattr(self.config_validator, "json_schema", None)
        if callable(describe):
            return describe()
        return {"type": "object"}

    def validate_config(self, raw_config: Any) -> TCfg:
        """Run the config validator, wrapping failures in ``GuardrailConfigError``."""
        try:
            return self.config_validator.parse(raw_config)
        except Exception as e:
            raise GuardrailConfigError(
                f"Failed to instantiate guardrail '{self.name}': {e}",
                guardrail_name=self.name,
            ) from e

    def instantiate(self, raw_config: Any = None) -> ConfiguredGuardrail[TContext, TIn, TCfg]:
        """Validate ``raw_config`` and bind it into a runnable guardrail."""
        return ConfiguredGuardrail(self, self.validate_config(raw_config))


@dataclass(frozen=True)
class ConfiguredGuardrail(Generic[TContext, TIn, TCfg]):
    """A spec bound to a validated configuration."""

    definition: GuardrailSpec[TContext, TIn, TCfg]
    config: TCfg

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def uses_conversation_history(self) -> bool:
        return self.definition.metadata.uses_conversation_history

    async def run(self, ctx: TContext, data: TIn) -> GuardrailResult:
        """Run the check, awaiting it if the check function is async."""
        result = self.definition.check_fn(ctx, data, self.config)
        if inspect.isawaitable(result):
            result = await result
        return result
