"""
In-memory catalog of guardrail specifications.

The registry is the authoritative source of check definitions for a
client. A process-wide ``default_spec_registry`` holds the built-in
checks; tests and embedders can build isolated registries instead.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from pydantic import BaseModel

from guardpipe.core.exceptions import GuardrailNotFoundError
from guardpipe.core.models import TEXT_PLAIN, GuardrailBundle
from guardpipe.safety.spec import (
    NO_CONFIG,
    NO_CONTEXT_REQUIREMENTS,
    CheckFn,
    ConfiguredGuardrail,
    GuardrailSpec,
    SpecMetadata,
    Validator,
    as_validator,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class SpecSummary:
    """Serializable description of a registered guardrail."""

    name: str
    description: str
    media_type: str
    has_config: bool
    has_context: bool
    metadata: SpecMetadata

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "media_type": self.media_type,
            "has_config": self.has_config,
            "has_context": self.has_context,
            "metadata": {
                "engine": self.metadata.engine,
                "uses_conversation_history": self.metadata.uses_conversation_history,
                **self.metadata.extra,
            },
        }


class GuardrailRegistry:
    """Registry of guardrail specifications keyed by name."""

    def __init__(self) -> None:
        self._specs: dict[str, GuardrailSpec] = {}

    def register(
        self,
        name: str,
        check_fn: CheckFn,
        description: str,
        media_type: str = TEXT_PLAIN,
        config_validator: Validator | type[BaseModel] | None = None,
        context_validator: Validator | type[BaseModel] | None = None,
        metadata: SpecMetadata | Mapping[str, Any] | None = None,
    ) -> GuardrailSpec:
        """
        Register a guardrail specification.

        Registering an existing name replaces the previous spec.

        Args:
            name: Unique identifier for the guardrail
            check_fn: ``(ctx, data, config)`` returning a result or awaitable
            description: What the guardrail checks
            media_type: Content type the guardrail applies to
            config_validator: Validator or pydantic model for the config
            context_validator: Validator or pydantic model for the context
            metadata: Engine and conversation-history flags

        Returns:
            The registered spec
        """
        if not name:
            raise ValueError("Guardrail name must be non-empty")

        spec = GuardrailSpec(
            name=name,
            description=description,
            check_fn=check_fn,
            media_type=media_type,
            config_validator=as_validator(config_validator, NO_CONFIG),
            context_validator=as_validator(
                context_validator, NO_CONTEXT_REQUIREMENTS, from_attributes=True
            ),
            metadata=SpecMetadata.from_value(metadata),
        )
        if name in self._specs:
            logger.debug("Replacing registered guardrail", guardrail=name)
        self._specs[name] = spec
        return spec

    def guardrail(
        self,
        name: str,
        description: str,
        media_type: str = TEXT_PLAIN,
        config_validator: Validator | type[BaseModel] | None = None,
        context_validator: Validator | type[BaseModel] | None = None,
        metadata: SpecMetadata | Mapping[str, Any] | None = None,
    ) -> Callable[[CheckFn], CheckFn]:
        """Decorator form of ``register``."""

        def decorator(check_fn: CheckFn) -> CheckFn:
            self.register(
                name,
                check_fn,
                description,
                media_type=media_type,
                config_validator=config_validator,
                context_validator=context_validator,
                metadata=metadata,
            )
            return check_fn

        return decorator

    def get(self, name: str) -> GuardrailSpec | None:
        """Look up a spec by name."""
        return self._specs.get(name)

    def remove(self, name: str) -> bool:
        """Remove a spec; returns False if it was not registered."""
        return self._specs.pop(name, None) is not None

    def has(self, name: str) -> bool:
        """Check if a guardrail is registered."""
        return name in self._specs

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def all(self) -> list[GuardrailSpec]:
        """All specs in registration order."""
        return list(self._specs.values())

    def metadata(self) -> list[SpecSummary]:
        """Summaries of every registered spec."""
        return [
            SpecSummary(
                name=spec.name,
                description=spec.description,
                media_type=spec.media_type,
                has_config=spec.has_config,
                has_context=spec.has_context,
                metadata=spec.metadata,
            )
            for spec in self._specs.values()
        ]

    def instantiate(self, name: str, raw_config: Any = None) -> ConfiguredGuardrail:
        """Build a configured guardrail from a registered name and raw config."""
        spec = self.get(name)
        if spec is None:
            raise GuardrailNotFoundError(name)
        return spec.instantiate(raw_config)

    def instantiate_bundle(self, bundle: GuardrailBundle) -> list[ConfiguredGuardrail]:
        """Instantiate every guardrail of a bundle, in order.

        Fails on the first unknown name or invalid config, so a bundle is
        never partially configured.
        """
        return [self.instantiate(g.name, g.config) for g in bundle.guardrails]


# Process-wide registry used by the built-in checks
default_spec_registry = GuardrailRegistry()
