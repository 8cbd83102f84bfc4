"""
Guardrail registry, specifications and built-in checks.

Importing this package registers the built-in guardrails on
``default_spec_registry``.
"""

from guardpipe.safety.spec import (
    ConfiguredGuardrail,
    GuardrailSpec,
    ModelValidator,
    SpecMetadata,
)
from guardpipe.safety.registry import GuardrailRegistry, SpecSummary, default_spec_registry
from guardpipe.safety.runtime import (
    check_plain_text,
    instantiate_guardrails,
    load_config_bundle,
    load_pipeline_bundles,
    run_guardrails,
)
from guardpipe.safety import guardrails, llm  # noqa: F401  (registers built-ins)

__all__ = [
    "ConfiguredGuardrail",
    "GuardrailSpec",
    "ModelValidator",
    "SpecMetadata",
    "GuardrailRegistry",
    "SpecSummary",
    "default_spec_registry",
    "check_plain_text",
    "instantiate_guardrails",
    "load_config_bundle",
    "load_pipeline_bundles",
    "run_guardrails",
]
