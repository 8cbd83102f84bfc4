"""
guardpipe - Guardrail pipelines for LLM calls

Validates text going into and coming out of a model call against pluggable
guardrails organized in pre-flight, input and output stages, and stops the
call chain as soon as a guardrail trips.
"""

__version__ = "1.0.0"

from guardpipe.core.orchestrator import GuardrailsClient
from guardpipe.core.exceptions import (
    GuardrailError,
    GuardrailConfigError,
    GuardrailNotFoundError,
    GuardrailTripwireTriggered,
    GuardrailValidationError,
)
from guardpipe.core.models import (
    GuardrailResult,
    GuardrailResults,
    GuardrailsResponse,
    PipelineConfig,
)
from guardpipe.safety.registry import GuardrailRegistry, default_spec_registry

__all__ = [
    "GuardrailsClient",
    "GuardrailError",
    "GuardrailConfigError",
    "GuardrailNotFoundError",
    "GuardrailTripwireTriggered",
    "GuardrailValidationError",
    "GuardrailResult",
    "GuardrailResults",
    "GuardrailsResponse",
    "PipelineConfig",
    "GuardrailRegistry",
    "default_spec_registry",
]
