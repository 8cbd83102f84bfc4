"""Core orchestration components."""

from guardpipe.core.orchestrator import GuardrailsClient, StageGuardrails
from guardpipe.core.streaming import GuardedStream, StreamState
from guardpipe.core.preflight import apply_preflight_modifications
from guardpipe.core.models import (
    ConversationEntry,
    GuardrailResult,
    GuardrailResults,
    GuardrailsResponse,
    PipelineConfig,
)

__all__ = [
    "GuardrailsClient",
    "StageGuardrails",
    "GuardedStream",
    "StreamState",
    "apply_preflight_modifications",
    "ConversationEntry",
    "GuardrailResult",
    "GuardrailResults",
    "GuardrailsResponse",
    "PipelineConfig",
]
