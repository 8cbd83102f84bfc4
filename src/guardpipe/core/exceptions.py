"""
Exception hierarchy for guardpipe.

Configuration errors are fatal at setup time, tripwires abort the current
turn, and execution failures of individual checks are only raised when the
caller opts into fail-closed behaviour.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from guardpipe.core.models import GuardrailResult


class GuardrailError(Exception):
    """Base exception for guardrail errors."""


class GuardrailConfigError(GuardrailError):
    """Raised when a pipeline or guardrail configuration is invalid."""

    def __init__(self, message: str, guardrail_name: str | None = None):
        super().__init__(message)
        self.guardrail_name = guardrail_name


class GuardrailNotFoundError(GuardrailConfigError):
    """Raised when a configured guardrail name is not in the registry."""

    def __init__(self, guardrail_name: str):
        super().__init__(
            f"Guardrail '{guardrail_name}' not found in registry",
            guardrail_name=guardrail_name,
        )


class ContextValidationError(GuardrailError):
    """Raised when a runtime context does not satisfy a guardrail's requirements."""


class GuardrailTripwireTriggered(GuardrailError):
    """Raised when a guardrail flags content as violating policy."""

    def __init__(self, guardrail_result: GuardrailResult):
        self.guardrail_result = guardrail_result
        message = (
            f"Guardrail '{self.guardrail_name}' triggered tripwire "
            f"in stage '{self.stage_name}'"
        )
        if guardrail_result.reason:
            message = f"{message}: {guardrail_result.reason}"
        super().__init__(message)

    @property
    def stage_name(self) -> str | None:
        return self.guardrail_result.stage_name

    @property
    def guardrail_name(self) -> str | None:
        return self.guardrail_result.guardrail_name


class GuardrailValidationError(GuardrailError):
    """Raised by ``check_plain_text`` when one or more guardrails trip."""

    def __init__(self, guardrail_results: list[GuardrailResult]):
        self.guardrail_results = guardrail_results
        super().__init__(
            f"Content validation failed: {len(guardrail_results)} "
            "security violation(s) detected"
        )
