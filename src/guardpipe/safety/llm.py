"""
LLM-backed guardrails.

The model is asked to classify the text and answer with JSON; the answer
is parsed into ``LLMOutput`` and compared against a confidence threshold.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from guardpipe.core.models import GuardrailResult
from guardpipe.safety.registry import default_spec_registry
from guardpipe.utils.content import extract_response_text
from guardpipe.utils.context import LLMContextRequirements
from guardpipe.utils.usage import extract_token_usage

logger = structlog.get_logger()

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

OUTPUT_FORMAT_INSTRUCTIONS = (
    "Respond with a JSON object only, of the form "
    '{"flagged": <true|false>, "confidence": <number between 0 and 1>, '
    '"reason": "<short explanation>"}.'
)


class LLMConfig(BaseModel):
    """Configuration for a prompt-driven LLM guardrail."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    model: str = "gpt-4.1-mini"
    system_prompt_details: str = Field(min_length=1)
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)


class LLMOutput(BaseModel):
    """Classification returned by the model."""

    flagged: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str | None = None


def parse_llm_output(raw: str) -> LLMOutput:
    """Parse the model answer, tolerating prose or code fences around the JSON."""
    match = _JSON_OBJECT.search(raw or "")
    if match is None:
        raise ValueError(f"LLM response did not contain a JSON object: {raw[:200]!r}")
    try:
        return LLMOutput.model_validate(json.loads(match.group()))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"Invalid LLM classification output: {e}") from e


async def run_llm(text: str, client: Any, config: LLMConfig) -> tuple[LLMOutput, Any]:
    """Ask ``client`` to classify ``text``; returns the parsed output and raw response."""
    response = await client.chat.completions.create(
        model=config.model,
        messages=[
            {
                "role": "system",
                "content": f"{config.system_prompt_details}\n\n{OUTPUT_FORMAT_INSTRUCTIONS}",
            },
            {"role": "user", "content": text},
        ],
        temperature=0.0,
    )
    return parse_llm_output(extract_response_text(response)), response


async def custom_prompt_check(
    ctx: Any, text: str, config: LLMConfig
) -> GuardrailResult:
    """Trip when the model flags ``text`` with enough confidence."""
    output, response = await run_llm(text, ctx.guardrail_llm, config)
    tripped = output.flagged and output.confidence >= config.confidence_threshold
    logger.debug(
        "LLM guardrail classified text",
        model=config.model,
        flagged=output.flagged,
        confidence=output.confidence,
    )
    return GuardrailResult(
        tripwire_triggered=tripped,
        info={
            "flagged": output.flagged,
            "confidence": output.confidence,
            "threshold": config.confidence_threshold,
            "reason": output.reason,
            "token_usage": extract_token_usage(response).to_dict(),
        },
    )


default_spec_registry.register(
    "Custom Prompt Check",
    custom_prompt_check,
    "Classifies text with an LLM against a user-supplied policy prompt",
    config_validator=LLMConfig,
    context_validator=LLMContextRequirements,
    metadata={"engine": "LLM"},
)
