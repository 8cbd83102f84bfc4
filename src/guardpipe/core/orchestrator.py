"""
Guardrail orchestrator - runs pipeline stages around an LLM call.

Provides:
- Pipeline setup from configuration against a registry
- Concurrent, order-preserving stage execution
- Fail-open / fail-closed handling of check failures
- Tripwire selection by declared order
- Pre-flight masking, input checks concurrent with the model call
- Direct and streaming output checks
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from guardpipe.core.config import get_settings
from guardpipe.core.exceptions import GuardrailTripwireTriggered
from guardpipe.core.models import (
    STAGE_NAMES,
    TEXT_PLAIN,
    ConversationEntry,
    GuardrailResult,
    GuardrailResults,
    GuardrailsResponse,
    PipelineConfig,
    StageName,
)
from guardpipe.core.preflight import apply_preflight_modifications
from guardpipe.core.streaming import GuardedStream
from guardpipe.safety.registry import GuardrailRegistry, default_spec_registry
from guardpipe.safety.runtime import load_pipeline_bundles
from guardpipe.safety.spec import ConfiguredGuardrail
from guardpipe.utils.content import (
    extract_latest_user_text_message,
    extract_response_text,
    filter_to_text_only,
)
from guardpipe.utils.context import (
    GuardrailLLMContext,
    create_context_with_conversation,
    create_default_context,
    validate_guardrail_context,
)
from guardpipe.utils.conversation import append_llm_response, normalize_conversation
from guardpipe.utils.logging import StageLogger

logger = structlog.get_logger()

LLMCall = Callable[[Any], Awaitable[Any]]


@dataclass
class StageGuardrails:
    """Configured guardrails per pipeline stage, in declared order."""

    pre_flight: list[ConfiguredGuardrail] = field(default_factory=list)
    input: list[ConfiguredGuardrail] = field(default_factory=list)
    output: list[ConfiguredGuardrail] = field(default_factory=list)

    def for_stage(self, stage_name: StageName) -> list[ConfiguredGuardrail]:
        """Get the guardrails of a stage."""
        if stage_name not in STAGE_NAMES:
            raise ValueError(f"Unknown stage: {stage_name}")
        return getattr(self, stage_name)

    def all(self) -> list[ConfiguredGuardrail]:
        """Every configured guardrail across stages."""
        return [*self.pre_flight, *self.input, *self.output]

    @classmethod
    def from_pipeline(
        cls,
        pipeline: PipelineConfig,
        registry: GuardrailRegistry,
    ) -> "StageGuardrails":
        """Instantiate every stage; fails on the first bad entry."""
        stages: dict[str, list[ConfiguredGuardrail]] = {}
        for stage_name in STAGE_NAMES:
            bundle = pipeline.bundle(stage_name)
            stages[stage_name] = registry.instantiate_bundle(bundle) if bundle else []
        return cls(**stages)


async def _discard(task: asyncio.Task) -> None:
    """Cancel a model call whose response will never be used and wait for it."""
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        try:
            await task
        except Exception as e:
            # The turn already failed in the input stage; this outcome is unused.
            logger.debug("Discarded model call failed", error=str(e))


class GuardrailsClient:
    """
    Runs guardrail pipelines around LLM calls.

    A client is built once from a pipeline configuration and reused across
    turns; its configured guardrails and shared context are read-only.
    """

    def __init__(
        self,
        pipeline: PipelineConfig,
        guardrails: StageGuardrails,
        context: Any,
        raise_guardrail_errors: bool = False,
        stream_check_interval: int = 100,
    ):
        self.pipeline = pipeline
        self.guardrails = guardrails
        self.context = context
        self.raise_guardrail_errors = raise_guardrail_errors
        self.stream_check_interval = stream_check_interval

    @classmethod
    def create(
        cls,
        config: PipelineConfig | Mapping[str, Any] | str | Path | None = None,
        context: Any = None,
        registry: GuardrailRegistry | None = None,
        raise_guardrail_errors: bool | None = None,
        stream_check_interval: int | None = None,
    ) -> "GuardrailsClient":
        """
        Build a client from pipeline configuration.

        Args:
            config: Pipeline config object, mapping, JSON string or file path;
                defaults to the ``pipeline_config`` setting
            context: Shared guardrail context; a default OpenAI-backed
                context is created when a configured guardrail needs one
            registry: Registry to resolve names (default registry if None)
            raise_guardrail_errors: Fail closed on check execution errors
            stream_check_interval: Chunks between streaming checkpoints

        Raises:
            GuardrailNotFoundError: A configured name is not registered
            GuardrailConfigError: A config fails validation
            ContextValidationError: The context misses a requirement
        """
        settings = get_settings()
        if config is None:
            if settings.pipeline_config is None:
                raise ValueError("No pipeline configuration given and none configured")
            config = settings.pipeline_config

        pipeline = load_pipeline_bundles(config)
        guardrails = StageGuardrails.from_pipeline(pipeline, registry or default_spec_registry)

        if context is None:
            needs_llm = any(g.definition.has_context for g in guardrails.all())
            context = create_default_context() if needs_llm else GuardrailLLMContext()

        for guardrail in guardrails.all():
            validate_guardrail_context(guardrail, context)

        client = cls(
            pipeline=pipeline,
            guardrails=guardrails,
            context=context,
            raise_guardrail_errors=(
                settings.raise_guardrail_errors
                if raise_guardrail_errors is None
                else raise_guardrail_errors
            ),
            stream_check_interval=stream_check_interval or settings.stream_check_interval,
        )
        logger.info(
            "Guardrails client initialized",
            pre_flight=len(guardrails.pre_flight),
            input=len(guardrails.input),
            output=len(guardrails.output),
        )
        return client

    # ---- stage execution -------------------------------------------------

    @staticmethod
    def should_run_guardrail(guardrail: ConfiguredGuardrail, detected_content_type: str) -> bool:
        """Exact media-type match; no wildcards or type hierarchy."""
        return guardrail.definition.media_type == detected_content_type

    def _stage_context(
        self,
        guardrails: Sequence[ConfiguredGuardrail],
        conversation_history: Sequence[Any] | None,
    ) -> Any:
        needs_history = any(g.uses_conversation_history for g in guardrails)
        if not needs_history or conversation_history is None:
            return self.context
        history = filter_to_text_only(normalize_conversation(conversation_history))
        base = self.context if isinstance(self.context, GuardrailLLMContext) else (
            GuardrailLLMContext(guardrail_llm=getattr(self.context, "guardrail_llm", None))
        )
        return create_context_with_conversation(base, history)

    async def _run_one(
        self,
        guardrail: ConfiguredGuardrail,
        ctx: Any,
        text: str,
        stamp: dict[str, Any],
    ) -> GuardrailResult:
        try:
            result = await guardrail.run(ctx, text)
            return result.with_info(**stamp)
        except Exception as e:
            logger.error(
                "Guardrail execution failed",
                guardrail=guardrail.name,
                stage=stamp["stage_name"],
                error=str(e),
                error_type=type(e).__name__,
            )
            return GuardrailResult(
                tripwire_triggered=False,
                execution_failed=True,
                original_exception=e,
                info={"checked_text": text, "error": str(e), **stamp},
            )

    async def run_stage_guardrails(
        self,
        stage_name: StageName,
        text: str,
        conversation_history: Sequence[Any] | None = None,
        suppress_tripwire: bool = False,
        raise_guardrail_errors: bool | None = None,
    ) -> list[GuardrailResult]:
        """
        Run every guardrail of a stage against ``text``.

        All compatible guardrails run concurrently and always complete; the
        tripwire, if any, is raised only once every result is in.

        Args:
            stage_name: ``pre_flight``, ``input`` or ``output``
            text: Text payload to check
            conversation_history: Conversation for history-aware guardrails
            suppress_tripwire: Return tripped results instead of raising
            raise_guardrail_errors: Re-raise execution failures; defaults to
                the client setting

        Returns:
            Results in declared order

        Raises:
            GuardrailTripwireTriggered: First tripped result by declared order
        """
        configured = self.guardrails.for_stage(stage_name)
        if not configured:
            return []

        if raise_guardrail_errors is None:
            raise_guardrail_errors = self.raise_guardrail_errors

        # Only text is detected today
        detected_content_type = TEXT_PLAIN
        compatible = [g for g in configured if self.should_run_guardrail(g, detected_content_type)]
        skipped = [g.name for g in configured if not self.should_run_guardrail(g, detected_content_type)]
        if skipped:
            logger.warning(
                "Guardrails skipped due to content type mismatch",
                stage=stage_name,
                detected_content_type=detected_content_type,
                skipped=skipped,
            )
        if not compatible:
            return []

        ctx = self._stage_context(compatible, conversation_history)

        with StageLogger(logger, stage_name, guardrails=len(compatible)):
            results = list(
                await asyncio.gather(
                    *(
                        self._run_one(
                            g,
                            ctx,
                            text,
                            {
                                "stage_name": stage_name,
                                "guardrail_name": g.name,
                                "media_type": g.definition.media_type,
                                "detected_content_type": detected_content_type,
                            },
                        )
                        for g in compatible
                    )
                )
            )

            if raise_guardrail_errors:
                for result in results:
                    if result.execution_failed and result.original_exception is not None:
                        logger.debug(
                            "Re-raising guardrail execution error",
                            guardrail=result.guardrail_name,
                        )
                        raise result.original_exception

            if not suppress_tripwire:
                for result in results:
                    if result.tripwire_triggered:
                        logger.warning(
                            "Guardrail tripwire triggered",
                            stage=stage_name,
                            guardrail=result.guardrail_name,
                            reason=result.reason,
                        )
                        raise GuardrailTripwireTriggered(result)

        return results

    # ---- turn handling ---------------------------------------------------

    def apply_preflight_modifications(
        self,
        data: str | list[Any],
        preflight_results: Sequence[GuardrailResult],
    ) -> str | list[Any]:
        """Mask entities detected in pre-flight; see ``guardpipe.core.preflight``."""
        return apply_preflight_modifications(data, preflight_results)

    async def handle_llm_response(
        self,
        llm_response: Any,
        preflight_results: list[GuardrailResult],
        input_results: list[GuardrailResult],
        conversation_history: Sequence[ConversationEntry] | None = None,
        suppress_tripwire: bool = False,
    ) -> GuardrailsResponse:
        """Run output guardrails on a complete response and decorate it."""
        complete_conversation = append_llm_response(conversation_history, llm_response)
        output_results = await self.run_stage_guardrails(
            "output",
            extract_response_text(llm_response),
            complete_conversation,
            suppress_tripwire=suppress_tripwire,
        )
        return GuardrailsResponse(
            llm_response=llm_response,
            guardrail_results=GuardrailResults(
                preflight=preflight_results,
                input=input_results,
                output=output_results,
            ),
        )

    def stream_with_guardrails(
        self,
        llm_stream: Any,
        preflight_results: list[GuardrailResult],
        input_results: list[GuardrailResult],
        conversation_history: Sequence[ConversationEntry] | None = None,
        check_interval: int | None = None,
        suppress_tripwire: bool = False,
    ) -> GuardedStream:
        """Wrap an LLM stream with periodic and final output checks."""
        return GuardedStream(
            self,
            llm_stream,
            preflight_results,
            input_results,
            conversation_history=conversation_history,
            check_interval=check_interval or self.stream_check_interval,
            suppress_tripwire=suppress_tripwire,
        )

    async def run(
        self,
        payload: str | list[Any],
        llm_call: LLMCall,
        stream: bool = False,
        suppress_tripwire: bool = False,
        conversation_history: Sequence[Any] | None = None,
    ) -> GuardrailsResponse | GuardedStream:
        """
        Run one guarded turn.

        Pre-flight runs first and may mask the payload; the input stage then
        runs concurrently with ``llm_call(modified_payload)``. If input trips
        the model call is discarded and never reaches output guardrails.

        Args:
            payload: Text or message list sent to the model
            llm_call: Async callable performing the model call; returns a
                response, or an async iterable of chunks when streaming
            stream: Treat the model result as a chunk stream
            suppress_tripwire: Report violations without raising
            conversation_history: Earlier turns to prepend to the payload

        Returns:
            A decorated response, or a ``GuardedStream`` when streaming
        """
        if isinstance(payload, str):
            latest_message = payload
        else:
            latest_message, _ = extract_latest_user_text_message(payload)

        conversation = normalize_conversation(conversation_history)
        conversation.extend(normalize_conversation(payload))

        preflight_results = await self.run_stage_guardrails(
            "pre_flight", latest_message, conversation, suppress_tripwire=suppress_tripwire
        )
        modified_payload = self.apply_preflight_modifications(payload, preflight_results)

        llm_task = asyncio.ensure_future(llm_call(modified_payload))
        try:
            input_results = await self.run_stage_guardrails(
                "input", latest_message, conversation, suppress_tripwire=suppress_tripwire
            )
        except BaseException:
            await _discard(llm_task)
            raise
        llm_response = await llm_task

        if stream:
            return self.stream_with_guardrails(
                llm_response,
                preflight_results,
                input_results,
                conversation_history=conversation,
                suppress_tripwire=suppress_tripwire,
            )
        return await self.handle_llm_response(
            llm_response,
            preflight_results,
            input_results,
            conversation_history=conversation,
            suppress_tripwire=suppress_tripwire,
        )
