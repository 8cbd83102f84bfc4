"""
Guarded streaming of LLM output.

Output guardrails run every ``check_interval`` text chunks against the
text accumulated so far, and once more over the complete text when the
upstream stream ends. A tripwire is the only way a guardrail interrupts
an in-flight stream.
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Sequence
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from guardpipe.core.exceptions import GuardrailTripwireTriggered
from guardpipe.core.models import (
    ConversationEntry,
    GuardrailResult,
    GuardrailResults,
    GuardrailsResponse,
    StreamFinal,
)
from guardpipe.utils.content import extract_response_text
from guardpipe.utils.conversation import append_assistant_output

if TYPE_CHECKING:
    from guardpipe.core.orchestrator import GuardrailsClient

logger = structlog.get_logger()

DEFAULT_CHECK_INTERVAL = 100


class StreamState(str, Enum):
    """Lifecycle of a guarded stream."""

    STREAMING = "streaming"
    TRIPPED = "tripped"
    FINALIZED = "finalized"


class GuardedStream:
    """
    Async iterator that forwards LLM chunks wrapped with guardrail results.

    Every forwarded item is a ``GuardrailsResponse`` carrying the pre-flight
    and input results. Chunks carry no output results; the synthetic final
    item carries the output results of the last check.
    """

    def __init__(
        self,
        client: GuardrailsClient,
        llm_stream: AsyncIterable[Any],
        preflight_results: Sequence[GuardrailResult],
        input_results: Sequence[GuardrailResult],
        conversation_history: Sequence[ConversationEntry] | None = None,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        suppress_tripwire: bool = False,
    ):
        if check_interval <= 0:
            raise ValueError("check_interval must be positive")
        self.client = client
        self.llm_stream = llm_stream
        self.preflight_results = list(preflight_results)
        self.input_results = list(input_results)
        self.conversation_history = list(conversation_history or [])
        self.check_interval = check_interval
        self.suppress_tripwire = suppress_tripwire

        self.state = StreamState.STREAMING
        self.accumulated_text = ""
        self.chunk_count = 0
        self._iterator: AsyncIterator[GuardrailsResponse] | None = None

    def __aiter__(self) -> AsyncIterator[GuardrailsResponse]:
        if self._iterator is None:
            self._iterator = self._stream()
        return self._iterator

    async def __anext__(self) -> GuardrailsResponse:
        return await self.__aiter__().__anext__()

    def _wrap(self, payload: Any, output: list[GuardrailResult]) -> GuardrailsResponse:
        return GuardrailsResponse(
            llm_response=payload,
            guardrail_results=GuardrailResults(
                preflight=self.preflight_results,
                input=self.input_results,
                output=output,
            ),
        )

    async def _check(self) -> list[GuardrailResult]:
        history = append_assistant_output(self.conversation_history, self.accumulated_text)
        return await self.client.run_stage_guardrails(
            "output",
            self.accumulated_text,
            history,
            suppress_tripwire=self.suppress_tripwire,
        )

    async def _stream(self) -> AsyncIterator[GuardrailsResponse]:
        async for chunk in self.llm_stream:
            tripwire: GuardrailTripwireTriggered | None = None
            text = extract_response_text(chunk)
            if text:
                self.accumulated_text += text
                self.chunk_count += 1

                if self.chunk_count % self.check_interval == 0:
                    logger.debug(
                        "Running streaming checkpoint",
                        chunk_count=self.chunk_count,
                        text_length=len(self.accumulated_text),
                    )
                    try:
                        await self._check()
                    except GuardrailTripwireTriggered as e:
                        tripwire = e

            yield self._wrap(chunk, [])

            if tripwire is not None:
                # Nothing after the checked chunk is forwarded
                self.state = StreamState.TRIPPED
                final = StreamFinal(accumulated_text=self.accumulated_text)
                yield self._wrap(final, [tripwire.guardrail_result])
                raise tripwire

        if self.suppress_tripwire or not self.accumulated_text:
            self.state = StreamState.FINALIZED
            return

        final = StreamFinal(accumulated_text=self.accumulated_text)
        try:
            output_results = await self._check()
        except GuardrailTripwireTriggered as e:
            self.state = StreamState.TRIPPED
            yield self._wrap(final, [e.guardrail_result])
            raise

        self.state = StreamState.FINALIZED
        logger.debug("Guarded stream finalized", chunk_count=self.chunk_count)
        yield self._wrap(final, output_results)
