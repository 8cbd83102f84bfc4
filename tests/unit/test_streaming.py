"""Tests for GuardedStream."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from guardpipe.core.exceptions import GuardrailTripwireTriggered
from guardpipe.core.models import ConversationEntry, GuardrailResult, StreamFinal
from guardpipe.core.streaming import GuardedStream, StreamState


def tripped(reason="bad output"):
    return GuardrailResult(
        tripwire_triggered=True,
        info={"stage_name": "output", "guardrail_name": "Checker", "reason": reason},
    )


def passed():
    return GuardrailResult(tripwire_triggered=False, info={"guardrail_name": "Checker"})


async def chunk_stream(*texts):
    for text in texts:
        yield {"type": "response.output_text.delta", "delta": text}


@pytest.fixture
def client():
    client = MagicMock()
    client.run_stage_guardrails = AsyncMock(return_value=[passed()])
    return client


def make_stream(client, *texts, **kwargs):
    return GuardedStream(
        client,
        chunk_stream(*texts),
        preflight_results=[],
        input_results=[passed()],
        **kwargs,
    )


async def drain(stream):
    """Collect items until the stream ends or raises."""
    items = []
    error = None
    try:
        async for item in stream:
            items.append(item)
    except GuardrailTripwireTriggered as e:
        error = e
    return items, error


class TestGuardedStream:
    """Tests for periodic and final output checks."""

    def test_rejects_non_positive_interval(self, client):
        with pytest.raises(ValueError):
            make_stream(client, "a", check_interval=0)

    @pytest.mark.asyncio
    async def test_periodic_and_final_checks(self, client):
        stream = make_stream(client, "a", "b", "c", check_interval=2)

        items, error = await drain(stream)

        assert error is None
        assert client.run_stage_guardrails.await_count == 2
        assert len(items) == 4
        assert [i.llm_response["delta"] for i in items[:3]] == ["a", "b", "c"]
        final = items[-1]
        assert isinstance(final.llm_response, StreamFinal)
        assert final.llm_response.accumulated_text == "abc"
        assert final.guardrail_results.output == [passed()]
        assert stream.state == StreamState.FINALIZED
        assert stream.chunk_count == 3

    @pytest.mark.asyncio
    async def test_one_periodic_check_plus_final(self, client):
        stream = make_stream(client, "hi", " there", "!", check_interval=2)

        items, _ = await drain(stream)

        checked = [c.args[1] for c in client.run_stage_guardrails.await_args_list]
        assert checked == ["hi there", "hi there!"]
        assert len(items) == 4

    @pytest.mark.asyncio
    async def test_checkpoint_sees_accumulated_text(self, client):
        history = [ConversationEntry.user("question")]
        stream = make_stream(
            client, "ab", "cd", check_interval=1, conversation_history=history
        )

        await drain(stream)

        first_call = client.run_stage_guardrails.await_args_list[0]
        assert first_call.args[0] == "output"
        assert first_call.args[1] == "ab"
        assert first_call.args[2] == [
            ConversationEntry.user("question"),
            ConversationEntry.assistant("ab"),
        ]
        assert client.run_stage_guardrails.await_args_list[-1].args[1] == "abcd"

    @pytest.mark.asyncio
    async def test_chunks_carry_only_prior_results(self, client):
        stream = make_stream(client, "a", check_interval=5)

        items, _ = await drain(stream)

        assert items[0].guardrail_results.output == []
        assert items[0].guardrail_results.input == [passed()]

    @pytest.mark.asyncio
    async def test_periodic_trip_stops_stream(self, client):
        result = tripped()
        client.run_stage_guardrails.side_effect = GuardrailTripwireTriggered(result)
        stream = make_stream(client, "a", "b", "c", "d", check_interval=2)

        items, error = await drain(stream)

        assert error is not None
        assert error.guardrail_result is result
        # Two forwarded chunks plus one synthetic tripped item
        assert len(items) == 3
        assert [i.llm_response["delta"] for i in items[:2]] == ["a", "b"]
        assert all(i.guardrail_results.output == [] for i in items[:2])
        assert isinstance(items[2].llm_response, StreamFinal)
        assert items[2].llm_response.accumulated_text == "ab"
        assert items[2].guardrail_results.output == [result]
        assert stream.state == StreamState.TRIPPED
        assert client.run_stage_guardrails.await_count == 1

    @pytest.mark.asyncio
    async def test_final_trip_yields_then_raises(self, client):
        result = tripped("final")
        client.run_stage_guardrails.side_effect = GuardrailTripwireTriggered(result)
        stream = make_stream(client, "a", "b", check_interval=10)

        items, error = await drain(stream)

        assert error is not None
        assert len(items) == 3
        assert isinstance(items[-1].llm_response, StreamFinal)
        assert items[-1].guardrail_results.output == [result]
        assert stream.state == StreamState.TRIPPED

    @pytest.mark.asyncio
    async def test_suppressed_stream_skips_final_check(self, client):
        stream = make_stream(client, "a", "b", "c", check_interval=2, suppress_tripwire=True)

        items, error = await drain(stream)

        assert error is None
        assert len(items) == 3
        assert client.run_stage_guardrails.await_count == 1
        assert client.run_stage_guardrails.await_args.kwargs["suppress_tripwire"] is True
        assert stream.state == StreamState.FINALIZED

    @pytest.mark.asyncio
    async def test_empty_stream_skips_final_check(self, client):
        stream = make_stream(client, "", "", check_interval=1)

        items, error = await drain(stream)

        assert error is None
        assert len(items) == 2
        client.run_stage_guardrails.assert_not_awaited()
        assert stream.chunk_count == 0
