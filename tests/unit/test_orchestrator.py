"""Tests for GuardrailsClient stage execution and turn handling."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from guardpipe.core.exceptions import (
    ContextValidationError,
    GuardrailConfigError,
    GuardrailNotFoundError,
    GuardrailTripwireTriggered,
)
from guardpipe.core.models import GuardrailResult, GuardrailsResponse
from guardpipe.core.orchestrator import GuardrailsClient, StageGuardrails
from guardpipe.core.streaming import GuardedStream
from guardpipe.safety.guardrails import PIIConfig, pii_check
from guardpipe.safety.registry import GuardrailRegistry
from guardpipe.utils.context import (
    ConversationContext,
    GuardrailLLMContext,
    LLMContextRequirements,
)


def chat_completion(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(role="assistant", content=content))]
    )


@pytest.fixture
def calls():
    return []


@pytest.fixture
def seen_contexts():
    return []


@pytest.fixture
def registry(calls, seen_contexts):
    """Isolated registry with configurable test checks."""
    registry = GuardrailRegistry()

    async def configurable(ctx, data, config):
        await asyncio.sleep(config.get("delay", 0))
        calls.append(config.get("label"))
        seen_contexts.append(ctx)
        if config.get("fail"):
            raise RuntimeError(f"check {config.get('label')} failed")
        return GuardrailResult(
            tripwire_triggered=config.get("trip", False),
            info={"label": config.get("label"), **config.get("info", {})},
        )

    registry.register("Configurable", configurable, "Test check driven by config")
    registry.register(
        "History Aware",
        configurable,
        "Test check reading the conversation",
        metadata={"uses_conversation_history": True},
    )
    registry.register(
        "Image Only",
        configurable,
        "Test check for images",
        media_type="image/png",
    )
    registry.register(
        "Contains PII",
        pii_check,
        "PII detection",
        config_validator=PIIConfig,
    )
    registry.register(
        "Needs LLM",
        configurable,
        "Test check requiring an LLM client",
        context_validator=LLMContextRequirements,
    )
    return registry


def entry(label, name="Configurable", **config):
    return {"name": name, "config": {"label": label, **config}}


def make_client(registry, **stages):
    config = {stage: {"guardrails": entries} for stage, entries in stages.items()}
    return GuardrailsClient.create(
        config,
        context=GuardrailLLMContext(),
        registry=registry,
    )


class TestClientCreate:
    """Tests for building clients from configuration."""

    def test_create_instantiates_every_stage(self, registry):
        client = make_client(
            registry,
            pre_flight=[entry("p")],
            input=[entry("i1"), entry("i2")],
        )

        assert len(client.guardrails.pre_flight) == 1
        assert len(client.guardrails.input) == 2
        assert client.guardrails.output == []
        assert client.raise_guardrail_errors is False
        assert client.stream_check_interval == 100

    def test_unknown_name_fails_at_setup(self, registry, calls):
        with pytest.raises(GuardrailNotFoundError):
            make_client(registry, input=[entry("a"), {"name": "Missing", "config": {}}])
        assert calls == []

    def test_invalid_config_fails_at_setup(self, registry):
        with pytest.raises(GuardrailConfigError):
            make_client(
                registry,
                pre_flight=[{"name": "Contains PII", "config": {"entities": ["NOPE"]}}],
            )

    def test_unknown_stage_rejected(self, registry):
        with pytest.raises(GuardrailConfigError):
            GuardrailsClient.create(
                {"inputs": {"guardrails": []}},
                context=GuardrailLLMContext(),
                registry=registry,
            )

    def test_context_requirements_validated(self, registry):
        with pytest.raises(ContextValidationError):
            make_client(registry, input=[entry("llm", name="Needs LLM")])

    def test_custom_context_validator_errors_are_wrapped(self, registry):
        class TenantValidator:
            def parse(self, value):
                return value.tenant_id

        registry.register(
            "Tenant Scoped",
            lambda ctx, data, config: GuardrailResult(tripwire_triggered=False),
            "Test check requiring a tenant",
            context_validator=TenantValidator(),
        )

        with pytest.raises(ContextValidationError, match="Tenant Scoped"):
            make_client(registry, input=[{"name": "Tenant Scoped", "config": {}}])

    def test_default_context_created_when_required(self, registry):
        llm = MagicMock()
        with patch(
            "guardpipe.core.orchestrator.create_default_context",
            return_value=GuardrailLLMContext(guardrail_llm=llm),
        ) as factory:
            client = GuardrailsClient.create(
                {"input": {"guardrails": [entry("llm", name="Needs LLM")]}},
                registry=registry,
            )

        factory.assert_called_once()
        assert client.context.guardrail_llm is llm

    def test_plain_context_without_requirements(self, registry):
        with patch("guardpipe.core.orchestrator.create_default_context") as factory:
            client = GuardrailsClient.create(
                {"input": {"guardrails": [entry("a")]}},
                registry=registry,
            )

        factory.assert_not_called()
        assert client.context == GuardrailLLMContext()

    def test_explicit_overrides(self, registry):
        client = GuardrailsClient.create(
            {"input": {"guardrails": [entry("a")]}},
            context=GuardrailLLMContext(),
            registry=registry,
            raise_guardrail_errors=True,
            stream_check_interval=5,
        )

        assert client.raise_guardrail_errors is True
        assert client.stream_check_interval == 5

    def test_stage_guardrails_rejects_unknown_stage(self):
        with pytest.raises(ValueError):
            StageGuardrails().for_stage("postflight")


class TestRunStageGuardrails:
    """Tests for concurrent stage execution."""

    @pytest.mark.asyncio
    async def test_empty_stage_returns_empty_list(self, registry):
        client = make_client(registry, input=[entry("a")])

        assert await client.run_stage_guardrails("output", "text") == []

    @pytest.mark.asyncio
    async def test_results_keep_declared_order(self, registry, calls):
        client = make_client(
            registry,
            input=[
                entry("slow", delay=0.05),
                entry("medium", delay=0.02),
                entry("fast"),
            ],
        )

        results = await client.run_stage_guardrails("input", "text")

        assert [r.info["label"] for r in results] == ["slow", "medium", "fast"]
        assert calls == ["fast", "medium", "slow"]

    @pytest.mark.asyncio
    async def test_first_declared_tripwire_surfaces(self, registry, calls):
        client = make_client(
            registry,
            input=[
                entry("first", trip=True, delay=0.03, info={"reason": "first hit"}),
                entry("second", trip=True),
            ],
        )

        with pytest.raises(GuardrailTripwireTriggered) as exc_info:
            await client.run_stage_guardrails("input", "text")

        assert exc_info.value.guardrail_result.info["label"] == "first"
        assert exc_info.value.stage_name == "input"
        assert exc_info.value.guardrail_name == "Configurable"
        assert str(exc_info.value) == (
            "Guardrail 'Configurable' triggered tripwire in stage 'input': first hit"
        )
        # No short-circuit: the second trip was still computed
        assert sorted(calls) == ["first", "second"]

    @pytest.mark.asyncio
    async def test_suppress_tripwire_returns_results(self, registry):
        client = make_client(registry, input=[entry("a", trip=True), entry("b")])

        results = await client.run_stage_guardrails("input", "text", suppress_tripwire=True)

        assert [r.tripwire_triggered for r in results] == [True, False]

    @pytest.mark.asyncio
    async def test_execution_failure_is_fail_open(self, registry):
        client = make_client(registry, input=[entry("ok"), entry("bad", fail=True)])

        results = await client.run_stage_guardrails("input", "the text")

        failed = results[1]
        assert failed.execution_failed is True
        assert failed.tripwire_triggered is False
        assert isinstance(failed.original_exception, RuntimeError)
        assert failed.info["checked_text"] == "the text"
        assert failed.info["error"] == "check bad failed"
        assert failed.guardrail_name == "Configurable"
        assert failed.stage_name == "input"
        assert results[0].execution_failed is False

    @pytest.mark.asyncio
    async def test_raise_guardrail_errors_fails_closed(self, registry):
        client = make_client(registry, input=[entry("bad", fail=True)])

        with pytest.raises(RuntimeError, match="check bad failed"):
            await client.run_stage_guardrails("input", "text", raise_guardrail_errors=True)

    @pytest.mark.asyncio
    async def test_errors_raised_before_tripwires(self, registry):
        client = make_client(registry, input=[entry("trip", trip=True), entry("bad", fail=True)])
        client.raise_guardrail_errors = True

        with pytest.raises(RuntimeError):
            await client.run_stage_guardrails("input", "text")

    @pytest.mark.asyncio
    async def test_media_type_mismatch_skipped(self, registry, calls):
        client = make_client(
            registry,
            input=[entry("image", name="Image Only"), entry("text")],
        )

        results = await client.run_stage_guardrails("input", "text")

        assert [r.info["label"] for r in results] == ["text"]
        assert calls == ["text"]

    @pytest.mark.asyncio
    async def test_all_incompatible_returns_empty(self, registry):
        client = make_client(registry, input=[entry("image", name="Image Only")])

        assert await client.run_stage_guardrails("input", "text") == []

    @pytest.mark.asyncio
    async def test_results_stamped_without_overwrite(self, registry):
        client = make_client(
            registry,
            output=[entry("a", info={"stage_name": "custom"})],
        )

        [result] = await client.run_stage_guardrails("output", "text")

        assert result.info["stage_name"] == "custom"
        assert result.info["guardrail_name"] == "Configurable"
        assert result.info["media_type"] == "text/plain"
        assert result.info["detected_content_type"] == "text/plain"

    @pytest.mark.asyncio
    async def test_conversation_context_only_when_needed(self, registry, seen_contexts):
        client = make_client(registry, input=[entry("plain")])
        history = [{"role": "user", "content": "earlier"}]

        await client.run_stage_guardrails("input", "text", history)

        assert seen_contexts == [client.context]

    @pytest.mark.asyncio
    async def test_conversation_context_built_for_history_checks(self, registry, seen_contexts):
        client = make_client(registry, input=[entry("history", name="History Aware")])
        history = [
            {"role": "user", "content": "earlier"},
            {"role": "assistant", "content": [{"type": "output_text", "text": "reply"}]},
            {"role": "user", "content": [{"type": "input_image", "image_url": "x"}]},
        ]

        await client.run_stage_guardrails("input", "text", history)

        [ctx] = seen_contexts
        assert isinstance(ctx, ConversationContext)
        assert ctx is not client.context
        assert [e.role for e in ctx.get_conversation_history()] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_history_checks_without_history_use_shared_context(
        self, registry, seen_contexts
    ):
        client = make_client(registry, input=[entry("history", name="History Aware")])

        await client.run_stage_guardrails("input", "text")

        assert seen_contexts == [client.context]

    @pytest.mark.asyncio
    async def test_empty_history_still_builds_conversation_context(
        self, registry, seen_contexts
    ):
        client = make_client(registry, input=[entry("history", name="History Aware")])

        [result] = await client.run_stage_guardrails("input", "text", [])

        [ctx] = seen_contexts
        assert isinstance(ctx, ConversationContext)
        assert ctx.get_conversation_history() == []
        assert result.execution_failed is False


class TestRun:
    """Tests for full guarded turns."""

    @pytest.mark.asyncio
    async def test_non_streaming_turn(self, registry):
        client = make_client(
            registry,
            pre_flight=[entry("pre")],
            input=[entry("in")],
            output=[entry("out")],
        )
        llm_call = AsyncMock(return_value=chat_completion("hello there"))

        response = await client.run("hi", llm_call)

        llm_call.assert_awaited_once_with("hi")
        assert isinstance(response, GuardrailsResponse)
        assert response.choices[0].message.content == "hello there"
        results = response.guardrail_results
        assert [r.info["label"] for r in results.all_results] == ["pre", "in", "out"]
        assert results.tripwires_triggered is False

    @pytest.mark.asyncio
    async def test_preflight_masks_payload(self, registry):
        client = make_client(
            registry,
            pre_flight=[{"name": "Contains PII", "config": {"entities": ["EMAIL_ADDRESS"]}}],
        )
        llm_call = AsyncMock(return_value=chat_completion("ok"))

        await client.run("Contact me at john@example.com", llm_call)

        llm_call.assert_awaited_once_with("Contact me at <EMAIL_ADDRESS>")

    @pytest.mark.asyncio
    async def test_preflight_masks_latest_user_message(self, registry):
        client = make_client(
            registry,
            pre_flight=[{"name": "Contains PII", "config": {"entities": ["US_SSN"]}}],
        )
        llm_call = AsyncMock(return_value=chat_completion("ok"))
        messages = [
            {"role": "system", "content": "be helpful"},
            {"role": "user", "content": "my ssn is 123-45-6789"},
        ]

        await client.run(messages, llm_call)

        sent = llm_call.await_args.args[0]
        assert sent[0] is messages[0]
        assert sent[1]["content"] == "my ssn is <US_SSN>"
        assert messages[1]["content"] == "my ssn is 123-45-6789"

    @pytest.mark.asyncio
    async def test_input_trip_discards_llm_call(self, registry, calls):
        completed = []
        cancelled = []

        async def llm_call(payload):
            try:
                await asyncio.sleep(0.02)
            except asyncio.CancelledError:
                cancelled.append(payload)
                raise
            completed.append(payload)
            return chat_completion("should never be checked")

        client = make_client(
            registry,
            input=[entry("block", trip=True)],
            output=[entry("out")],
        )

        with pytest.raises(GuardrailTripwireTriggered):
            await client.run("bad request", llm_call)

        # The model call has already been cancelled and awaited
        assert cancelled == ["bad request"]
        await asyncio.sleep(0.05)
        assert completed == []
        assert "out" not in calls

    @pytest.mark.asyncio
    async def test_input_trip_discards_failed_llm_call(self, registry):
        llm_call = AsyncMock(side_effect=RuntimeError("model down"))
        client = make_client(registry, input=[entry("block", trip=True, delay=0.01)])

        with pytest.raises(GuardrailTripwireTriggered):
            await client.run("bad request", llm_call)

        llm_call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_output_trip_raises(self, registry):
        client = make_client(registry, output=[entry("out", trip=True)])
        llm_call = AsyncMock(return_value=chat_completion("bad answer"))

        with pytest.raises(GuardrailTripwireTriggered) as exc_info:
            await client.run("hi", llm_call)

        assert exc_info.value.stage_name == "output"

    @pytest.mark.asyncio
    async def test_suppressed_turn_reports_trips(self, registry):
        client = make_client(
            registry,
            input=[entry("in", trip=True)],
            output=[entry("out", trip=True)],
        )
        llm_call = AsyncMock(return_value=chat_completion("answer"))

        response = await client.run("hi", llm_call, suppress_tripwire=True)

        assert response.guardrail_results.tripwires_triggered is True
        assert len(response.guardrail_results.triggered_results) == 2

    @pytest.mark.asyncio
    async def test_output_sees_conversation(self, registry, seen_contexts):
        client = make_client(registry, output=[entry("out", name="History Aware")])
        llm_call = AsyncMock(return_value=chat_completion("the answer"))

        await client.run(
            "question",
            llm_call,
            conversation_history=[{"role": "assistant", "content": "welcome"}],
        )

        [ctx] = seen_contexts
        history = ctx.get_conversation_history()
        assert [(e.role, e.content) for e in history] == [
            ("assistant", "welcome"),
            ("user", "question"),
            ("assistant", "the answer"),
        ]

    @pytest.mark.asyncio
    async def test_streaming_turn_returns_guarded_stream(self, registry):
        async def chunks():
            for text in ("Hel", "lo"):
                yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])

        async def llm_call(payload):
            return chunks()

        client = make_client(registry, input=[entry("in")], output=[entry("out")])

        stream = await client.run("hi", llm_call, stream=True)
        items = [item async for item in stream]

        assert isinstance(stream, GuardedStream)
        assert len(items) == 3
        assert items[-1].llm_response.accumulated_text == "Hello"
        assert items[0].guardrail_results.input[0].info["label"] == "in"
