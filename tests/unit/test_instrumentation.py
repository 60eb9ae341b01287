"""Unit tests for the instrumentation module.

OTel interactions are mocked; ``opentelemetry-api`` is a test dependency
so ``SpanKind`` / ``StatusCode`` can be used in assertions.
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
from opentelemetry.trace import SpanKind, StatusCode

import toolstream.instrumentation as inst
from toolstream.errors import ErrorKind, StreamFailure, TurnError
from toolstream.instrumentation import (
    completion_span,
    conversation_span,
    record_error,
    record_turn_error,
    record_turn_result,
    record_usage,
    tool_span,
    uninstrument,
)
from toolstream.provider import CompletionRequest
from toolstream.retry import RetryController
from toolstream.streaming import FinishReason, TurnResult
from toolstream.turn import TurnStreamProcessor
from tests.conftest import ScriptedProvider, text_turn, tool_call_turn, tool_use_failed


@pytest.fixture(autouse=True)
def _reset_tracer():
    inst._tracer = None
    yield
    inst._tracer = None


@pytest.fixture
def mock_tracer():
    span = MagicMock()
    tracer = MagicMock()
    tracer.start_as_current_span.return_value.__enter__ = MagicMock(return_value=span)
    tracer.start_as_current_span.return_value.__exit__ = MagicMock(return_value=False)
    tracer.span = span
    inst._tracer = tracer
    return tracer


def _mock_otel(mock_trace):
    return (
        patch("importlib.util.find_spec", return_value=MagicMock()),
        patch.dict("sys.modules", {
            "opentelemetry": MagicMock(trace=mock_trace),
            "opentelemetry.trace": mock_trace,
        }),
    )


class TestInstrument:
    def test_raises_without_otel_installed(self):
        with patch("importlib.util.find_spec", return_value=None):
            with pytest.raises(ImportError, match="pip install toolstream\\[otel\\]"):
                inst.instrument()

    def test_sets_global_tracer_with_default_name(self):
        tracer = MagicMock()
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = tracer
        mock_trace.NoOpTracer = type("NoOpTracer", (), {})

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2:
            inst.instrument()

        assert inst._tracer is tracer
        mock_trace.get_tracer.assert_called_once_with("toolstream")

    def test_logs_when_no_provider_configured(self, caplog):
        NoOpTracer = type("NoOpTracer", (), {})
        mock_trace = MagicMock()
        mock_trace.get_tracer.return_value = NoOpTracer()
        mock_trace.NoOpTracer = NoOpTracer

        p1, p2 = _mock_otel(mock_trace)
        with p1, p2, caplog.at_level(logging.INFO, logger="toolstream.instrumentation"):
            inst.instrument()

        assert any("No TracerProvider configured" in r.message for r in caplog.records)

    def test_uninstrument_clears_tracer(self):
        inst._tracer = MagicMock()
        uninstrument()
        assert inst._tracer is None


class TestSpans:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "span_fn,args",
        [
            (conversation_span, ("s1", "m")),
            (completion_span, ("cerebras", "m")),
            (tool_span, ("t", "call_1", "always")),
        ],
        ids=["conversation_span", "completion_span", "tool_span"],
    )
    async def test_span_yields_none_without_tracer(self, span_fn, args):
        async with span_fn(*args) as s:
            assert s is None

    @pytest.mark.asyncio
    async def test_conversation_span_attributes(self, mock_tracer):
        async with conversation_span("sess-9", "llama-3.3-70b") as s:
            assert s is mock_tracer.span

        mock_tracer.start_as_current_span.assert_called_once_with(
            "conversation.run sess-9",
            attributes={
                "gen_ai.operation.name": "invoke_agent",
                "gen_ai.conversation.id": "sess-9",
                "gen_ai.request.model": "llama-3.3-70b",
                "toolstream.conversation.operation": "run",
            },
        )

    @pytest.mark.asyncio
    async def test_completion_span_is_client_kind(self, mock_tracer):
        async with completion_span("cerebras", "llama-3.3-70b"):
            pass

        mock_tracer.start_as_current_span.assert_called_once_with(
            "chat llama-3.3-70b",
            kind=SpanKind.CLIENT,
            attributes={
                "gen_ai.operation.name": "chat",
                "gen_ai.provider.name": "cerebras",
                "gen_ai.request.model": "llama-3.3-70b",
                "toolstream.turn.attempt": 1,
            },
        )

    @pytest.mark.asyncio
    async def test_resolve_span_named_for_operation(self, mock_tracer):
        async with conversation_span("sess-9", "m", "resolve"):
            pass

        name = mock_tracer.start_as_current_span.call_args.args[0]
        assert name == "conversation.resolve sess-9"

    @pytest.mark.asyncio
    async def test_tool_span_attributes(self, mock_tracer):
        async with tool_span("lookup", "call_42", "once"):
            pass

        name = mock_tracer.start_as_current_span.call_args.args[0]
        _, kwargs = mock_tracer.start_as_current_span.call_args
        assert name == "execute_tool lookup"
        assert kwargs["attributes"]["gen_ai.tool.call.id"] == "call_42"
        assert kwargs["attributes"]["toolstream.tool.approval"] == "once"


class TestRecorders:
    def test_usage_sets_token_counts(self):
        span = MagicMock()
        record_usage(span, MagicMock(prompt_tokens=100, completion_tokens=50), response_model="m")

        span.set_attribute.assert_any_call("gen_ai.usage.input_tokens", 100)
        span.set_attribute.assert_any_call("gen_ai.usage.output_tokens", 50)
        span.set_attribute.assert_any_call("gen_ai.response.model", "m")

    def test_usage_tolerates_missing_fields(self):
        span = MagicMock()
        record_usage(span, MagicMock(spec=[]))
        span.set_attribute.assert_not_called()

    def test_usage_noop_without_span(self):
        record_usage(None, MagicMock(prompt_tokens=1))

    def test_record_error(self):
        span = MagicMock()
        exc = RuntimeError("boom")
        record_error(span, exc)

        span.set_status.assert_called_once_with(StatusCode.ERROR, "boom")
        span.record_exception.assert_called_once_with(exc)
        span.set_attribute.assert_called_once_with("error.type", "RuntimeError")

    def test_turn_result_without_id_or_reason(self):
        span = MagicMock()
        record_turn_result(span, TurnResult(content="hi"))

        span.set_attribute.assert_called_once_with("toolstream.turn.tool_calls", 0)

    def test_turn_result_finish_reason(self):
        span = MagicMock()
        record_turn_result(span, TurnResult(finish_reason=FinishReason.STOP, response_id="r1"))

        span.set_attribute.assert_any_call("gen_ai.response.finish_reasons", ["stop"])
        span.set_attribute.assert_any_call("gen_ai.response.id", "r1")

    def test_record_turn_error(self):
        span = MagicMock()
        record_turn_error(span, TurnError(
            kind=ErrorKind.TOOL_USE_PROTOCOL_FAILURE, detail="bad call", code="tool_use_failed",
        ))

        span.set_status.assert_called_once_with(StatusCode.ERROR, "bad call")
        span.set_attribute.assert_any_call("error.type", "tool_use_protocol_failure")
        span.set_attribute.assert_any_call("toolstream.error.code", "tool_use_failed")


class TestTurnTracing:
    @pytest.mark.asyncio
    async def test_failed_attempt_marks_span(self, mock_tracer):
        provider = ScriptedProvider().queue(
            StreamFailure(ErrorKind.TRANSPORT_ERROR, detail="401")
        )
        request = CompletionRequest(model="m", messages=[])

        [e async for e in TurnStreamProcessor(provider).run(request)]

        mock_tracer.span.set_status.assert_called_once_with(StatusCode.ERROR, "401")

    @pytest.mark.asyncio
    async def test_successful_attempt_not_marked(self, mock_tracer):
        provider = ScriptedProvider().queue(text_turn("hi"))
        request = CompletionRequest(model="m", messages=[])

        [e async for e in TurnStreamProcessor(provider).run(request)]

        mock_tracer.span.set_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_sealed_turn_described_on_span(self, mock_tracer):
        provider = ScriptedProvider().queue(
            tool_call_turn([("lookup", {"q": "x"}, "call_1")], response_id="resp_7")
        )
        request = CompletionRequest(model="m", messages=[])

        [e async for e in TurnStreamProcessor(provider).run(request)]

        span = mock_tracer.span
        span.set_attribute.assert_any_call("gen_ai.response.id", "resp_7")
        span.set_attribute.assert_any_call("gen_ai.response.finish_reasons", ["tool_calls"])
        span.set_attribute.assert_any_call("toolstream.turn.tool_calls", 1)

    @pytest.mark.asyncio
    async def test_retried_attempts_numbered(self, mock_tracer):
        provider = ScriptedProvider().queue(tool_use_failed(), text_turn("ok"))
        request = CompletionRequest(model="m", messages=[])

        [e async for e in RetryController(TurnStreamProcessor(provider)).iter(request)]

        attempts = [
            c.kwargs["attributes"]["toolstream.turn.attempt"]
            for c in mock_tracer.start_as_current_span.call_args_list
        ]
        assert attempts == [1, 2]
