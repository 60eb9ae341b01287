"""Optional OpenTelemetry tracing.

Span layout for one ``Conversation.run`` or ``Conversation.resolve``::

    conversation.run <session>          (or conversation.resolve)
        chat <model>                    one per turn attempt, incl. retries
        execute_tool <tool>             one per executed tool call

Attempt spans carry the attempt number and, once the stream seals, the
response id, finish reason and number of requested tool calls. Tool spans
carry why the call was allowed to run (``always``, ``yolo``, the user's
decision, or ``resumed`` after an interrupted walk).

Tracing stays off until :func:`instrument` is called; every helper here is
a no-op without it, so ``opentelemetry-api`` is only needed when tracing.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "toolstream") -> None:
    """Turn tracing on, using the globally configured TracerProvider.

    Example::

        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())

        from toolstream.instrumentation import instrument
        instrument()

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed
            (``pip install toolstream[otel]``).
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install toolstream[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured; conversation spans will be "
            "discarded until one is set."
        )
    else:
        logger.info(f"Toolstream tracing enabled (tracer '{tracer_name}')")


def uninstrument() -> None:
    """Turn tracing off again."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def _span(name: str, attributes: dict, client: bool = False):
    if _tracer is None:
        yield None
        return
    kwargs = {"attributes": attributes}
    if client:
        from opentelemetry.trace import SpanKind
        kwargs["kind"] = SpanKind.CLIENT
    with _tracer.start_as_current_span(name, **kwargs) as span:
        yield span


def conversation_span(session_id: str, model: str, operation: str = "run"):
    """Root span for one ``run`` or ``resolve`` of a conversation."""
    return _span(f"conversation.{operation} {session_id}", {
        "gen_ai.operation.name": "invoke_agent",
        "gen_ai.conversation.id": session_id,
        "gen_ai.request.model": model,
        "toolstream.conversation.operation": operation,
    })


def completion_span(system: str, model: str, attempt: int = 1):
    """Client span for one streamed turn attempt."""
    return _span(f"chat {model}", {
        "gen_ai.operation.name": "chat",
        "gen_ai.provider.name": system,
        "gen_ai.request.model": model,
        "toolstream.turn.attempt": attempt,
    }, client=True)


def tool_span(tool_name: str, call_id: str, approval: str):
    return _span(f"execute_tool {tool_name}", {
        "gen_ai.operation.name": "execute_tool",
        "gen_ai.tool.name": tool_name,
        "gen_ai.tool.call.id": call_id,
        "toolstream.tool.approval": approval,
    })


_USAGE_ATTRIBUTES = (
    ("prompt_tokens", "gen_ai.usage.input_tokens"),
    ("completion_tokens", "gen_ai.usage.output_tokens"),
)


def record_usage(span, usage, response_model: str | None = None) -> None:
    """Copy token counts onto *span*; missing counts are skipped."""
    if span is None or usage is None:
        return
    for field, attribute in _USAGE_ATTRIBUTES:
        value = getattr(usage, field, None)
        if value is not None:
            span.set_attribute(attribute, value)
    if response_model:
        span.set_attribute("gen_ai.response.model", response_model)


def record_turn_result(span, result) -> None:
    """Describe a sealed :class:`~toolstream.streaming.TurnResult` on *span*."""
    if span is None:
        return
    if result.response_id:
        span.set_attribute("gen_ai.response.id", result.response_id)
    if result.finish_reason is not None:
        span.set_attribute("gen_ai.response.finish_reasons", [result.finish_reason.value])
    span.set_attribute("toolstream.turn.tool_calls", len(result.tool_calls))


def record_error(span, exception: BaseException) -> None:
    """Mark *span* failed with an exception raised by a tool."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute("error.type", type(exception).__qualname__)


def record_turn_error(span, error) -> None:
    """Mark *span* failed for a turn-level :class:`TurnError` value."""
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, error.detail or error.kind.value)
    span.set_attribute("error.type", error.kind.value)
    if error.code:
        span.set_attribute("toolstream.error.code", error.code)
