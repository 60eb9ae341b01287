import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing

from toolstream.errors import StreamFailure
from toolstream.events import (
    ContentDeltaEvent,
    StreamEvent,
    ToolCallDeltaEvent,
    TurnCompleteEvent,
    TurnErrorEvent,
    TurnStartedEvent,
)
from toolstream.instrumentation import (
    completion_span,
    record_turn_error,
    record_turn_result,
    record_usage,
)
from toolstream.provider import CompletionRequest, ModelProvider
from toolstream.streaming import DeltaAccumulator, StreamChunk, TurnResult

logger = logging.getLogger(__name__)

_END = object()


def end_event(result: TurnResult) -> StreamEvent:
    if result.ok:
        return TurnCompleteEvent(result=result)
    return TurnErrorEvent(result=result)


async def _next_frame(
    stream: AsyncIterator[StreamChunk],
    cancel: asyncio.Event | None,
) -> StreamChunk | object | None:
    """Wait for the next frame, or for *cancel*, whichever comes first.

    Returns ``_END`` when the stream is exhausted and ``None`` when the
    turn was cancelled while waiting.
    """
    if cancel is None:
        return await anext(stream, _END)
    if cancel.is_set():
        return None

    frame = asyncio.ensure_future(anext(stream, _END))
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({frame, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not frame.done():
            frame.cancel()
            await asyncio.wait({frame})
    if frame.cancelled():
        return None
    return frame.result()


class TurnStreamProcessor:
    """Drives a single request/response exchange with the provider.

    ``run()`` yields a ``TurnStartedEvent`` on the first frame, deltas
    after every frame, and exactly one turn end event, unless the turn
    is cancelled, in which case the stream is closed and nothing further
    is yielded. Cancellation also interrupts a stream that is stalled
    waiting for its next frame. It never retries.

    Args:
        provider: Completion transport to stream from.
    """

    def __init__(self, provider: ModelProvider):
        self.provider = provider

    async def run(
        self,
        request: CompletionRequest,
        cancel: asyncio.Event | None = None,
        attempt: int = 1,
    ) -> AsyncIterator[StreamEvent]:
        acc = DeltaAccumulator()
        async with completion_span(self.provider.system, request.model, attempt) as span:
            try:
                async with aclosing(self.provider.stream_complete(request)) as stream:
                    while True:
                        chunk = await _next_frame(stream, cancel)
                        if chunk is _END:
                            break
                        if chunk is None or (cancel is not None and cancel.is_set()):
                            logger.info("Turn cancelled; abandoning stream")
                            return
                        if acc.frame_count == 0:
                            yield TurnStartedEvent(
                                turn_id=chunk.response_id or "",
                                role=chunk.role or "assistant",
                            )
                        acc.apply(chunk)

                        if chunk.content_delta:
                            yield ContentDeltaEvent(content=chunk.content_delta)
                        if chunk.tool_call_fragments:
                            yield ToolCallDeltaEvent(tool_calls=acc.tool_calls())

                        if acc.sealed:
                            result = acc.result()
                            record_usage(span, chunk.usage)
                            record_turn_result(span, result)
                            logger.info(
                                f"Stream completed. Reason: {result.finish_reason.value}, "
                                f"ID: {result.response_id}"
                            )
                            yield TurnCompleteEvent(result=result)
                            return
            except StreamFailure as e:
                logger.warning(f"Turn failed ({e.error.kind.value}): {e.error.detail}")
                record_turn_error(span, e.error)
                yield TurnErrorEvent(result=TurnResult(error=e.error))
                return

            if cancel is not None and cancel.is_set():
                return
            result = acc.close()
            logger.warning(f"Stream ended unexpectedly: {result.error.kind.value}")
            record_turn_error(span, result.error)
            yield TurnErrorEvent(result=result)
