import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator

from toolstream.errors import ErrorKind, TurnCancelledError, TurnError
from toolstream.events import StreamEvent, TurnEndEvent, TurnRetryEvent
from toolstream.provider import CompletionRequest
from toolstream.streaming import TurnResult
from toolstream.turn import TurnStreamProcessor, end_event

logger = logging.getLogger(__name__)

# One initial attempt plus three retries.
DEFAULT_MAX_ATTEMPTS = 4


class RetryController:
    """Re-issues a turn when the model fails to produce a valid tool call.

    Only ``TOOL_USE_PROTOCOL_FAILURE`` is retried. Each retry sends the
    identical request and starts from an empty accumulator, so nothing
    from a failed attempt reaches the final result.

    Args:
        processor: Single-attempt turn driver.
        max_attempts: Total tries including the first one.
    """

    def __init__(
        self,
        processor: TurnStreamProcessor,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.processor = processor
        self.max_attempts = max_attempts

    async def iter(
        self,
        request: CompletionRequest,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield the attempts' events; the last one is a turn end event.

        Ends without a turn end event when the turn is cancelled.
        """
        for attempt in range(1, self.max_attempts + 1):
            logger.info(
                f"Attempting completion (attempt {attempt}/{self.max_attempts})..."
            )
            result: TurnResult | None = None
            async for event in self.processor.run(request, cancel=cancel, attempt=attempt):
                if isinstance(event, TurnEndEvent):
                    result = event.result
                else:
                    yield event

            if result is None:
                return

            retryable = (
                result.error is not None
                and result.error.kind == ErrorKind.TOOL_USE_PROTOCOL_FAILURE
            )
            if not retryable:
                yield end_event(dataclasses.replace(result, attempts=attempt))
                return

            if attempt < self.max_attempts:
                logger.warning(
                    f"Tool use failed error encountered. "
                    f"Retrying ({attempt}/{self.max_attempts - 1})..."
                )
                yield TurnRetryEvent(
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=result.error,
                )
                continue

            logger.error(
                f"Max attempts ({self.max_attempts}) exceeded for tool_use_failed error."
            )
            yield end_event(TurnResult(
                error=TurnError(
                    kind=ErrorKind.TOOL_USE_RETRIES_EXHAUSTED,
                    detail=(
                        "The model repeatedly failed to use tools correctly "
                        f"after {self.max_attempts} attempts. "
                        "Please try rephrasing your request."
                    ),
                    code=result.error.code,
                ),
                attempts=attempt,
            ))
            return

    async def run_with_retry(
        self,
        request: CompletionRequest,
        cancel: asyncio.Event | None = None,
    ) -> TurnResult:
        result: TurnResult | None = None
        async for event in self.iter(request, cancel=cancel):
            if isinstance(event, TurnEndEvent):
                result = event.result
        if result is None:
            raise TurnCancelledError("Turn cancelled before completion")
        return result
