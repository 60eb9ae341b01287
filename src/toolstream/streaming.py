"""Streaming primitives for provider responses.

Providers yield :class:`StreamChunk` objects.  The
:class:`DeltaAccumulator` folds them into the turn's text and the tool
calls whose arguments arrive in fragments across multiple chunks.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from toolstream.errors import AccumulatorSealedError, ErrorKind, TurnError
from toolstream.message import Message, MessageRole, ToolCallRef


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider."""

    response_id: str | None = None
    role: str | None = None
    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None
    usage: Any = None


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    OTHER = "other"

    @classmethod
    def _missing_(cls, value):
        return cls.OTHER


@dataclass
class TurnResult:
    """Outcome of one turn attempt (or of a retried turn)."""

    content: str = ""
    tool_calls: list[ToolCallRef] = field(default_factory=list)
    finish_reason: FinishReason | None = None
    error: TurnError | None = None
    response_id: str | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_assistant_message(self) -> Message:
        return Message(
            role=MessageRole.ASSISTANT,
            content=self.content,
            tool_calls=list(self.tool_calls) or None,
        )


def _fallback_call_id(index: int) -> str:
    return f"tool_{uuid.uuid4().hex[:12]}_{index}"


class DeltaAccumulator:
    """Assembles one turn from streaming chunks.

    Tool calls are keyed by their ``index``; a call id missing from the
    stream is replaced by a generated one so every call can be answered.
    The first chunk carrying a finish reason seals the accumulator.
    """

    def __init__(self, id_factory: Callable[[int], str] | None = None) -> None:
        self._id_factory = id_factory or _fallback_call_id
        self._content: list[str] = []
        self._pending: dict[int, ToolCallRef] = {}
        self._frames = 0
        self._response_id: str | None = None
        self._finish_reason: FinishReason | None = None

    @property
    def sealed(self) -> bool:
        return self._finish_reason is not None

    @property
    def frame_count(self) -> int:
        return self._frames

    @property
    def response_id(self) -> str | None:
        return self._response_id

    def apply(self, chunk: StreamChunk) -> None:
        if self.sealed:
            raise AccumulatorSealedError(
                f"Turn already finished ({self._finish_reason.value})"
            )
        self._frames += 1
        if chunk.response_id and self._response_id is None:
            self._response_id = chunk.response_id
        if chunk.content_delta:
            self._content.append(chunk.content_delta)
        for fragment in chunk.tool_call_fragments or []:
            self._feed(fragment)
        if chunk.finish_reason:
            self._finish_reason = FinishReason(chunk.finish_reason)

    def _feed(self, fragment: ToolCallFragment) -> None:
        tc = self._pending.get(fragment.index)
        if tc is None:
            self._pending[fragment.index] = ToolCallRef(
                index=fragment.index,
                id=fragment.call_id or self._id_factory(fragment.index),
                name=fragment.name or "",
                arguments=fragment.arguments_delta or "",
            )
            return
        if fragment.call_id:
            tc.id = fragment.call_id
        if fragment.name:
            tc.name = fragment.name
        if fragment.arguments_delta:
            tc.arguments += fragment.arguments_delta

    def tool_calls(self) -> list[ToolCallRef]:
        """Snapshot of the tool calls so far, in index order."""
        return [self._pending[i].model_copy() for i in sorted(self._pending)]

    def result(self) -> TurnResult:
        """Current state of the turn; final only once sealed."""
        return TurnResult(
            content="".join(self._content),
            tool_calls=self.tool_calls(),
            finish_reason=self._finish_reason,
            response_id=self._response_id,
        )

    def close(self) -> TurnResult:
        """Called when the transport ends; reports protocol violations."""
        if self._frames == 0:
            return TurnResult(error=TurnError(
                kind=ErrorKind.EMPTY_STREAM,
                detail="Stream ended before any data was received.",
            ))
        if not self.sealed:
            return TurnResult(
                error=TurnError(
                    kind=ErrorKind.UNTERMINATED_STREAM,
                    detail="Stream ended without a finish reason.",
                ),
                response_id=self._response_id,
            )
        return self.result()
