"""Events emitted while a conversation is driven.

Content and tool-call deltas are progress notifications for a UI; the
turn end events carry the authoritative :class:`TurnResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from toolstream.errors import TurnError
from toolstream.message import ToolCallRef
from toolstream.streaming import TurnResult


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class TurnStartedEvent(StreamEvent):
    """First frame of a turn attempt arrived."""

    turn_id: str = ""
    role: str = "assistant"


@dataclass
class ContentDeltaEvent(StreamEvent):
    """Token-level text delta from the provider stream."""

    content: str = ""


@dataclass
class ToolCallDeltaEvent(StreamEvent):
    """The (possibly partial) tool calls after the latest frame."""

    tool_calls: list[ToolCallRef] = field(default_factory=list)


@dataclass
class TurnRetryEvent(StreamEvent):
    """A turn attempt failed with a retryable error and is re-issued.

    Deltas already emitted for the failed attempt should be discarded.
    """

    attempt: int = 0
    max_attempts: int = 0
    error: TurnError | None = None


@dataclass
class TurnEndEvent(StreamEvent):
    """Base for the single terminal event of a turn."""

    result: TurnResult = field(default_factory=TurnResult)


@dataclass
class TurnCompleteEvent(TurnEndEvent):
    """The turn finished with a finish reason."""


@dataclass
class TurnErrorEvent(TurnEndEvent):
    """The turn failed; ``result.error`` says why."""


@dataclass
class ToolResultEvent(StreamEvent):
    """A tool call was resolved (executed, failed, or denied)."""

    tool_call_id: str = ""
    name: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class ApprovalRequiredEvent(StreamEvent):
    """The conversation paused until a decision for this call arrives."""

    tool_call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class RunCompleteEvent(StreamEvent):
    """Final event of a run; always the last event yielded."""

    result: Any = None
