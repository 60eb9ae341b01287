"""Error taxonomy shared by the turn pipeline.

Turn-level failures travel as :class:`TurnError` values inside a
``TurnResult``. Exceptions are reserved for the transport boundary
(:class:`StreamFailure`) and for misuse of the state machines.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    TRANSPORT_ERROR = "transport_error"
    TOOL_USE_PROTOCOL_FAILURE = "tool_use_protocol_failure"
    TOOL_USE_RETRIES_EXHAUSTED = "tool_use_retries_exhausted"
    UNTERMINATED_STREAM = "unterminated_stream"
    EMPTY_STREAM = "empty_stream"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    UNSUPPORTED_INPUT = "unsupported_input"
    MAX_TURNS_EXCEEDED = "max_turns_exceeded"


@dataclass(frozen=True)
class TurnError:
    kind: ErrorKind
    detail: str = ""
    code: str | None = None

    def user_message(self) -> str:
        if self.kind == ErrorKind.TRANSPORT_ERROR:
            return f"Failed to get chat completion: {self.detail}"
        if self.kind == ErrorKind.EMPTY_STREAM:
            return "The model returned an empty response."
        if self.kind == ErrorKind.UNTERMINATED_STREAM:
            return "Stream ended unexpectedly."
        return self.detail or self.kind.value


class ToolstreamError(Exception):
    """Base exception for this package."""


class StreamFailure(ToolstreamError):
    """Raised by a provider when the completion stream fails.

    Providers classify the failure at the boundary so nothing downstream
    has to inspect error text.
    """

    def __init__(self, kind: ErrorKind, detail: str = "", code: str | None = None):
        super().__init__(detail or kind.value)
        self.error = TurnError(kind=kind, detail=detail, code=code)


class AccumulatorSealedError(ToolstreamError):
    """A frame arrived after the finish reason sealed the turn."""


class TurnCancelledError(ToolstreamError):
    """The turn was abandoned before it produced a result."""


class ApprovalPendingError(ToolstreamError):
    """A new turn was requested while a tool call awaits approval."""


class ConversationBusyError(ToolstreamError):
    """Another run is already driving this conversation."""


class NoPendingApprovalError(ToolstreamError):
    """A decision was supplied but nothing is awaiting approval."""


class ApprovalMismatchError(ToolstreamError):
    """A decision was supplied for a call other than the paused one."""
