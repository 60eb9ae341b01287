import asyncio
import json
from collections.abc import Callable

import pytest

from toolstream.approval import InMemoryPolicyStore
from toolstream.config import Settings
from toolstream.errors import ErrorKind, StreamFailure
from toolstream.message import Message, MessageRole, ToolCallRef
from toolstream.provider import CompletionRequest, ModelProvider
from toolstream.streaming import StreamChunk, ToolCallFragment
from toolstream.tools import ToolExecutionResult, ToolExecutor


# ---------------------------------------------------------------------------
# Chunk builder helpers
# ---------------------------------------------------------------------------

def text_chunk(text: str, response_id: str | None = None, role: str | None = None) -> StreamChunk:
    return StreamChunk(response_id=response_id, role=role, content_delta=text)


def tool_chunk(
    index: int,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str | None = None,
) -> StreamChunk:
    return StreamChunk(tool_call_fragments=[ToolCallFragment(
        index=index, call_id=call_id, name=name, arguments_delta=arguments,
    )])


def finish_chunk(reason: str = "stop") -> StreamChunk:
    return StreamChunk(finish_reason=reason)


def text_turn(text: str, response_id: str = "resp_text") -> list[StreamChunk]:
    """A turn that streams *text* in two pieces and stops."""
    half = len(text) // 2
    return [
        text_chunk(text[:half], response_id=response_id, role="assistant"),
        text_chunk(text[half:]),
        finish_chunk("stop"),
    ]


def tool_call_turn(
    calls: list[tuple[str, dict, str]],
    content: str | None = None,
    response_id: str = "resp_tools",
) -> list[StreamChunk]:
    """A turn requesting tool calls, each split over two frames.

    Each item in *calls* is ``(name, args_dict, call_id)``.
    """
    chunks = [StreamChunk(response_id=response_id, role="assistant", content_delta=content)]
    for i, (name, args, call_id) in enumerate(calls):
        arguments = json.dumps(args)
        half = len(arguments) // 2
        chunks.append(tool_chunk(i, call_id=call_id, name=name, arguments=arguments[:half]))
        chunks.append(tool_chunk(i, arguments=arguments[half:]))
    chunks.append(finish_chunk("tool_calls"))
    return chunks


def tool_use_failed() -> StreamFailure:
    return StreamFailure(
        ErrorKind.TOOL_USE_PROTOCOL_FAILURE,
        detail="Failed to call a function. Please adjust your prompt.",
        code="tool_use_failed",
    )


def assistant_with_calls(*calls: tuple[str, str]) -> Message:
    """Assistant message with ``(name, call_id)`` tool calls in order."""
    return Message(
        role=MessageRole.ASSISTANT,
        content="",
        tool_calls=[
            ToolCallRef(index=i, id=call_id, name=name, arguments="{}")
            for i, (name, call_id) in enumerate(calls)
        ],
    )


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Provider that replays pre-queued streams. No network calls.

    Each queued script is either an exception (raised before the first
    chunk, like a rejected request) or a list whose items are chunks to
    yield, exceptions to raise mid-stream, or callables to invoke at that
    point of the stream.
    """

    system = "scripted"

    def __init__(self):
        self.scripts: list = []
        self.completions: dict[str, list] = {}
        self.requests: list[CompletionRequest] = []
        self.complete_requests: list[CompletionRequest] = []
        self.closed = 0

    def queue(self, *scripts) -> "ScriptedProvider":
        self.scripts.extend(scripts)
        return self

    async def stream_complete(self, request: CompletionRequest):
        self.requests.append(request)
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if callable(item):
                    item()
                    continue
                yield item
        finally:
            self.closed += 1

    async def complete(self, request: CompletionRequest) -> str | None:
        self.complete_requests.append(request)
        outcome = self.completions[request.model].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class StallingProvider(ScriptedProvider):
    """Sends one frame, then never sends another."""

    def __init__(self):
        super().__init__()
        self.stalled = asyncio.Event()

    async def stream_complete(self, request: CompletionRequest):
        self.requests.append(request)
        try:
            yield text_chunk("partial", response_id="resp_stalled")
            self.stalled.set()
            await asyncio.Event().wait()
        finally:
            self.closed += 1


# ---------------------------------------------------------------------------
# Recording executor
# ---------------------------------------------------------------------------

class RecordingExecutor(ToolExecutor):
    """Executor that records every call and answers ``"<name> done"``.

    ``outcomes`` maps a tool name to a fixed ``ToolExecutionResult`` or to
    an exception to raise.
    """

    def __init__(self, outcomes: dict | None = None):
        self.outcomes = outcomes or {}
        self.calls: list[tuple[str, str, str]] = []

    @property
    def call_ids(self) -> list[str]:
        return [c[0] for c in self.calls]

    async def execute(self, tool_call_id, name, arguments):
        self.calls.append((tool_call_id, name, arguments))
        outcome = self.outcomes.get(name)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        return ToolExecutionResult(result=f"{name} done")


class BlockingExecutor(RecordingExecutor):
    """Hangs on the first call to each tool named in *block*."""

    def __init__(self, block):
        super().__init__()
        self.block = set(block)
        self.started = asyncio.Event()

    async def execute(self, tool_call_id, name, arguments):
        result = await super().execute(tool_call_id, name, arguments)
        if name in self.block:
            self.block.discard(name)
            self.started.set()
            await asyncio.Event().wait()
        return result


@pytest.fixture
def scripted_provider():
    return ScriptedProvider()


@pytest.fixture
def recording_executor():
    return RecordingExecutor()


@pytest.fixture
def policy_store():
    return InMemoryPolicyStore()


@pytest.fixture
def settings():
    return Settings(model="llama-3.3-70b")


@pytest.fixture
def make_store() -> Callable[..., InMemoryPolicyStore]:
    """Factory for a store with the given tools set to ``always``."""
    def _make(always=(), yolo=False):
        return InMemoryPolicyStore(always=list(always), yolo=yolo)
    return _make
