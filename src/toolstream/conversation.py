"""Top-level conversation driver.

A :class:`Conversation` runs turns through the retry controller, routes
tool calls through the approval gate and chains turns until the model
answers without tool calls, a call needs approval, or a turn fails.

States::

    IDLE/DONE -> TURN_PENDING -> GATE_PENDING -> TURN_PENDING (loop)
                                              -> SUSPENDED
                                              -> DONE
    SUSPENDED -> GATE_PENDING (on resolve)
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from toolstream.approval import ApprovalDecision, ApprovalPolicyStore, InMemoryPolicyStore
from toolstream.config import Settings
from toolstream.errors import (
    ApprovalPendingError,
    ConversationBusyError,
    ErrorKind,
    NoPendingApprovalError,
    TurnError,
)
from toolstream.events import (
    ApprovalRequiredEvent,
    RunCompleteEvent,
    StreamEvent,
    ToolResultEvent,
    TurnEndEvent,
)
from toolstream.gate import (
    Completed,
    GateOutcome,
    GateState,
    PausedCheckpoint,
    Suspended,
    ToolApprovalGate,
)
from toolstream.instrumentation import conversation_span
from toolstream.message import Message, MessageRole, ToolCallRef, to_wire_messages
from toolstream.provider import CompletionRequest, ModelProvider
from toolstream.retry import RetryController
from toolstream.session import Session
from toolstream.tools import ToolExecutor, ToolRegistry
from toolstream.turn import TurnStreamProcessor

logger = logging.getLogger(__name__)


class ConversationState(Enum):
    IDLE = "idle"
    TURN_PENDING = "turn_pending"
    GATE_PENDING = "gate_pending"
    SUSPENDED = "suspended"
    DONE = "done"


@dataclass
class ConversationResult:
    """Outcome of one ``run`` or ``resolve`` call."""

    state: ConversationState
    last_message: Message | None = None
    error: TurnError | None = None
    pending_call: ToolCallRef | None = None
    turns: int = 0
    cancelled: bool = False


class Conversation:
    """Drives one chat session against a completion endpoint.

    ``run()`` drains ``iter()`` and ``resolve()`` drains
    ``iter_resolve()``; the ``iter`` variants are the streaming entry
    points and always end with a :class:`RunCompleteEvent`.

    Only one run may drive a conversation at a time, and no new turn is
    started while a tool call awaits approval.

    Args:
        provider: Completion transport.
        executor: Runs approved tool calls.
        policy_store: Approval policies, possibly shared with other
            conversations. Defaults to a fresh in-memory store.
        settings: Model and loop settings.
        tools: OpenAI function schemas offered to the model. Taken from
            the executor when it is a :class:`ToolRegistry`.
        session: Existing history to continue.
    """

    def __init__(
        self,
        provider: ModelProvider,
        executor: ToolExecutor,
        policy_store: ApprovalPolicyStore | None = None,
        settings: Settings | None = None,
        tools: list[dict] | None = None,
        session: Session | None = None,
    ):
        self.provider = provider
        self.executor = executor
        self.policy_store = policy_store or InMemoryPolicyStore()
        self.settings = settings or Settings()
        if tools is None and isinstance(executor, ToolRegistry):
            tools = executor.schemas()
        self.tools = tools or []
        self.session = session or Session(session_id=uuid.uuid4().hex)
        self.gate = ToolApprovalGate(executor, self.policy_store)
        self.retry = RetryController(
            TurnStreamProcessor(provider),
            max_attempts=self.settings.max_tool_use_attempts,
        )
        self.state = ConversationState.IDLE
        self._running = False
        self._cancel = asyncio.Event()

    @property
    def pending_call(self) -> ToolCallRef | None:
        if self.gate.checkpoint is None:
            return None
        return self.gate.checkpoint.pending_call

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, user_message: Message | str) -> ConversationResult:
        """Append the user message and drive turns until the exchange ends."""
        return await self._drain(self.iter(user_message))

    async def resolve(
        self, decision: ApprovalDecision, tool_call_id: str,
    ) -> ConversationResult:
        """Supply the decision for the paused call and keep driving."""
        return await self._drain(self.iter_resolve(decision, tool_call_id))

    async def iter(self, user_message: Message | str) -> AsyncIterator[StreamEvent]:
        if isinstance(user_message, str):
            user_message = Message(role=MessageRole.USER, content=user_message)
        self._acquire()
        try:
            async with conversation_span(self.session.session_id, self.settings.model):
                self.session.add(user_message)
                self.state = ConversationState.TURN_PENDING
                async for event in self._drive():
                    yield event
        finally:
            self._running = False

    async def iter_resolve(
        self, decision: ApprovalDecision, tool_call_id: str,
    ) -> AsyncIterator[StreamEvent]:
        if self._running:
            raise ConversationBusyError("Conversation is already running")
        if self.state is not ConversationState.SUSPENDED:
            raise NoPendingApprovalError("No tool call is awaiting approval")
        self._running = True
        self._cancel.clear()
        try:
            async with conversation_span(
                self.session.session_id, self.settings.model, "resolve",
            ):
                outcome = await self.gate.resolve(decision, tool_call_id)
                self.state = ConversationState.GATE_PENDING
                async for event in self._drive(outcome):
                    yield event
        finally:
            self._running = False

    def cancel(self) -> None:
        """Abandon the in-flight turn; the run ends with ``cancelled=True``."""
        logger.info(f"Cancelling conversation {self.session.session_id}")
        self._cancel.set()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """JSON-serialisable state: history plus any paused approval walk."""
        if self._running:
            raise ConversationBusyError("Cannot snapshot a running conversation")
        checkpoint = self.gate.checkpoint
        return {
            "state": self.state.value,
            "session": self.session.model_dump(mode="json"),
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
        }

    @classmethod
    def restore(
        cls,
        snapshot: dict,
        provider: ModelProvider,
        executor: ToolExecutor,
        **kwargs,
    ) -> "Conversation":
        """Rebuild a conversation saved with :meth:`snapshot`."""
        session = Session.model_validate(snapshot["session"])
        conversation = cls(provider, executor, session=session, **kwargs)
        if snapshot.get("checkpoint"):
            conversation.gate.restore(
                PausedCheckpoint.model_validate(snapshot["checkpoint"])
            )
            conversation.state = ConversationState.SUSPENDED
        else:
            conversation.state = ConversationState(snapshot.get("state", "idle"))
        return conversation

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        if self.state is ConversationState.SUSPENDED:
            pending = self.pending_call
            raise ApprovalPendingError(
                f"Tool call '{pending.id if pending else '?'}' is awaiting approval"
            )
        if self._running:
            raise ConversationBusyError("Conversation is already running")
        self._running = True
        self._cancel.clear()

    async def _drain(self, events: AsyncIterator[StreamEvent]) -> ConversationResult:
        result: ConversationResult | None = None
        async for event in events:
            if isinstance(event, RunCompleteEvent):
                result = event.result
        if result is None:
            raise RuntimeError("Run ended without emitting RunCompleteEvent")
        return result

    async def _drive(
        self, outcome: GateOutcome | None = None,
    ) -> AsyncIterator[StreamEvent]:
        turns = 0
        while True:
            if outcome is None:
                if turns >= self.settings.max_turns:
                    yield self._fail(TurnError(
                        kind=ErrorKind.MAX_TURNS_EXCEEDED,
                        detail=f"Maximum turns ({self.settings.max_turns}) reached. "
                               "Please try again.",
                    ), turns)
                    return

                unsupported = self._check_input()
                if unsupported is not None:
                    yield self._fail(unsupported, turns)
                    return

                self.state = ConversationState.TURN_PENDING
                turns += 1
                result = None
                async for event in self.retry.iter(self._build_request(), cancel=self._cancel):
                    if isinstance(event, TurnEndEvent):
                        result = event.result
                    yield event

                if result is None:
                    logger.info("Turn cancelled; conversation stopped")
                    self.state = ConversationState.DONE
                    yield RunCompleteEvent(result=ConversationResult(
                        state=self.state, turns=turns, cancelled=True,
                    ))
                    return

                if not result.ok:
                    yield self._fail(result.error, turns)
                    return

                assistant = result.to_assistant_message()
                if not result.tool_calls:
                    self.session.add(assistant)
                    self.state = ConversationState.DONE
                    yield RunCompleteEvent(result=ConversationResult(
                        state=self.state, last_message=assistant, turns=turns,
                    ))
                    return

                self.state = ConversationState.GATE_PENDING
                try:
                    outcome = await self.gate.start(
                        assistant, list(self.session.transcript),
                    )
                except BaseException:
                    if self.gate.state is GateState.SUSPENDED:
                        self.state = ConversationState.SUSPENDED
                    raise

            for event in self._tool_result_events(outcome):
                yield event

            if isinstance(outcome, Suspended):
                call = outcome.pending_call
                logger.info(f"Flow paused, waiting for approval of '{call.name}' ({call.id})")
                self.state = ConversationState.SUSPENDED
                yield ApprovalRequiredEvent(
                    tool_call_id=call.id, name=call.name, arguments=call.arguments,
                )
                yield RunCompleteEvent(result=ConversationResult(
                    state=self.state, pending_call=call, turns=turns,
                ))
                return

            self.session.add(outcome.assistant_message, *outcome.tool_results)
            outcome = None

    def _fail(self, error: TurnError, turns: int) -> RunCompleteEvent:
        logger.error(f"Turn failed ({error.kind.value}): {error.detail}")
        message = Message(
            role=MessageRole.ERROR, content=error.user_message(), is_error=True,
        )
        self.session.add(message)
        self.state = ConversationState.DONE
        return RunCompleteEvent(result=ConversationResult(
            state=self.state, last_message=message, error=error, turns=turns,
        ))

    def _tool_result_events(self, outcome: GateOutcome) -> list[ToolResultEvent]:
        if isinstance(outcome, Completed):
            assistant = outcome.assistant_message
        else:
            assistant = outcome.checkpoint.turn_assistant_message
        names = {tc.id: tc.name for tc in assistant.tool_calls or []}
        return [
            ToolResultEvent(
                tool_call_id=m.tool_call_id,
                name=names.get(m.tool_call_id, ""),
                content=m.text(),
                is_error=m.is_error,
            )
            for m in outcome.executed
        ]

    def _check_input(self) -> TurnError | None:
        info = self.settings.model_info
        has_images = any(
            m.role == MessageRole.USER and m.has_images()
            for m in self.session.transcript
        )
        if has_images and not info.vision_supported:
            logger.warning(
                f"Attempting to use images with non-vision model: {self.settings.model}"
            )
            return TurnError(
                kind=ErrorKind.UNSUPPORTED_INPUT,
                detail=f"The selected model ({self.settings.model}) does not support "
                       "image inputs. Please select a vision-capable model.",
            )
        return None

    def _build_request(self) -> CompletionRequest:
        messages = [
            {"role": "system", "content": self.settings.system_prompt()},
            *to_wire_messages(self.session.transcript),
        ]
        return CompletionRequest(
            model=self.settings.model,
            messages=messages,
            temperature=self.settings.temperature,
            top_p=self.settings.top_p,
            tools=self.tools or None,
        )
