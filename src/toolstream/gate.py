"""Tool approval gate.

Walks one assistant turn's tool calls in index order. Calls whose policy
allows it run immediately; the first call that needs a human decision
freezes the walk into a :class:`PausedCheckpoint` and the gate suspends
until :meth:`ToolApprovalGate.resolve` is called for that call.

States::

    IDLE -> RUNNING -> IDLE        (every call resolved)
                    -> SUSPENDED   (waiting for a decision)
    SUSPENDED -> RUNNING           (on resolve)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel

from toolstream.approval import ApprovalDecision, ApprovalPolicy, ApprovalPolicyStore
from toolstream.errors import (
    ApprovalMismatchError,
    ApprovalPendingError,
    NoPendingApprovalError,
)
from toolstream.instrumentation import record_error, tool_span
from toolstream.message import Message, MessageRole, ToolCallRef
from toolstream.tools import ToolExecutionResult, ToolExecutor

logger = logging.getLogger(__name__)

DENIED_CONTENT = json.dumps({"error": "Tool execution denied by user."})


class GateState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"


class PausedCheckpoint(BaseModel):
    """Everything needed to continue a paused walk, possibly much later.

    ``paused_tool_index`` is the position of the awaited call in
    ``turn_assistant_message.tool_calls``; every call before it has a
    result in ``completed_tool_results`` and no call after it has run.

    ``approved`` marks a walk that was interrupted while running: the call
    at ``paused_tool_index`` already had its go-ahead and had not finished,
    so resuming runs it without asking again.
    """

    prior_messages: list[Message]
    turn_assistant_message: Message
    completed_tool_results: list[Message]
    paused_tool_index: int
    approved: bool = False

    @property
    def pending_call(self) -> ToolCallRef:
        return self.turn_assistant_message.tool_calls[self.paused_tool_index]


@dataclass
class Completed:
    """Every call of the turn is resolved; results are in call order."""

    assistant_message: Message
    tool_results: list[Message]
    executed: list[Message] = field(default_factory=list)


@dataclass
class Suspended:
    """The walk paused at ``checkpoint.pending_call``."""

    checkpoint: PausedCheckpoint
    executed: list[Message] = field(default_factory=list)

    @property
    def pending_call(self) -> ToolCallRef:
        return self.checkpoint.pending_call


GateOutcome = Completed | Suspended


def _tool_message(call: ToolCallRef, content: str, is_error: bool) -> Message:
    return Message(
        role=MessageRole.TOOL,
        content=content,
        tool_call_id=call.id,
        is_error=is_error,
    )


class ToolApprovalGate:
    """Runs a turn's tool calls, pausing for calls that need approval.

    One gate belongs to one conversation; the policy store may be shared.

    If the walk is interrupted (for example the driving task is cancelled
    while a tool runs), results of calls that already finished are kept:
    the gate suspends at the unfinished call with an ``approved``
    checkpoint, so no finished call is executed again on resume.

    Args:
        executor: Runs approved calls.
        policy_store: Per-tool approval policies.
    """

    def __init__(self, executor: ToolExecutor, policy_store: ApprovalPolicyStore):
        self.executor = executor
        self.policy_store = policy_store
        self.state = GateState.IDLE
        self.checkpoint: PausedCheckpoint | None = None
        self._progress: PausedCheckpoint | None = None
        self._lock = asyncio.Lock()

    async def start(
        self,
        assistant_message: Message,
        prior_messages: list[Message],
    ) -> GateOutcome:
        """Begin walking ``assistant_message.tool_calls`` from the first call."""
        async with self._lock:
            if self.state is not GateState.IDLE:
                raise ApprovalPendingError(
                    f"Gate is {self.state.value}; resolve the pending call first"
                )
            calls = sorted(assistant_message.tool_calls or [], key=lambda tc: tc.index)
            assistant_message = assistant_message.model_copy(
                update={"tool_calls": calls or None}
            )
            self.state = GateState.RUNNING
            self._progress = None
            try:
                return await self._walk(
                    assistant_message, list(prior_messages),
                    results=[], position=0, executed=[],
                )
            except BaseException:
                progress = self._progress
                if progress is not None and progress.completed_tool_results:
                    self._interrupted(progress)
                else:
                    self.checkpoint = None
                    self.state = GateState.IDLE
                raise
            finally:
                self._progress = None

    async def resolve(
        self,
        decision: ApprovalDecision,
        tool_call_id: str,
    ) -> GateOutcome:
        """Apply the decision for the paused call and continue the walk.

        After an interrupted walk, re-submitting the decision for a call
        that already finished resumes at the unfinished call instead.
        """
        async with self._lock:
            if self.state is not GateState.SUSPENDED or self.checkpoint is None:
                raise NoPendingApprovalError("No tool call is awaiting approval")
            checkpoint = self.checkpoint
            call = checkpoint.pending_call
            calls = checkpoint.turn_assistant_message.tool_calls
            resubmitted = checkpoint.approved and tool_call_id in {
                tc.id for tc in calls[:checkpoint.paused_tool_index]
            }
            if call.id != tool_call_id and not resubmitted:
                raise ApprovalMismatchError(
                    f"Awaiting a decision for '{call.id}', got '{tool_call_id}'"
                )

            self.state = GateState.RUNNING
            self._progress = checkpoint.model_copy(update={"approved": True})
            try:
                if resubmitted:
                    logger.info(f"Resuming interrupted tool walk at '{call.name}' ({call.id})")
                    result = await self._execute(call, "resumed")
                else:
                    logger.info(f"User choice for tool '{call.name}': {decision.value}")
                    if not checkpoint.approved:
                        self.policy_store.record_decision(call.name, decision)
                    if decision is ApprovalDecision.DENY:
                        result = _tool_message(call, DENIED_CONTENT, is_error=True)
                    else:
                        result = await self._execute(call, decision.value)

                return await self._walk(
                    checkpoint.turn_assistant_message,
                    checkpoint.prior_messages,
                    results=[*checkpoint.completed_tool_results, result],
                    position=checkpoint.paused_tool_index + 1,
                    executed=[result],
                )
            except BaseException:
                self._interrupted(self._progress)
                raise
            finally:
                self._progress = None

    def restore(self, checkpoint: PausedCheckpoint) -> None:
        """Re-enter SUSPENDED from a checkpoint saved earlier."""
        if self.state is not GateState.IDLE:
            raise ApprovalPendingError(f"Gate is {self.state.value}")
        self.checkpoint = checkpoint
        self.state = GateState.SUSPENDED

    def _interrupted(self, progress: PausedCheckpoint) -> None:
        call = progress.pending_call
        logger.warning(
            f"Tool walk interrupted at '{call.name}' ({call.id}); "
            f"{len(progress.completed_tool_results)} result(s) kept"
        )
        self.checkpoint = progress
        self.state = GateState.SUSPENDED

    async def _walk(
        self,
        assistant_message: Message,
        prior_messages: list[Message],
        results: list[Message],
        position: int,
        executed: list[Message],
    ) -> GateOutcome:
        calls = assistant_message.tool_calls or []
        for i in range(position, len(calls)):
            call = calls[i]
            policy = self.policy_store.get(call.name)
            if policy is ApprovalPolicy.ASK:
                logger.info(f"Tool '{call.name}' requires user approval.")
                self.checkpoint = PausedCheckpoint(
                    prior_messages=prior_messages,
                    turn_assistant_message=assistant_message,
                    completed_tool_results=results,
                    paused_tool_index=i,
                )
                self.state = GateState.SUSPENDED
                return Suspended(checkpoint=self.checkpoint, executed=executed)

            logger.info(
                f"Tool '{call.name}' automatically approved ({policy.value}). Executing..."
            )
            self._progress = PausedCheckpoint(
                prior_messages=prior_messages,
                turn_assistant_message=assistant_message,
                completed_tool_results=list(results),
                paused_tool_index=i,
                approved=True,
            )
            result = await self._execute(call, policy.value)
            results.append(result)
            executed.append(result)

        self.checkpoint = None
        self.state = GateState.IDLE
        return Completed(
            assistant_message=assistant_message,
            tool_results=results,
            executed=executed,
        )

    async def _execute(self, call: ToolCallRef, approval: str) -> Message:
        async with tool_span(call.name, call.id, approval) as span:
            try:
                outcome = await self.executor.execute(call.id, call.name, call.arguments)
            except Exception as e:
                logger.error(f"Error executing tool call '{call.name}': {e}")
                record_error(span, e)
                outcome = ToolExecutionResult(
                    error=f"Error executing tool '{call.name}': {e}"
                )
        return _tool_message(call, outcome.to_content(), is_error=not outcome.ok)
