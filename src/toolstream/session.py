from pydantic import BaseModel, Field

from toolstream.message import Message, MessageRole


class Session(BaseModel):
    """Ordered message history for one conversation.

    ``add`` enforces that every tool result answers a call announced by an
    earlier assistant message.
    """

    session_id: str
    transcript: list[Message] = Field(default_factory=list)

    def add(self, *messages: Message) -> None:
        known = self._announced_call_ids()
        for m in messages:
            if m.role == MessageRole.ASSISTANT and m.tool_calls:
                known.update(tc.id for tc in m.tool_calls)
            if m.role == MessageRole.TOOL and m.tool_call_id not in known:
                raise ValueError(
                    f"Tool result for unknown call '{m.tool_call_id}'"
                )
        self.transcript.extend(messages)

    def _announced_call_ids(self) -> set[str]:
        return {
            tc.id
            for m in self.transcript
            if m.role == MessageRole.ASSISTANT and m.tool_calls
            for tc in m.tool_calls
        }
