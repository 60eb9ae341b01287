import json
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_serializer, model_validator


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"
    # Shown to the user, never sent to the endpoint.
    ERROR = "error"


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str
    detail: str | None = None


class ImagePart(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentPart = Annotated[Union[TextPart, ImagePart], Field(discriminator="type")]


class ToolCallRef(BaseModel):
    """A tool call requested by the model.

    ``index`` is the call's position within the assistant turn and is the
    identity used while the call is being assembled from fragments.
    ``arguments`` holds the raw argument text exactly as streamed; it is
    only expected to be valid JSON once the turn has finished.
    """

    index: int
    id: str
    name: str = ""
    arguments: str = ""

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": self.arguments,
            },
        }


class Message(BaseModel):
    role: MessageRole
    content: str | list[ContentPart] = ""
    tool_calls: list[ToolCallRef] | None = None
    tool_call_id: str | None = None
    is_error: bool = False

    @field_serializer("role")
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @model_validator(mode="after")
    def _tool_messages_reference_a_call(self):
        if self.role == MessageRole.TOOL and not self.tool_call_id:
            raise ValueError("tool messages must carry a tool_call_id")
        return self

    def text(self) -> str:
        """Content flattened to plain text (text parts joined)."""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            p.text for p in self.content if isinstance(p, TextPart)
        )

    def has_images(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(p, ImagePart) for p in self.content)


def _user_parts(message: Message) -> list[dict]:
    if isinstance(message.content, str):
        return [{"type": "text", "text": message.content}]
    return [p.model_dump(exclude_none=True) for p in message.content]


def _tool_content(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    return json.dumps([p.model_dump(exclude_none=True) for p in message.content])


def to_wire_messages(messages: list[Message]) -> list[dict]:
    """Convert transcript messages into the OpenAI-compatible request shape.

    User content always goes out as a list of typed parts, assistant content
    is flattened to plain text, and error messages are dropped.
    """
    wire = []
    for m in messages:
        if m.role == MessageRole.ERROR:
            continue
        if m.role == MessageRole.USER:
            wire.append({"role": "user", "content": _user_parts(m)})
        elif m.role == MessageRole.ASSISTANT:
            entry = {"role": "assistant", "content": m.text()}
            if m.tool_calls:
                entry["tool_calls"] = [tc.to_wire() for tc in m.tool_calls]
            wire.append(entry)
        elif m.role == MessageRole.TOOL:
            wire.append({
                "role": "tool",
                "content": _tool_content(m),
                "tool_call_id": m.tool_call_id,
            })
        else:
            wire.append({"role": m.role.value, "content": m.text()})
    return wire
