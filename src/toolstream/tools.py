import inspect
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
}
_JSON_TYPE_NAMES = {t.__name__: t for t in _JSON_TYPES}

_GOOGLE_ARG = re.compile(r"^(\w+)\s*(?:\([^)]*\))?\s*:\s*(.*)$")
_REST_PARAM = re.compile(r"^:param\s+(?:\w+\s+)?(\w+)\s*:\s*(.*)$")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Extract per-parameter descriptions from a Google or reST docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    descriptions: dict[str, str] = {}
    lines = doc.splitlines()

    for line in lines:
        match = _REST_PARAM.match(line.strip())
        if match:
            descriptions[match.group(1)] = match.group(2).strip()
    if descriptions:
        return descriptions

    in_args = False
    current: str | None = None
    arg_indent = 0
    for line in lines:
        stripped = line.strip()
        if stripped in ("Args:", "Arguments:", "Parameters:"):
            in_args = True
            current = None
            continue
        if not in_args:
            continue
        if not stripped:
            current = None
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        match = _GOOGLE_ARG.match(stripped)
        if match and (current is None or indent <= arg_indent):
            current = match.group(1)
            arg_indent = indent
            descriptions[current] = match.group(2).strip()
        elif current is not None:
            descriptions[current] += "\n" + stripped
    return descriptions


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build a JSON schema for *func*'s parameters.

    Returns the schema and the list of required parameter names.
    """
    descriptions = _parse_param_descriptions(func)
    properties = {}
    required = []
    for name, param in inspect.signature(func).parameters.items():
        annotation = param.annotation
        if isinstance(annotation, str):
            annotation = _JSON_TYPE_NAMES.get(annotation, annotation)
        json_type = _JSON_TYPES.get(annotation, "string")
        properties[name] = {
            "type": json_type,
            "description": descriptions.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {
        "type": "object",
        "properties": properties,
        "required": required,
    }
    return schema, required


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


class Tool(BaseModel):
    """A Python callable exposed to the model as a function tool."""

    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the OpenAI function-tool schema instead of the fields."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    async def __call__(self, **kwargs) -> ToolCallResult:
        output = self.func(**kwargs)
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None,
         description: str | None = None):
    """Decorator turning a function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="search", description="...")``).
    """
    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        doc = inspect.getdoc(f) or ""
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else doc.split("\n\n")[0],
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


@dataclass
class ToolExecutionResult:
    """What a tool execution produced: a result or an error, never both."""

    result: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        if self.error is not None:
            return json.dumps({"error": self.error})
        return self.result or ""


class ToolExecutor(ABC):
    """Runs a tool call on behalf of the approval gate."""

    @abstractmethod
    async def execute(
        self, tool_call_id: str, name: str, arguments: str,
    ) -> ToolExecutionResult:
        ...


class ToolRegistry(ToolExecutor):
    """Executes local :class:`Tool` objects by name.

    Unknown tools, arguments that are not a JSON object, and exceptions
    raised by the tool all come back as ``ToolExecutionResult.error``.

    Raises:
        ValueError: If two tools share the same name.
    """

    def __init__(self, tools: list[Tool]):
        self.tools: dict[str, Tool] = {}
        for t in tools:
            if t.name in self.tools:
                raise ValueError(f"Duplicate tool name: '{t.name}'")
            self.tools[t.name] = t

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self.tools.values()]

    async def execute(
        self, tool_call_id: str, name: str, arguments: str,
    ) -> ToolExecutionResult:
        tool_obj = self.tools.get(name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {name}")
            return ToolExecutionResult(error=f"Tool '{name}' not found")

        try:
            params = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in arguments for {name}: {e}")
            return ToolExecutionResult(error=f"Invalid arguments: {e}")
        if not isinstance(params, dict):
            return ToolExecutionResult(error="Invalid arguments: expected a JSON object")

        logger.info(f"Calling {name} ({tool_call_id}) with {params}")
        try:
            result = await tool_obj(**params)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            return ToolExecutionResult(error=f"Error calling {name}: {e}")

        output = result.output
        if not isinstance(output, str):
            output = json.dumps(output)
        return ToolExecutionResult(result=output)
