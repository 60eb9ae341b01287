import json

import pytest

from toolstream.tools import (
    Tool,
    ToolCallResult,
    ToolExecutionResult,
    ToolRegistry,
    _build_parameters_schema,
    _parse_param_descriptions,
    tool,
)


# ---------------------------------------------------------------------------
# Schema generation (_build_parameters_schema)
# ---------------------------------------------------------------------------


class TestBuildParametersSchema:
    def test_python_types_map_to_json_schema_types(self):
        def func(a: str, b: int, c: float, d: bool, e: list, f: dict):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["a"]["type"] == "string"
        assert schema["properties"]["b"]["type"] == "integer"
        assert schema["properties"]["c"]["type"] == "number"
        assert schema["properties"]["d"]["type"] == "boolean"
        assert schema["properties"]["e"]["type"] == "array"
        assert schema["properties"]["f"]["type"] == "object"

    def test_string_annotations_resolved(self):
        def func(count: "int"):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["count"]["type"] == "integer"

    def test_optional_params_not_required(self):
        def func(name: str, greeting: str = "hi"):
            pass

        schema, required = _build_parameters_schema(func)
        assert required == ["name"]
        assert schema["required"] == ["name"]

    def test_unannotated_param_defaults_to_string(self):
        def func(x):
            pass

        schema, _ = _build_parameters_schema(func)
        assert schema["properties"]["x"]["type"] == "string"


# ---------------------------------------------------------------------------
# Docstring param description parsing (_parse_param_descriptions)
# ---------------------------------------------------------------------------


class TestParseParamDescriptions:
    def test_google_style(self):
        def func(name: str, age: int):
            """Do something.

            Args:
                name: The user's name.
                age: The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_google_style_with_type_in_docstring(self):
        def func(name, age):
            """Do something.

            Args:
                name (str): The user's name.
                age (int): The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_sphinx_rest_style(self):
        def func(name: str, age: int):
            """Do something.

            :param name: The user's name.
            :param age: The user's age.
            """

        assert _parse_param_descriptions(func) == {
            "name": "The user's name.",
            "age": "The user's age.",
        }

    def test_multiline_description(self):
        def func(query: str):
            """Search.

            Args:
                query: The search query string.
                    Supports boolean operators.
            """

        assert _parse_param_descriptions(func) == {
            "query": "The search query string.\nSupports boolean operators.",
        }

    def test_no_docstring(self):
        def func(x: str):
            pass

        assert _parse_param_descriptions(func) == {}


# ---------------------------------------------------------------------------
# @tool decorator
# ---------------------------------------------------------------------------


class TestToolDecorator:
    def test_bare_decorator(self):
        @tool
        def greet(name: str):
            """Say hello.

            Args:
                name: Who to greet.
            """
            return f"Hello {name}"

        assert isinstance(greet, Tool)
        assert greet.name == "greet"
        assert greet.description == "Say hello."
        assert greet.parameters_schema["properties"]["name"]["description"] == "Who to greet."

    def test_overrides(self):
        @tool(name="lookup", description="Find things.")
        def search(q: str):
            return q

        assert search.name == "lookup"
        assert search.description == "Find things."

    def test_model_dump_is_openai_function_schema(self):
        @tool
        def ping():
            """Check liveness."""
            return "pong"

        assert ping.model_dump() == {
            "type": "function",
            "function": {
                "name": "ping",
                "description": "Check liveness.",
                "parameters": {"type": "object", "properties": {}, "required": []},
            },
        }

    @pytest.mark.asyncio
    async def test_call_sync_and_async(self):
        @tool
        def double(x: int):
            return x * 2

        @tool
        async def triple(x: int):
            return x * 3

        assert await double(x=2) == ToolCallResult(tool_name="double", output=4)
        assert (await triple(x=2)).output == 6


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


@pytest.fixture
def registry():
    @tool
    def add(a: int, b: int):
        """Add two numbers."""
        return {"sum": a + b}

    @tool
    def shout(text: str):
        """Upper-case text."""
        return text.upper()

    @tool
    def explode():
        """Always fails."""
        raise RuntimeError("kaboom")

    return ToolRegistry([add, shout, explode])


class TestToolRegistry:
    def test_duplicate_names_rejected(self):
        @tool
        def same():
            return 1

        with pytest.raises(ValueError, match="Duplicate tool name"):
            ToolRegistry([same, same])

    def test_schemas(self, registry):
        names = [s["function"]["name"] for s in registry.schemas()]
        assert names == ["add", "shout", "explode"]

    @pytest.mark.asyncio
    async def test_string_output_passed_through(self, registry):
        result = await registry.execute("c1", "shout", '{"text": "hi"}')
        assert result == ToolExecutionResult(result="HI")

    @pytest.mark.asyncio
    async def test_structured_output_json_encoded(self, registry):
        result = await registry.execute("c1", "add", '{"a": 1, "b": 2}')
        assert json.loads(result.result) == {"sum": 3}

    @pytest.mark.asyncio
    async def test_unknown_tool(self, registry):
        result = await registry.execute("c1", "missing", "{}")
        assert not result.ok
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_malformed_arguments_are_execution_errors(self, registry):
        result = await registry.execute("c1", "add", '{"a": 1,')
        assert result.error.startswith("Invalid arguments")

    @pytest.mark.asyncio
    async def test_non_object_arguments(self, registry):
        result = await registry.execute("c1", "add", "[1, 2]")
        assert result.error == "Invalid arguments: expected a JSON object"

    @pytest.mark.asyncio
    async def test_empty_arguments_mean_no_params(self, registry):
        result = await registry.execute("c1", "explode", "")
        assert result.error == "Error calling explode: kaboom"

    @pytest.mark.asyncio
    async def test_wrong_params_reported(self, registry):
        result = await registry.execute("c1", "add", '{"a": 1}')
        assert result.error.startswith("Error calling add:")


def test_execution_result_content():
    assert ToolExecutionResult(result="ok").to_content() == "ok"
    assert json.loads(ToolExecutionResult(error="bad").to_content()) == {"error": "bad"}
