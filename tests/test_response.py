"""
Tests for the response adapter and output parsing.
"""

from dataclasses import dataclass
from enum import Enum

import pytest
from pydantic import BaseModel

from agentrun.errors import ParseError, SchemaError
from agentrun.response import (
    decode_arguments,
    extract_content,
    extract_tool_calls,
    extract_usage,
    is_tool_call_variant,
)
from agentrun.schema import build_schema, parse_output, stream_to_outputs
from agentrun.types import ToolCall


class Weather(BaseModel):
    city: str
    temperature: float


class TestExtractToolCalls:
    """Test tool call extraction across response shapes."""

    def test_flat_dict(self) -> None:
        """Flat {id, name, arguments} entries."""
        calls = extract_tool_calls({"tool_calls": [{"id": "c1", "name": "f", "arguments": {"a": 1}}]})
        assert calls == [ToolCall(id="c1", name="f", arguments={"a": 1})]

    def test_wire_format(self) -> None:
        """OpenAI wire entries with JSON-encoded arguments."""
        response = {"tool_calls": [{"id": "c1", "function": {"name": "f", "arguments": '{"a": 1}'}}]}
        assert extract_tool_calls(response) == [ToolCall(id="c1", name="f", arguments={"a": 1})]

    def test_missing_ids_are_generated(self) -> None:
        """Calls without an id get a unique synthesized one."""
        calls = extract_tool_calls({"tool_calls": [{"name": "f"}, {"name": "g"}]})
        assert all(c.id.startswith("call_") for c in calls)
        assert calls[0].id != calls[1].id

    def test_tagged_dict_variant(self) -> None:
        """A dict tagged as a tool call is a single call."""
        response = {"__type__": "tool_call", "name": "f", "arguments": {"x": 2}}
        assert is_tool_call_variant(response)
        [call] = extract_tool_calls(response)
        assert call.name == "f"
        assert extract_content(response) == ""

    def test_wrapped_variant(self) -> None:
        """{data, usage} wrappers are unwrapped."""

        class SearchToolCall:
            tool_name = "search"
            tool_arguments = {"q": "x"}

        class Wrapped:
            def __init__(self) -> None:
                self.data = SearchToolCall()
                self.usage = {"input_tokens": 1}

        [call] = extract_tool_calls(Wrapped())
        assert call.name == "search"
        assert extract_usage(Wrapped()) == {"input_tokens": 1}

    def test_plain_text(self) -> None:
        """Text responses have no tool calls."""
        assert extract_tool_calls("hello") == []
        assert extract_content("hello") == "hello"


class TestDecodeArguments:
    """Test argument normalization."""

    def test_invalid_json_kept_raw(self) -> None:
        """Undecodable text is preserved under "raw"."""
        assert decode_arguments("{not json") == {"raw": "{not json"}

    def test_enum_keys(self) -> None:
        """Enum keys contribute their values."""

        class Key(Enum):
            CITY = "city"

        assert decode_arguments({Key.CITY: "Oslo"}) == {"city": "Oslo"}

    def test_empty(self) -> None:
        """None and blank text decode to no arguments."""
        assert decode_arguments(None) == {}
        assert decode_arguments("  ") == {}


class TestExtractUsage:
    """Test usage normalization."""

    def test_openai_names(self) -> None:
        """prompt/completion token names are mapped."""
        usage = extract_usage({"usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}})
        assert usage == {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}

    def test_absent(self) -> None:
        """Responses without usage report None."""
        assert extract_usage({"content": "x"}) is None
        assert extract_usage("text") is None


class TestSchema:
    """Test schema generation."""

    def test_model_schema(self) -> None:
        """Pydantic models produce their JSON schema."""
        schema = build_schema(Weather)
        assert schema["title"] == "Weather"
        assert set(schema["required"]) == {"city", "temperature"}

    def test_plain_types(self) -> None:
        """Other types go through a TypeAdapter."""
        assert build_schema(dict[str, int]) == {"type": "object", "additionalProperties": {"type": "integer"}}
        assert build_schema(None) is None

    def test_invalid_type(self) -> None:
        """Types pydantic cannot describe raise SchemaError."""

        class Opaque:
            pass

        with pytest.raises(SchemaError):
            build_schema(Opaque)


class TestParseOutput:
    """Test coercion of responses into output types."""

    def test_json_text(self) -> None:
        """JSON text is decoded and validated."""
        assert parse_output(Weather, '{"city": "Oslo", "temperature": 3.5}') == Weather(city="Oslo", temperature=3.5)

    def test_dict(self) -> None:
        """Mappings are validated directly."""
        assert parse_output(Weather, {"city": "Oslo", "temperature": 1}).temperature == 1.0

    def test_instance_passthrough(self) -> None:
        """Values already of the output type are returned unchanged."""
        weather = Weather(city="Oslo", temperature=1)
        assert parse_output(Weather, weather) is weather

    def test_dataclass_output(self) -> None:
        """Any pydantic-compatible type can be an output type."""

        @dataclass
        class Point:
            x: int
            y: int

        assert parse_output(Point, '{"x": 1, "y": 2}') == Point(1, 2)

    def test_str_output(self) -> None:
        """A str output type keeps the text as-is."""
        assert parse_output(str, '{"not": "decoded"}') == '{"not": "decoded"}'

    def test_no_output_type(self) -> None:
        """Without an output type the content text is returned."""
        assert parse_output(None, {"content": "plain"}) == "plain"
        assert parse_output(None, {"other": 1}) == {"other": 1}

    def test_invalid(self) -> None:
        """Unparseable responses raise ParseError with details."""
        with pytest.raises(ParseError, match="Weather") as excinfo:
            parse_output(Weather, '{"city": "Oslo"}')
        assert excinfo.value.details["errors"][0]["loc"] == ("temperature",)

    def test_stream_pass_through(self) -> None:
        """Chunks that fail conversion are yielded unchanged."""
        chunks = ['{"city": "A", "temperature": 1}', "{partial"]
        assert list(stream_to_outputs(Weather, chunks)) == [Weather(city="A", temperature=1), "{partial"]
