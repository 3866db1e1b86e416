"""
Core types for the agent runtime.

These are the data structures that flow through the tool-calling loop:
messages grouped into iterations, tool calls requested by the model,
tool results produced by dispatch, and token usage records reported by
providers. Everything here is an immutable value; operations that
"change" one return a new instance.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ToolCall:
    """
    A request from the model to execute a tool.

    The id correlates the call with its result. Providers usually supply
    it; when they don't, the response adapter synthesizes one.
    """
    id: str
    name: str
    arguments: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        """Convert to the provider wire format (arguments JSON-encoded)."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": str(self.name),
                "arguments": json.dumps(self.arguments, default=str),
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": str(self.name), "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResult:
    """
    The outcome of executing one tool call.

    Either a success payload (arbitrary structured data) or a failure
    reason. The payload is serialized to JSON before it is folded into
    the conversation.
    """
    tool_call_id: str
    payload: Any = None
    success: bool = True
    error: Any = None

    @classmethod
    def ok(cls, tool_call_id: str, payload: Any) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, payload=payload)

    @classmethod
    def failure(cls, tool_call_id: str, reason: Any) -> "ToolResult":
        return cls(tool_call_id=tool_call_id, success=False, error=reason)

    def with_payload(self, payload: Any) -> "ToolResult":
        """Return a copy carrying a different success payload."""
        return ToolResult(tool_call_id=self.tool_call_id, payload=payload)

    def to_content(self) -> str:
        """
        Serialize the outcome to the JSON text the model sees.

        Mapping payloads are encoded as-is, other payloads are wrapped as
        {"result": payload}, and failures as {"error": reason} with
        non-text reasons stringified. Mapping keys become strings, pydantic
        models and dataclasses become objects, and anything that still
        cannot be encoded falls back to its repr.
        """
        if not self.success:
            reason = self.error if isinstance(self.error, str) else repr(self.error)
            return json.dumps({"error": reason})
        value = _jsonable(self.payload)
        if isinstance(self.payload, Mapping) and isinstance(value, dict):
            return json.dumps(value)
        return json.dumps({"result": value})


def _str_keys(value: Any, seen: frozenset[int] = frozenset()) -> Any:
    if isinstance(value, Mapping | list | tuple):
        if id(value) in seen:
            raise ValueError("Circular reference detected")
        seen = seen | {id(value)}
    if isinstance(value, Mapping):
        return {str(getattr(k, "value", k)): _str_keys(v, seen) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_str_keys(v, seen) for v in value]
    return value


def _jsonable(value: Any) -> Any:
    try:
        return to_jsonable_python(_str_keys(value), serialize_unknown=True)
    except (PydanticSerializationError, ValueError, TypeError, RecursionError):
        return repr(value)


@dataclass(frozen=True)
class Message:
    """
    A single utterance in the conversation.

    Content is plain text, or a list of typed content parts for
    tool-result turns. Assistant messages may carry tool calls.
    """
    role: Role
    content: str | list[dict[str, Any]]
    tool_calls: tuple[ToolCall, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the provider wire format."""
        if self.role == Role.ASSISTANT and self.tool_calls:
            return {
                "role": self.role.value,
                "content": self.content,
                "tool_calls": [tc.to_wire() for tc in self.tool_calls],
            }
        if isinstance(self.content, list):
            return {"role": self.role.value, "content": [dict(part) for part in self.content]}
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class TokenUsage:
    """Input/output/total token counts reported for a provider response."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_mapping(cls, usage: Any) -> "TokenUsage":
        """
        Build from a partial usage record.

        Accepts a mapping or an object with attributes. Missing fields
        default to 0 and total_tokens is derived as input + output when
        absent.
        """
        if usage is None:
            return cls()
        if isinstance(usage, TokenUsage):
            return usage

        def read(key: str) -> int | None:
            if isinstance(usage, Mapping):
                value = usage.get(key)
            else:
                value = getattr(usage, key, None)
            return int(value) if value is not None else None

        input_tokens = read("input_tokens") or 0
        output_tokens = read("output_tokens") or 0
        total_tokens = read("total_tokens")
        if total_tokens is None:
            total_tokens = input_tokens + output_tokens
        return cls(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }
