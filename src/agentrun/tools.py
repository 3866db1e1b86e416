"""
Tool definitions - the static tool table an agent exposes to the model.

A tool is backed by exactly one of:
- function: a Python callable taking (arguments) or (arguments, context)
- action: a reference handed to an external ActionDispatcher

The definitions are immutable for the lifetime of an agent configuration.
Execution lives in agentrun.dispatch.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from agentrun.errors import ConfigError

logger = logging.getLogger(__name__)

JSON_SCHEMA_TYPES = {
    "string": "string",
    "integer": "integer",
    "float": "number",
    "number": "number",
    "boolean": "boolean",
    "uuid": "string",
    "map": "object",
    "object": "object",
    "array": "array",
    "list": "array",
}


class ToolError(Exception):
    """Raised by a tool to fail with a specific reason (text or structured)."""

    def __init__(self, reason: Any) -> None:
        super().__init__(reason if isinstance(reason, str) else repr(reason))
        self.reason = reason


@dataclass(frozen=True)
class ToolParameter:
    """One named tool argument."""
    name: str
    type: str = "string"
    required: bool = False
    description: str | None = None

    @classmethod
    def coerce(cls, value: "ToolParameter | dict[str, Any] | tuple[str, dict[str, Any]]") -> "ToolParameter":
        """Accept a ToolParameter, a dict, or a (name, spec) pair."""
        if isinstance(value, ToolParameter):
            return value
        if isinstance(value, tuple):
            name, spec = value
            return cls(name=str(name), **spec)
        return cls(
            name=str(value["name"]),
            type=str(value.get("type", "string")),
            required=bool(value.get("required", False)),
            description=value.get("description"),
        )

    def to_json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": JSON_SCHEMA_TYPES.get(self.type, "string")}
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class Tool:
    """
    Definition of a tool that the model can request.

    Exactly one of function or action must be set.
    """
    name: str
    description: str
    parameters: tuple[ToolParameter, ...] = ()
    function: Callable[..., Any] | None = None
    action: Any = None

    def __post_init__(self) -> None:
        if (self.function is None) == (self.action is None):
            raise ConfigError(
                "Tool must specify either action or function",
                {"tool": str(self.name)},
            )
        object.__setattr__(
            self,
            "parameters",
            tuple(ToolParameter.coerce(p) for p in self.parameters),
        )

    @property
    def required_parameters(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": normalize_name(self.name),
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.to_json_schema() for p in self.parameters},
                    "required": self.required_parameters,
                },
            },
        }


def normalize_name(name: Any) -> str:
    """Text form of a tool name (enum members contribute their value)."""
    if isinstance(name, Enum):
        name = name.value
    if isinstance(name, bytes):
        name = name.decode()
    return str(name).strip()


@dataclass
class ToolRegistry:
    """
    The tool table for one agent.

    Lookup tries an exact match first and then compares normalized text
    forms, returning the first tool in registration order.
    """

    _tools: dict[Any, Tool] = field(default_factory=dict)

    @classmethod
    def from_tools(cls, tools: Iterable[Tool]) -> "ToolRegistry":
        registry = cls()
        for tool in tools:
            registry.register(tool)
        return registry

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    def register_function(
        self,
        name: str,
        description: str,
        function: Callable[..., Any],
        parameters: Iterable[ToolParameter | dict[str, Any]] = (),
    ) -> Tool:
        """Convenience method to register a function as a tool."""
        tool = Tool(
            name=name,
            description=description,
            parameters=tuple(parameters),
            function=function,
        )
        self.register(tool)
        return tool

    def get(self, name: Any) -> Tool | None:
        """Find a tool by exact name, then by normalized name."""
        try:
            tool = self._tools.get(name)
        except TypeError:
            tool = None
        if tool is not None:
            return tool
        wanted = normalize_name(name)
        for tool_name, candidate in self._tools.items():
            if normalize_name(tool_name) == wanted:
                return candidate
        return None

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return [normalize_name(name) for name in self._tools]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: Any) -> bool:
        return self.get(name) is not None

    def __iter__(self):
        return iter(self._tools.values())
