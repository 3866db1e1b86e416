"""
Tests for the tool table and tool dispatch.

Dispatch must never raise: unknown tools, missing parameters and tool
exceptions all come back as error results, in call order.
"""

import threading
import time
from enum import Enum
from typing import Any

import pytest

from agentrun.dispatch import ExecutionContext, ToolExecutor, execute_tools
from agentrun.errors import ConfigError
from agentrun.tools import Tool, ToolError, ToolParameter, ToolRegistry
from agentrun.types import ToolCall, ToolResult

CONTEXT = ExecutionContext(agent="test_agent", domain="test_domain", actor="user-1", tenant="acme")


def greet(arguments: dict[str, Any], context: ExecutionContext) -> dict[str, str]:
    return {"greeting": "Hello, " + arguments["name"]}


def greet_tool() -> Tool:
    return Tool(
        name="greet",
        description="Greet someone",
        parameters=(ToolParameter(name="name", type="string", required=True),),
        function=greet,
    )


class TestToolDefinition:
    """Test tool definitions and schemas."""

    def test_requires_function_or_action(self) -> None:
        """A tool without a function or action is rejected."""
        with pytest.raises(ConfigError, match="either action or function"):
            Tool(name="broken", description="nothing")

    def test_rejects_both_function_and_action(self) -> None:
        """A tool may not have both a function and an action."""
        with pytest.raises(ConfigError):
            Tool(name="broken", description="both", function=greet, action=("Post", "create"))

    def test_parameters_are_normalized(self) -> None:
        """Dict and (name, spec) parameters become ToolParameter."""
        tool = Tool(
            name="search",
            description="Search",
            parameters=(
                {"name": "query", "type": "string", "required": True},
                ("limit", {"type": "integer"}),
            ),
            function=lambda args: [],
        )

        assert tool.parameters == (
            ToolParameter(name="query", type="string", required=True),
            ToolParameter(name="limit", type="integer"),
        )
        assert tool.required_parameters == ["query"]

    def test_openai_schema(self) -> None:
        """Tools convert to the OpenAI function format."""
        schema = greet_tool().to_openai_schema()

        assert schema["type"] == "function"
        assert schema["function"]["name"] == "greet"
        assert schema["function"]["parameters"] == {
            "type": "object",
            "properties": {"name": {"type": "string"}},
            "required": ["name"],
        }


class TestToolRegistry:
    """Test tool lookup."""

    def test_lookup_exact_and_normalized(self) -> None:
        """Names match exactly or by normalized text form."""

        class Names(str, Enum):
            GREET = "greet"

        registry = ToolRegistry.from_tools([greet_tool()])

        assert registry.get("greet") is not None
        assert registry.get(Names.GREET) is not None
        assert registry.get(" greet ") is not None
        assert registry.get("missing") is None
        assert "greet" in registry
        assert len(registry) == 1

    def test_exact_match_wins(self) -> None:
        """An exact match takes precedence over a normalized one."""
        padded = Tool(name=" lookup", description="padded", function=lambda args: "padded")
        exact = Tool(name="lookup", description="exact", function=lambda args: "exact")
        registry = ToolRegistry.from_tools([padded, exact])

        assert registry.get("lookup") is exact

    def test_register_function(self) -> None:
        """register_function builds and registers a tool."""
        registry = ToolRegistry()
        tool = registry.register_function("echo", "Echo input", lambda args: args)

        assert registry.get("echo") is tool
        assert registry.tool_names == ["echo"]


class TestDispatch:
    """Test executing tool calls."""

    def test_greet_scenario(self) -> None:
        """A function tool returns its payload as a success result."""
        results = execute_tools(
            [ToolCall(id="call_1", name="greet", arguments={"name": "Alice"})],
            [greet_tool()],
            CONTEXT,
        )

        assert results == [ToolResult.ok("call_1", {"greeting": "Hello, Alice"})]

    def test_tool_not_found(self) -> None:
        """An unknown tool yields one error mentioning its name."""
        results = execute_tools(
            [ToolCall(id="call_1", name="nonexistent", arguments={})],
            [greet_tool()],
            CONTEXT,
        )

        assert len(results) == 1
        assert results[0].tool_call_id == "call_1"
        assert not results[0].success
        assert "nonexistent" in results[0].error
        assert "not found" in results[0].error

    def test_missing_required_parameters(self) -> None:
        """Missing required parameters are reported by name."""
        tool = Tool(
            name="needs_param",
            description="Needs a parameter",
            parameters=({"name": "required_field", "required": True},),
            function=lambda args, context: args,
        )

        results = execute_tools([ToolCall(id="c", name="needs_param", arguments={})], [tool], CONTEXT)

        assert len(results) == 1
        assert "Missing required parameters" in results[0].error
        assert "required_field" in results[0].error

    def test_tool_exception_is_captured(self) -> None:
        """An exception inside the tool becomes an error result."""

        def explode(arguments: dict[str, Any]) -> None:
            raise RuntimeError("disk on fire")

        tool = Tool(name="explode", description="Fails", function=explode)

        results = execute_tools([ToolCall(id="c", name="explode", arguments={})], [tool], CONTEXT)

        assert results == [ToolResult.failure("c", "disk on fire")]

    def test_tool_error_keeps_structured_reason(self) -> None:
        """ToolError carries a structured failure reason."""

        def reject(arguments: dict[str, Any]) -> None:
            raise ToolError({"code": "forbidden"})

        tool = Tool(name="reject", description="Rejects", function=reject)

        results = execute_tools([ToolCall(id="c", name="reject", arguments={})], [tool], CONTEXT)

        assert results[0].error == {"code": "forbidden"}

    def test_single_argument_function(self) -> None:
        """Functions may take only the arguments."""
        tool = Tool(
            name="double",
            description="Double a number",
            function=lambda args: {"result": args["number"] * 2},
        )

        results = execute_tools([ToolCall(id="c", name="double", arguments={"number": 5})], [tool], CONTEXT)

        assert results[0].payload == {"result": 10}

    def test_function_receives_execution_context(self) -> None:
        """Two-argument functions receive the execution context."""
        seen: list[ExecutionContext] = []
        tool = Tool(
            name="whoami",
            description="Report the actor",
            function=lambda args, context: seen.append(context) or context.actor,
        )

        results = execute_tools([ToolCall(id="c", name="whoami", arguments={})], [tool], CONTEXT)

        assert results[0].payload == "user-1"
        assert seen[0].agent == "test_agent"
        assert seen[0].domain == "test_domain"
        assert seen[0].tenant == "acme"

    def test_action_tools_use_dispatcher(self) -> None:
        """Action-backed tools go through the configured dispatcher."""

        class Dispatcher:
            def __init__(self) -> None:
                self.calls: list[tuple[Any, dict[str, Any]]] = []

            def dispatch(self, action: Any, arguments: dict[str, Any], context: ExecutionContext) -> Any:
                self.calls.append((action, arguments))
                return {"id": 1, **arguments}

        dispatcher = Dispatcher()
        tool = Tool(name="create_post", description="Create a post", action=("Post", "create"))
        executor = ToolExecutor(ToolRegistry.from_tools([tool]), dispatcher=dispatcher)

        results = executor.execute_tools(
            [ToolCall(id="c", name="create_post", arguments={"title": "Hi"})], CONTEXT
        )

        assert results == [ToolResult.ok("c", {"id": 1, "title": "Hi"})]
        assert dispatcher.calls == [(("Post", "create"), {"title": "Hi"})]

    def test_action_without_dispatcher(self) -> None:
        """An action tool without a dispatcher fails without raising."""
        tool = Tool(name="create_post", description="Create a post", action=("Post", "create"))

        results = execute_tools([ToolCall(id="c", name="create_post", arguments={})], [tool], CONTEXT)

        assert not results[0].success
        assert "dispatcher" in results[0].error

    def test_results_preserve_call_order(self) -> None:
        """Mixed outcomes come back in call order."""
        calls = [
            ToolCall(id="1", name="greet", arguments={"name": "A"}),
            ToolCall(id="2", name="missing", arguments={}),
            ToolCall(id="3", name="greet", arguments={"name": "C"}),
        ]

        results = execute_tools(calls, [greet_tool()], CONTEXT)

        assert [r.tool_call_id for r in results] == ["1", "2", "3"]
        assert [r.success for r in results] == [True, False, True]


class TestParallelDispatch:
    """Test dispatching a batch on a thread pool."""

    def test_parallel_results_in_call_order(self) -> None:
        """Slower early calls still come back first."""

        def sleepy(arguments: dict[str, Any]) -> str:
            time.sleep(arguments["delay"])
            return arguments["label"]

        tool = Tool(name="sleepy", description="Sleeps", function=sleepy)
        executor = ToolExecutor(ToolRegistry.from_tools([tool]), parallel=True)
        calls = [
            ToolCall(id="slow", name="sleepy", arguments={"delay": 0.1, "label": "slow"}),
            ToolCall(id="fast", name="sleepy", arguments={"delay": 0.0, "label": "fast"}),
        ]

        results = executor.execute_tools(calls, CONTEXT)

        assert [r.tool_call_id for r in results] == ["slow", "fast"]
        assert [r.payload for r in results] == ["slow", "fast"]

    def test_parallel_runs_concurrently(self) -> None:
        """Calls in one batch overlap in time."""
        barrier = threading.Barrier(2, timeout=2)

        def wait(arguments: dict[str, Any]) -> bool:
            barrier.wait()
            return True

        tool = Tool(name="wait", description="Waits for a peer", function=wait)
        executor = ToolExecutor(ToolRegistry.from_tools([tool]), parallel=True)

        results = executor.execute_tools(
            [ToolCall(id="a", name="wait", arguments={}), ToolCall(id="b", name="wait", arguments={})],
            CONTEXT,
        )

        assert all(r.success for r in results)

    def test_parallel_timeout(self) -> None:
        """A call that outlives the timeout becomes an error result."""
        release = threading.Event()

        def block(arguments: dict[str, Any]) -> str:
            release.wait(2)
            return "late"

        tool = Tool(name="block", description="Blocks", function=block)
        quick = Tool(name="quick", description="Quick", function=lambda args: "quick")
        executor = ToolExecutor(ToolRegistry.from_tools([tool, quick]), parallel=True, timeout=0.2)

        try:
            results = executor.execute_tools(
                [ToolCall(id="a", name="block", arguments={}), ToolCall(id="b", name="quick", arguments={})],
                CONTEXT,
            )
        finally:
            release.set()

        assert not results[0].success
        assert "timed out" in results[0].error
        assert results[1] == ToolResult.ok("b", "quick")

    def test_timeout_counts_from_tool_start(self) -> None:
        """Queued calls get the full timeout once a worker picks them up."""

        def sleepy(arguments: dict[str, Any]) -> str:
            time.sleep(0.2)
            return arguments["label"]

        tool = Tool(name="sleepy", description="Sleeps", function=sleepy)
        executor = ToolExecutor(ToolRegistry.from_tools([tool]), parallel=True, max_workers=2, timeout=0.5)
        calls = [ToolCall(id=f"c{i}", name="sleepy", arguments={"label": str(i)}) for i in range(6)]

        results = executor.execute_tools(calls, CONTEXT)

        assert all(r.success for r in results)
        assert [r.payload for r in results] == ["0", "1", "2", "3", "4", "5"]

    def test_queued_calls_fail_when_workers_are_stuck(self) -> None:
        """Calls that can never start because every worker timed out fail too."""
        release = threading.Event()

        def block(arguments: dict[str, Any]) -> str:
            release.wait(2)
            return "late"

        tool = Tool(name="block", description="Blocks", function=block)
        executor = ToolExecutor(ToolRegistry.from_tools([tool]), parallel=True, max_workers=1, timeout=0.2)

        start = time.monotonic()
        try:
            results = executor.execute_tools(
                [ToolCall(id="a", name="block", arguments={}), ToolCall(id="b", name="block", arguments={})],
                CONTEXT,
            )
        finally:
            release.set()

        assert time.monotonic() - start < 1.5
        assert [r.success for r in results] == [False, False]
        assert all("timed out" in r.error for r in results)
