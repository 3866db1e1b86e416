"""
Tool dispatch - turns tool calls into tool results.

Dispatch never raises past its boundary. Every failure becomes an error
ToolResult for that call:
- unknown tool name
- missing required parameters
- an exception raised by the tool itself
- a timeout (parallel dispatch only, per tool, counted from when the
  tool starts)

Results always come back in call order, whether the batch ran
sequentially or on a thread pool.
"""

import inspect
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Protocol

from agentrun.tools import Tool, ToolError, ToolRegistry
from agentrun.types import ToolCall, ToolResult

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class ExecutionContext:
    """What a tool may rely on about the enclosing call."""
    agent: str
    domain: Any = None
    actor: Any = None
    tenant: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "domain": self.domain,
            "actor": self.actor,
            "tenant": self.tenant,
            **self.extra,
        }


class ActionDispatcher(Protocol):
    """Executes tools backed by an external action reference."""
    def dispatch(self, action: Any, arguments: dict[str, Any], context: ExecutionContext) -> Any: ...


def _accepts_context(function: Callable[..., Any]) -> bool:
    try:
        signature = inspect.signature(function)
    except (TypeError, ValueError):
        return True
    positional = [
        p for p in signature.parameters.values()
        if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == p.VAR_POSITIONAL for p in signature.parameters.values())
    return has_varargs or len(positional) >= 2


def _normalize_outcome(tool_call_id: str, value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        if value.tool_call_id == tool_call_id:
            return value
        if value.success:
            return ToolResult.ok(tool_call_id, value.payload)
        return ToolResult.failure(tool_call_id, value.error)
    return ToolResult.ok(tool_call_id, value)


class ToolExecutor:
    """
    Executes a batch of tool calls against a tool table.

    With parallel=True, calls in one batch run concurrently on a thread
    pool; timeout (seconds) then bounds each tool, counted from when it
    starts running. Calls still queued when every worker is held by a
    timed-out tool fail as timed out too.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        dispatcher: ActionDispatcher | None = None,
        parallel: bool = False,
        max_workers: int = 4,
        timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.parallel = parallel
        self.max_workers = max_workers
        self.timeout = timeout

    def execute_tools(
        self,
        tool_calls: Sequence[ToolCall],
        context: ExecutionContext,
    ) -> list[ToolResult]:
        """Execute every call and return one result per call, in call order."""
        if not tool_calls:
            return []
        if self.parallel and len(tool_calls) > 1:
            return self._execute_parallel(list(tool_calls), context)
        return [self.execute_tool(call, context) for call in tool_calls]

    def execute_tool(self, tool_call: ToolCall, context: ExecutionContext) -> ToolResult:
        tool = self.registry.get(tool_call.name)
        if tool is None:
            logger.warning(f"Tool {tool_call.name!r} not found")
            return ToolResult.failure(tool_call.id, f"Tool {tool_call.name!r} not found")

        arguments = dict(tool_call.arguments or {})
        missing = [name for name in tool.required_parameters if name not in arguments]
        if missing:
            return ToolResult.failure(
                tool_call.id,
                f"Missing required parameters: {', '.join(missing)}",
            )

        logger.info(f"Executing tool: {tool.name}")
        try:
            value = self._invoke(tool, arguments, context)
        except ToolError as e:
            logger.warning(f"Tool {tool.name} returned an error: {e}")
            return ToolResult.failure(tool_call.id, e.reason)
        except Exception as e:
            logger.error(f"Tool {tool.name} failed: {e}")
            return ToolResult.failure(tool_call.id, str(e) or type(e).__name__)
        return _normalize_outcome(tool_call.id, value)

    def _invoke(self, tool: Tool, arguments: dict[str, Any], context: ExecutionContext) -> Any:
        if tool.function is not None:
            if _accepts_context(tool.function):
                return tool.function(arguments, context)
            return tool.function(arguments)
        if self.dispatcher is None:
            raise ToolError(f"No action dispatcher configured for tool {tool.name}")
        return self.dispatcher.dispatch(tool.action, arguments, context)

    def _execute_parallel(
        self,
        tool_calls: list[ToolCall],
        context: ExecutionContext,
    ) -> list[ToolResult]:
        results: list[ToolResult | None] = [None] * len(tool_calls)
        started: dict[int, float] = {}
        workers = min(self.max_workers, len(tool_calls))
        executor = ThreadPoolExecutor(max_workers=workers)

        def run(index: int) -> ToolResult:
            started[index] = time.monotonic()
            return self.execute_tool(tool_calls[index], context)

        pending = {executor.submit(run, i): i for i in range(len(tool_calls))}
        abandoned: list[Future[ToolResult]] = []
        try:
            while pending:
                done, _ = wait(pending, timeout=self._next_wait(pending, started), return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        results[index] = ToolResult.failure(tool_calls[index].id, str(e))
                if self.timeout is None:
                    continue
                now = time.monotonic()
                for future, index in list(pending.items()):
                    if index in started and now - started[index] >= self.timeout:
                        del pending[future]
                        abandoned.append(future)
                        results[index] = self._timed_out(tool_calls[index])
                # Every worker is held by a timed-out tool; queued calls would never start.
                if pending and sum(not f.done() for f in abandoned) >= workers:
                    for future, index in pending.items():
                        future.cancel()
                        results[index] = self._timed_out(tool_calls[index])
                    pending.clear()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results  # type: ignore[return-value]

    def _next_wait(self, pending: Mapping[Future[ToolResult], int], started: Mapping[int, float]) -> float | None:
        if self.timeout is None:
            return None
        now = time.monotonic()
        waits = [self.timeout - (now - started[i]) for i in pending.values() if i in started]
        if len(waits) < len(pending):
            waits.append(POLL_INTERVAL)
        return max(0.0, min(waits))

    def _timed_out(self, call: ToolCall) -> ToolResult:
        logger.error(f"Tool {call.name} timed out after {self.timeout}s")
        return ToolResult.failure(call.id, f"Tool {call.name} timed out after {self.timeout}s")


def execute_tools(
    tool_calls: Sequence[ToolCall],
    tools: ToolRegistry | Sequence[Tool],
    context: ExecutionContext | Mapping[str, Any],
) -> list[ToolResult]:
    """Sequentially dispatch tool_calls against tools."""
    registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry.from_tools(tools)
    if not isinstance(context, ExecutionContext):
        context = ExecutionContext(**dict(context))
    return ToolExecutor(registry).execute_tools(tool_calls, context)
