"""
Tool-calling loop - the core state machine of an agent call.

Each iteration:

1. on_iteration_start (may stop the loop)
2. prepare_context, then to_messages, then prepare_messages
3. provider call with the messages and the tool schemas
4. record the assistant turn and token usage
5. no tool calls: parse the final answer and stop
6. tool calls: dispatch, prepare_tool_results, fold the results into
   the context, on_iteration_complete, open the next iteration

Iterations are strictly sequential. The loop ends on a final answer, on
an error, or when on_iteration_start refuses to continue (max iterations,
a halting token budget, or a custom stop condition).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from agentrun.config import AgentConfig, OnError
from agentrun.context import Context
from agentrun.dispatch import ExecutionContext, ToolExecutor
from agentrun.errors import AgentError, LLMError
from agentrun.hooks import (
    ContextHookContext,
    HookRunner,
    IterationHookContext,
    MessagesHookContext,
    ToolResultsHookContext,
)
from agentrun.providers import CallContext, Provider
from agentrun.response import extract_content, extract_tool_calls, extract_usage
from agentrun.schema import parse_output
from agentrun.telemetry import LLM_ERROR, LLM_REQUEST, LLM_RESPONSE, Telemetry
from agentrun.token_limits import TokenLimits
from agentrun.types import TokenUsage, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class LoopState:
    """Everything one call threads through the loop."""
    config: AgentConfig
    provider: Provider
    schema: dict[str, Any] | None
    call_context: CallContext
    execution_context: ExecutionContext
    executor: ToolExecutor
    hooks: HookRunner
    telemetry: Telemetry
    token_limits: TokenLimits
    context: Context
    tools: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class LoopOutcome:
    """The final answer and the context that produced it."""
    output: Any
    response: Any
    context: Context

    @property
    def usage(self) -> TokenUsage:
        return self.context.get_cumulative_tokens()


def call_provider(
    provider: Provider,
    config: AgentConfig,
    telemetry: Telemetry,
    prompt: str | None,
    schema: dict[str, Any] | None,
    call_context: CallContext,
    tools: list[dict[str, Any]] | None,
    messages: list[dict[str, Any]] | None,
    iteration: int = 1,
) -> Any:
    """One provider call, with telemetry. Failures raise LLMError."""
    metadata = {"agent": config.name, "client": config.client, "iteration": iteration}
    telemetry.emit(LLM_REQUEST, {"message_count": len(messages or [])}, metadata)
    start = time.monotonic()
    try:
        response = provider.call(
            config.client,
            prompt,
            schema,
            config.client_options,
            call_context,
            tools or None,
            messages,
        )
    except Exception as e:
        error = LLMError.from_exception(e, {"client": config.client})
        telemetry.emit(
            LLM_ERROR,
            {"duration": (time.monotonic() - start) * 1000},
            {**metadata, "error": error.message},
        )
        if error is e:
            raise
        raise error from e
    telemetry.emit(LLM_RESPONSE, {"duration": (time.monotonic() - start) * 1000}, metadata)
    return response


class ToolCallingLoop:
    """Drives provider calls and tool dispatch until a final answer."""

    def __init__(self, state: LoopState) -> None:
        self.state = state

    @property
    def context(self) -> Context:
        """The latest context, also after the loop has failed."""
        return self.state.context

    def run(self) -> LoopOutcome:
        state = self.state
        policy = state.config.tool_policy

        while True:
            ctx = state.context
            number = ctx.current_iteration
            state.hooks.iteration_start(self._iteration_hook_context(ctx))

            ctx = state.hooks.prepare(
                "prepare_context",
                ContextHookContext(
                    agent=state.config.name,
                    iteration_number=number,
                    context=ctx,
                    token_usage=ctx.get_cumulative_tokens(),
                ),
                ctx,
                Context,
                "context",
            )
            messages = ctx.to_messages()
            messages = state.hooks.prepare(
                "prepare_messages",
                MessagesHookContext(
                    agent=state.config.name,
                    iteration_number=number,
                    messages=messages,
                    context=ctx,
                    tools=state.tools,
                ),
                messages,
                list,
                "messages",
            )

            try:
                response = call_provider(
                    state.provider,
                    state.config,
                    state.telemetry,
                    None,
                    state.schema,
                    state.call_context,
                    state.tools,
                    messages,
                    iteration=number,
                )
            except AgentError as e:
                if policy.on_error != OnError.CONTINUE:
                    state.context = ctx
                    raise
                logger.warning(f"Provider call failed at iteration {number}: {e.message}, continuing")
                state.context = ctx.add_assistant_message("").start_iteration()
                continue

            tool_calls = extract_tool_calls(response)
            ctx = ctx.add_assistant_message(extract_content(response), tool_calls)
            usage = extract_usage(response)
            if usage is not None:
                ctx = ctx.add_token_usage(usage)
            state.context = ctx

            if not tool_calls:
                logger.debug(f"Iteration {number} produced a final answer")
                output = parse_output(state.config.output_type, response)
                return LoopOutcome(output=output, response=response, context=ctx)

            logger.info(f"Iteration {number}: executing {len(tool_calls)} tool call(s)")
            results = state.executor.execute_tools(tool_calls, state.execution_context)
            results = state.hooks.prepare(
                "prepare_tool_results",
                ToolResultsHookContext(
                    agent=state.config.name,
                    iteration_number=number,
                    tool_calls=tool_calls,
                    results=results,
                    context=ctx,
                    token_usage=ctx.get_cumulative_tokens(),
                ),
                results,
                list,
                "results",
            )

            if policy.on_error == OnError.HALT:
                failures = [r for r in results if not r.success]
                if failures:
                    raise LLMError(
                        "Tool execution failed",
                        {"errors": {r.tool_call_id: _reason(r) for r in failures}},
                    )

            ctx = ctx.add_tool_results(results)
            state.context = ctx
            state.hooks.iteration_complete(
                self._iteration_hook_context(
                    ctx,
                    result=results,
                    token_usage=ctx.current.metadata.get("current_usage"),
                )
            )
            state.context = ctx.start_iteration()

    def _iteration_hook_context(
        self,
        ctx: Context,
        result: Any = None,
        token_usage: TokenUsage | None = None,
    ) -> IterationHookContext:
        state = self.state
        return IterationHookContext(
            agent=state.config.name,
            iteration_number=ctx.current_iteration,
            context=ctx,
            max_iterations=state.config.tool_policy.max_iterations,
            client=state.config.client,
            token_usage=token_usage,
            result=result,
            token_budget=state.config.budget.token_budget,
            budget_strategy=state.config.budget.budget_strategy,
            token_limits=state.token_limits,
            telemetry=state.telemetry,
        )


def _reason(result: ToolResult) -> str:
    return result.error if isinstance(result.error, str) else repr(result.error)
