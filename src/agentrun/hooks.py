"""
Hook pipeline - optional extension points around an agent call.

Subclass AgentHooks and override the methods you need; everything else
passes its input through unchanged. A hook aborts by raising.

How failures are treated depends on the hook:
- before_call, after_render, after_call: the call fails with the raised
  error (wrapped in HookError unless it is already an AgentError).
- prepare_tool_results, prepare_context, prepare_messages: best-effort
  transforms. A failure is logged and the original data is used.
- on_iteration_start: a failure stops the loop and becomes the result.
  This is how max iterations and halting budgets surface.
- on_iteration_complete: a failure is logged and the loop continues.

The base iteration hooks run DefaultHooks, so custom hooks that override
them can call DefaultHooks.on_iteration_start(ctx) to keep the standard
checks.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from agentrun.config import BudgetStrategy
from agentrun.context import Context
from agentrun.errors import AgentError, BudgetError, HookError, LLMError
from agentrun.telemetry import (
    HOOK_ERROR,
    HOOK_START,
    HOOK_STOP,
    TOKEN_LIMIT_WARNING,
    Telemetry,
    get_telemetry,
)
from agentrun.token_limits import TokenLimits
from agentrun.types import TokenUsage, ToolCall, ToolResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CallHookContext:
    """Passed to before_call, after_render, after_call and on_error."""
    agent: str
    input: Any
    rendered_prompt: str | None = None
    response: Any = None
    error: AgentError | None = None


@dataclass
class IterationHookContext:
    """Passed to on_iteration_start and on_iteration_complete."""
    agent: str
    iteration_number: int
    context: Context
    max_iterations: int
    client: str
    token_usage: TokenUsage | None = None
    result: Any = None
    token_budget: int | None = None
    budget_strategy: BudgetStrategy = BudgetStrategy.WARN
    token_limits: TokenLimits = field(default_factory=TokenLimits)
    telemetry: Telemetry = field(default_factory=get_telemetry)


@dataclass
class ToolResultsHookContext:
    """Passed to prepare_tool_results."""
    agent: str
    iteration_number: int
    tool_calls: list[ToolCall]
    results: list[ToolResult]
    context: Context
    token_usage: TokenUsage | None = None


@dataclass
class ContextHookContext:
    """Passed to prepare_context."""
    agent: str
    iteration_number: int
    context: Context
    token_usage: TokenUsage | None = None


@dataclass
class MessagesHookContext:
    """Passed to prepare_messages."""
    agent: str
    iteration_number: int
    messages: list[dict[str, Any]]
    context: Context
    tools: list[dict[str, Any]] = field(default_factory=list)


class DefaultHooks:
    """Standard iteration checks, used when no hook overrides them."""

    @staticmethod
    def on_iteration_start(ctx: IterationHookContext) -> IterationHookContext:
        """
        Stop once the iteration number passes max_iterations, or when a
        halting token budget has been used up.
        """
        if ctx.iteration_number > ctx.max_iterations:
            raise LLMError(
                f"Max iterations ({ctx.max_iterations}) exceeded",
                {"max": ctx.max_iterations, "current": ctx.iteration_number},
            )
        if ctx.token_budget is not None:
            used = ctx.context.get_cumulative_tokens().total_tokens
            if used >= ctx.token_budget:
                if ctx.budget_strategy == BudgetStrategy.HALT:
                    raise BudgetError(
                        f"Token budget ({ctx.token_budget}) exceeded",
                        {"budget": ctx.token_budget, "used": used},
                    )
                logger.warning(f"Agent {ctx.agent} used {used} tokens of a {ctx.token_budget} budget")
        return ctx

    @staticmethod
    def on_iteration_complete(ctx: IterationHookContext) -> IterationHookContext:
        """Emit token_limit_warning when cumulative usage nears the client limit."""
        if ctx.token_usage is None:
            return ctx
        cumulative = ctx.context.get_cumulative_tokens().total_tokens
        warning = ctx.token_limits.check_limit(cumulative, ctx.client)
        if warning is not None:
            logger.warning(
                f"Agent {ctx.agent} at {cumulative} tokens, "
                f"{warning.threshold_percent}% of the {warning.limit} limit for {ctx.client}"
            )
            ctx.telemetry.emit(
                TOKEN_LIMIT_WARNING,
                {"cumulative_tokens": cumulative},
                {
                    "agent": ctx.agent,
                    "limit": warning.limit,
                    "threshold_percent": warning.threshold_percent,
                    "cumulative_tokens": cumulative,
                },
            )
        return ctx


class AgentHooks:
    """Base hook set. Every method is a pass-through until overridden."""

    def before_call(self, ctx: CallHookContext) -> CallHookContext:
        return ctx

    def after_render(self, ctx: CallHookContext) -> CallHookContext:
        return ctx

    def after_call(self, ctx: CallHookContext) -> CallHookContext:
        return ctx

    def on_error(self, ctx: CallHookContext) -> CallHookContext:
        return ctx

    def prepare_tool_results(self, ctx: ToolResultsHookContext) -> list[ToolResult]:
        return ctx.results

    def prepare_context(self, ctx: ContextHookContext) -> Context:
        return ctx.context

    def prepare_messages(self, ctx: MessagesHookContext) -> list[dict[str, Any]]:
        return ctx.messages

    def on_iteration_start(self, ctx: IterationHookContext) -> IterationHookContext:
        return DefaultHooks.on_iteration_start(ctx)

    def on_iteration_complete(self, ctx: IterationHookContext) -> IterationHookContext:
        return DefaultHooks.on_iteration_complete(ctx)


class HookChain(AgentHooks):
    """
    Runs several hook sets in order, each seeing the previous one's output.

    Iteration hooks run only on members that override them; when none
    does, DefaultHooks runs once.
    """

    def __init__(self, *hooks: AgentHooks) -> None:
        self.hooks = list(hooks)

    def _fold(self, name: str, ctx: CallHookContext) -> CallHookContext:
        for hooks in self.hooks:
            ctx = getattr(hooks, name)(ctx)
        return ctx

    def before_call(self, ctx: CallHookContext) -> CallHookContext:
        return self._fold("before_call", ctx)

    def after_render(self, ctx: CallHookContext) -> CallHookContext:
        return self._fold("after_render", ctx)

    def after_call(self, ctx: CallHookContext) -> CallHookContext:
        return self._fold("after_call", ctx)

    def on_error(self, ctx: CallHookContext) -> CallHookContext:
        return self._fold("on_error", ctx)

    def prepare_tool_results(self, ctx: ToolResultsHookContext) -> list[ToolResult]:
        for hooks in self.hooks:
            ctx = replace(ctx, results=hooks.prepare_tool_results(ctx))
        return ctx.results

    def prepare_context(self, ctx: ContextHookContext) -> Context:
        for hooks in self.hooks:
            ctx = replace(ctx, context=hooks.prepare_context(ctx))
        return ctx.context

    def prepare_messages(self, ctx: MessagesHookContext) -> list[dict[str, Any]]:
        for hooks in self.hooks:
            ctx = replace(ctx, messages=hooks.prepare_messages(ctx))
        return ctx.messages

    def on_iteration_start(self, ctx: IterationHookContext) -> IterationHookContext:
        return self._fold_iteration("on_iteration_start", ctx)

    def on_iteration_complete(self, ctx: IterationHookContext) -> IterationHookContext:
        return self._fold_iteration("on_iteration_complete", ctx)

    def _fold_iteration(self, name: str, ctx: IterationHookContext) -> IterationHookContext:
        default = getattr(AgentHooks, name)
        overriding = [h for h in self.hooks if getattr(type(h), name) is not default]
        if not overriding:
            return getattr(DefaultHooks, name)(ctx)
        for hooks in overriding:
            ctx = getattr(hooks, name)(ctx)
        return ctx


class HookRunner:
    """Invokes hooks with the failure policy each one requires."""

    def __init__(self, hooks: AgentHooks | None, agent: str, telemetry: Telemetry | None = None) -> None:
        self.hooks = hooks or AgentHooks()
        self.agent = agent
        self.telemetry = telemetry or get_telemetry()

    def run(self, name: str, ctx: CallHookContext) -> CallHookContext:
        """Run a call-level hook. Failures propagate as AgentError."""
        hook: Callable[[CallHookContext], CallHookContext] = getattr(self.hooks, name)
        try:
            result = hook(ctx)
        except AgentError:
            raise
        except Exception as e:
            raise HookError(f"{name} hook failed: {e}", {"hook": name}) from e
        if not isinstance(result, CallHookContext):
            raise HookError(
                f"{name} hook returned {type(result).__name__}, expected CallHookContext",
                {"hook": name},
            )
        return result

    def run_on_error(self, ctx: CallHookContext) -> AgentError:
        """Offer an error to on_error; return the (possibly substituted) error."""
        original = ctx.error
        try:
            result = self.hooks.on_error(ctx)
        except AgentError as e:
            return e
        except Exception as e:
            logger.warning(f"on_error hook failed: {e}, keeping original error")
            self._emit_error("on_error", e)
            return original  # type: ignore[return-value]
        if isinstance(result, CallHookContext) and isinstance(result.error, AgentError):
            return result.error
        return original  # type: ignore[return-value]

    def prepare(self, name: str, ctx: Any, original: T, expected: type, label: str) -> T:
        """Run a prepare_* hook; fall back to original on any failure."""
        try:
            result = getattr(self.hooks, name)(ctx)
        except Exception as e:
            logger.warning(f"{name} hook failed: {e}, using original {label}")
            self._emit_error(name, e)
            return original
        if not isinstance(result, expected):
            logger.warning(
                f"{name} hook returned {type(result).__name__}, using original {label}"
            )
            self._emit_error(name, TypeError(f"unexpected return type {type(result).__name__}"))
            return original
        return result

    def iteration_start(self, ctx: IterationHookContext) -> IterationHookContext:
        """Run on_iteration_start. Any failure stops the loop."""
        start = time.monotonic()
        self._emit_start("on_iteration_start", ctx.iteration_number)
        try:
            result = self.hooks.on_iteration_start(ctx)
        except AgentError as e:
            self._emit_error("on_iteration_start", e)
            raise
        except Exception as e:
            self._emit_error("on_iteration_start", e)
            raise HookError(f"on_iteration_start hook failed: {e}", {"hook": "on_iteration_start"}) from e
        self._emit_stop("on_iteration_start", ctx.iteration_number, start)
        return result

    def iteration_complete(self, ctx: IterationHookContext) -> None:
        """Run on_iteration_complete. Failures are logged and ignored."""
        start = time.monotonic()
        self._emit_start("on_iteration_complete", ctx.iteration_number)
        try:
            self.hooks.on_iteration_complete(ctx)
        except Exception as e:
            logger.warning(f"on_iteration_complete hook failed: {e}, continuing iteration")
            self._emit_error("on_iteration_complete", e)
            return
        self._emit_stop("on_iteration_complete", ctx.iteration_number, start)

    def _emit_start(self, hook_name: str, iteration: int) -> None:
        self.telemetry.emit(
            HOOK_START,
            {"system_time": time.time()},
            {"agent": self.agent, "hook_name": hook_name, "iteration": iteration},
        )

    def _emit_stop(self, hook_name: str, iteration: int, start: float) -> None:
        self.telemetry.emit(
            HOOK_STOP,
            {"duration": (time.monotonic() - start) * 1000},
            {"agent": self.agent, "hook_name": hook_name, "iteration": iteration},
        )

    def _emit_error(self, hook_name: str, error: BaseException) -> None:
        self.telemetry.emit(
            HOOK_ERROR,
            {},
            {"agent": self.agent, "hook_name": hook_name, "error": str(error)},
        )
