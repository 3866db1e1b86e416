"""
agentrun - orchestration core for LLM-backed agents.

An agent call renders a prompt, invokes a pluggable provider, and parses
the answer into a typed output. When tools are configured it runs a
multi-turn tool-calling loop:

1. Context: messages grouped into iterations, with token accounting
2. Tool dispatch: every failure becomes a per-call error result
3. Hooks: optional extension points, best-effort or fatal per hook
4. Progressive disclosure: shrink tool output, compact old history
5. Limits: max iterations, token budgets, per-client warnings

State lives in memory for the duration of one call.
"""

__version__ = "0.1.0"

from agentrun.config import AgentConfig, BudgetConfig, BudgetStrategy, LLMConfig, OnError, ToolPolicy
from agentrun.context import CharacterEstimator, Context, Iteration, MessageOverheadEstimator
from agentrun.disclosure import (
    age_based_compact,
    process_tool_results,
    sliding_window_compact,
    token_based_compact,
)
from agentrun.dispatch import ActionDispatcher, ExecutionContext, ToolExecutor
from agentrun.errors import (
    AgentCallError,
    AgentError,
    BudgetError,
    ConfigError,
    ErrorType,
    HookError,
    LLMError,
    ParseError,
    PromptError,
    SchemaError,
    ValidationError,
)
from agentrun.hooks import AgentHooks, DefaultHooks, HookChain
from agentrun.llm import OpenAIProvider
from agentrun.providers import MockProvider, Provider, ProviderRegistry, get_registry, register_provider
from agentrun.result import CallResult, Result, StreamResult
from agentrun.runtime import Agent, Runtime, call, call_or_raise, stream, stream_or_raise
from agentrun.telemetry import Telemetry, get_telemetry
from agentrun.token_limits import TokenLimits
from agentrun.tools import Tool, ToolError, ToolParameter, ToolRegistry
from agentrun.types import Message, Role, TokenUsage, ToolCall, ToolResult

__all__ = [
    "ActionDispatcher",
    "Agent",
    "AgentCallError",
    "AgentConfig",
    "AgentError",
    "AgentHooks",
    "BudgetConfig",
    "BudgetError",
    "BudgetStrategy",
    "CallResult",
    "CharacterEstimator",
    "ConfigError",
    "Context",
    "DefaultHooks",
    "ErrorType",
    "ExecutionContext",
    "HookChain",
    "HookError",
    "Iteration",
    "LLMConfig",
    "LLMError",
    "Message",
    "MessageOverheadEstimator",
    "MockProvider",
    "OnError",
    "OpenAIProvider",
    "ParseError",
    "PromptError",
    "Provider",
    "ProviderRegistry",
    "Result",
    "Role",
    "Runtime",
    "SchemaError",
    "StreamResult",
    "Telemetry",
    "TokenLimits",
    "TokenUsage",
    "Tool",
    "ToolCall",
    "ToolError",
    "ToolExecutor",
    "ToolParameter",
    "ToolPolicy",
    "ToolRegistry",
    "ToolResult",
    "ValidationError",
    "age_based_compact",
    "call",
    "call_or_raise",
    "get_registry",
    "get_telemetry",
    "process_tool_results",
    "register_provider",
    "sliding_window_compact",
    "stream",
    "stream_or_raise",
    "token_based_compact",
]
