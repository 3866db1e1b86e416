"""
Configuration for agents and the runtime.

Static settings come from dataclasses, and every section can also be
loaded from environment variables via from_env(). An AgentConfig is read
only for the duration of a call; concurrent calls may share one.
"""

import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from agentrun.errors import ConfigError

if TYPE_CHECKING:
    from agentrun.dispatch import ActionDispatcher
    from agentrun.hooks import AgentHooks
    from agentrun.providers import Provider
    from agentrun.tools import Tool


class OnError(str, Enum):
    """What the loop does when a provider call or tool fails."""
    HALT = "halt"
    CONTINUE = "continue"


class BudgetStrategy(str, Enum):
    """What happens once cumulative tokens reach the token budget."""
    WARN = "warn"
    HALT = "halt"


@dataclass
class LLMConfig:
    """Configuration for the OpenAI-compatible HTTP provider."""
    base_url: str
    api_key: str
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        return cls(
            base_url=os.getenv("AGENTRUN_LLM_BASE_URL", "http://localhost:8000/v1"),
            api_key=os.getenv("AGENTRUN_LLM_API_KEY", ""),
            model=os.getenv("AGENTRUN_LLM_MODEL", ""),
            temperature=float(os.getenv("AGENTRUN_LLM_TEMPERATURE", "0.7")),
            max_tokens=int(os.getenv("AGENTRUN_LLM_MAX_TOKENS", "4096")),
        )


@dataclass
class ToolPolicy:
    """
    Limits and failure handling for the tool-calling loop.

    max_iterations is the safety limit against runaway loops. timeout is
    per tool in seconds and only applies to parallel dispatch.
    """
    max_iterations: int = 10
    on_error: OnError = OnError.HALT
    parallel: bool = False
    timeout: float | None = None

    def __post_init__(self) -> None:
        self.on_error = OnError(self.on_error)
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1", {"max_iterations": self.max_iterations})

    @classmethod
    def from_env(cls) -> "ToolPolicy":
        """Load configuration from environment variables."""
        timeout = os.getenv("AGENTRUN_TOOL_TIMEOUT")
        return cls(
            max_iterations=int(os.getenv("AGENTRUN_MAX_ITERATIONS", "10")),
            on_error=OnError(os.getenv("AGENTRUN_TOOL_ON_ERROR", "halt")),
            parallel=os.getenv("AGENTRUN_TOOL_PARALLEL", "false").lower() in ("1", "true", "yes"),
            timeout=float(timeout) if timeout else None,
        )


@dataclass
class BudgetConfig:
    """Token budget for one call. None means unlimited."""
    token_budget: int | None = None
    budget_strategy: BudgetStrategy = BudgetStrategy.WARN

    def __post_init__(self) -> None:
        self.budget_strategy = BudgetStrategy(self.budget_strategy)

    @classmethod
    def from_env(cls) -> "BudgetConfig":
        """Load configuration from environment variables."""
        budget = os.getenv("AGENTRUN_TOKEN_BUDGET")
        return cls(
            token_budget=int(budget) if budget else None,
            budget_strategy=BudgetStrategy(os.getenv("AGENTRUN_BUDGET_STRATEGY", "warn")),
        )


@dataclass
class AgentConfig:
    """
    Static configuration of one agent.

    client is "<provider>:<model>". provider may be a registry key or a
    Provider instance; when omitted it is taken from the client prefix.
    """
    name: str
    client: str
    provider: "str | Provider | None" = None
    prompt: str | None = None
    output_type: Any = None
    tools: Sequence["Tool"] = ()
    hooks: "AgentHooks | None" = None
    tool_policy: ToolPolicy = field(default_factory=ToolPolicy)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    client_options: dict[str, Any] = field(default_factory=dict)
    action_dispatcher: "ActionDispatcher | None" = None
    domain: Any = None
    tags: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.client:
            raise ConfigError("Agent client must be set", {"agent": self.name})
        self.tools = tuple(self.tools)

    @property
    def provider_key(self) -> "str | Provider":
        if self.provider is not None:
            return self.provider
        return self.client.split(":", 1)[0]

    @property
    def model(self) -> str:
        _, _, model = self.client.partition(":")
        return model

    @property
    def has_tools(self) -> bool:
        return len(self.tools) > 0
