"""
Typed errors raised by the agent runtime.

Every failure that can reach a caller is an AgentError carrying a kind,
a human-readable message, and a details dict. The result-returning entry
points hand these back as values; the raising entry points wrap them in
AgentCallError with the typed error preserved as the cause.
"""

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Kinds of failure."""
    CONFIG = "config_error"
    PROMPT = "prompt_error"
    SCHEMA = "schema_error"
    LLM = "llm_error"
    PARSE = "parse_error"
    HOOK = "hook_error"
    VALIDATION = "validation_error"
    BUDGET = "budget_error"


class AgentError(Exception):
    """Base error for the agent runtime."""

    error_type: ErrorType = ErrorType.LLM

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        details: dict[str, Any] | None = None,
    ) -> "AgentError":
        """Wrap a foreign exception, keeping it as the cause."""
        if isinstance(exc, AgentError):
            return exc
        error = cls(str(exc) or type(exc).__name__, {"exception": type(exc).__name__, **(details or {})})
        error.__cause__ = exc
        return error

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.error_type.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigError(AgentError):
    """Bad or missing agent setup."""
    error_type = ErrorType.CONFIG


class PromptError(AgentError):
    """Prompt template failed to render."""
    error_type = ErrorType.PROMPT


class SchemaError(AgentError):
    """Missing or invalid output schema."""
    error_type = ErrorType.SCHEMA


class LLMError(AgentError):
    """Provider call failed, including max iterations exceeded."""
    error_type = ErrorType.LLM


class ParseError(AgentError):
    """Response could not be coerced into the output type."""
    error_type = ErrorType.PARSE


class HookError(AgentError):
    """A hook raised an error."""
    error_type = ErrorType.HOOK


class ValidationError(AgentError):
    """Requested capability is not supported by the selected provider."""
    error_type = ErrorType.VALIDATION


class BudgetError(AgentError):
    """Token budget exceeded under the halt strategy."""
    error_type = ErrorType.BUDGET


class AgentCallError(Exception):
    """Raised by the raising entry points; the typed error is __cause__."""

    def __init__(self, error: AgentError) -> None:
        super().__init__(error.message)
        self.error = error
