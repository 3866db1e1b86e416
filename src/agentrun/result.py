"""Results returned by the runtime entry points."""

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agentrun.errors import AgentCallError, AgentError
from agentrun.types import TokenUsage


@dataclass
class Result:
    """
    A successful agent call.

    output is the parsed value of the configured output type. metadata
    holds timing and provenance: duration_ms, started_at, completed_at,
    provider, client, iterations and tags.
    """
    output: Any
    usage: TokenUsage = field(default_factory=TokenUsage)
    thinking: str | None = None
    model: str | None = None
    finish_reason: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw_response: Any = None

    @property
    def duration_ms(self) -> float | None:
        return self.metadata.get("duration_ms")

    @property
    def started_at(self) -> datetime | None:
        return self.metadata.get("started_at")


@dataclass
class CallResult:
    """Outcome of call(): either a Result or a typed AgentError."""
    success: bool
    result: Result | None = None
    error: AgentError | None = None

    @classmethod
    def ok(cls, result: Result) -> "CallResult":
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: AgentError) -> "CallResult":
        return cls(success=False, error=error)

    @property
    def output(self) -> Any:
        return self.result.output if self.result is not None else None

    def unwrap(self) -> Result:
        """Return the Result, or raise AgentCallError chained from the error."""
        if self.success and self.result is not None:
            return self.result
        assert self.error is not None
        raise AgentCallError(self.error) from self.error


@dataclass
class StreamResult:
    """Outcome of stream(): an iterator of parsed chunks or a typed error."""
    success: bool
    chunks: Iterator[Any] | None = None
    error: AgentError | None = None

    def unwrap(self) -> Iterator[Any]:
        if self.success and self.chunks is not None:
            return self.chunks
        assert self.error is not None
        raise AgentCallError(self.error) from self.error
