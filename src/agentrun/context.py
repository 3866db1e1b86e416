"""
Conversation context for one agent call.

A Context groups messages into iterations (one provider round-trip per
iteration), tracks token usage per iteration, and carries per-iteration
metadata such as summarization markers. Every operation returns a new
Context or Iteration; inputs are never mutated, so a caller can hold on
to an earlier context and compare it with a later one.

Token budget helpers work with a pluggable estimator. The default,
MessageOverheadEstimator, charges a fixed 10 tokens per message and
ignores content length. CharacterEstimator is the content-aware
alternative (chars / 4 plus the per-message overhead).
"""

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from agentrun.types import Message, Role, TokenUsage, ToolCall, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_OVERHEAD = 10


class TokenEstimator(Protocol):
    """Estimates the token cost of a list of messages."""
    def __call__(self, messages: Sequence[Message]) -> int: ...


@dataclass(frozen=True)
class MessageOverheadEstimator:
    """Fixed cost per message, independent of content."""
    per_message: int = DEFAULT_MESSAGE_OVERHEAD

    def __call__(self, messages: Sequence[Message]) -> int:
        return self.per_message * len(messages)


@dataclass(frozen=True)
class CharacterEstimator:
    """
    Content-aware estimate: characters / chars_per_token plus a fixed
    overhead per message. Structured content is measured by its JSON
    encoding.
    """
    chars_per_token: float = 4.0
    message_overhead: int = DEFAULT_MESSAGE_OVERHEAD

    def __call__(self, messages: Sequence[Message]) -> int:
        total = 0
        for message in messages:
            if isinstance(message.content, str):
                text = message.content
            else:
                text = json.dumps(message.content, default=str)
            total += int(len(text) / self.chars_per_token) + self.message_overhead
        return total


DEFAULT_ESTIMATOR: TokenEstimator = MessageOverheadEstimator()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validate_budget(budget: int) -> None:
    if not isinstance(budget, int) or isinstance(budget, bool) or budget <= 0:
        raise ValueError("budget must be a positive integer")


@dataclass(frozen=True)
class Iteration:
    """One round-trip grouping of messages."""
    number: int
    messages: tuple[Message, ...] = ()
    tool_calls: tuple[ToolCall, ...] = ()
    started_at: datetime | None = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def append(self, message: Message) -> "Iteration":
        return replace(self, messages=self.messages + (message,))

    def update_metadata(self, key: str, value: Any) -> "Iteration":
        """Return a copy with metadata[key] set to value."""
        return replace(self, metadata={**self.metadata, key: value})

    def mark_as_summarized(self, summary: str) -> "Iteration":
        return replace(
            self,
            metadata={
                **self.metadata,
                "summarized": True,
                "summary": summary,
                "summarized_at": _utcnow(),
            },
        )

    def is_summarized(self) -> bool:
        return bool(self.metadata.get("summarized", False))

    def get_summary(self) -> str | None:
        return self.metadata.get("summary")

    def to_dict(self) -> dict[str, Any]:
        metadata = {
            key: value.to_dict() if isinstance(value, TokenUsage) else value
            for key, value in self.metadata.items()
        }
        if isinstance(metadata.get("summarized_at"), datetime):
            metadata["summarized_at"] = metadata["summarized_at"].isoformat()
        return {
            "number": self.number,
            "messages": [m.to_dict() for m in self.messages],
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metadata": metadata,
        }


def update_iteration_metadata(iteration: Iteration, key: str, value: Any) -> Iteration:
    """Functional form of Iteration.update_metadata."""
    return iteration.update_metadata(key, value)


def mark_as_summarized(iteration: Iteration, summary: str) -> Iteration:
    """Functional form of Iteration.mark_as_summarized."""
    return iteration.mark_as_summarized(summary)


def _input_to_text(input: Any) -> str:
    if isinstance(input, str):
        return input
    if isinstance(input, Mapping) and "message" in input:
        message = input["message"]
        return message if isinstance(message, str) else json.dumps(message, default=str)
    return json.dumps(input, default=str)


@dataclass(frozen=True)
class Context:
    """
    The accumulated conversation state for one agent call.

    iterations is ordered oldest first and never empty once created.
    current_iteration is the number of the turn in progress.
    """
    iterations: tuple[Iteration, ...]
    current_iteration: int = 1

    @classmethod
    def new(cls, input: Any, system_prompt: str | None = None) -> "Context":
        """
        Create a context holding the initial user input.

        A mapping input with a "message" key contributes that value as the
        user text; anything else is serialized to JSON.
        """
        messages: list[Message] = []
        if system_prompt is not None:
            messages.append(Message(role=Role.SYSTEM, content=system_prompt))
        messages.append(Message(role=Role.USER, content=_input_to_text(input)))
        return cls(iterations=(Iteration(number=1, messages=tuple(messages)),))

    # -- mutation (by replacement) ---------------------------------------

    def _replace_current(self, iteration: Iteration) -> "Context":
        return replace(self, iterations=self.iterations[:-1] + (iteration,))

    @property
    def current(self) -> Iteration:
        return self.iterations[-1]

    def add_assistant_message(
        self,
        content: str,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> "Context":
        calls = tuple(tool_calls or ())
        message = Message(
            role=Role.ASSISTANT,
            content=content,
            tool_calls=calls or None,
        )
        current = self.current.append(message)
        if calls:
            current = replace(current, tool_calls=current.tool_calls + calls)
        return self._replace_current(current)

    def add_user_message(self, content: str) -> "Context":
        return self._replace_current(self.current.append(Message(role=Role.USER, content=content)))

    def add_tool_results(self, results: Sequence[ToolResult]) -> "Context":
        """Fold tool results into one user message, in the given order."""
        parts = [
            {
                "type": "tool_result",
                "tool_use_id": result.tool_call_id,
                "content": result.to_content(),
            }
            for result in results
        ]
        message = Message(role=Role.USER, content=parts)
        return self._replace_current(self.current.append(message))

    def add_token_usage(self, usage: Any) -> "Context":
        """
        Record usage on the current iteration.

        cumulative_tokens is the previous iteration's cumulative total plus
        this usage, so totals only ever grow.
        """
        current_usage = TokenUsage.from_mapping(usage)
        current = self.current
        if isinstance(current.metadata.get("cumulative_tokens"), TokenUsage):
            base = current.metadata["cumulative_tokens"]
        else:
            base = self._previous_cumulative()
        current = replace(
            current,
            metadata={
                **current.metadata,
                "current_usage": current_usage,
                "cumulative_tokens": base + current_usage,
            },
        )
        return self._replace_current(current)

    def _previous_cumulative(self) -> TokenUsage:
        for iteration in reversed(self.iterations[:-1]):
            cumulative = iteration.metadata.get("cumulative_tokens")
            if isinstance(cumulative, TokenUsage):
                return cumulative
        return TokenUsage()

    def start_iteration(self) -> "Context":
        """Close the current iteration and open the next one."""
        now = _utcnow()
        closed = replace(self.current, completed_at=now)
        number = self.current_iteration + 1
        return Context(
            iterations=self.iterations[:-1] + (closed, Iteration(number=number, started_at=now)),
            current_iteration=number,
        )

    def with_iterations(self, iterations: Sequence[Iteration]) -> "Context":
        return replace(self, iterations=tuple(iterations))

    # -- accessors ---------------------------------------------------------

    def get_cumulative_tokens(self) -> TokenUsage:
        for iteration in reversed(self.iterations):
            cumulative = iteration.metadata.get("cumulative_tokens")
            if isinstance(cumulative, TokenUsage):
                return cumulative
        return TokenUsage()

    def exceeded_max_iterations(self, max_iterations: int) -> bool:
        return self.current_iteration >= max_iterations

    def extract_tool_calls(self) -> list[ToolCall]:
        if not self.current.messages:
            return []
        last = self.current.messages[-1]
        if last.role == Role.ASSISTANT and last.tool_calls:
            return list(last.tool_calls)
        return []

    def messages(self) -> list[Message]:
        return [m for iteration in self.iterations for m in iteration.messages]

    def to_messages(self) -> list[dict[str, Any]]:
        """Flatten all iterations into the provider wire format."""
        return [m.to_dict() for m in self.messages()]

    def get_iteration(self, number: int) -> Iteration | None:
        for iteration in self.iterations:
            if iteration.number == number:
                return iteration
        return None

    def count_iterations(self) -> int:
        return len(self.iterations)

    def get_iteration_range(self, start: int, end: int) -> list[Iteration]:
        """Iterations at 0-based positions start..end inclusive, clamped."""
        if start < 0 or end < start or start >= len(self.iterations):
            return []
        return list(self.iterations[start:end + 1])

    def keep_last_iterations(self, n: int) -> "Context":
        if n >= len(self.iterations):
            return self
        if n <= 0:
            raise ValueError("n must be a positive integer")
        return replace(self, iterations=self.iterations[-n:])

    def remove_old_iterations(self, max_age_seconds: float) -> "Context":
        """
        Drop iterations started before now - max_age_seconds.

        Iterations without a timestamp are kept. The newest iteration is
        kept even when it is older than the cutoff.
        """
        cutoff = _utcnow() - timedelta(seconds=max_age_seconds)
        kept = tuple(
            it for it in self.iterations
            if it.started_at is None or it.started_at >= cutoff
        )
        return replace(self, iterations=kept or self.iterations[-1:])

    # -- token budget ------------------------------------------------------

    def estimate_token_count(self, estimator: TokenEstimator | None = None) -> int:
        return (estimator or DEFAULT_ESTIMATOR)(self.messages())

    def exceeds_token_budget(self, budget: int, estimator: TokenEstimator | None = None) -> bool:
        _validate_budget(budget)
        return self.estimate_token_count(estimator) > budget

    def tokens_remaining(self, budget: int, estimator: TokenEstimator | None = None) -> int:
        _validate_budget(budget)
        return max(0, budget - self.estimate_token_count(estimator))

    def budget_utilization(self, budget: int, estimator: TokenEstimator | None = None) -> float:
        _validate_budget(budget)
        return self.estimate_token_count(estimator) / budget

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_iteration": self.current_iteration,
            "iterations": [it.to_dict() for it in self.iterations],
        }
