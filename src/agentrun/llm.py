"""
OpenAI-compatible HTTP provider.

Works with any endpoint speaking the chat completions API:
- vLLM (http://localhost:8000/v1)
- Ollama (http://localhost:11434/v1)
- OpenAI itself

Timeouts are layered, and timeouts, rate limits (429) and 503s are
retried. Everything else fails fast with LLMError. The provider never
hangs the loop: a request that exceeds its read timeout surfaces as an
LLMError through the normal error channel.
"""

import json
import logging
import time
from collections.abc import Iterator, Mapping
from typing import Any

import httpx

from agentrun.config import LLMConfig
from agentrun.errors import LLMError
from agentrun.providers import STREAMING, STRUCTURED_OUTPUT, SYNC_CALL, TOOL_CALLING, CallContext
from agentrun.response import decode_arguments
from agentrun.types import ToolCall

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 180.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0


def to_wire_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Convert context messages to chat completions messages.

    A user message made of tool_result parts becomes one "tool" message
    per part.
    """
    wire: list[dict[str, Any]] = []
    for message in messages:
        content = message.get("content")
        if isinstance(content, list) and content and all(
            isinstance(part, Mapping) and part.get("type") == "tool_result" for part in content
        ):
            for part in content:
                wire.append({
                    "role": "tool",
                    "tool_call_id": part["tool_use_id"],
                    "content": part["content"],
                })
            continue
        wire.append(dict(message))
    return wire


class ChatResponse:
    """
    Response from a chat completion request.

    Wraps the API response and exposes content, tool calls and usage.
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None,
        finish_reason: str,
        raw_response: dict[str, Any],
        usage: dict[str, Any] | None = None,
        model: str | None = None,
    ) -> None:
        self.content = content or ""
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.raw_response = raw_response
        self.usage = usage
        self.model = model

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError("Malformed chat completion response", {"response": data}) from e

        tool_calls = [
            ToolCall(
                id=tc["id"],
                name=tc["function"]["name"],
                arguments=decode_arguments(tc["function"].get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]

        return cls(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            raw_response=data,
            usage=data.get("usage"),
            model=data.get("model"),
        )

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    @property
    def is_complete(self) -> bool:
        """True when no tool calls are pending and the model stopped."""
        return not self.has_tool_calls and self.finish_reason == "stop"


class OpenAIProvider:
    """Provider for OpenAI-compatible chat completion APIs."""

    features = frozenset({SYNC_CALL, STREAMING, STRUCTURED_OUTPUT, TOOL_CALLING})

    def __init__(
        self,
        config: LLMConfig | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config or LLMConfig.from_env()
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=DEFAULT_READ_TIMEOUT,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.Client(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def build_payload(
        self,
        client: str,
        prompt: str | None,
        schema: dict[str, Any] | None,
        options: Mapping[str, Any],
        tools: list[dict[str, Any]] | None,
        messages: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        _, _, model = client.partition(":")
        if messages is None:
            messages = [{"role": "user", "content": prompt or ""}]
        payload: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": to_wire_messages(messages),
            "temperature": options.get("temperature", self.config.temperature),
            "max_tokens": options.get("max_tokens", self.config.max_tokens),
        }
        if tools:
            payload["tools"] = tools
            if options.get("tool_choice"):
                payload["tool_choice"] = options["tool_choice"]
        if schema is not None and not tools:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": schema.get("title", "output"), "schema": schema},
            }
        return payload

    def call(
        self,
        client: str,
        prompt: str | None,
        schema: dict[str, Any] | None,
        options: Mapping[str, Any],
        context: CallContext,
        tools: list[dict[str, Any]] | None,
        messages: list[dict[str, Any]] | None,
    ) -> ChatResponse:
        """Send a chat completion request with automatic retry."""
        payload = self.build_payload(client, prompt, schema, options, tools, messages)
        logger.debug(f"Sending chat request for {context.agent} with {len(payload['messages'])} messages")
        data = self._post_with_retry(payload)
        return ChatResponse.from_api_response(data)

    def _post_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.info(f"Retry attempt {attempt}/{self.max_retries} after {self.retry_delay}s delay...")
                time.sleep(self.retry_delay)

            try:
                response = self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                logger.warning(f"Request timed out (attempt {attempt + 1}): {e}")
                last_error = e
                continue

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status == 429:
                    self._wait_for_rate_limit(e.response)
                    last_error = e
                    continue
                if status == 503:
                    logger.warning(f"Service unavailable (attempt {attempt + 1}): {e}")
                    last_error = e
                    continue
                logger.error(f"HTTP error: {status} - {e.response.text}")
                raise LLMError(f"HTTP {status}: {e.response.text}", {"status": status}) from e

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}): {e}")
                last_error = e
                continue

        logger.error(f"All {self.max_retries + 1} attempts failed. Last error: {last_error}")
        raise LLMError(
            f"Request failed after {self.max_retries + 1} attempts: {last_error}",
            {"attempts": self.max_retries + 1},
        ) from last_error

    def _wait_for_rate_limit(self, response: httpx.Response) -> None:
        wait_time = self.retry_delay
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                wait_time = float(retry_after)
            except ValueError:
                pass
        logger.warning(f"Rate limited. Waiting {wait_time}s")
        time.sleep(wait_time)

    def stream(
        self,
        client: str,
        prompt: str | None,
        schema: dict[str, Any] | None,
        options: Mapping[str, Any],
        context: CallContext,
        tools: list[dict[str, Any]] | None,
        messages: list[dict[str, Any]] | None,
    ) -> Iterator[dict[str, Any]]:
        """
        Stream a chat completion as server-sent events.

        Yields one {"delta": text} dict per content delta.
        """
        payload = self.build_payload(client, prompt, schema, options, tools, messages)
        payload["stream"] = True
        logger.debug(f"Opening chat stream for {context.agent}")

        def generate() -> Iterator[dict[str, Any]]:
            try:
                with self._client.stream("POST", "/chat/completions", json=payload) as response:
                    response.raise_for_status()
                    for line in response.iter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        try:
                            event = json.loads(data)
                        except json.JSONDecodeError:
                            logger.warning(f"Skipping malformed stream event: {data[:100]}")
                            continue
                        for choice in event.get("choices", []):
                            delta = (choice.get("delta") or {}).get("content")
                            if delta:
                                yield {"delta": delta}
            except httpx.HTTPStatusError as e:
                raise LLMError(f"HTTP {e.response.status_code}", {"status": e.response.status_code}) from e
            except httpx.HTTPError as e:
                raise LLMError(f"Stream failed: {e}") from e

        return generate()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "OpenAIProvider":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
