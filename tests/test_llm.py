"""
Tests for the OpenAI-compatible provider.

Requests are served by httpx.MockTransport, so nothing leaves the process.
"""

import json
from typing import Any

import httpx
import pytest

from agentrun.config import LLMConfig
from agentrun.errors import LLMError
from agentrun.llm import ChatResponse, OpenAIProvider, to_wire_messages
from agentrun.providers import CallContext


def completion(content: str | None = "Hello", tool_calls: list | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "model": "test-model",
        "choices": [{"message": message, "finish_reason": "tool_calls" if tool_calls else "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
    }


def make_provider(handler, **kwargs: Any) -> OpenAIProvider:
    config = LLMConfig(base_url="http://llm.test/v1", api_key="secret", model="fallback-model")
    return OpenAIProvider(config=config, transport=httpx.MockTransport(handler), retry_delay=0, **kwargs)


CONTEXT = CallContext(agent="test")


class TestChatResponse:
    """Test parsing of chat completion payloads."""

    def test_text_response(self) -> None:
        """Content, usage and model are read from the payload."""
        response = ChatResponse.from_api_response(completion("Hi there"))
        assert response.content == "Hi there"
        assert response.usage["total_tokens"] == 16
        assert response.model == "test-model"
        assert response.is_complete

    def test_tool_calls(self) -> None:
        """Tool call arguments are decoded from JSON."""
        response = ChatResponse.from_api_response(completion(None, [
            {"id": "call_1", "type": "function", "function": {"name": "search", "arguments": '{"q": "x"}'}},
        ]))
        assert response.content == ""
        assert response.has_tool_calls
        assert response.tool_calls[0].name == "search"
        assert response.tool_calls[0].arguments == {"q": "x"}
        assert not response.is_complete

    def test_malformed(self) -> None:
        """A payload without choices is an LLMError."""
        with pytest.raises(LLMError, match="Malformed"):
            ChatResponse.from_api_response({"error": "nope"})


class TestWireMessages:
    """Test conversion of context messages to the chat API format."""

    def test_tool_results_become_tool_messages(self) -> None:
        """Each tool_result part becomes a tool message."""
        messages = [
            {"role": "user", "content": "go"},
            {"role": "user", "content": [
                {"type": "tool_result", "tool_use_id": "c1", "content": '{"a": 1}'},
                {"type": "tool_result", "tool_use_id": "c2", "content": '{"b": 2}'},
            ]},
        ]

        wire = to_wire_messages(messages)

        assert wire == [
            {"role": "user", "content": "go"},
            {"role": "tool", "tool_call_id": "c1", "content": '{"a": 1}'},
            {"role": "tool", "tool_call_id": "c2", "content": '{"b": 2}'},
        ]


class TestOpenAIProvider:
    """Test requests made by the provider."""

    def test_payload(self) -> None:
        """The request carries model, messages, tools and auth."""
        captured: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            captured.append(request)
            return httpx.Response(200, json=completion())

        provider = make_provider(handler)
        tools = [{"type": "function", "function": {"name": "search", "parameters": {}}}]

        response = provider.call(
            "openai:gpt-4o", None, None, {"temperature": 0.1}, CONTEXT, tools,
            [{"role": "user", "content": "hi"}],
        )

        assert response.content == "Hello"
        request = captured[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o"
        assert body["temperature"] == 0.1
        assert body["tools"] == tools
        assert body["messages"] == [{"role": "user", "content": "hi"}]

    def test_prompt_and_schema(self) -> None:
        """A bare prompt becomes a user message and a schema sets response_format."""
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json=completion('{"x": 1}'))

        provider = make_provider(handler)
        schema = {"title": "Point", "type": "object"}

        provider.call("openai:", "Give me a point", schema, {}, CONTEXT, None, None)

        body = bodies[0]
        assert body["model"] == "fallback-model"
        assert body["messages"] == [{"role": "user", "content": "Give me a point"}]
        assert body["response_format"]["json_schema"] == {"name": "Point", "schema": schema}

    def test_retries_on_503(self) -> None:
        """Service unavailable responses are retried."""
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=completion("finally"))

        provider = make_provider(handler)

        response = provider.call("openai:m", "hi", None, {}, CONTEXT, None, None)

        assert response.content == "finally"
        assert len(attempts) == 3

    def test_gives_up_after_retries(self) -> None:
        """Persistent failures raise after max_retries + 1 attempts."""
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(503, text="busy")

        provider = make_provider(handler, max_retries=2)

        with pytest.raises(LLMError, match="after 3 attempts"):
            provider.call("openai:m", "hi", None, {}, CONTEXT, None, None)
        assert len(attempts) == 3

    def test_client_errors_fail_fast(self) -> None:
        """4xx responses other than 429 are not retried."""
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            return httpx.Response(400, text="bad request")

        provider = make_provider(handler)

        with pytest.raises(LLMError, match="HTTP 400") as excinfo:
            provider.call("openai:m", "hi", None, {}, CONTEXT, None, None)
        assert excinfo.value.details == {"status": 400}
        assert len(attempts) == 1

    def test_timeout_is_retried(self) -> None:
        """Timeouts are retried like 503s."""
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return httpx.Response(200, json=completion())

        provider = make_provider(handler)

        assert provider.call("openai:m", "hi", None, {}, CONTEXT, None, None).content == "Hello"
        assert len(attempts) == 2

    def test_stream(self) -> None:
        """Server-sent events are yielded as deltas until [DONE]."""
        events = [
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
        ]
        body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content)["stream"] is True
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        provider = make_provider(handler)

        chunks = list(provider.stream("openai:m", "hi", None, {}, CONTEXT, None, None))

        assert chunks == [{"delta": "Hel"}, {"delta": "lo"}]

    def test_stream_http_error(self) -> None:
        """HTTP errors while streaming raise LLMError from the iterator."""
        provider = make_provider(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(LLMError, match="HTTP 500"):
            list(provider.stream("openai:m", "hi", None, {}, CONTEXT, None, None))

    def test_context_manager_closes_client(self) -> None:
        """Leaving the with block closes the HTTP client."""
        with make_provider(lambda request: httpx.Response(200, json=completion())) as provider:
            pass
        assert provider._client.is_closed
