"""
Providers - the injected capability that talks to a language model.

A provider implements call() and stream() with a fixed argument list and
declares the features it supports. Providers are looked up by key in a
ProviderRegistry. Resolution order:

1. a Provider instance set directly on the agent config
2. a provider registered under the key at runtime
3. a built-in provider ("mock", "openai")

Registration swaps in a new mapping under a lock, so a lookup sees
either the old table or the new one, never a partial update.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from agentrun.errors import ConfigError

logger = logging.getLogger(__name__)

SYNC_CALL = "sync_call"
STREAMING = "streaming"
STRUCTURED_OUTPUT = "structured_output"
TOOL_CALLING = "tool_calling"
CONFIGURABLE_RESPONSES = "configurable_responses"

DEFAULT_MOCK_RESPONSE: dict[str, Any] = {"message": "This is a mock response"}
DEFAULT_MOCK_CHUNKS: list[dict[str, Any]] = [
    {"delta": "Mock "},
    {"delta": "streaming "},
    {"delta": "response"},
]


@dataclass(frozen=True)
class CallContext:
    """What the runtime tells a provider about the call it is serving."""
    agent: str
    input: Any = None
    rendered_prompt: str | None = None
    actor: Any = None
    tenant: Any = None


@runtime_checkable
class Provider(Protocol):
    """Capability contract for language-model backends."""

    features: frozenset[str]

    def call(
        self,
        client: str,
        prompt: str | None,
        schema: dict[str, Any] | None,
        options: Mapping[str, Any],
        context: CallContext,
        tools: list[dict[str, Any]] | None,
        messages: list[dict[str, Any]] | None,
    ) -> Any: ...

    def stream(
        self,
        client: str,
        prompt: str | None,
        schema: dict[str, Any] | None,
        options: Mapping[str, Any],
        context: CallContext,
        tools: list[dict[str, Any]] | None,
        messages: list[dict[str, Any]] | None,
    ) -> Iterator[Any]: ...


@dataclass
class ProviderCall:
    """One recorded invocation of the mock provider."""
    client: str
    prompt: str | None
    schema: dict[str, Any] | None
    options: Mapping[str, Any]
    context: CallContext
    tools: list[dict[str, Any]] | None
    messages: list[dict[str, Any]] | None


class MockProvider:
    """
    Provider for tests and local development.

    Returns options["mock_response"] (or the configured default). When
    constructed with a list of responses they are returned in order; an
    Exception in the list is raised instead of returned. Every call is
    recorded in self.calls.
    """

    features = frozenset({SYNC_CALL, STREAMING, STRUCTURED_OUTPUT, CONFIGURABLE_RESPONSES, TOOL_CALLING})

    def __init__(
        self,
        responses: Sequence[Any] | None = None,
        mock_response: Any = None,
        mock_chunks: Sequence[Any] | None = None,
        delay_ms: int = 0,
    ) -> None:
        self._responses = list(responses or [])
        self.mock_response = mock_response if mock_response is not None else DEFAULT_MOCK_RESPONSE
        self.mock_chunks = list(mock_chunks) if mock_chunks is not None else list(DEFAULT_MOCK_CHUNKS)
        self.delay_ms = delay_ms
        self.calls: list[ProviderCall] = []
        self._lock = threading.Lock()

    def _record(self, *args: Any) -> None:
        with self._lock:
            self.calls.append(ProviderCall(*args))

    def _delay(self, options: Mapping[str, Any]) -> None:
        delay_ms = options.get("mock_delay_ms", self.delay_ms)
        if delay_ms:
            time.sleep(delay_ms / 1000)

    def call(self, client, prompt, schema, options, context, tools, messages) -> Any:
        self._record(client, prompt, schema, options, context, tools, messages)
        self._delay(options)
        with self._lock:
            scripted = self._responses.pop(0) if self._responses else None
        if scripted is None:
            return options.get("mock_response", self.mock_response)
        if isinstance(scripted, BaseException):
            raise scripted
        return scripted

    def stream(self, client, prompt, schema, options, context, tools, messages) -> Iterator[Any]:
        self._record(client, prompt, schema, options, context, tools, messages)
        chunks = list(options.get("mock_chunks", self.mock_chunks))

        def generate() -> Iterator[Any]:
            for chunk in chunks:
                self._delay(options)
                yield chunk

        return generate()


ProviderFactory = Callable[[], Provider]


def _builtin_openai() -> Provider:
    from agentrun.llm import OpenAIProvider

    return OpenAIProvider()


BUILTIN_PROVIDERS: dict[str, ProviderFactory] = {
    "mock": MockProvider,
    "openai": _builtin_openai,
}


@dataclass
class ProviderRegistry:
    """Maps provider keys to provider instances."""
    _registered: dict[str, Provider] = field(default_factory=dict)
    _builtins: dict[str, ProviderFactory] = field(default_factory=lambda: dict(BUILTIN_PROVIDERS))
    _instances: dict[str, Provider] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def register(self, key: str, provider: Provider) -> None:
        """Register (or replace) a provider under key."""
        if not isinstance(provider, Provider):
            raise ConfigError(f"Provider for {key!r} must implement call and stream", {"provider": key})
        with self._lock:
            registered = dict(self._registered)
            if key in registered:
                logger.warning(f"Replacing registered provider: {key}")
            registered[key] = provider
            self._registered = registered
        logger.debug(f"Registered provider: {key}")

    def unregister(self, key: str) -> None:
        with self._lock:
            registered = dict(self._registered)
            registered.pop(key, None)
            self._registered = registered

    def resolve(self, provider: "str | Provider") -> Provider:
        """Return the provider for a key, or the instance itself."""
        if not isinstance(provider, str):
            if isinstance(provider, Provider):
                return provider
            raise ConfigError(f"Invalid provider {provider!r}", {"provider": repr(provider)})

        registered = self._registered
        if provider in registered:
            return registered[provider]

        instances = self._instances
        if provider in instances:
            return instances[provider]
        if provider in self._builtins:
            with self._lock:
                if provider not in self._instances:
                    self._instances = {**self._instances, provider: self._builtins[provider]()}
                return self._instances[provider]

        raise ConfigError(
            f"Unknown provider {provider!r}. Available providers: {', '.join(self.available())}",
            {"provider": provider, "available": self.available()},
        )

    def available(self) -> list[str]:
        return sorted(set(self._registered) | set(self._builtins))

    def features(self, provider: "str | Provider") -> frozenset[str]:
        return frozenset(getattr(self.resolve(provider), "features", frozenset()))

    def supports(self, provider: "str | Provider", feature: str) -> bool:
        return feature in self.features(provider)


_default_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """The process-wide provider registry."""
    return _default_registry


def register_provider(key: str, provider: Provider) -> None:
    _default_registry.register(key, provider)
