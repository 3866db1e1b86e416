"""
Runtime entry points.

call() runs one agent call and returns a CallResult; call_or_raise()
returns the Result or raises AgentCallError with the typed error as its
cause. stream() and stream_or_raise() are the streaming counterparts for
agents without tools.

A call:
1. before_call
2. render the prompt (skipped when the agent has no template)
3. after_render
4. build the output schema
5. without tools: one provider call, parsed into the output type;
   with tools: the tool-calling loop
6. after_call, and on any failure on_error
"""

import logging
import time
from collections.abc import Iterator, Mapping
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any

from agentrun.config import AgentConfig
from agentrun.context import Context
from agentrun.dispatch import ExecutionContext, ToolExecutor
from agentrun.errors import AgentError, LLMError, ValidationError
from agentrun.hooks import CallHookContext, HookRunner
from agentrun.loop import LoopState, ToolCallingLoop, call_provider
from agentrun.prompt import render
from agentrun.providers import STREAMING, TOOL_CALLING, CallContext, Provider, ProviderRegistry, get_registry
from agentrun.response import (
    extract_finish_reason,
    extract_model,
    extract_thinking,
    extract_usage,
)
from agentrun.result import CallResult, Result, StreamResult
from agentrun.schema import build_schema, parse_output, stream_to_outputs
from agentrun.telemetry import (
    CALL_SUMMARY,
    PREFIX,
    PROMPT_RENDERED,
    STREAM_CHUNK,
    STREAM_START,
    STREAM_STOP,
    STREAM_SUMMARY,
    Telemetry,
    get_telemetry,
)
from agentrun.token_limits import TokenLimits
from agentrun.tools import ToolRegistry
from agentrun.types import TokenUsage

logger = logging.getLogger(__name__)


def _prompt_variables(input: Any) -> dict[str, Any]:
    if isinstance(input, Mapping):
        return dict(input)
    return {"message": input, "input": input}


class _Call:
    """State for one call: the hook context as it evolves, and the loop."""

    def __init__(
        self,
        runtime: "Runtime",
        agent: AgentConfig,
        input: Any,
        actor: Any,
        tenant: Any,
    ) -> None:
        self.runtime = runtime
        self.agent = agent
        self.actor = actor
        self.tenant = tenant
        self.hooks = HookRunner(agent.hooks, agent.name, runtime.telemetry)
        self.hook_ctx = CallHookContext(agent=agent.name, input=input)
        self.provider: Provider | None = None
        self.context: Context | None = None

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "agent": self.agent.name,
            "client": self.agent.client,
            "provider": self.provider_name,
        }

    @property
    def provider_name(self) -> str:
        key = self.agent.provider_key
        return key if isinstance(key, str) else type(key).__name__

    def prepare(self, streaming: bool = False) -> dict[str, Any] | None:
        """Resolve the provider, run the pre-call hooks, render, build schema."""
        agent = self.agent
        self.provider = self.runtime.registry.resolve(agent.provider_key)
        features = getattr(self.provider, "features", frozenset())
        if streaming:
            if agent.has_tools:
                raise ValidationError(
                    "Streaming is not supported for agents with tools",
                    {"agent": agent.name},
                )
            if STREAMING not in features:
                raise ValidationError(
                    f"Provider {self.provider_name} does not support streaming",
                    {"provider": self.provider_name},
                )
        elif agent.has_tools and TOOL_CALLING not in features:
            raise ValidationError(
                f"Provider {self.provider_name} does not support tool calling",
                {"provider": self.provider_name},
            )

        self.hook_ctx = self.hooks.run("before_call", self.hook_ctx)

        rendered = None
        if agent.prompt is not None:
            rendered = render(agent.prompt, _prompt_variables(self.hook_ctx.input))
            self.runtime.telemetry.emit(PROMPT_RENDERED, {"size": len(rendered)}, self.metadata)
        self.hook_ctx = replace(self.hook_ctx, rendered_prompt=rendered)
        self.hook_ctx = self.hooks.run("after_render", self.hook_ctx)

        return build_schema(agent.output_type)

    def call_context(self) -> CallContext:
        return CallContext(
            agent=self.agent.name,
            input=self.hook_ctx.input,
            rendered_prompt=self.hook_ctx.rendered_prompt,
            actor=self.actor,
            tenant=self.tenant,
        )

    def execute(self) -> Result:
        agent = self.agent
        started_at = datetime.now(UTC)
        start = time.monotonic()
        schema = self.prepare()
        assert self.provider is not None

        if not agent.has_tools:
            messages = None
            if self.hook_ctx.rendered_prompt is None:
                messages = Context.new(self.hook_ctx.input).to_messages()
            response = call_provider(
                self.provider,
                agent,
                self.runtime.telemetry,
                self.hook_ctx.rendered_prompt,
                schema,
                self.call_context(),
                None,
                messages,
            )
            output = parse_output(agent.output_type, response)
            usage = TokenUsage.from_mapping(extract_usage(response))
            iterations = 1
        else:
            loop = ToolCallingLoop(self._loop_state(schema))
            try:
                outcome = loop.run()
            finally:
                self.context = loop.context
            output, response, usage = outcome.output, outcome.response, outcome.usage
            iterations = outcome.context.current_iteration

        self.hook_ctx = replace(self.hook_ctx, response=output)
        self.hook_ctx = self.hooks.run("after_call", self.hook_ctx)

        return Result(
            output=self.hook_ctx.response,
            usage=usage,
            thinking=extract_thinking(response),
            model=extract_model(response) or agent.model,
            finish_reason=extract_finish_reason(response),
            metadata={
                "duration_ms": (time.monotonic() - start) * 1000,
                "started_at": started_at,
                "completed_at": datetime.now(UTC),
                "provider": self.provider_name,
                "client": agent.client,
                "iterations": iterations,
                "tags": dict(agent.tags),
            },
            raw_response=response,
        )

    def _loop_state(self, schema: dict[str, Any] | None) -> LoopState:
        agent = self.agent
        registry = ToolRegistry.from_tools(agent.tools)
        assert self.provider is not None
        return LoopState(
            config=agent,
            provider=self.provider,
            schema=schema,
            call_context=self.call_context(),
            execution_context=ExecutionContext(
                agent=agent.name,
                domain=agent.domain,
                actor=self.actor,
                tenant=self.tenant,
            ),
            executor=ToolExecutor(
                registry,
                dispatcher=agent.action_dispatcher,
                parallel=agent.tool_policy.parallel,
                timeout=agent.tool_policy.timeout,
            ),
            hooks=self.hooks,
            telemetry=self.runtime.telemetry,
            token_limits=self.runtime.token_limits,
            context=Context.new(self.hook_ctx.input, system_prompt=self.hook_ctx.rendered_prompt),
            tools=registry.get_schemas(),
        )

    def fail(self, error: AgentError) -> AgentError:
        """Offer error to on_error and return what the caller should see."""
        self.hook_ctx = replace(self.hook_ctx, error=error)
        final = self.hooks.run_on_error(self.hook_ctx)
        logger.error(f"Agent {self.agent.name} call failed: {final.message}")
        return final


class Runtime:
    """Runs agent calls against a provider registry and telemetry sink."""

    def __init__(
        self,
        registry: ProviderRegistry | None = None,
        telemetry: Telemetry | None = None,
        token_limits: TokenLimits | None = None,
    ) -> None:
        self.registry = registry or get_registry()
        self.telemetry = telemetry or get_telemetry()
        self.token_limits = token_limits or TokenLimits.from_env()

    def call(self, agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> CallResult:
        run = _Call(self, agent, input, actor, tenant)
        with self.telemetry.span(f"{PREFIX}.call", run.metadata) as stop:
            try:
                result = run.execute()
            except Exception as e:
                if not isinstance(e, AgentError):
                    logger.exception(f"Unexpected failure in agent {agent.name}")
                error = run.fail(LLMError.from_exception(e, {"agent": agent.name}))
                stop.update({"status": "error", "error": error.to_dict()})
                outcome = CallResult.failed(error)
            else:
                stop.update({"status": "ok", "usage": result.usage.to_dict()})
                outcome = CallResult.ok(result)
        self.telemetry.emit(
            CALL_SUMMARY,
            {"duration": outcome.result.duration_ms if outcome.result else None},
            {**run.metadata, "status": "ok" if outcome.success else "error", "result": outcome.output},
        )
        return outcome

    def call_or_raise(self, agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> Result:
        return self.call(agent, input, actor=actor, tenant=tenant).unwrap()

    def stream(self, agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> StreamResult:
        """
        Start a streaming call.

        Setup failures come back as a failed StreamResult. Failures while
        the stream is being consumed are raised from the iterator, after
        on_error has seen them.
        """
        run = _Call(self, agent, input, actor, tenant)
        start = time.monotonic()
        self.telemetry.emit(STREAM_START, {"system_time": time.time()}, run.metadata)
        try:
            schema = run.prepare(streaming=True)
            assert run.provider is not None
            messages = None
            if run.hook_ctx.rendered_prompt is None:
                messages = Context.new(run.hook_ctx.input).to_messages()
            chunks = run.provider.stream(
                agent.client,
                run.hook_ctx.rendered_prompt,
                schema,
                agent.client_options,
                run.call_context(),
                None,
                messages,
            )
        except Exception as e:
            error = run.fail(LLMError.from_exception(e, {"client": agent.client}))
            self.telemetry.emit(
                STREAM_STOP,
                {"duration": (time.monotonic() - start) * 1000},
                {**run.metadata, "status": "error", "error": error.to_dict()},
            )
            return StreamResult(success=False, error=error)
        return StreamResult(success=True, chunks=self._consume(run, chunks, start))

    def _consume(self, run: _Call, chunks: Iterator[Any], start: float) -> Iterator[Any]:
        output_type = run.agent.output_type
        last = None
        index = 0
        status = "ok"
        try:
            for parsed in stream_to_outputs(output_type, chunks):
                ctx = run.hooks.run("after_call", replace(run.hook_ctx, response=parsed))
                last = ctx.response
                self.telemetry.emit(STREAM_CHUNK, {"index": index}, {**run.metadata, "chunk": last})
                index += 1
                yield last
        except AgentError as e:
            status = "error"
            error = run.fail(e)
            if error is e:
                raise
            raise error from e
        except Exception as e:
            status = "error"
            error = run.fail(LLMError.from_exception(e))
            raise error from e
        finally:
            self.telemetry.emit(
                STREAM_STOP,
                {"duration": (time.monotonic() - start) * 1000, "count": index},
                {**run.metadata, "status": status},
            )
            self.telemetry.emit(
                STREAM_SUMMARY,
                {"count": index},
                {**run.metadata, "status": status, "result": last},
            )

    def stream_or_raise(self, agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> Iterator[Any]:
        return self.stream(agent, input, actor=actor, tenant=tenant).unwrap()


class Agent:
    """Convenience wrapper binding an AgentConfig to a Runtime."""

    def __init__(self, config: AgentConfig, runtime: Runtime | None = None) -> None:
        self.config = config
        self.runtime = runtime or Runtime()

    def call(self, input: Any = None, **kwargs: Any) -> CallResult:
        return self.runtime.call(self.config, input, **kwargs)

    def call_or_raise(self, input: Any = None, **kwargs: Any) -> Result:
        return self.runtime.call_or_raise(self.config, input, **kwargs)

    def stream(self, input: Any = None, **kwargs: Any) -> StreamResult:
        return self.runtime.stream(self.config, input, **kwargs)

    def stream_or_raise(self, input: Any = None, **kwargs: Any) -> Iterator[Any]:
        return self.runtime.stream_or_raise(self.config, input, **kwargs)


def call(agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> CallResult:
    """Run one agent call with the default runtime."""
    return Runtime().call(agent, input, actor=actor, tenant=tenant)


def call_or_raise(agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> Result:
    return Runtime().call_or_raise(agent, input, actor=actor, tenant=tenant)


def stream(agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> StreamResult:
    return Runtime().stream(agent, input, actor=actor, tenant=tenant)


def stream_or_raise(agent: AgentConfig, input: Any = None, actor: Any = None, tenant: Any = None) -> Iterator[Any]:
    return Runtime().stream_or_raise(agent, input, actor=actor, tenant=tenant)
