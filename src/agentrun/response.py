"""
Provider response adapter.

Providers return responses in different shapes:

1. Chat responses: objects with content / tool_calls attributes
   (agentrun.llm.ChatResponse).
2. Plain dicts with "content", "tool_calls" and "usage" keys, where tool
   calls may be flat ({id, name, arguments}) or in OpenAI wire form
   ({id, function: {name, arguments}}).
3. Tagged variants: one object per response kind, where a tool call is a
   distinguished type carrying tool_name/tool_arguments (or name/arguments)
   instead of a tool_calls list.

The loop only ever calls the extract_* functions below, so it never needs
to know which provider produced a response.
"""

import json
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from agentrun.types import ToolCall

logger = logging.getLogger(__name__)

TOOL_CALL_TYPE_TAGS = ("tool_call", "ToolCall")


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _has(obj: Any, key: str) -> bool:
    if isinstance(obj, Mapping):
        return key in obj
    return hasattr(obj, key)


def generate_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:16]}"


def unwrap(response: Any) -> Any:
    """Tagged-variant results are sometimes wrapped as {data, usage}; return data."""
    if not isinstance(response, Mapping) and _has(response, "data") and _has(response, "usage"):
        return response.data
    return response


def is_tool_call_variant(response: Any) -> bool:
    """True when the response object itself is a tool call."""
    if response is None or isinstance(response, (str, bytes, list)):
        return False
    if _get(response, "__type__") in TOOL_CALL_TYPE_TAGS:
        return True
    if _has(response, "tool_name") or _has(response, "tool_arguments"):
        return True
    if isinstance(response, Mapping):
        return False
    class_name = type(response).__name__
    return "ToolCall" in class_name and "Response" not in class_name


def decode_arguments(arguments: Any) -> dict[str, Any]:
    """Arguments as a dict, decoding JSON text when needed."""
    if arguments is None:
        return {}
    if isinstance(arguments, str):
        if not arguments.strip():
            return {}
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError:
            logger.warning(f"Tool call arguments are not valid JSON: {arguments[:100]}")
            return {"raw": arguments}
    if isinstance(arguments, Mapping):
        return {str(getattr(k, "value", k)): v for k, v in arguments.items()}
    if hasattr(arguments, "model_dump"):
        return arguments.model_dump()
    if hasattr(arguments, "__dict__"):
        return {k: v for k, v in vars(arguments).items() if not k.startswith("_")}
    return {"value": arguments}


def _normalize_call(call: Any) -> ToolCall:
    if isinstance(call, ToolCall):
        return call
    function = _get(call, "function")
    name = _get(call, "tool_name") or _get(call, "name") or (_get(function, "name") if function else None)
    if _has(call, "tool_arguments"):
        arguments = _get(call, "tool_arguments")
    elif _has(call, "arguments"):
        arguments = _get(call, "arguments")
    else:
        arguments = _get(function, "arguments") if function else None
    return ToolCall(
        id=_get(call, "id") or generate_call_id(),
        name=name,
        arguments=decode_arguments(arguments),
    )


def extract_tool_calls(response: Any) -> list[ToolCall]:
    response = unwrap(response)
    if is_tool_call_variant(response):
        return [_normalize_call(response)]
    calls = _get(response, "tool_calls") if not isinstance(response, (str, bytes)) else None
    if not calls:
        return []
    return [_normalize_call(call) for call in calls]


def extract_content(response: Any) -> str:
    response = unwrap(response)
    if response is None:
        return ""
    if isinstance(response, str):
        return response
    if is_tool_call_variant(response):
        return ""
    content = _get(response, "content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, default=str)


def extract_usage(response: Any) -> Any:
    """The raw usage record (mapping or object), or None."""
    if isinstance(response, (str, bytes)) or response is None:
        return None
    usage = _get(response, "usage")
    if usage is None:
        return None
    if isinstance(usage, Mapping) and "prompt_tokens" in usage:
        return {
            "input_tokens": usage.get("prompt_tokens", 0),
            "output_tokens": usage.get("completion_tokens", 0),
            "total_tokens": usage.get("total_tokens"),
        }
    return usage


def extract_thinking(response: Any) -> str | None:
    if isinstance(response, (str, bytes)) or response is None:
        return None
    return _get(response, "thinking") or _get(response, "reasoning")


def extract_model(response: Any) -> str | None:
    if isinstance(response, (str, bytes)) or response is None:
        return None
    return _get(response, "model")


def extract_finish_reason(response: Any) -> str | None:
    if isinstance(response, (str, bytes)) or response is None:
        return None
    return _get(response, "finish_reason")
