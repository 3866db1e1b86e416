"""
Output schemas and response parsing, backed by pydantic.

An agent's output_type may be a pydantic model, any type pydantic can
validate (str, dict[str, int], a dataclass...), or None for free text.
"""

import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from functools import lru_cache
from typing import Any

from pydantic import BaseModel, PydanticSchemaGenerationError, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from agentrun.errors import ParseError, SchemaError
from agentrun.response import extract_content, unwrap

logger = logging.getLogger(__name__)


@lru_cache(maxsize=128)
def _adapter(output_type: Any) -> TypeAdapter:
    return TypeAdapter(output_type)


def build_schema(output_type: Any) -> dict[str, Any] | None:
    """JSON schema for output_type, or None when no output type is set."""
    if output_type is None:
        return None
    try:
        if isinstance(output_type, type) and issubclass(output_type, BaseModel):
            return output_type.model_json_schema()
        return _adapter(output_type).json_schema()
    except (PydanticSchemaGenerationError, TypeError) as e:
        raise SchemaError(
            f"Invalid output schema: {e}",
            {"output_type": repr(output_type)},
        ) from e


def _normalize_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(getattr(k, "value", k)): v for k, v in value.items()}
    return value


def _validate(output_type: Any, value: Any) -> Any:
    return _adapter(output_type).validate_python(_normalize_keys(value), from_attributes=True)


def parse_output(output_type: Any, raw: Any) -> Any:
    """
    Coerce a provider response into output_type.

    - no output type: the response text (or the response itself when it
      has no text)
    - already an instance: returned unchanged
    - text: decoded as JSON first, then validated
    - mappings and objects: validated directly, falling back to their
      content field
    """
    raw = unwrap(raw)
    if output_type is None:
        content = extract_content(raw)
        return content if content or isinstance(raw, str) else raw
    if isinstance(output_type, type) and isinstance(raw, output_type):
        return raw

    try:
        if isinstance(raw, str):
            return _parse_text(output_type, raw)
        if not _is_chat_response(raw):
            try:
                return _validate(output_type, raw)
            except PydanticValidationError:
                content = extract_content(raw)
                if not content:
                    raise
                return _parse_text(output_type, content)
        return _parse_text(output_type, extract_content(raw))
    except PydanticValidationError as e:
        raise ParseError(
            f"Failed to parse response into {getattr(output_type, '__name__', output_type)}",
            {"errors": e.errors(include_url=False), "response": repr(raw)[:500]},
        ) from e


def _is_chat_response(raw: Any) -> bool:
    return hasattr(raw, "raw_response") and hasattr(raw, "content")


def _parse_text(output_type: Any, text: str) -> Any:
    if output_type is str:
        return text
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return _validate(output_type, text)
    return _validate(output_type, decoded)


def stream_to_outputs(output_type: Any, chunks: Iterable[Any]) -> Iterator[Any]:
    """Convert each chunk; chunks that fail conversion are yielded as-is."""
    for chunk in chunks:
        try:
            yield parse_output(output_type, chunk)
        except ParseError as e:
            logger.debug(f"Passing through stream chunk that failed conversion: {e}")
            yield chunk

