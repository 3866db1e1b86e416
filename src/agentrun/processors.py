"""
Result processors - shrink tool result payloads before they reach the model.

Each processor takes a list of ToolResult and returns a new list in the
same order. Error results pass through untouched; only success payloads
are transformed.

- truncate: cut strings, lists and dicts down to max_size
- summarize: replace payloads with a structural summary
- sample: replace long lists with a sample of their items
"""

import json
import random
from collections.abc import Callable, Mapping, Sequence
from dataclasses import fields, is_dataclass
from typing import Any

from agentrun.types import ToolResult

DEFAULT_TRUNCATE_SIZE = 1000
TRUNCATION_MARKER = "... [truncated]"
DEFAULT_SUMMARY_SAMPLE_SIZE = 3
DEFAULT_SAMPLE_SIZE = 5
MAX_SUMMARY_DEPTH = 3
EXCERPT_LENGTH = 200
SAMPLE_STRATEGIES = ("first", "random", "distributed")


def _require_positive_int(name: str, value: Any) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got: {value!r}")


def estimate_size(data: Any) -> int:
    """Characters for text, items for lists, keys for mappings, else 0."""
    if isinstance(data, str):
        return len(data)
    if isinstance(data, (list, tuple)):
        return len(data)
    if isinstance(data, Mapping):
        return len(data)
    return 0


def is_large(data: Any, threshold: int) -> bool:
    return estimate_size(data) > threshold


def preserve_structure(
    results: Sequence[ToolResult],
    transform: Callable[[Any], Any],
) -> list[ToolResult]:
    """Apply transform to every success payload, keeping errors and order."""
    return [r.with_payload(transform(r.payload)) if r.success else r for r in results]


# -- truncate ---------------------------------------------------------------

def truncate_data(data: Any, max_size: int = DEFAULT_TRUNCATE_SIZE, marker: str = TRUNCATION_MARKER) -> Any:
    if isinstance(data, str):
        return data if len(data) <= max_size else data[:max_size] + marker
    if isinstance(data, (list, tuple)):
        return list(data) if len(data) <= max_size else list(data[:max_size]) + [marker]
    if isinstance(data, Mapping):
        if len(data) <= max_size:
            return data
        kept = dict(list(data.items())[:max_size])
        kept["__truncated__"] = marker
        return kept
    return data


def truncate(
    results: Sequence[ToolResult],
    max_size: int = DEFAULT_TRUNCATE_SIZE,
    marker: str = TRUNCATION_MARKER,
) -> list[ToolResult]:
    _require_positive_int("max_size", max_size)
    return preserve_structure(results, lambda data: truncate_data(data, max_size, marker))


# -- summarize --------------------------------------------------------------

def _is_object(data: Any) -> bool:
    return is_dataclass(data) and not isinstance(data, type) or (
        hasattr(data, "__dict__") and not isinstance(data, (type, str, bytes))
    )


def _object_fields(data: Any) -> dict[str, Any]:
    if is_dataclass(data):
        return {f.name: getattr(data, f.name) for f in fields(data)}
    return {k: v for k, v in vars(data).items() if not k.startswith("_")}


def summarize_data(data: Any, sample_size: int = DEFAULT_SUMMARY_SAMPLE_SIZE, depth: int = 0) -> Any:
    """Structural summary of data; nesting beyond MAX_SUMMARY_DEPTH is elided."""
    if depth >= MAX_SUMMARY_DEPTH:
        if isinstance(data, (list, tuple)):
            return f"[list with {len(data)} items]"
        if isinstance(data, Mapping):
            return f"[map with {len(data)} keys]"
        return data if isinstance(data, (int, float, bool, type(None))) else str(data)[:EXCERPT_LENGTH]

    if isinstance(data, str):
        return {
            "type": "text",
            "length": len(data),
            "excerpt": data[:EXCERPT_LENGTH],
            "summary": f"Text with {len(data)} characters",
        }
    if isinstance(data, (list, tuple)):
        return {
            "type": "list",
            "count": len(data),
            "sample": [_summarize_item(item, sample_size, depth + 1) for item in data[:sample_size]],
            "summary": f"List with {len(data)} items",
        }
    if isinstance(data, Mapping):
        keys = list(data.keys())[:sample_size]
        return {
            "type": "map",
            "count": len(data),
            "keys": [str(k) for k in keys],
            "sample": {str(k): _summarize_item(data[k], sample_size, depth + 1) for k in keys},
            "summary": f"Map with {len(data)} keys",
        }
    if _is_object(data):
        name = type(data).__name__
        object_fields = _object_fields(data)
        return {
            "type": "struct",
            "struct_name": name,
            "fields": {k: _summarize_item(v, sample_size, depth + 1) for k, v in object_fields.items()},
            "summary": f"{name} with {len(object_fields)} fields",
        }
    return data


def _summarize_item(item: Any, sample_size: int, depth: int) -> Any:
    # scalars stay as they are inside samples
    if isinstance(item, (int, float, bool, type(None))):
        return item
    if isinstance(item, str) and len(item) <= EXCERPT_LENGTH:
        return item
    return summarize_data(item, sample_size, depth)


def _fit_summary(summary: Any, max_summary_size: int) -> Any:
    if len(json.dumps(summary, default=str)) <= max_summary_size or not isinstance(summary, dict):
        return summary
    reduced = dict(summary)
    if "sample" in reduced:
        reduced["sample"] = {} if isinstance(reduced["sample"], dict) else []
    if "keys" in reduced:
        reduced["keys"] = []
    if "fields" in reduced:
        reduced["fields"] = {}
    if "excerpt" in reduced:
        reduced["excerpt"] = reduced["excerpt"][: max(0, max_summary_size // 2)]
    return reduced


def summarize(
    results: Sequence[ToolResult],
    sample_size: int = DEFAULT_SUMMARY_SAMPLE_SIZE,
    max_summary_size: int | None = None,
) -> list[ToolResult]:
    _require_positive_int("sample_size", sample_size)
    if max_summary_size is not None:
        _require_positive_int("max_summary_size", max_summary_size)

    def transform(data: Any) -> Any:
        summary = summarize_data(data, sample_size)
        if max_summary_size is not None:
            summary = _fit_summary(summary, max_summary_size)
        return summary

    return preserve_structure(results, transform)


# -- sample -----------------------------------------------------------------

def sample_data(data: Any, sample_size: int = DEFAULT_SAMPLE_SIZE, strategy: str = "first") -> Any:
    if not isinstance(data, (list, tuple)) or len(data) <= sample_size:
        return data
    items = list(data)
    if strategy == "first":
        picked = items[:sample_size]
    elif strategy == "random":
        picked = random.sample(items, sample_size)
    else:
        step = len(items) / sample_size
        picked = [items[int(i * step)] for i in range(sample_size)]
    return {
        "items": picked,
        "total_count": len(items),
        "sampled": True,
        "strategy": strategy,
    }


def sample(
    results: Sequence[ToolResult],
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    strategy: str = "first",
) -> list[ToolResult]:
    _require_positive_int("sample_size", sample_size)
    if strategy not in SAMPLE_STRATEGIES:
        raise ValueError(f"strategy must be one of {', '.join(SAMPLE_STRATEGIES)}, got: {strategy!r}")
    return preserve_structure(results, lambda data: sample_data(data, sample_size, strategy))

