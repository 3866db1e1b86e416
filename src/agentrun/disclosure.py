"""
Progressive disclosure - keep tool output and history within budget.

Two families of policy:

1. Result processing, applied to a batch of tool results before they are
   folded into the context (usually from a prepare_tool_results hook):
   truncate, then summarize, then sample.

2. Context compaction, applied to a Context (usually from a
   prepare_context hook): sliding window, token budget, or age. Every
   compaction keeps at least one iteration.

Each operation logs what it did and emits a telemetry event under
agentrun.progressive_disclosure.
"""

import logging
from collections.abc import Sequence
from typing import Any

from agentrun import processors
from agentrun.context import Context, TokenEstimator
from agentrun.telemetry import PROCESS_RESULTS, SLIDING_WINDOW, TOKEN_BASED, Telemetry, get_telemetry
from agentrun.types import ToolResult

logger = logging.getLogger(__name__)


def _options(value: Any, size_key: str | None = None) -> dict[str, Any] | None:
    """None/False disable, True means defaults, an int sets size_key."""
    if value is None or value is False:
        return None
    if value is True:
        return {}
    if isinstance(value, int) and size_key is not None:
        return {size_key: value}
    return dict(value)


def process_tool_results(
    results: Sequence[ToolResult],
    truncate: int | dict[str, Any] | bool | None = None,
    summarize: dict[str, Any] | bool | None = None,
    sample: int | dict[str, Any] | bool | None = None,
    skip_small: bool = True,
    telemetry: Telemetry | None = None,
) -> list[ToolResult]:
    """
    Run the configured processors over results.

    truncate may be a max size or a dict of truncate() options, sample a
    sample size or a dict of sample() options. With skip_small (the
    default), nothing is processed unless at least one success payload is
    larger than the truncate size.
    """
    telemetry = telemetry or get_telemetry()
    truncate_opts = _options(truncate, "max_size")
    summarize_opts = _options(summarize)
    sample_opts = _options(sample, "sample_size")

    options = {"truncate": truncate_opts, "summarize": summarize_opts, "sample": sample_opts, "skip_small": skip_small}
    results = list(results)

    threshold = None
    if truncate_opts is not None:
        threshold = truncate_opts.get("max_size", processors.DEFAULT_TRUNCATE_SIZE)
    if skip_small and not _any_large(results, threshold):
        logger.debug("All results under threshold, skipping processing")
        telemetry.emit(PROCESS_RESULTS, {"count": len(results), "skipped": True}, {"options": options})
        return results

    if truncate_opts is not None:
        logger.debug(f"Truncating results with {truncate_opts}")
        results = processors.truncate(results, **truncate_opts)
    if summarize_opts is not None:
        logger.debug(f"Summarizing results with {summarize_opts}")
        results = processors.summarize(results, **summarize_opts)
    if sample_opts is not None:
        logger.debug(f"Sampling results with {sample_opts}")
        results = processors.sample(results, **sample_opts)

    telemetry.emit(PROCESS_RESULTS, {"count": len(results), "skipped": False}, {"options": options})
    return results


def _any_large(results: Sequence[ToolResult], threshold: int | None) -> bool:
    # without a truncate size nothing counts as large
    if threshold is None:
        return False
    return any(r.success and processors.is_large(r.payload, threshold) for r in results)


def sliding_window_compact(
    context: Context,
    window_size: int,
    telemetry: Telemetry | None = None,
) -> Context:
    """Keep only the last window_size iterations."""
    if not isinstance(window_size, int) or isinstance(window_size, bool) or window_size <= 0:
        raise ValueError(f"window_size must be a positive integer, got: {window_size!r}")

    logger.debug(f"Applying sliding window compaction with window_size={window_size}")
    before = context.count_iterations()
    compacted = context.keep_last_iterations(window_size)
    after = compacted.count_iterations()
    removed = before - after
    if removed > 0:
        logger.info(f"Sliding window compaction removed {removed} iterations")

    (telemetry or get_telemetry()).emit(
        SLIDING_WINDOW,
        {"before_count": before, "after_count": after, "removed": removed},
        {"window_size": window_size},
    )
    return compacted


def token_based_compact(
    context: Context,
    budget: int,
    threshold: float = 1.0,
    estimator: TokenEstimator | None = None,
    telemetry: Telemetry | None = None,
) -> Context:
    """
    Drop the oldest iterations until the estimate fits within budget.

    Compaction starts only when the estimate exceeds budget * threshold.
    The newest iteration is never removed, so the result may still be
    over budget.
    """
    if not isinstance(budget, int) or isinstance(budget, bool) or budget <= 0:
        raise ValueError(f"budget must be a positive integer, got: {budget!r}")
    if not isinstance(threshold, (int, float)) or isinstance(threshold, bool) or not 0 < threshold <= 1:
        raise ValueError(f"threshold must be a number in (0, 1], got: {threshold!r}")

    before_tokens = context.estimate_token_count(estimator)
    before = context.count_iterations()
    if before_tokens <= budget * threshold:
        return context

    logger.debug(
        f"Context exceeds budget threshold ({before_tokens} > {budget * threshold}), compacting..."
    )
    compacted = context
    tokens = before_tokens
    while tokens > budget:
        if compacted.count_iterations() <= 1:
            logger.warning(
                f"Token-based compaction: only 1 iteration remains, cannot compact further "
                f"({tokens} tokens, budget {budget})"
            )
            break
        compacted = compacted.with_iterations(compacted.iterations[1:])
        tokens = compacted.estimate_token_count(estimator)

    after = compacted.count_iterations()
    removed = before - after
    logger.info(
        f"Token-based compaction removed {removed} iterations, "
        f"reduced tokens from {before_tokens} to {tokens}"
    )
    (telemetry or get_telemetry()).emit(
        TOKEN_BASED,
        {"before_count": before, "after_count": after, "removed": removed, "final_tokens": tokens},
        {"budget": budget, "threshold": threshold},
    )
    return compacted


def age_based_compact(context: Context, max_age_seconds: float) -> Context:
    """Drop iterations older than max_age_seconds, keeping the newest."""
    if max_age_seconds < 0:
        raise ValueError(f"max_age_seconds must not be negative, got: {max_age_seconds!r}")
    compacted = context.remove_old_iterations(max_age_seconds)
    removed = context.count_iterations() - compacted.count_iterations()
    if removed > 0:
        logger.info(f"Age-based compaction removed {removed} iterations")
    return compacted
