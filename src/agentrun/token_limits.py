"""
Per-client token limits and the warning threshold.

Limits are keyed by client spec ("openai:gpt-4o"). When cumulative usage
for a call reaches limit * warning_threshold the default iteration hook
emits a token_limit_warning event. Warnings never stop a call; use a
token budget with the halt strategy for that.
"""

import json
import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_WARNING_THRESHOLD = 0.8


@dataclass(frozen=True)
class LimitWarning:
    """Returned by check_limit when the threshold has been crossed."""
    limit: int
    threshold: float

    @property
    def threshold_percent(self) -> int:
        return int(self.threshold * 100)


@dataclass
class TokenLimits:
    """Token limits per client and the fraction that triggers a warning."""
    limits: dict[str, int] = field(default_factory=dict)
    warning_threshold: float = DEFAULT_WARNING_THRESHOLD

    @classmethod
    def from_env(cls) -> "TokenLimits":
        """
        Load from environment variables.

        AGENTRUN_TOKEN_LIMITS is a JSON object mapping client spec to limit.
        """
        raw = os.getenv("AGENTRUN_TOKEN_LIMITS", "")
        limits: dict[str, int] = {}
        if raw:
            try:
                limits = {str(k): int(v) for k, v in json.loads(raw).items()}
            except (ValueError, AttributeError) as e:
                logger.warning(f"Ignoring malformed AGENTRUN_TOKEN_LIMITS: {e}")
        return cls(
            limits=limits,
            warning_threshold=float(
                os.getenv("AGENTRUN_TOKEN_WARNING_THRESHOLD", str(DEFAULT_WARNING_THRESHOLD))
            ),
        )

    def get_limit(self, client: str) -> int | None:
        return self.limits.get(client)

    def check_limit(self, cumulative_tokens: int, client: str) -> LimitWarning | None:
        limit = self.get_limit(client)
        if limit is None:
            return None
        if cumulative_tokens >= int(limit * self.warning_threshold):
            return LimitWarning(limit=limit, threshold=self.warning_threshold)
        return None
