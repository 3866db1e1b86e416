"""
Prompt rendering.

Templates use str.format placeholders, e.g. "Summarize: {message}".
Besides the input arguments every template can reference {output_format},
a hint describing how the model should format its answer.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from agentrun.errors import PromptError

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FORMAT = "Return your response as valid JSON matching the specified schema."


@dataclass(frozen=True)
class RenderConfig:
    output_format: str = DEFAULT_OUTPUT_FORMAT


def render(template: str, variables: Mapping[str, Any], config: RenderConfig | None = None) -> str:
    """Render template with variables; failures raise PromptError."""
    config = config or RenderConfig()
    context = {"output_format": config.output_format}
    context.update({str(getattr(k, "value", k)): v for k, v in variables.items()})
    try:
        return template.format(**context)
    except (KeyError, IndexError) as e:
        raise PromptError(
            "Template render failed",
            {"missing": str(e).strip("'"), "template": template[:200]},
        ) from e
    except (AttributeError, TypeError, ValueError) as e:
        raise PromptError("Template render failed", {"reason": str(e), "template": template[:200]}) from e
