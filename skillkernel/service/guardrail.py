from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from skillkernel.config import Settings
from skillkernel.logging import get_logger
from skillkernel.service.definitions import ComputeStep, ExtractStep, Step
from skillkernel.service.errors import ConfigurationError
from skillkernel.service.template import render
from skillkernel.service.tokenizer_utils import estimate_token_count

DEFAULT_HARD_LIMIT_TOKENS = 20000
DEFAULT_SOFT_LIMIT_TOKENS = 8000
DEFAULT_CLASSIFICATION_MAX_ITEMS = 30


@dataclass(frozen=True)
class PromptBudget:
    rendered: str
    estimated_tokens: int


class BudgetGuardrail:
    """Rejects AI steps whose rendered prompt would be too large.

    Runs before any provider call. Extraction-tier steps are additionally
    refused when an earlier step produced a list longer than the item cap;
    classification over long lists belongs after a compute step that ranks
    or filters them.
    """

    def __init__(
        self,
        *,
        hard_limit: int = DEFAULT_HARD_LIMIT_TOKENS,
        soft_limit: int = DEFAULT_SOFT_LIMIT_TOKENS,
        max_items: int = DEFAULT_CLASSIFICATION_MAX_ITEMS,
    ) -> None:
        self.hard_limit = hard_limit
        self.soft_limit = soft_limit
        self.max_items = max_items
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings: Settings) -> "BudgetGuardrail":
        return cls(
            hard_limit=settings.prompt_token_hard_limit,
            soft_limit=settings.prompt_token_soft_limit,
            max_items=settings.classification_max_items,
        )

    def validate(self, step: Step, context: Any) -> Optional[PromptBudget]:
        if isinstance(step, ComputeStep):
            return None

        rendered = render(step.prompt, context)
        estimated = estimate_token_count(rendered)

        if isinstance(step, ExtractStep):
            for key, value in context.step_results.items():
                if isinstance(value, list) and len(value) > self.max_items:
                    raise ConfigurationError(
                        f"{step.tier} step '{step.id}' receives array '{key}' with "
                        f"{len(value)} items (max {self.max_items}). Add a compute "
                        "step to filter/rank before classification.",
                        detail={
                            "step_id": step.id,
                            "output_key": key,
                            "items": len(value),
                            "max_items": self.max_items,
                        },
                    )

        if estimated > self.hard_limit:
            raise ConfigurationError(
                f"{step.tier} step '{step.id}' input exceeds {self.hard_limit} token "
                f"limit ({estimated} estimated). Add more compute aggregation steps "
                "to reduce data volume.",
                detail={
                    "step_id": step.id,
                    "estimated_tokens": estimated,
                    "hard_limit": self.hard_limit,
                },
            )
        if estimated > self.soft_limit:
            self.logger.warning(
                "prompt_budget_exceeded_soft_limit",
                step_id=step.id,
                tier=step.tier,
                estimated_tokens=estimated,
                soft_limit=self.soft_limit,
            )
        return PromptBudget(rendered=rendered, estimated_tokens=estimated)
