from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from skillkernel.service.providers.base import ChatMessage
from skillkernel.service.tokenizer_utils import CHARS_PER_TOKEN
from skillkernel.storage.models import TokenUsage

SINGLE_CALL_WARNING_TOKENS = 50000
SINGLE_CALL_CRITICAL_TOKENS = 100000
LARGE_SECTION_CHARS = 50000
RAW_JSON_BRACE_THRESHOLD = 50


@dataclass(frozen=True)
class ModelRate:
    """USD per million tokens."""

    input: float
    output: float
    cache_write: Optional[float] = None
    cache_read: Optional[float] = None


MODEL_RATES: Dict[str, ModelRate] = {
    "claude-sonnet-4-5": ModelRate(3.0, 15.0, cache_write=3.75, cache_read=0.30),
    "claude-sonnet-4-20250514": ModelRate(3.0, 15.0, cache_write=3.75, cache_read=0.30),
    "claude-haiku-4-5-20251001": ModelRate(0.80, 4.0, cache_write=1.0, cache_read=0.08),
    "deepseek-v3p1": ModelRate(0.14, 0.28),
    "deepseek-chat": ModelRate(0.14, 0.28),
}
DEFAULT_RATE_MODEL = "claude-sonnet-4-5"


def estimate_cost(model: str, usage: TokenUsage) -> float:
    """Advisory USD cost of one call; unknown models bill at the default rate."""

    rate = MODEL_RATES.get(model) or MODEL_RATES[DEFAULT_RATE_MODEL]
    cache_write = rate.cache_write if rate.cache_write is not None else rate.input
    cache_read = rate.cache_read if rate.cache_read is not None else rate.input
    total = (
        usage.input_tokens * rate.input
        + usage.output_tokens * rate.output
        + usage.cache_creation_tokens * cache_write
        + usage.cache_read_tokens * cache_read
    )
    return total / 1_000_000


def estimate_cache_savings(model: str, cache_read_tokens: int) -> float:
    """USD saved by serving ``cache_read_tokens`` from the prompt cache."""

    rate = MODEL_RATES.get(model) or MODEL_RATES[DEFAULT_RATE_MODEL]
    if rate.cache_read is None:
        return 0.0
    return cache_read_tokens * (rate.input - rate.cache_read) / 1_000_000


@dataclass
class PayloadSection:
    role: str
    chars: int
    has_source_data: bool = False
    has_transcript: bool = False
    has_raw_json: bool = False


@dataclass
class PayloadSummary:
    total_chars: int = 0
    largest_section: str = ""
    largest_section_chars: int = 0
    estimated_tokens: int = 0
    sections: List[PayloadSection] = field(default_factory=list)


def analyze_payload(
    messages: Iterable[ChatMessage], system_prompt: Optional[str] = None
) -> PayloadSummary:
    """Size breakdown of a prompt, flagging content that usually bloats it."""

    summary = PayloadSummary()
    entries: List[tuple[str, str]] = []
    if system_prompt:
        entries.append(("system", system_prompt))
    for msg in messages:
        content = msg.content
        if msg.tool_calls:
            content += json.dumps([call.input for call in msg.tool_calls])
        entries.append((msg.role, content))

    for role, content in entries:
        chars = len(content)
        summary.total_chars += chars
        summary.sections.append(
            PayloadSection(
                role=role,
                chars=chars,
                has_source_data="source_data" in content,
                has_transcript="transcript" in content,
                has_raw_json=content.count("{") > RAW_JSON_BRACE_THRESHOLD,
            )
        )
        if chars > summary.largest_section_chars:
            summary.largest_section_chars = chars
            summary.largest_section = role
    summary.estimated_tokens = math.ceil(summary.total_chars / CHARS_PER_TOKEN)
    return summary


def generate_recommendations(total_tokens: int, summary: PayloadSummary) -> List[str]:
    """Optimisation hints for calls above the warning threshold."""

    recommendations: List[str] = []
    if total_tokens <= SINGLE_CALL_WARNING_TOKENS:
        return recommendations
    if any(section.has_source_data for section in summary.sections):
        recommendations.append(
            "source_data detected in prompt. Strip raw source records and send only computed summaries."
        )
    if any(section.has_transcript for section in summary.sections):
        recommendations.append(
            "Full transcript detected in prompt. Pre-summarize in a compute step before sending to the model."
        )
    if any(section.has_raw_json for section in summary.sections):
        recommendations.append(
            "Heavy JSON structure in prompt. Convert to tables or flat summaries before the call."
        )
    if summary.largest_section_chars > LARGE_SECTION_CHARS:
        recommendations.append(
            f"Largest payload section is {summary.largest_section_chars} chars. "
            "Truncate or summarize to < 10K chars."
        )
    return recommendations


def usage_severity(total_tokens: int) -> Optional[str]:
    if total_tokens > SINGLE_CALL_CRITICAL_TOKENS:
        return "critical"
    if total_tokens > SINGLE_CALL_WARNING_TOKENS:
        return "warning"
    return None


def summary_fields(summary: PayloadSummary) -> Dict[str, Any]:
    return {
        "total_chars": summary.total_chars,
        "largest_section": summary.largest_section,
        "largest_section_chars": summary.largest_section_chars,
        "has_source_data": any(s.has_source_data for s in summary.sections),
    }
