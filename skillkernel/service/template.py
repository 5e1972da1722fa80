from __future__ import annotations

import json
import re
from typing import Any, Mapping, Optional, Sequence

MAX_ARRAY_ITEMS = 20
MAX_OBJECT_CHARS = 8000
FALLBACK_SUMMARY_FIELDS = 8

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

# Keys kept when a list item is summarised for a prompt
IMPORTANT_FIELDS = (
    "name",
    "deal_name",
    "dealName",
    "dealId",
    "id",
    "amount",
    "stage",
    "stage_normalized",
    "close_date",
    "owner",
    "deal_risk",
    "health_score",
    "velocity_score",
    "days_in_stage",
    "last_activity_date",
    "total",
    "count",
    "type",
    "risk_level",
    "likely_cause",
    "has_expansion_contacts",
    "recommended_action",
    "root_cause",
    "suggested_action",
    "contactCount",
    "contactNames",
)

_MISSING = object()


def render(template: str, context: Any) -> str:
    """Substitute ``{{ path }}`` placeholders from a run context.

    ``context`` exposes ``step_results`` and ``business_context`` mappings.
    Paths resolve against step results first, then against the business
    context; unresolved placeholders are emitted back as ``{{path}}``.
    """

    if not template:
        return ""

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()
        value = resolve_path(path, context)
        if value is _MISSING:
            return "{{" + path + "}}"
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def resolve_path(path: str, context: Any) -> Any:
    parts = path.split(".")
    value = _traverse(getattr(context, "step_results", {}), parts)
    if value is _MISSING:
        value = _traverse(getattr(context, "business_context", {}), parts)
    return value


def _traverse(root: Any, parts: Sequence[str]) -> Any:
    current = root
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        summarized = [summarize_item(item) for item in value[:MAX_ARRAY_ITEMS]]
        rendered = _to_json(summarized)
        if len(value) > MAX_ARRAY_ITEMS:
            hidden = len(value) - MAX_ARRAY_ITEMS
            rendered += f"\n... and {hidden} more items ({len(value)} total)"
        return rendered
    if isinstance(value, Mapping):
        rendered = _to_json(value)
        if len(rendered) > MAX_OBJECT_CHARS:
            return rendered[:MAX_OBJECT_CHARS] + "\n... [truncated]"
        return rendered
    return str(value)


def summarize_item(item: Any) -> Any:
    """Reduce one list element to the fields worth showing a model."""

    if not isinstance(item, Mapping):
        return item
    summary = {key: item[key] for key in IMPORTANT_FIELDS if key in item}
    if summary:
        return summary
    fallback: dict = {}
    for key, value in list(item.items())[:FALLBACK_SUMMARY_FIELDS]:
        fallback[key] = "[object]" if isinstance(value, (Mapping, list, tuple)) else value
    return fallback


def _to_json(value: Any, indent: Optional[int] = 2) -> str:
    return json.dumps(value, indent=indent, ensure_ascii=False, default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, Mapping):
        return dict(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
