"""Parse model output against a requested JSON schema.

Strict parsing is tried first. When it fails, fenced code blocks are tried,
then (only for array schemas answered with an object) a heuristic repair. All
repairs are logged with the signal that justified them so wrong unwraps can be
found afterwards. Content that never parses is returned as raw text.
"""

from __future__ import annotations

import json
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from skillkernel.logging import get_logger
from skillkernel.service.errors import SchemaParseError
from skillkernel.service.tools import validate_payload

logger = get_logger(__name__)

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def parse_strict(content: str) -> Any:
    try:
        return json.loads(content)
    except (TypeError, ValueError) as exc:
        raise SchemaParseError(
            "model output is not valid JSON",
            detail={"chars": len(content or ""), "error": str(exc)},
        ) from exc


def _parse_lenient(content: str) -> Tuple[Any, str]:
    try:
        return parse_strict(content), "strict"
    except SchemaParseError:
        for block in _FENCE_PATTERN.findall(content or ""):
            try:
                return json.loads(block.strip()), "fenced_block"
            except ValueError:
                continue
        raise


def _repair_array(
    parsed: Dict[str, Any], schema: Dict[str, Any], *, step_id: Optional[str]
) -> Any:
    items = schema.get("items") if isinstance(schema.get("items"), dict) else {}
    expected: List[str] = list(items.get("required") or [])
    candidates = [
        (key, value)
        for key, value in parsed.items()
        if isinstance(value, list) and value
    ]

    best_key: Optional[str] = None
    best_score = -1
    if expected and candidates:
        for key, value in candidates:
            sample = value[0]
            if isinstance(sample, dict):
                score = sum(1 for name in expected if name in sample)
                if score > best_score:
                    best_key, best_score = key, score
        if best_key is not None:
            logger.info(
                "structured_output_unwrapped",
                step_id=step_id,
                key=best_key,
                items=len(parsed[best_key]),
                signal="required_fields_match",
                matched=best_score,
                expected=len(expected),
            )
            return parsed[best_key]

    if candidates:
        best_key, longest = max(candidates, key=lambda kv: len(kv[1]))
        logger.info(
            "structured_output_unwrapped",
            step_id=step_id,
            key=best_key,
            items=len(longest),
            signal="longest_array",
        )
        return longest

    if expected:
        matched = sum(1 for name in expected if name in parsed)
        if matched >= math.ceil(len(expected) / 2):
            logger.info(
                "structured_output_wrapped",
                step_id=step_id,
                signal="object_matches_item_fields",
                matched=matched,
                expected=len(expected),
            )
            return [parsed]
        logger.warning(
            "structured_output_shape_mismatch",
            step_id=step_id,
            expected="array",
            keys=list(parsed)[:5],
        )
    else:
        logger.warning(
            "structured_output_shape_mismatch",
            step_id=step_id,
            expected="array",
            reason="object has no array values",
        )
    return parsed


def parse_structured_output(
    content: str, schema: Dict[str, Any], *, step_id: Optional[str] = None
) -> Any:
    try:
        parsed, method = _parse_lenient(content)
    except SchemaParseError as exc:
        logger.warning(
            "structured_output_unparseable",
            step_id=step_id,
            chars=len(content or ""),
            error=exc.detail.get("error"),
        )
        return content

    if method != "strict":
        logger.info("structured_output_recovered", step_id=step_id, method=method)

    if schema.get("type") == "array" and isinstance(parsed, dict):
        parsed = _repair_array(parsed, schema, step_id=step_id)

    errors = validate_payload(parsed, schema)
    if errors:
        logger.warning(
            "structured_output_schema_mismatch",
            step_id=step_id,
            errors=errors[:5],
        )
    shape = f"array[{len(parsed)}]" if isinstance(parsed, list) else type(parsed).__name__
    logger.debug("structured_output_parsed", step_id=step_id, shape=shape)
    return parsed
