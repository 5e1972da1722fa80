"""Structured logging for skillkernel.

Logging is configured once, at import, from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Run identity travels through structlog's contextvars:
inside :func:`bind_run` every line carries ``run_id``, ``tenant_id`` and
``workflow_id`` without callers passing them.
"""

from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Matched against lower-cased field names
_SECRET_FIELD_PARTS = ("password", "secret", "api_key", "authorization", "token_value")

# Provider error bodies and URLs can echo a key back in free text
_SECRET_TEXT = re.compile(r"(Bearer\s+|sk-|fw_)[A-Za-z0-9._-]{6,}")


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def mask_secret(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _scrub_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in _SECRET_FIELD_PARTS):
            event_dict[key] = mask_secret(value)
        elif key in ("error", "body"):
            event_dict[key] = _SECRET_TEXT.sub(lambda m: f"{m.group(1)}***", value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """(Re)configure structlog.

    JSON lines by default; ``development_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _scrub_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bind_run(run_id: str, **fields: Any) -> Iterator[None]:
    """Scope ``run_id`` and extra fields to every log line of the current task."""
    with structlog.contextvars.bound_contextvars(run_id=run_id, **fields):
        yield


def current_run_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("run_id")


def log_workflow_trace(trace: list, logger: Optional[Any] = None) -> None:
    """One line per finished run listing each step's status and duration."""
    (logger or get_logger("workflow")).info("workflow_trace", trace=trace)
