from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from skillkernel.service.errors import ConfigurationError, RunCancelledError

TOKEN_TIERS = ("compute", "extract", "reason")


class CancellationToken:
    """Cooperative cancellation signal shared by one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError(self.reason or "run cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first, in which case raise."""

        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()


@dataclass
class ExecutionContext:
    """Mutable state of one run.

    ``business_context`` is frozen at construction. ``step_results`` only ever
    grows: a key, once stored, cannot be overwritten.
    """

    run_id: str
    tenant_id: str
    workflow_id: str
    business_context: Mapping[str, Any] = field(default_factory=dict)
    token_usage: Dict[str, int] = field(
        default_factory=lambda: {tier: 0 for tier in TOKEN_TIERS}
    )
    errors: List[Dict[str, Any]] = field(default_factory=list)
    tool_call_count: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    _results: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.business_context = MappingProxyType(dict(self.business_context))

    @property
    def step_results(self) -> Mapping[str, Any]:
        return MappingProxyType(self._results)

    def store_result(self, output_key: str, value: Any) -> None:
        if output_key in self._results:
            raise ConfigurationError(
                f"step result '{output_key}' already stored for this run",
                detail={"output_key": output_key},
            )
        self._results[output_key] = value

    def add_tokens(self, tier: str, tokens: int) -> None:
        self.token_usage[tier] = self.token_usage.get(tier, 0) + max(0, int(tokens))

    def record_error(
        self, step_id: str, message: str, *, error_code: Optional[str] = None
    ) -> None:
        entry: Dict[str, Any] = {"step": step_id, "error": message}
        if error_code:
            entry["error_code"] = error_code
        self.errors.append(entry)

    def count_tool_call(self) -> None:
        self.tool_call_count += 1

    def results_snapshot(self) -> Dict[str, Any]:
        return dict(self._results)
