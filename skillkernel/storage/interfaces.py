"""Collaborator contracts the engine depends on.

Every backend in ``skillkernel.storage`` implements some subset of these; the
engine and router only ever see the Protocols.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol

from skillkernel.storage.models import MonthlyUsage, ProviderKey, RunRecord, UsageRecord

if TYPE_CHECKING:
    from skillkernel.service.context import ExecutionContext


class ToolDefinition(Protocol):
    name: str
    description: str
    input_schema: Dict[str, Any]

    async def execute(self, args: Dict[str, Any], context: "ExecutionContext") -> Any:
        ...


class ToolRegistry(Protocol):
    def lookup(self, name: str) -> Optional[ToolDefinition]:
        ...


class BusinessContextProvider(Protocol):
    async def get_context(self, tenant_id: str) -> Dict[str, Any]:
        ...


class RunSink(Protocol):
    """Write-only destination for run records."""

    async def start_run(self, record: RunRecord) -> None:
        ...

    async def finish_run(self, record: RunRecord) -> None:
        ...


class UsageSink(Protocol):
    async def record_usage(self, record: UsageRecord) -> None:
        ...


class UsageReportSource(Protocol):
    async def get_monthly_usage(self, tenant_id: str) -> MonthlyUsage:
        """Completed-run totals per workflow and cache totals per model since month start."""
        ...


class TenantConfigSource(Protocol):
    async def get_capability_routing(self, tenant_id: str) -> Optional[Dict[str, str]]:
        ...

    async def get_provider_credentials(
        self, tenant_id: str, provider: str
    ) -> Optional[ProviderKey]:
        ...

    async def get_token_budget(self, tenant_id: str) -> Optional[int]:
        ...

    async def update_llm_config(
        self,
        tenant_id: str,
        *,
        capability_routing: Optional[Dict[str, str]] = None,
        provider_keys: Optional[Dict[str, ProviderKey]] = None,
        token_budget: Optional[int] = None,
    ) -> None:
        ...


class TokenCounter(Protocol):
    async def increment_token_usage(self, tenant_id: str, tokens: int) -> int:
        ...

    async def get_token_usage(self, tenant_id: str) -> int:
        ...


class RunStateCache(Protocol):
    async def set_workflow_state(self, state_key: str, state: dict) -> None:
        ...

    async def get_workflow_state(self, state_key: str) -> Optional[dict]:
        ...
