from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from skillkernel.logging import get_logger
from skillkernel.storage.models import (
    ModelCacheUsage,
    MonthlyUsage,
    ProviderKey,
    RunRecord,
    SkillUsage,
    TenantLLMConfig,
    UsageRecord,
)


def next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


class MemoryStore:
    """In-process backing store for tests and local runs.

    Implements every storage contract the engine uses: business context,
    run sink, usage sink, tenant LLM config, token counter and run-state cache.
    """

    def __init__(self, *, clock=datetime.utcnow) -> None:
        self.logger = get_logger(__name__)
        self.clock = clock
        self.business_contexts: Dict[str, Dict[str, Any]] = {}
        self.runs: Dict[str, RunRecord] = {}
        self.run_events: List[tuple[str, str]] = []
        self.usage_records: List[UsageRecord] = []
        self.llm_configs: Dict[str, TenantLLMConfig] = {}
        self.workflow_states: Dict[str, dict] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # Business context -------------------------------------------------

    def set_business_context(self, tenant_id: str, context: Dict[str, Any]) -> None:
        with self._data_lock:
            self.business_contexts[tenant_id] = copy.deepcopy(context)

    async def get_context(self, tenant_id: str) -> Dict[str, Any]:
        with self._data_lock:
            return copy.deepcopy(self.business_contexts.get(tenant_id, {}))

    # Run sink ---------------------------------------------------------

    async def start_run(self, record: RunRecord) -> None:
        with self._data_lock:
            self.run_events.append(("start", record.id))
            self.runs.setdefault(record.id, copy.deepcopy(record))

    async def finish_run(self, record: RunRecord) -> None:
        with self._data_lock:
            self.run_events.append(("finish", record.id))
            self.runs[record.id] = copy.deepcopy(record)

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with self._data_lock:
            return self.runs.get(run_id)

    # Usage sink -------------------------------------------------------

    async def record_usage(self, record: UsageRecord) -> None:
        with self._data_lock:
            self.usage_records.append(record)

    async def get_monthly_usage(self, tenant_id: str) -> MonthlyUsage:
        now = self.clock()
        month_start = datetime(now.year, now.month, 1)
        with self._data_lock:
            per_skill: Dict[str, SkillUsage] = {}
            for run in self.runs.values():
                if (
                    run.tenant_id != tenant_id
                    or run.status != "completed"
                    or run.started_at < month_start
                ):
                    continue
                entry = per_skill.setdefault(run.workflow_id, SkillUsage(run.workflow_id))
                entry.total_tokens += run.total_tokens
                entry.run_count += 1

            cache: Dict[str, ModelCacheUsage] = {}
            for record in self.usage_records:
                if record.tenant_id != tenant_id or record.created_at < month_start:
                    continue
                entry = cache.setdefault(record.model, ModelCacheUsage(record.model))
                entry.input_tokens += record.input_tokens
                entry.cache_read_tokens += record.cache_read_tokens
                entry.cache_creation_tokens += record.cache_creation_tokens

            config = self.llm_configs.get(tenant_id)
            reset_at = config.usage_reset_at if config else None
            if reset_at is None or reset_at <= now:
                reset_at = next_month_start(now)

        return MonthlyUsage(
            per_skill=sorted(per_skill.values(), key=lambda s: s.total_tokens, reverse=True),
            cache=list(cache.values()),
            reset_at=reset_at,
        )

    # Tenant LLM config ------------------------------------------------

    def _config(self, tenant_id: str) -> TenantLLMConfig:
        config = self.llm_configs.get(tenant_id)
        if config is None:
            config = TenantLLMConfig(tenant_id=tenant_id)
            self.llm_configs[tenant_id] = config
        return config

    async def get_capability_routing(self, tenant_id: str) -> Optional[Dict[str, str]]:
        with self._data_lock:
            config = self.llm_configs.get(tenant_id)
            if config is None or config.capability_routing is None:
                return None
            return dict(config.capability_routing)

    async def get_provider_credentials(
        self, tenant_id: str, provider: str
    ) -> Optional[ProviderKey]:
        with self._data_lock:
            config = self.llm_configs.get(tenant_id)
            if config is None:
                return None
            key = config.provider_keys.get(provider)
            return copy.copy(key) if key else None

    async def get_token_budget(self, tenant_id: str) -> Optional[int]:
        with self._data_lock:
            config = self.llm_configs.get(tenant_id)
            return config.token_budget if config else None

    async def update_llm_config(
        self,
        tenant_id: str,
        *,
        capability_routing: Optional[Dict[str, str]] = None,
        provider_keys: Optional[Dict[str, ProviderKey]] = None,
        token_budget: Optional[int] = None,
    ) -> None:
        with self._data_lock:
            config = self._config(tenant_id)
            if capability_routing is not None:
                config.capability_routing = dict(capability_routing)
            if provider_keys:
                config.provider_keys.update(provider_keys)
            if token_budget is not None:
                config.token_budget = token_budget

    # Token counter ----------------------------------------------------

    async def increment_token_usage(self, tenant_id: str, tokens: int) -> int:
        """Add ``tokens`` to the tenant's monthly counter, resetting at month start."""

        with self._data_lock:
            config = self._config(tenant_id)
            now = self.clock()
            if config.usage_reset_at is None or config.usage_reset_at <= now:
                config.tokens_used = 0
                config.usage_reset_at = next_month_start(now)
            config.tokens_used += int(tokens)
            return config.tokens_used

    async def get_token_usage(self, tenant_id: str) -> int:
        with self._data_lock:
            config = self.llm_configs.get(tenant_id)
            if config is None:
                return 0
            if config.usage_reset_at is not None and config.usage_reset_at <= self.clock():
                return 0
            return config.tokens_used

    # Run-state cache --------------------------------------------------

    async def set_workflow_state(self, state_key: str, state: dict) -> None:
        with self._data_lock:
            self.workflow_states[state_key] = copy.deepcopy(state)

    async def get_workflow_state(self, state_key: str) -> Optional[dict]:
        with self._data_lock:
            state = self.workflow_states.get(state_key)
            return copy.deepcopy(state) if state is not None else None
