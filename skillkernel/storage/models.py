from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class StepOutcome:
    step_id: str
    status: str
    tier: str
    output_key: str
    duration_ms: int = 0
    token_usage: int = 0
    error: Optional[str] = None


@dataclass
class RunRecord:
    id: str
    workflow_id: str
    tenant_id: str
    status: str = "running"
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    steps: List[StepOutcome] = field(default_factory=list)
    output: Any = None
    output_format: str = "json"
    errors: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: Dict[str, int] = field(default_factory=dict)
    tool_call_count: int = 0
    step_data: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return sum(self.token_usage.values())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["completed_at"] = (
            self.completed_at.isoformat() if self.completed_at else None
        )
        data["total_tokens"] = self.total_tokens
        return data


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class UsageRecord:
    tenant_id: str
    capability: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    estimated_cost_usd: float = 0.0
    latency_ms: int = 0
    prompt_chars: int = 0
    response_chars: int = 0
    recommendations: List[str] = field(default_factory=list)
    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    step_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ProviderKey:
    """Tenant-supplied credentials for one provider."""

    api_key: str
    enabled: bool = True
    base_url: Optional[str] = None


@dataclass
class ProviderCredentials:
    provider: str
    api_key: str
    base_url: Optional[str] = None
    source: str = "platform"


@dataclass
class TenantLLMConfig:
    tenant_id: str
    capability_routing: Optional[Dict[str, str]] = None
    provider_keys: Dict[str, ProviderKey] = field(default_factory=dict)
    token_budget: Optional[int] = None
    tokens_used: int = 0
    usage_reset_at: Optional[datetime] = None


@dataclass
class SkillUsage:
    """Tokens and completed runs for one workflow in the current month."""

    workflow_id: str
    total_tokens: int = 0
    run_count: int = 0


@dataclass
class ModelCacheUsage:
    model: str
    input_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0


@dataclass
class MonthlyUsage:
    per_skill: List[SkillUsage] = field(default_factory=list)
    cache: List[ModelCacheUsage] = field(default_factory=list)
    reset_at: Optional[datetime] = None
