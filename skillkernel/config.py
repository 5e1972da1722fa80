from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from skillkernel.logging import get_logger

logger = get_logger(__name__)


class Capability(str, Enum):
    """Logical classes of AI work, independent of provider/model."""

    EXTRACT = "extract"
    CLASSIFY = "classify"
    REASON = "reason"
    GENERATE = "generate"


class StepTier(str, Enum):
    """Execution class of a workflow step."""

    COMPUTE = "compute"
    EXTRACT = "extract"
    REASON = "reason"


# Routing used when a tenant has not configured its own
DEFAULT_CAPABILITY_ROUTING: dict[str, str] = {
    Capability.EXTRACT.value: "fireworks/deepseek-v3p1",
    Capability.CLASSIFY.value: "fireworks/deepseek-v3p1",
    Capability.REASON.value: "anthropic/claude-sonnet-4-20250514",
    Capability.GENERATE.value: "anthropic/claude-sonnet-4-20250514",
}

# Reasoning capabilities sample more freely than extraction ones
DEFAULT_TEMPERATURES: dict[str, float] = {
    Capability.EXTRACT.value: 0.1,
    Capability.CLASSIFY.value: 0.1,
    Capability.REASON.value: 0.7,
    Capability.GENERATE.value: 0.7,
}

PLATFORM_BASE_URLS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1",
    "fireworks": "https://api.fireworks.ai/inference/v1",
    "openai": "https://api.openai.com/v1",
}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the skill execution engine."""

    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str | None = env_field(None, "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    default_tenant_id: str = env_field("public", "DEFAULT_TENANT_ID")

    # Platform provider credentials, used when a tenant supplies none
    anthropic_api_key: str | None = env_field(None, "ANTHROPIC_API_KEY")
    anthropic_base_url: str | None = env_field(None, "ANTHROPIC_BASE_URL")
    fireworks_api_key: str | None = env_field(None, "FIREWORKS_API_KEY")
    fireworks_base_url: str | None = env_field(
        PLATFORM_BASE_URLS["fireworks"], "FIREWORKS_BASE_URL"
    )
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")

    # Provider calls
    provider_timeout_seconds: float = env_field(
        120.0,
        "PROVIDER_TIMEOUT_SECONDS",
        description="Total timeout for a single provider HTTP call",
    )
    provider_connect_timeout_seconds: float = env_field(
        10.0, "PROVIDER_CONNECT_TIMEOUT_SECONDS"
    )
    provider_max_retries: int = env_field(
        2,
        "PROVIDER_MAX_RETRIES",
        description="Retries for rate-limited or transient provider failures (hard cap 5)",
    )
    provider_backoff_ms: int = env_field(
        1000,
        "PROVIDER_BACKOFF_MS",
        description="Initial retry backoff; quadruples on each further retry",
    )
    routing_cache_ttl_seconds: float = env_field(300.0, "ROUTING_CACHE_TTL_SECONDS")

    # Guardrails
    prompt_token_hard_limit: int = env_field(20000, "PROMPT_TOKEN_HARD_LIMIT")
    prompt_token_soft_limit: int = env_field(8000, "PROMPT_TOKEN_SOFT_LIMIT")
    classification_max_items: int = env_field(30, "CLASSIFICATION_MAX_ITEMS")

    # Step defaults
    default_max_tool_calls: int = env_field(10, "DEFAULT_MAX_TOOL_CALLS")
    default_max_tokens: int = env_field(4096, "DEFAULT_MAX_TOKENS")
    default_token_budget: int = env_field(
        50000,
        "DEFAULT_TOKEN_BUDGET",
        description="Monthly token budget reported for tenants without their own",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("provider_max_retries")
    @classmethod
    def _cap_retries(cls, value: int) -> int:
        return max(0, min(int(value), 5))

    @field_validator("prompt_token_soft_limit")
    @classmethod
    def _soft_limit_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("prompt_token_soft_limit must be positive")
        return value

    def platform_credentials(self, provider: str) -> tuple[str | None, str | None]:
        """Return the platform ``(api_key, base_url)`` for a provider."""

        provider = provider.lower()
        if provider == "anthropic":
            return self.anthropic_api_key, self.anthropic_base_url
        if provider == "fireworks":
            return self.fireworks_api_key, self.fireworks_base_url
        if provider == "openai":
            return self.openai_api_key, self.openai_base_url
        return None, None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
