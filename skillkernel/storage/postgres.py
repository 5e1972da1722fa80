from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from skillkernel.logging import get_logger
from skillkernel.storage.models import (
    ModelCacheUsage,
    MonthlyUsage,
    ProviderKey,
    RunRecord,
    SkillUsage,
    UsageRecord,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant_business_context (
        tenant_id TEXT PRIMARY KEY,
        context JSONB NOT NULL DEFAULT '{}'::jsonb,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS skill_runs (
        run_id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        status TEXT NOT NULL,
        output JSONB,
        errors JSONB,
        steps JSONB,
        token_usage JSONB,
        tool_call_count INTEGER NOT NULL DEFAULT 0,
        duration_ms INTEGER,
        started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS llm_usage (
        id BIGSERIAL PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        capability TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost_usd NUMERIC(12, 6) NOT NULL DEFAULT 0,
        latency_ms INTEGER NOT NULL DEFAULT 0,
        prompt_chars INTEGER NOT NULL DEFAULT 0,
        response_chars INTEGER NOT NULL DEFAULT 0,
        recommendations JSONB NOT NULL DEFAULT '[]'::jsonb,
        run_id TEXT,
        workflow_id TEXT,
        step_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS llm_configs (
        tenant_id TEXT PRIMARY KEY,
        routing JSONB,
        providers JSONB NOT NULL DEFAULT '{}'::jsonb,
        token_budget INTEGER,
        tokens_used_this_month BIGINT NOT NULL DEFAULT 0,
        budget_reset_at TIMESTAMPTZ NOT NULL
            DEFAULT date_trunc('month', now()) + INTERVAL '1 month',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed implementation of the engine's storage contracts."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()
        await self._ensure_schema()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def _ensure_schema(self) -> None:
        async with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    # Business context -------------------------------------------------

    async def get_context(self, tenant_id: str) -> Dict[str, Any]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT context FROM tenant_business_context WHERE tenant_id = %s",
                (tenant_id,),
            )
            row = await cur.fetchone()
        return dict(row["context"] or {}) if row else {}

    # Run sink ---------------------------------------------------------

    async def start_run(self, record: RunRecord) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO skill_runs (run_id, workflow_id, tenant_id, status, started_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (run_id) DO NOTHING
                """,
                (
                    record.id,
                    record.workflow_id,
                    record.tenant_id,
                    record.status,
                    record.started_at,
                ),
            )

    async def finish_run(self, record: RunRecord) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE skill_runs
                SET status = %s, output = %s, errors = %s, steps = %s,
                    token_usage = %s, tool_call_count = %s, duration_ms = %s,
                    completed_at = %s
                WHERE run_id = %s
                """,
                (
                    record.status,
                    Jsonb(record.output) if record.output is not None else None,
                    Jsonb(record.errors),
                    Jsonb([asdict(step) for step in record.steps]),
                    Jsonb(record.token_usage),
                    record.tool_call_count,
                    record.duration_ms,
                    record.completed_at,
                    record.id,
                ),
            )

    # Usage sink -------------------------------------------------------

    async def record_usage(self, record: UsageRecord) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO llm_usage (
                    tenant_id, capability, provider, model, input_tokens,
                    output_tokens, cache_creation_tokens, cache_read_tokens,
                    estimated_cost_usd, latency_ms, prompt_chars, response_chars,
                    recommendations, run_id, workflow_id, step_id, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.tenant_id,
                    record.capability,
                    record.provider,
                    record.model,
                    record.input_tokens,
                    record.output_tokens,
                    record.cache_creation_tokens,
                    record.cache_read_tokens,
                    record.estimated_cost_usd,
                    record.latency_ms,
                    record.prompt_chars,
                    record.response_chars,
                    Jsonb(record.recommendations),
                    record.run_id,
                    record.workflow_id,
                    record.step_id,
                    record.created_at,
                ),
            )

    async def get_monthly_usage(self, tenant_id: str) -> MonthlyUsage:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT r.workflow_id,
                       COALESCE(SUM(t.tokens), 0) AS total_tokens,
                       COUNT(*) AS run_count
                FROM skill_runs r
                LEFT JOIN LATERAL (
                    SELECT SUM(value::bigint) AS tokens
                    FROM jsonb_each_text(COALESCE(r.token_usage, '{}'::jsonb))
                ) t ON true
                WHERE r.tenant_id = %s
                  AND r.status = 'completed'
                  AND r.started_at >= date_trunc('month', now())
                GROUP BY r.workflow_id
                ORDER BY total_tokens DESC
                """,
                (tenant_id,),
            )
            skill_rows = await cur.fetchall()
            cur = await conn.execute(
                """
                SELECT model,
                       COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(cache_read_tokens), 0) AS cache_read_tokens,
                       COALESCE(SUM(cache_creation_tokens), 0) AS cache_creation_tokens
                FROM llm_usage
                WHERE tenant_id = %s AND created_at >= date_trunc('month', now())
                GROUP BY model
                """,
                (tenant_id,),
            )
            cache_rows = await cur.fetchall()
            cur = await conn.execute(
                "SELECT budget_reset_at FROM llm_configs WHERE tenant_id = %s",
                (tenant_id,),
            )
            reset_row = await cur.fetchone()
        return MonthlyUsage(
            per_skill=[
                SkillUsage(
                    workflow_id=row["workflow_id"],
                    total_tokens=int(row["total_tokens"]),
                    run_count=int(row["run_count"]),
                )
                for row in skill_rows
            ],
            cache=[
                ModelCacheUsage(
                    model=row["model"],
                    input_tokens=int(row["input_tokens"]),
                    cache_read_tokens=int(row["cache_read_tokens"]),
                    cache_creation_tokens=int(row["cache_creation_tokens"]),
                )
                for row in cache_rows
            ],
            reset_at=reset_row["budget_reset_at"] if reset_row else None,
        )

    # Tenant LLM config ------------------------------------------------

    async def _config_row(self, tenant_id: str) -> Optional[dict]:
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT routing, providers, token_budget FROM llm_configs WHERE tenant_id = %s",
                (tenant_id,),
            )
            return await cur.fetchone()

    async def get_capability_routing(self, tenant_id: str) -> Optional[Dict[str, str]]:
        row = await self._config_row(tenant_id)
        if not row or not row["routing"]:
            return None
        return dict(row["routing"])

    async def get_provider_credentials(
        self, tenant_id: str, provider: str
    ) -> Optional[ProviderKey]:
        row = await self._config_row(tenant_id)
        if not row:
            return None
        raw = (row["providers"] or {}).get(provider)
        if not raw or not raw.get("api_key"):
            return None
        return ProviderKey(
            api_key=raw["api_key"],
            enabled=bool(raw.get("enabled", True)),
            base_url=raw.get("base_url"),
        )

    async def get_token_budget(self, tenant_id: str) -> Optional[int]:
        row = await self._config_row(tenant_id)
        return row["token_budget"] if row else None

    async def update_llm_config(
        self,
        tenant_id: str,
        *,
        capability_routing: Optional[Dict[str, str]] = None,
        provider_keys: Optional[Dict[str, ProviderKey]] = None,
        token_budget: Optional[int] = None,
    ) -> None:
        providers = {name: asdict(key) for name, key in (provider_keys or {}).items()}
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO llm_configs (tenant_id, routing, providers, token_budget)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    routing = COALESCE(EXCLUDED.routing, llm_configs.routing),
                    providers = llm_configs.providers || EXCLUDED.providers,
                    token_budget = COALESCE(EXCLUDED.token_budget, llm_configs.token_budget),
                    updated_at = now()
                """,
                (
                    tenant_id,
                    Jsonb(capability_routing) if capability_routing is not None else None,
                    Jsonb(providers),
                    token_budget,
                ),
            )
        self.logger.info("llm_config_saved", tenant_id=tenant_id)

    # Token counter ----------------------------------------------------

    async def increment_token_usage(self, tenant_id: str, tokens: int) -> int:
        """Single-statement increment; a passed reset date restarts the month."""

        async with self._connect() as conn:
            cur = await conn.execute(
                """
                INSERT INTO llm_configs (tenant_id, tokens_used_this_month)
                VALUES (%s, %s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    tokens_used_this_month = CASE
                        WHEN llm_configs.budget_reset_at <= now() THEN EXCLUDED.tokens_used_this_month
                        ELSE llm_configs.tokens_used_this_month + EXCLUDED.tokens_used_this_month
                    END,
                    budget_reset_at = CASE
                        WHEN llm_configs.budget_reset_at <= now()
                        THEN date_trunc('month', now()) + INTERVAL '1 month'
                        ELSE llm_configs.budget_reset_at
                    END,
                    updated_at = now()
                RETURNING tokens_used_this_month
                """,
                (tenant_id, int(tokens)),
            )
            row = await cur.fetchone()
        return int(row["tokens_used_this_month"]) if row else 0

    async def get_token_usage(self, tenant_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT CASE WHEN budget_reset_at <= now() THEN 0
                            ELSE tokens_used_this_month END AS used
                FROM llm_configs WHERE tenant_id = %s
                """,
                (tenant_id,),
            )
            row = await cur.fetchone()
        return int(row["used"]) if row else 0
