from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Callable, Optional

import redis.asyncio as aioredis

# Monthly counters outlive their month by a few days so late reads still resolve
TOKEN_COUNTER_TTL_SECONDS = 40 * 24 * 3600
RUN_STATE_TTL_SECONDS = 1800


class RedisCache:
    """Thin Redis wrapper for tenant token counters and live run state."""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.clock = clock

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _token_key(self, tenant_id: str) -> str:
        return f"tokens:{tenant_id}:{self.clock().strftime('%Y-%m')}"

    async def increment_token_usage(self, tenant_id: str, tokens: int) -> int:
        # A new month writes to a new key, which is the monthly reset
        key = self._token_key(tenant_id)
        pipe = self.client.pipeline()
        pipe.incrby(key, int(tokens))
        pipe.expire(key, TOKEN_COUNTER_TTL_SECONDS)
        total, _ = await pipe.execute()
        return int(total)

    async def get_token_usage(self, tenant_id: str) -> int:
        value = await self.client.get(self._token_key(tenant_id))
        return int(value) if value else 0

    async def get_workflow_state(self, state_key: str) -> Optional[dict]:
        cached = await self.client.get(f"workflow:state:{state_key}")
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            # Corrupted cache entry - treat as cache miss
            return None

    async def set_workflow_state(
        self, state_key: str, state: dict, ttl_seconds: int = RUN_STATE_TTL_SECONDS
    ) -> None:
        await self.client.set(
            f"workflow:state:{state_key}", json.dumps(state, default=str), ex=ttl_seconds
        )

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
