from __future__ import annotations

import threading
from typing import Any, Dict, Optional
from urllib.parse import urlparse, urlunparse

from skillkernel.config import get_settings, reset_settings_cache
from skillkernel.logging import get_logger
from skillkernel.service.context import CancellationToken
from skillkernel.service.definitions import WorkflowDefinition
from skillkernel.service.router import CapabilityRouter
from skillkernel.service.tools import ToolRegistry
from skillkernel.service.workflow import SkillEngine
from skillkernel.storage.memory import MemoryStore
from skillkernel.storage.models import RunRecord
from skillkernel.storage.postgres import PostgresStore
from skillkernel.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the engine."""

    def __init__(self, *, tools: Optional[ToolRegistry] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            database_url=_mask_url_password(self.settings.database_url),
        )
        if self.settings.use_memory_store or not self.settings.database_url:
            self.store: MemoryStore | PostgresStore = MemoryStore()
        else:
            self.store = PostgresStore(self.settings.database_url)

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="token counters and run state are kept in the primary store",
                )

        token_counter = self.cache or self.store
        self.tools = tools if tools is not None else ToolRegistry()
        self.router = CapabilityRouter(
            self.store,
            settings=self.settings,
            token_counter=token_counter,
            usage_sink=self.store,
            usage_report=self.store,
        )
        self.engine = SkillEngine(
            self.router,
            self.tools,
            context_provider=self.store,
            run_sink=self.store,
            cache=self.cache or self.store,
            settings=self.settings,
        )
        self._started = False
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
        )

    async def start(self) -> None:
        if self._started:
            return
        if isinstance(self.store, PostgresStore):
            await self.store.open()
        self._started = True

    async def execute(
        self,
        workflow: WorkflowDefinition | Dict[str, Any],
        tenant_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RunRecord:
        await self.start()
        if not isinstance(workflow, WorkflowDefinition):
            workflow = WorkflowDefinition.from_dict(workflow)
        return await self.engine.execute(
            workflow,
            tenant_id or self.settings.default_tenant_id,
            params,
            cancel_token=cancel_token,
        )

    async def aclose(self) -> None:
        await self.router.aclose()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore) and self._started:
            await self.store.close()
        self._started = False


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()
