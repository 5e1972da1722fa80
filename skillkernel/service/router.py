from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, Optional, Set, Tuple

import httpx

from skillkernel.config import (
    DEFAULT_CAPABILITY_ROUTING,
    Capability,
    Settings,
)
from skillkernel.logging import get_logger
from skillkernel.service.context import CancellationToken
from skillkernel.service.errors import (
    ConfigurationError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)
from skillkernel.service.pricing import (
    analyze_payload,
    estimate_cache_savings,
    estimate_cost,
    generate_recommendations,
    summary_fields,
    usage_severity,
)
from skillkernel.service.providers.anthropic import AnthropicAdapter
from skillkernel.service.providers.base import (
    LLMRequest,
    NormalizedResponse,
    ProviderAdapter,
    ProviderHttpRequest,
)
from skillkernel.service.providers.openai_compat import (
    OpenAICompatibleAdapter,
    fireworks_adapter,
)
from skillkernel.storage.interfaces import (
    TenantConfigSource,
    TokenCounter,
    UsageReportSource,
    UsageSink,
)
from skillkernel.storage.models import (
    MonthlyUsage,
    ProviderCredentials,
    ProviderKey,
    TokenUsage,
    UsageRecord,
)

DEFAULT_ROUTE_CACHE_TTL_SECONDS = 300.0
DEFAULT_PROVIDER_MAX_RETRIES = 2
DEFAULT_PROVIDER_BACKOFF_MS = 1000  # quadruples each retry: 1s, 4s
MAX_PROVIDER_RETRIES_HARD_CAP = 5
MAX_RETRY_SLEEP_SECONDS = 60.0
TRANSIENT_STATUS_CODES = {408, 409, 529}

_ROUTING = "routing"
_CREDENTIALS = "credentials"


def default_adapters() -> Dict[str, ProviderAdapter]:
    return {
        "anthropic": AnthropicAdapter(),
        "openai": OpenAICompatibleAdapter("openai"),
        "fireworks": fireworks_adapter(),
    }


def parse_route(route: str) -> Tuple[str, str]:
    """Split ``provider/model``; the model part may itself contain slashes."""

    provider, sep, model = (route or "").partition("/")
    if not sep or not provider or not model:
        raise ConfigurationError(
            f"Invalid routing format '{route}', expected 'provider/model'",
            detail={"route": route},
        )
    return provider, model


@dataclass
class _CacheEntry:
    value: Any
    expires_at: float


class RouteCache:
    """TTL cache for per-tenant routing and credentials.

    Keys are ``(tenant_id, kind, ...)`` tuples so a tenant's entries can be
    dropped together. The clock is injectable so expiry can be tested without
    sleeping.

    Each tenant carries a generation that :meth:`invalidate` bumps. A loader
    captures it with :meth:`generation` before reading config and passes it to
    :meth:`set`; a write from a read that raced an invalidation is discarded.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_ROUTE_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: Dict[Tuple[Hashable, ...], _CacheEntry] = {}
        self._generations: Dict[Hashable, int] = {}
        self._global_generation = 0
        self._lock = threading.Lock()

    def get(self, key: Tuple[Hashable, ...]) -> Tuple[bool, Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if self.clock() >= entry.expires_at:
                self._entries.pop(key, None)
                return False, None
            return True, entry.value

    def generation(self, tenant_id: Hashable) -> Tuple[int, int]:
        with self._lock:
            return self._global_generation, self._generations.get(tenant_id, 0)

    def set(
        self,
        key: Tuple[Hashable, ...],
        value: Any,
        *,
        generation: Optional[Tuple[int, int]] = None,
    ) -> bool:
        with self._lock:
            current = (self._global_generation, self._generations.get(key[0], 0))
            if generation is not None and generation != current:
                return False
            self._entries[key] = _CacheEntry(value, self.clock() + self.ttl_seconds)
            return True

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._lock:
            if tenant_id is None:
                self._global_generation += 1
                self._entries.clear()
                return
            self._generations[tenant_id] = self._generations.get(tenant_id, 0) + 1
            for key in [k for k in self._entries if k[0] == tenant_id]:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CapabilityRouter:
    """Maps a capability to a tenant's provider/model and performs the call.

    Business logic only ever sees :class:`NormalizedResponse`; each provider's
    wire format lives in an adapter from ``skillkernel.service.providers``.
    """

    def __init__(
        self,
        config_source: TenantConfigSource,
        *,
        settings: Optional[Settings] = None,
        token_counter: Optional[TokenCounter] = None,
        usage_sink: Optional[UsageSink] = None,
        usage_report: Optional[UsageReportSource] = None,
        route_cache: Optional[RouteCache] = None,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.config_source = config_source
        self.token_counter = token_counter
        self.usage_sink = usage_sink
        self.usage_report = usage_report
        self.route_cache = (
            route_cache
            if route_cache is not None
            else RouteCache(ttl_seconds=self.settings.routing_cache_ttl_seconds)
        )
        self.adapters = adapters if adapters is not None else default_adapters()
        self.max_retries = min(
            self.settings.provider_max_retries, MAX_PROVIDER_RETRIES_HARD_CAP
        )
        self.backoff_ms = self.settings.provider_backoff_ms
        self.logger = get_logger(__name__)
        self._transport = transport
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Routing and credentials
    # ------------------------------------------------------------------

    async def resolve_route(self, tenant_id: str, capability: str) -> Tuple[str, str]:
        if capability not in {c.value for c in Capability}:
            raise ConfigurationError(
                f"Unknown capability '{capability}'", detail={"capability": capability}
            )
        routing = await self._tenant_routing(tenant_id)
        route = routing.get(capability)
        if not route:
            raise ConfigurationError(
                f"No routing configured for capability '{capability}'",
                detail={"tenant_id": tenant_id, "capability": capability},
            )
        return parse_route(route)

    async def _tenant_routing(self, tenant_id: str) -> Dict[str, str]:
        hit, cached = self.route_cache.get((tenant_id, _ROUTING))
        if hit:
            return cached
        generation = self.route_cache.generation(tenant_id)
        routing = await self.config_source.get_capability_routing(tenant_id)
        effective = dict(routing) if routing else dict(DEFAULT_CAPABILITY_ROUTING)
        if not self.route_cache.set(
            (tenant_id, _ROUTING), effective, generation=generation
        ):
            self.logger.debug("route_cache_write_skipped", tenant_id=tenant_id)
        return effective

    async def _tenant_key(self, tenant_id: str, provider: str) -> Optional[ProviderKey]:
        hit, cached = self.route_cache.get((tenant_id, _CREDENTIALS, provider))
        if hit:
            return cached
        generation = self.route_cache.generation(tenant_id)
        key = await self.config_source.get_provider_credentials(tenant_id, provider)
        self.route_cache.set(
            (tenant_id, _CREDENTIALS, provider), key, generation=generation
        )
        return key

    async def resolve_credentials(
        self, tenant_id: str, provider: str
    ) -> ProviderCredentials:
        """Tenant key when enabled, platform key from settings otherwise."""

        tenant_key = await self._tenant_key(tenant_id, provider)
        if tenant_key and tenant_key.enabled and tenant_key.api_key:
            return ProviderCredentials(
                provider=provider,
                api_key=tenant_key.api_key,
                base_url=tenant_key.base_url,
                source="tenant",
            )
        api_key, base_url = self.settings.platform_credentials(provider)
        if api_key:
            return ProviderCredentials(
                provider=provider, api_key=api_key, base_url=base_url, source="platform"
            )
        raise ConfigurationError(
            f"No API key for provider '{provider}'; add a key to the tenant LLM "
            "config or set the platform environment variable",
            detail={"tenant_id": tenant_id, "provider": provider},
        )

    async def update_tenant_config(
        self,
        tenant_id: str,
        *,
        capability_routing: Optional[Dict[str, str]] = None,
        provider_keys: Optional[Dict[str, ProviderKey]] = None,
        token_budget: Optional[int] = None,
    ) -> None:
        """Persist tenant LLM config and drop its cached routes immediately."""

        if capability_routing is not None:
            known = {c.value for c in Capability}
            for capability, route in capability_routing.items():
                if capability not in known:
                    raise ConfigurationError(
                        f"Unknown capability '{capability}'",
                        detail={"capability": capability},
                    )
                provider, _ = parse_route(route)
                if provider not in self.adapters:
                    raise ConfigurationError(
                        f"Unsupported provider '{provider}'",
                        detail={"capability": capability, "route": route},
                    )
        await self.config_source.update_llm_config(
            tenant_id,
            capability_routing=capability_routing,
            provider_keys=provider_keys,
            token_budget=token_budget,
        )
        self.route_cache.invalidate(tenant_id)
        self.logger.info(
            "tenant_llm_config_updated",
            tenant_id=tenant_id,
            routing_updated=capability_routing is not None,
            providers_updated=sorted(provider_keys or {}),
        )

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        self.route_cache.invalidate(tenant_id)

    async def get_tenant_llm_config(self, tenant_id: str) -> Dict[str, Any]:
        routing = await self._tenant_routing(tenant_id)
        providers: Dict[str, Dict[str, bool]] = {}
        for name in self.adapters:
            tenant_key = await self._tenant_key(tenant_id, name)
            platform_key, _ = self.settings.platform_credentials(name)
            connected = bool(tenant_key and tenant_key.enabled and tenant_key.api_key)
            providers[name] = {"connected": connected or bool(platform_key)}
        return {
            "routing": dict(routing),
            "providers": providers,
            "budget": await self._budget(tenant_id),
        }

    async def _budget(self, tenant_id: str) -> Dict[str, int]:
        budget = await self.config_source.get_token_budget(tenant_id)
        total = budget if budget is not None else self.settings.default_token_budget
        used = (
            await self.token_counter.get_token_usage(tenant_id)
            if self.token_counter
            else 0
        )
        return {"total": total, "used": used, "remaining": max(0, total - used)}

    async def get_tenant_llm_usage(self, tenant_id: str) -> Dict[str, Any]:
        """Month-to-date usage: budget, per-workflow totals and prompt caching.

        ``caching`` is ``None`` until some call has read or written the cache.
        The hit rate is cache reads over all prompt tokens sent.
        """

        budget = await self._budget(tenant_id)
        monthly = (
            await self.usage_report.get_monthly_usage(tenant_id)
            if self.usage_report is not None
            else MonthlyUsage()
        )
        reads = sum(entry.cache_read_tokens for entry in monthly.cache)
        writes = sum(entry.cache_creation_tokens for entry in monthly.cache)
        prompt_tokens = sum(
            entry.input_tokens + entry.cache_read_tokens + entry.cache_creation_tokens
            for entry in monthly.cache
        )
        caching = None
        if reads or writes:
            caching = {
                "cache_read_tokens": reads,
                "cache_creation_tokens": writes,
                "estimated_savings_usd": sum(
                    estimate_cache_savings(entry.model, entry.cache_read_tokens)
                    for entry in monthly.cache
                ),
                "cache_hit_rate": reads / prompt_tokens if prompt_tokens else 0.0,
            }
        return {
            "tokens_used_this_month": budget["used"],
            "budget": budget["total"],
            "remaining": budget["remaining"],
            "reset_at": monthly.reset_at.isoformat() if monthly.reset_at else None,
            "per_skill": [
                {
                    "workflow_id": entry.workflow_id,
                    "total_tokens": entry.total_tokens,
                    "run_count": entry.run_count,
                }
                for entry in monthly.per_skill
            ],
            "caching": caching,
        }

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call(
        self,
        tenant_id: str,
        capability: str,
        request: LLMRequest,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> NormalizedResponse:
        provider, model = await self.resolve_route(tenant_id, capability)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ConfigurationError(
                f"Unsupported provider: {provider}",
                detail={"tenant_id": tenant_id, "provider": provider},
            )
        credentials = await self.resolve_credentials(tenant_id, provider)
        http_request = adapter.build_request(model, request, credentials)
        summary = analyze_payload(request.messages, request.system_prompt)

        self.logger.info(
            "llm_call_started",
            tenant_id=tenant_id,
            capability=capability,
            provider=provider,
            model=model,
            credential_source=credentials.source,
            estimated_prompt_tokens=summary.estimated_tokens,
        )
        started = time.monotonic()
        payload = await self._send_with_retry(
            provider, http_request, cancel_token=cancel_token
        )
        response = adapter.parse_response(payload)
        latency_ms = int((time.monotonic() - started) * 1000)

        usage = response.usage
        cost = estimate_cost(model, usage)
        recommendations = generate_recommendations(usage.total, summary)
        severity = usage_severity(usage.total)
        if severity == "critical":
            self.logger.error(
                "llm_usage_critical",
                tenant_id=tenant_id,
                model=model,
                total_tokens=usage.total,
                estimated_cost_usd=round(cost, 4),
                payload=summary_fields(summary),
            )
        elif severity == "warning":
            self.logger.warning(
                "llm_usage_high",
                tenant_id=tenant_id,
                model=model,
                total_tokens=usage.total,
                estimated_cost_usd=round(cost, 4),
            )
        if usage.cache_creation_tokens or usage.cache_read_tokens:
            self.logger.debug(
                "llm_prompt_cache",
                model=model,
                cache_creation_tokens=usage.cache_creation_tokens,
                cache_read_tokens=usage.cache_read_tokens,
                input_tokens=usage.input_tokens,
            )

        tracking = request.tracking
        record = UsageRecord(
            tenant_id=tenant_id,
            capability=capability,
            provider=provider,
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=usage.cache_creation_tokens,
            cache_read_tokens=usage.cache_read_tokens,
            estimated_cost_usd=cost,
            latency_ms=latency_ms,
            prompt_chars=summary.total_chars,
            response_chars=len(response.content),
            recommendations=recommendations,
            run_id=tracking.run_id if tracking else None,
            workflow_id=tracking.workflow_id if tracking else None,
            step_id=tracking.step_id if tracking else None,
        )
        self._spawn(self._track_usage(tenant_id, usage))
        self._spawn(self._record_usage(record))
        return response

    async def _send_with_retry(
        self,
        provider: str,
        http_request: ProviderHttpRequest,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """POST with bounded exponential backoff for retryable failures.

        Rate-limited and transient errors are retried up to ``max_retries``
        times, sleeping ``backoff_ms * 4 ** (attempt - 1)`` or the provider's
        ``Retry-After``. Every other error propagates immediately.
        """

        attempt = 0
        while True:
            if cancel_token:
                cancel_token.raise_if_cancelled()
            try:
                return await self._send(provider, http_request)
            except ProviderError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    if exc.retryable:
                        self.logger.error(
                            "llm_call_retries_exhausted",
                            provider=provider,
                            attempts=attempt + 1,
                            error=str(exc),
                        )
                    raise
                attempt += 1
                delay = self.backoff_ms * (4 ** (attempt - 1)) / 1000.0
                retry_after = getattr(exc, "retry_after", None)
                if retry_after is not None:
                    delay = retry_after
                delay = min(delay, MAX_RETRY_SLEEP_SECONDS)
                self.logger.warning(
                    "llm_call_retry",
                    provider=provider,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    backoff_s=delay,
                    error_code=exc.error_code,
                    error=str(exc),
                )
                await self._backoff(delay, cancel_token)

    async def _backoff(
        self, seconds: float, cancel_token: Optional[CancellationToken]
    ) -> None:
        if self._sleep is not None:
            if cancel_token:
                cancel_token.raise_if_cancelled()
            await self._sleep(seconds)
            return
        if cancel_token:
            await cancel_token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.settings.provider_timeout_seconds,
                    connect=self.settings.provider_connect_timeout_seconds,
                ),
                transport=self._transport,
            )
        return self._client

    async def _send(
        self, provider: str, http_request: ProviderHttpRequest
    ) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                http_request.url, headers=http_request.headers, json=http_request.body
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _status_error(provider, exc.response) from exc
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"{provider} request timed out", provider=provider
            ) from exc
        except httpx.TransportError as exc:
            raise TransientProviderError(
                f"failed to reach {provider}: {exc}", provider=provider
            ) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{provider} returned a malformed body",
                provider=provider,
                status_code=response.status_code,
            ) from exc

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _track_usage(self, tenant_id: str, usage: TokenUsage) -> None:
        if self.token_counter is None or usage.total <= 0:
            return
        try:
            await self.token_counter.increment_token_usage(tenant_id, usage.total)
        except Exception as exc:
            self.logger.error(
                "token_usage_increment_failed", tenant_id=tenant_id, error=str(exc)
            )

    async def _record_usage(self, record: UsageRecord) -> None:
        if self.usage_sink is None:
            return
        try:
            await self.usage_sink.record_usage(record)
        except Exception as exc:
            self.logger.warning(
                "usage_record_failed", tenant_id=record.tenant_id, error=str(exc)
            )

    async def drain(self) -> None:
        """Wait for pending usage side effects."""

        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _status_error(provider: str, response: httpx.Response) -> ProviderError:
    status = response.status_code
    body = response.text[:500]
    detail = {"status_code": status, "body": body}
    if status == 429:
        return RateLimitedError(
            f"{provider} rate limited the request",
            retry_after=_retry_after_seconds(response),
            provider=provider,
            status_code=status,
            detail=detail,
        )
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        return TransientProviderError(
            f"{provider} API error {status}",
            provider=provider,
            status_code=status,
            detail=detail,
        )
    return ProviderError(
        f"{provider} API error {status}: {body}",
        provider=provider,
        status_code=status,
        detail=detail,
    )


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
