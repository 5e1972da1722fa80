"""Tests for capability routing, credential resolution, retries and usage tracking."""

from __future__ import annotations

import asyncio
import json
from typing import Callable, List, Optional

import httpx
import pytest

from skillkernel.config import DEFAULT_CAPABILITY_ROUTING, Settings
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
    usage_severity,
)
from skillkernel.service.providers.base import ChatMessage, LLMRequest, LLMTracking
from skillkernel.service.router import CapabilityRouter, RouteCache, parse_route
from skillkernel.storage.memory import MemoryStore
from skillkernel.storage.models import ProviderKey, RunRecord, TokenUsage, UsageRecord

ANTHROPIC_REPLY = {
    "content": [{"type": "text", "text": "anthropic says hi"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 120, "output_tokens": 30},
}
OPENAI_REPLY = {
    "choices": [{"message": {"content": "openai says hi"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 50, "completion_tokens": 10},
}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingTransport:
    """httpx mock transport that records requests and replays scripted replies."""

    def __init__(self, responder: Optional[Callable[[httpx.Request], httpx.Response]] = None):
        self.requests: List[httpx.Request] = []
        self.responder = responder or self.default_reply
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @staticmethod
    def default_reply(request: httpx.Request) -> httpx.Response:
        if "anthropic" in request.url.host:
            return httpx.Response(200, json=ANTHROPIC_REPLY)
        return httpx.Response(200, json=OPENAI_REPLY)

    def bodies(self) -> List[dict]:
        return [json.loads(r.content) for r in self.requests]


class Sleeper:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def platform_settings(**overrides) -> Settings:
    values = {
        "anthropic_api_key": "sk-platform-anthropic",
        "fireworks_api_key": "fw-platform",
        "openai_api_key": "sk-platform-openai",
    }
    values.update(overrides)
    return Settings(**values)


def make_router(
    store: MemoryStore,
    transport: RecordingTransport,
    *,
    settings: Optional[Settings] = None,
    clock: Optional[FakeClock] = None,
    sleeper: Optional[Sleeper] = None,
) -> CapabilityRouter:
    return CapabilityRouter(
        store,
        settings=settings or platform_settings(),
        token_counter=store,
        usage_sink=store,
        route_cache=RouteCache(ttl_seconds=300, clock=clock or FakeClock()),
        transport=transport.transport,
        sleep=sleeper or Sleeper(),
    )


def request(text: str = "hello") -> LLMRequest:
    return LLMRequest(
        messages=[ChatMessage.user(text)],
        system_prompt="You are helpful",
        tracking=LLMTracking(run_id="run-1", workflow_id="wf", step_id="B"),
    )


# ==============================================================================
# Routing
# ==============================================================================


class TestRouteResolution:
    """Capability to provider/model mapping."""

    def test_parse_route_keeps_slashes_in_model(self):
        assert parse_route("fireworks/accounts/x/models/y") == (
            "fireworks",
            "accounts/x/models/y",
        )

    @pytest.mark.parametrize("route", ["", "anthropic", "/model", "anthropic/"])
    def test_parse_route_rejects_malformed(self, route):
        with pytest.raises(ConfigurationError):
            parse_route(route)

    async def test_defaults_when_tenant_has_no_routing(self):
        router = make_router(MemoryStore(), RecordingTransport())
        for capability, route in DEFAULT_CAPABILITY_ROUTING.items():
            assert await router.resolve_route("acme", capability) == parse_route(route)

    async def test_unknown_capability_is_configuration_error(self):
        router = make_router(MemoryStore(), RecordingTransport())
        with pytest.raises(ConfigurationError, match="Unknown capability"):
            await router.resolve_route("acme", "summarize")

    async def test_tenant_routing_replaces_defaults(self):
        store = MemoryStore()
        await store.update_llm_config("acme", capability_routing={"reason": "openai/gpt-4o"})
        router = make_router(store, RecordingTransport())
        assert await router.resolve_route("acme", "reason") == ("openai", "gpt-4o")
        with pytest.raises(ConfigurationError, match="No routing configured"):
            await router.resolve_route("acme", "extract")

    async def test_update_rejects_unknown_provider(self):
        store = MemoryStore()
        router = make_router(store, RecordingTransport())
        with pytest.raises(ConfigurationError, match="Unsupported provider"):
            await router.update_tenant_config(
                "acme", capability_routing={"reason": "mystery/model-1"}
            )
        assert await store.get_capability_routing("acme") is None


class TestRouteCache:
    """Cached routing honours TTL and explicit invalidation."""

    async def test_update_is_visible_on_next_call(self):
        store = MemoryStore()
        transport = RecordingTransport()
        router = make_router(store, transport)

        await router.call("acme", "reason", request())
        await router.update_tenant_config(
            "acme", capability_routing={"reason": "openai/gpt-4o"}
        )
        response = await router.call("acme", "reason", request())
        await router.aclose()

        assert transport.requests[0].url.host == "api.anthropic.com"
        assert transport.requests[1].url.host == "api.openai.com"
        assert transport.bodies()[1]["model"] == "gpt-4o"
        assert response.content == "openai says hi"

    async def test_cached_route_survives_until_ttl(self):
        store = MemoryStore()
        clock = FakeClock()
        router = make_router(store, RecordingTransport(), clock=clock)

        assert (await router.resolve_route("acme", "reason"))[0] == "anthropic"
        # Written behind the router's back: not visible until expiry
        await store.update_llm_config("acme", capability_routing={"reason": "openai/gpt-4o"})
        assert (await router.resolve_route("acme", "reason"))[0] == "anthropic"

        clock.now += 301
        assert (await router.resolve_route("acme", "reason"))[0] == "openai"

    async def test_invalidate_single_tenant(self):
        cache = RouteCache(ttl_seconds=60, clock=FakeClock())
        cache.set(("acme", "routing"), {"reason": "a/b"})
        cache.set(("acme", "credentials", "anthropic"), None)
        cache.set(("globex", "routing"), {"reason": "c/d"})

        cache.invalidate("acme")

        assert cache.get(("acme", "routing")) == (False, None)
        assert cache.get(("globex", "routing")) == (True, {"reason": "c/d"})
        assert len(cache) == 1

    def test_cached_none_is_a_hit(self):
        cache = RouteCache(ttl_seconds=60, clock=FakeClock())
        cache.set(("acme", "credentials", "openai"), None)
        assert cache.get(("acme", "credentials", "openai")) == (True, None)

    def test_empty_injected_cache_is_kept(self):
        cache = RouteCache(ttl_seconds=5, clock=FakeClock())
        router = CapabilityRouter(MemoryStore(), settings=platform_settings(), route_cache=cache)
        assert router.route_cache is cache

    def test_write_from_before_invalidation_is_discarded(self):
        cache = RouteCache(ttl_seconds=60, clock=FakeClock())
        generation = cache.generation("acme")
        cache.invalidate("acme")
        assert cache.set(("acme", "routing"), {"reason": "a/old"}, generation=generation) is False
        assert cache.get(("acme", "routing")) == (False, None)
        assert cache.set(("acme", "routing"), {"reason": "a/new"}, generation=cache.generation("acme"))

    async def test_update_during_inflight_read_is_not_overwritten(self):
        class SlowConfigSource(MemoryStore):
            """Snapshots routing, then waits on a gate before returning it."""

            def __init__(self):
                super().__init__()
                self.reading = asyncio.Event()
                self.gate = asyncio.Event()

            async def get_capability_routing(self, tenant_id):
                snapshot = await super().get_capability_routing(tenant_id)
                if not self.gate.is_set():
                    self.reading.set()
                    await self.gate.wait()
                return snapshot

        source = SlowConfigSource()
        await source.update_llm_config(
            "acme", capability_routing={"reason": "anthropic/old-model"}
        )
        router = make_router(source, RecordingTransport())

        inflight = asyncio.create_task(router.resolve_route("acme", "reason"))
        await source.reading.wait()
        await router.update_tenant_config(
            "acme", capability_routing={"reason": "anthropic/new-model"}
        )
        source.gate.set()

        assert await inflight == ("anthropic", "old-model")
        assert await router.resolve_route("acme", "reason") == ("anthropic", "new-model")


# ==============================================================================
# Credentials
# ==============================================================================


class TestCredentials:
    """Tenant key first, platform key second, error otherwise."""

    async def test_tenant_key_wins(self):
        store = MemoryStore()
        transport = RecordingTransport()
        router = make_router(store, transport)
        await router.update_tenant_config(
            "acme", provider_keys={"anthropic": ProviderKey(api_key="sk-tenant")}
        )
        await router.call("acme", "reason", request())
        await router.aclose()
        assert transport.requests[0].headers["x-api-key"] == "sk-tenant"

    async def test_disabled_tenant_key_falls_back_to_platform(self):
        store = MemoryStore()
        await store.update_llm_config(
            "acme",
            provider_keys={"anthropic": ProviderKey(api_key="sk-tenant", enabled=False)},
        )
        router = make_router(store, RecordingTransport())
        creds = await router.resolve_credentials("acme", "anthropic")
        assert creds.source == "platform"
        assert creds.api_key == "sk-platform-anthropic"

    async def test_missing_credentials_raise_before_any_request(self):
        transport = RecordingTransport()
        router = make_router(
            MemoryStore(), transport, settings=Settings(anthropic_api_key=None)
        )
        with pytest.raises(ConfigurationError, match="No API key for provider 'anthropic'"):
            await router.call("acme", "reason", request())
        await router.aclose()
        assert transport.requests == []

    async def test_tenant_llm_config_summary(self):
        store = MemoryStore()
        router = make_router(store, RecordingTransport(), settings=Settings(fireworks_api_key=None))
        await router.update_tenant_config(
            "acme",
            provider_keys={"openai": ProviderKey(api_key="sk-tenant-openai")},
            token_budget=1000,
        )
        await store.increment_token_usage("acme", 250)

        summary = await router.get_tenant_llm_config("acme")

        assert summary["routing"] == DEFAULT_CAPABILITY_ROUTING
        assert summary["providers"]["openai"] == {"connected": True}
        assert summary["providers"]["fireworks"] == {"connected": False}
        assert summary["budget"] == {"total": 1000, "used": 250, "remaining": 750}


# ==============================================================================
# Retries
# ==============================================================================


def scripted(*responses: httpx.Response) -> Callable[[httpx.Request], httpx.Response]:
    queue = list(responses)

    def responder(request: httpx.Request) -> httpx.Response:
        return queue.pop(0)

    return responder


class TestRetries:
    """Bounded backoff for rate limits and transient failures only."""

    async def test_rate_limit_uses_retry_after(self):
        transport = RecordingTransport(
            scripted(
                httpx.Response(429, headers={"retry-after": "2"}, json={"error": "slow down"}),
                httpx.Response(200, json=ANTHROPIC_REPLY),
            )
        )
        sleeper = Sleeper()
        router = make_router(MemoryStore(), transport, sleeper=sleeper)
        response = await router.call("acme", "reason", request())
        await router.aclose()
        assert response.content == "anthropic says hi"
        assert sleeper.delays == [2.0]
        assert len(transport.requests) == 2

    async def test_transient_errors_back_off_exponentially(self):
        transport = RecordingTransport(
            scripted(
                httpx.Response(503, json={}),
                httpx.Response(529, json={}),
                httpx.Response(200, json=ANTHROPIC_REPLY),
            )
        )
        sleeper = Sleeper()
        router = make_router(MemoryStore(), transport, sleeper=sleeper)
        await router.call("acme", "reason", request())
        await router.aclose()
        assert sleeper.delays == [1.0, 4.0]

    async def test_retries_exhausted(self):
        transport = RecordingTransport(lambda r: httpx.Response(500, json={}))
        sleeper = Sleeper()
        router = make_router(MemoryStore(), transport, sleeper=sleeper)
        with pytest.raises(TransientProviderError):
            await router.call("acme", "reason", request())
        await router.aclose()
        assert len(transport.requests) == 3
        assert len(sleeper.delays) == 2

    async def test_client_error_is_not_retried(self):
        transport = RecordingTransport(
            lambda r: httpx.Response(400, json={"error": {"message": "bad model"}})
        )
        sleeper = Sleeper()
        router = make_router(MemoryStore(), transport, sleeper=sleeper)
        with pytest.raises(ProviderError) as excinfo:
            await router.call("acme", "reason", request())
        await router.aclose()
        assert not isinstance(excinfo.value, RateLimitedError)
        assert excinfo.value.status_code == 400
        assert excinfo.value.error_code == "provider_error"
        assert len(transport.requests) == 1
        assert sleeper.delays == []

    def test_retry_setting_is_capped(self):
        assert Settings(provider_max_retries=50).provider_max_retries == 5

    async def test_transport_failure_is_transient(self):
        def boom(request):
            raise httpx.ConnectError("connection refused", request=request)

        router = make_router(
            MemoryStore(),
            RecordingTransport(boom),
            settings=platform_settings(provider_max_retries=0),
        )
        with pytest.raises(TransientProviderError):
            await router.call("acme", "reason", request())
        await router.aclose()


# ==============================================================================
# Usage tracking
# ==============================================================================


class TestUsageTracking:
    """Token counters and usage records are written after each call."""

    async def test_usage_recorded_after_drain(self):
        store = MemoryStore()
        router = make_router(store, RecordingTransport())
        response = await router.call("acme", "reason", request())
        await router.drain()

        assert response.usage.total == 150
        assert await store.get_token_usage("acme") == 150
        assert len(store.usage_records) == 1
        usage = store.usage_records[0]
        assert usage.provider == "anthropic"
        assert usage.model == "claude-sonnet-4-20250514"
        assert usage.step_id == "B"
        assert usage.run_id == "run-1"
        assert usage.estimated_cost_usd == pytest.approx((120 * 3.0 + 30 * 15.0) / 1e6)
        await router.aclose()

    async def test_failing_counter_does_not_fail_call(self):
        class BrokenCounter:
            async def increment_token_usage(self, tenant_id, tokens):
                raise RuntimeError("redis down")

        store = MemoryStore()
        transport = RecordingTransport()
        router = CapabilityRouter(
            store,
            settings=platform_settings(),
            token_counter=BrokenCounter(),
            usage_sink=store,
            transport=transport.transport,
        )
        response = await router.call("acme", "reason", request())
        await router.aclose()
        assert response.content == "anthropic says hi"
        assert len(store.usage_records) == 1


class TestPricing:
    """Advisory cost and payload analysis."""

    def test_estimate_cost_includes_cache_tokens(self):
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=1_000_000,
            cache_creation_tokens=1_000_000,
            cache_read_tokens=1_000_000,
        )
        assert estimate_cost("claude-sonnet-4-5", usage) == pytest.approx(22.05)

    def test_unknown_model_uses_default_rate(self):
        usage = TokenUsage(input_tokens=1_000_000)
        assert estimate_cost("some-new-model", usage) == pytest.approx(3.0)

    def test_severity_thresholds(self):
        assert usage_severity(50_000) is None
        assert usage_severity(50_001) == "warning"
        assert usage_severity(100_001) == "critical"

    def test_recommendations_only_above_warning(self):
        summary = analyze_payload([ChatMessage.user("transcript: " + "x" * 60000)])
        assert generate_recommendations(1000, summary) == []
        hints = generate_recommendations(60_000, summary)
        assert any("transcript" in hint for hint in hints)
        assert any("Largest payload section" in hint for hint in hints)


# ==============================================================================
# Monthly usage report
# ==============================================================================


def completed_run(run_id: str, workflow_id: str, tenant_id: str = "acme", **tokens) -> RunRecord:
    return RunRecord(
        id=run_id,
        workflow_id=workflow_id,
        tenant_id=tenant_id,
        status="completed",
        token_usage=tokens,
    )


class TestUsageReport:
    """Month-to-date usage per tenant."""

    async def test_usage_report_totals(self):
        store = MemoryStore()
        await store.update_llm_config("acme", token_budget=1000)
        await store.increment_token_usage("acme", 500)
        await store.finish_run(completed_run("r1", "weekly", extract=100, reason=50))
        await store.finish_run(completed_run("r2", "weekly", reason=150))
        await store.finish_run(completed_run("r3", "digest", compute=0, reason=40))
        failed = completed_run("r4", "weekly", reason=999)
        failed.status = "failed"
        await store.finish_run(failed)
        await store.finish_run(completed_run("r5", "weekly", "globex", reason=77))
        await store.record_usage(
            UsageRecord(
                tenant_id="acme",
                capability="reason",
                provider="anthropic",
                model="claude-sonnet-4-5",
                input_tokens=1000,
                output_tokens=200,
                cache_creation_tokens=1000,
                cache_read_tokens=3000,
            )
        )
        router = CapabilityRouter(
            store,
            settings=platform_settings(),
            token_counter=store,
            usage_report=store,
        )

        report = await router.get_tenant_llm_usage("acme")

        assert report["tokens_used_this_month"] == 500
        assert report["budget"] == 1000
        assert report["remaining"] == 500
        assert report["reset_at"] is not None
        assert report["per_skill"] == [
            {"workflow_id": "weekly", "total_tokens": 300, "run_count": 2},
            {"workflow_id": "digest", "total_tokens": 40, "run_count": 1},
        ]
        caching = report["caching"]
        assert caching["cache_read_tokens"] == 3000
        assert caching["cache_creation_tokens"] == 1000
        assert caching["estimated_savings_usd"] == pytest.approx(3000 * (3.0 - 0.30) / 1e6)
        assert caching["cache_hit_rate"] == pytest.approx(0.6)

    async def test_caching_absent_without_cache_traffic(self):
        store = MemoryStore()
        router = CapabilityRouter(store, settings=platform_settings(), usage_report=store)
        report = await router.get_tenant_llm_usage("acme")
        assert report["caching"] is None
        assert report["per_skill"] == []
        assert report["tokens_used_this_month"] == 0

    def test_cache_savings_need_a_cache_rate(self):
        assert estimate_cache_savings("deepseek-v3p1", 1_000_000) == 0.0
        assert estimate_cache_savings("claude-haiku-4-5-20251001", 1_000_000) == pytest.approx(0.72)
