# tests/core/test_discovery.py

import asyncio

import pytest
from core.discovery import (
    PROMPT_SERVICE,
    QUALITY_SERVICE,
    STORY_SERVICE,
    DiscoveryRegistry,
    ServiceHealth,
)
from core.dispatcher import MessageDispatcher
from core.errors import DiscoveryError, DiscoveryRequiredMissingError
from core.transport import TransportTimeout
from fakes import PROMPT_TOOLS, FakeBus, build_bus, make_context


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _registry(bus, **kwargs):
    return DiscoveryRegistry(MessageDispatcher(bus), **kwargs)


@pytest.mark.asyncio
async def test_discover_parses_catalogue():
    bus = FakeBus()
    bus.on(
        STORY_SERVICE,
        "list_tools",
        {
            "protocol_version": "1.0",
            "tools": [
                {
                    "name": "generate_nodes",
                    "inputSchema": {"type": "object"},
                    "capabilities": {"batching": True},
                }
            ],
        },
    )
    registry = _registry(bus)

    descriptor = await registry.discover(STORY_SERVICE)

    assert descriptor.name == STORY_SERVICE
    assert descriptor.tool_names == ["generate_nodes"]
    assert descriptor.tools[0].input_schema == {"type": "object"}
    assert descriptor.tools[0].capabilities.batching is True
    assert descriptor.health is ServiceHealth.HEALTHY
    assert bus.calls[0].subject == "mcp.discovery.list_tools.story-generator"


@pytest.mark.asyncio
async def test_cached_descriptor_is_reused_within_ttl():
    bus = build_bus()
    clock = FakeClock()
    registry = _registry(bus, ttl_secs=60, clock=clock)

    first = await registry.discover(PROMPT_SERVICE)
    clock.now += 30
    second = await registry.discover(PROMPT_SERVICE)
    clock.now += 31
    await registry.discover(PROMPT_SERVICE)

    assert first is second
    assert registry.probe_count == 2


@pytest.mark.asyncio
async def test_concurrent_discovery_shares_one_probe():
    bus = FakeBus()

    async def slow_catalogue(arguments, call_number):
        await asyncio.sleep(0.01)
        return [{"name": tool} for tool in PROMPT_TOOLS]

    bus.on(PROMPT_SERVICE, "list_tools", slow_catalogue)
    registry = _registry(bus)

    results = await asyncio.gather(*(registry.discover(PROMPT_SERVICE) for _ in range(5)))

    assert len(bus.calls) == 1
    assert all(result is results[0] for result in results)


@pytest.mark.asyncio
async def test_stale_descriptor_served_until_eviction():
    bus = build_bus()
    clock = FakeClock()
    registry = _registry(bus, ttl_secs=10, evict_after_failures=2, clock=clock)
    await registry.discover(STORY_SERVICE)

    def down(arguments, call_number):
        raise TransportTimeout("gone")

    bus.on(STORY_SERVICE, "list_tools", down)
    clock.now += 11
    stale = await registry.discover(STORY_SERVICE)
    assert stale.health is ServiceHealth.DEGRADED
    assert stale.has_tool("generate_nodes")

    with pytest.raises(DiscoveryError):
        await registry.discover(STORY_SERVICE)
    assert registry.cached(STORY_SERVICE) is None


@pytest.mark.asyncio
async def test_discover_all_fails_fast_on_missing_required_service():
    bus = build_bus()
    del bus.catalogues[STORY_SERVICE]
    registry = _registry(bus)

    with pytest.raises(DiscoveryRequiredMissingError) as excinfo:
        await registry.discover_all(ctx=make_context())

    assert STORY_SERVICE in excinfo.value.details["missing"]


@pytest.mark.asyncio
async def test_required_service_missing_tools_is_fatal():
    bus = build_bus()
    bus.add_service(STORY_SERVICE, ["generate_structure"])
    registry = _registry(bus)

    with pytest.raises(DiscoveryRequiredMissingError) as excinfo:
        await registry.discover_all()

    assert "generate_nodes" in excinfo.value.details["missing"][STORY_SERVICE]


@pytest.mark.asyncio
async def test_optional_services_may_be_absent():
    bus = build_bus()
    del bus.catalogues[QUALITY_SERVICE]
    registry = _registry(bus)
    ctx = make_context()

    discovered = await registry.discover_all(ctx=ctx)

    assert discovered[QUALITY_SERVICE] is None
    assert discovered[STORY_SERVICE] is not None
    probes = [e for e in ctx.tracer.invocations() if e.tool == "list_tools"]
    assert {e.service for e in probes} >= {PROMPT_SERVICE, STORY_SERVICE}


@pytest.mark.asyncio
async def test_health_check_probes_uncached_service():
    bus = FakeBus()
    bus.on(QUALITY_SERVICE, "health", {"status": "degraded"})
    registry = _registry(bus)

    assert await registry.health_check(QUALITY_SERVICE) is ServiceHealth.DEGRADED
    assert bus.calls[0].subject == "mcp.discovery.health.quality-control"


@pytest.mark.asyncio
async def test_health_check_failure_reports_unavailable():
    bus = FakeBus()
    registry = _registry(bus)

    assert await registry.health_check(QUALITY_SERVICE) is ServiceHealth.UNAVAILABLE
    assert len(bus.calls) == 1


@pytest.mark.asyncio
async def test_health_check_uses_fresh_cache():
    bus = build_bus()
    registry = _registry(bus)
    await registry.discover(PROMPT_SERVICE)

    assert await registry.health_check(PROMPT_SERVICE) is ServiceHealth.HEALTHY
    assert [call.tool for call in bus.calls] == ["list_tools"]
