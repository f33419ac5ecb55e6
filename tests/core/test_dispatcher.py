# tests/core/test_dispatcher.py

import asyncio

import pytest
from core.dispatcher import MessageDispatcher, RetryPolicy, discovery_subject, service_subject
from core.errors import DispatchTimeoutError, DispatchTransportError, ToolInvocationError
from core.transport import TransportError, TransportTimeout
from fakes import ErrorReply, FakeBus, MiscorrelatedReply, make_context
from models.trace_models import PipelinePhase


def test_subjects_use_configured_prefix():
    assert service_subject("story-generator") == "mcp.story-generator.request"
    assert (
        discovery_subject("story-generator", "list_tools")
        == "mcp.discovery.list_tools.story-generator"
    )


def test_retry_delay_is_capped_with_jitter():
    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0)
    assert 1.0 <= policy.delay_for(1) <= 1.5
    assert 2.0 <= policy.delay_for(2) <= 3.0
    assert 3.0 <= policy.delay_for(4) <= 4.5


@pytest.mark.asyncio
async def test_dispatch_returns_decoded_content_and_records_invocation():
    bus = FakeBus()
    bus.on(
        "story-generator",
        "generate_nodes",
        [{"type": "text", "text": '{"nodes": []}'}],
    )
    ctx = make_context().for_phase(PipelinePhase.NODES)
    dispatcher = MessageDispatcher(bus)

    content = await dispatcher.dispatch(ctx, "story-generator", "generate_nodes", {"x": 1})

    assert content == {"nodes": []}
    call = bus.calls[0]
    assert call.subject == "mcp.story-generator.request"
    assert call.arguments == {"x": 1}
    assert call.tenant == "tenant-acme"
    [entry] = ctx.tracer.invocations()
    assert entry.success is True
    assert entry.phase is PipelinePhase.NODES
    assert entry.call_request_id == call.request_id
    assert entry.attempt == 1


@pytest.mark.asyncio
async def test_timeout_is_retried_with_the_same_request_id():
    def flaky(arguments, call_number):
        if call_number == 1:
            raise TransportTimeout("slow")
        return {"ok": True}

    bus = FakeBus()
    bus.on("story-generator", "generate_nodes", flaky)
    ctx = make_context()

    content = await MessageDispatcher(bus).dispatch(ctx, "story-generator", "generate_nodes")

    assert content == {"ok": True}
    assert len({call.request_id for call in bus.calls}) == 1
    first, second = ctx.tracer.invocations()
    assert (first.success, first.error) == (False, "dispatch-timeout")
    assert (second.success, second.attempt) == (True, 2)
    assert first.call_request_id == second.call_request_id


@pytest.mark.asyncio
async def test_slow_transport_hits_attempt_deadline():
    async def never(arguments, call_number):
        await asyncio.sleep(1)
        return {}

    bus = FakeBus()
    bus.on("story-generator", "generate_nodes", never)
    ctx = make_context()

    with pytest.raises(DispatchTimeoutError):
        await MessageDispatcher(bus).dispatch(
            ctx,
            "story-generator",
            "generate_nodes",
            timeout=0.01,
            retry_policy=RetryPolicy(max_attempts=2, base_delay=0, max_delay=0),
        )
    assert len(ctx.tracer.invocations()) == 2


@pytest.mark.asyncio
async def test_transport_failures_exhaust_attempts():
    def broken(arguments, call_number):
        raise TransportError("connection reset")

    bus = FakeBus()
    bus.on("quality-control", "validate_quality", broken)
    ctx = make_context()

    with pytest.raises(DispatchTransportError) as excinfo:
        await MessageDispatcher(bus).dispatch(ctx, "quality-control", "validate_quality")

    assert excinfo.value.service == "quality-control"
    assert len(bus.calls) == 3
    assert all(not entry.success for entry in ctx.tracer.invocations())


@pytest.mark.asyncio
async def test_error_reply_is_not_retried():
    bus = FakeBus()
    bus.on("story-generator", "generate_structure", ErrorReply("bad-input", "no theme"))
    ctx = make_context()

    with pytest.raises(ToolInvocationError) as excinfo:
        await MessageDispatcher(bus).dispatch(ctx, "story-generator", "generate_structure")

    assert "bad-input" in excinfo.value.message
    assert len(bus.calls) == 1
    [entry] = ctx.tracer.invocations()
    assert (entry.success, entry.error) == (False, "tool-error")


@pytest.mark.asyncio
async def test_reply_for_another_request_is_rejected():
    bus = FakeBus()
    bus.on("story-generator", "generate_nodes", MiscorrelatedReply({"nodes": []}))
    ctx = make_context()

    with pytest.raises(DispatchTransportError):
        await MessageDispatcher(bus).dispatch(
            ctx,
            "story-generator",
            "generate_nodes",
            retry_policy=RetryPolicy(max_attempts=1),
        )
