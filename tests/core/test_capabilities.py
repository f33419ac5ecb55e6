# tests/core/test_capabilities.py

from datetime import datetime, timezone

import pytest
from core.capabilities import CapabilityTable
from core.discovery import (
    QUALITY_SERVICE,
    STORY_SERVICE,
    ServiceDescriptor,
    ToolDescriptor,
)
from core.dispatcher import MessageDispatcher
from core.errors import ToolInvocationError, UndiscoveredToolError
from fakes import FakeBus, make_context
from models.trace_models import EntryKind
from pydantic import ValidationError


def _descriptor(name, *tools):
    return ServiceDescriptor(
        name=name,
        protocol_version="1.0",
        tools=tuple(ToolDescriptor(name=tool) for tool in tools),
        last_probed=datetime.now(timezone.utc),
    )


def test_table_binds_only_known_contracts():
    table = CapabilityTable.from_descriptors(
        {
            STORY_SERVICE: _descriptor(STORY_SERVICE, "generate_nodes", "summarize"),
            QUALITY_SERVICE: None,
        }
    )

    assert table.has(STORY_SERVICE, "generate_nodes")
    assert not table.has(STORY_SERVICE, "summarize")
    assert not table.has_service(QUALITY_SERVICE)
    assert len(table) == 1


def test_handle_for_undiscovered_tool_raises():
    table = CapabilityTable.from_descriptors({})

    with pytest.raises(UndiscoveredToolError) as excinfo:
        table.handle(QUALITY_SERVICE, "validate_quality")
    assert excinfo.value.code == "tool-undiscovered"


def test_build_rejects_unknown_arguments():
    table = CapabilityTable.from_descriptors(
        {QUALITY_SERVICE: _descriptor(QUALITY_SERVICE, "validate_quality")}
    )
    handle = table.handle(QUALITY_SERVICE, "validate_quality")

    args = handle.build(node_id="n1", content="text", age_group="9-11", language="en")
    assert args["educational_goals"] == []
    with pytest.raises(ValidationError):
        handle.build(node_id="n1", content="text", age_group="9-11", language="en", x=1)


@pytest.mark.asyncio
async def test_invoke_decodes_typed_result():
    bus = FakeBus()
    bus.on(
        QUALITY_SERVICE,
        "validate_quality",
        {"node_id": "n1", "age_appropriate_score": 0.8, "unexpected": "ignored"},
    )
    table = CapabilityTable.from_descriptors(
        {QUALITY_SERVICE: _descriptor(QUALITY_SERVICE, "validate_quality")}
    )
    ctx = make_context()

    result = await table.handle(QUALITY_SERVICE, "validate_quality").invoke(
        ctx,
        MessageDispatcher(bus),
        node_id="n1",
        content="text",
        age_group="9-11",
        language="en",
    )

    assert result.age_appropriate_score == 0.8
    assert result.safety_issues == []


@pytest.mark.asyncio
async def test_invoke_records_malformed_reply():
    bus = FakeBus()
    bus.on(STORY_SERVICE, "generate_nodes", {"nodes": [{"body": "no id"}]})
    table = CapabilityTable.from_descriptors(
        {STORY_SERVICE: _descriptor(STORY_SERVICE, "generate_nodes")}
    )
    ctx = make_context()

    with pytest.raises(ToolInvocationError):
        await table.handle(STORY_SERVICE, "generate_nodes").invoke(
            ctx,
            MessageDispatcher(bus),
            node_ids=["n1"],
            nodes=[],
            theme="t",
            age_group="9-11",
            language="en",
            vocabulary_level="basic",
            system_prompt="s",
        )
    assert any(entry.kind is EntryKind.ISSUE for entry in ctx.tracer.entries)
