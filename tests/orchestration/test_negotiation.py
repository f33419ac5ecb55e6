# tests/orchestration/test_negotiation.py

import asyncio
import sys

import pytest
from core.errors import UndiscoveredToolError
from fakes import make_context, make_request, prompt_bundle, story_graph
from models.issue_models import IssueCategory, IssueKind, Severity, ValidationIssue
from models.trace_models import EntryKind, PipelinePhase
from orchestration.negotiation import (
    Correcting,
    Deciding,
    NegotiationState,
    NegotiationController,
    TerminationReason,
)
from orchestration.node_generator import GenerationReport


class DummyGenerator:
    def __init__(self, skip=()):
        self.skip = set(skip)
        self.calls: list[list[str]] = []
        self.contexts: list[dict] = []

    async def generate_bodies(
        self, ctx, graph, prompts, request, node_ids=None, correction_context=None
    ):
        targets = list(node_ids) if node_ids is not None else graph.empty_node_ids()
        self.calls.append(targets)
        self.contexts.append(dict(correction_context or {}))
        report = GenerationReport(requested=targets)
        for node_id in targets:
            if node_id in self.skip:
                report.incomplete.append(node_id)
                continue
            graph.node(node_id).body = f"{node_id} draft {len(self.calls)}"
            report.generated.append(node_id)
        self.skip.clear()
        return report


class DummyValidator:
    """Returns the issues scripted for each validation pass (1-based)."""

    def __init__(self, script=None):
        self.script = script or (lambda number: [])
        self.passes = 0

    async def validate(self, ctx, graph, prompts, request):
        self.passes += 1
        return list(self.script(self.passes))


def _issue(node_id, severity=Severity.CRITICAL, correction="regenerate"):
    return ValidationIssue(
        node_id=node_id,
        severity=severity,
        kind=IssueKind(category=IssueCategory.QUALITY, sub_kind="age_inappropriate"),
        description="too scary",
        correction=correction,
    )


async def _run(generator, validator, max_rounds=None, ctx=None):
    controller = NegotiationController(generator, validator)
    return await controller.run(
        ctx or make_context(), story_graph(), prompt_bundle(), make_request(), max_rounds
    )


@pytest.mark.asyncio
async def test_clean_first_pass_terminates_with_success():
    generator = DummyGenerator()
    ctx = make_context()

    outcome = await _run(generator, DummyValidator(), ctx=ctx)

    assert outcome.reason is TerminationReason.SUCCESS
    assert outcome.state.current_round == 0
    assert outcome.state.validation_rounds == 1
    assert outcome.state.round_succeeded is True
    assert len(generator.calls) == 1
    assert PipelinePhase.NEGOTIATION not in ctx.tracer.phases_completed


@pytest.mark.asyncio
async def test_zero_rounds_runs_no_correction():
    generator = DummyGenerator()
    validator = DummyValidator(lambda number: [_issue("n3")])

    outcome = await _run(generator, validator, max_rounds=0)

    assert outcome.reason is TerminationReason.MAX_ROUNDS_EXHAUSTED
    assert outcome.state.current_round == 0
    assert outcome.state.corrections == []
    assert len(generator.calls) == 1
    assert [i.node_id for i in outcome.unresolved] == ["n3"]


@pytest.mark.asyncio
async def test_corrected_node_is_accounted():
    generator = DummyGenerator()
    validator = DummyValidator(lambda number: [_issue("n3")] if number == 1 else [])
    ctx = make_context()

    outcome = await _run(generator, validator, ctx=ctx)

    assert outcome.reason is TerminationReason.SUCCESS
    assert outcome.state.current_round == 1
    assert outcome.state.validation_rounds == 2
    assert generator.calls[1] == ["n3"]
    [record] = outcome.state.corrections
    assert (record.node_id, record.kind, record.attempt, record.success) == (
        "n3",
        "regenerate",
        1,
        True,
    )
    assert outcome.state.corrections_applied == 1
    assert PipelinePhase.NEGOTIATION in ctx.tracer.phases_completed


@pytest.mark.asyncio
async def test_persistent_issue_exhausts_rounds():
    generator = DummyGenerator()
    validator = DummyValidator(lambda number: [_issue("n2")])
    ctx = make_context()

    outcome = await _run(generator, validator, max_rounds=3, ctx=ctx)

    assert outcome.reason is TerminationReason.MAX_ROUNDS_EXHAUSTED
    assert outcome.state.current_round == 3
    assert validator.passes == 4
    assert [r.attempt for r in outcome.state.corrections] == [1, 2, 3]
    assert not any(r.success for r in outcome.state.corrections)
    rounds = [e.details["round"] for e in ctx.tracer.entries if e.kind is EntryKind.ROUND]
    assert max(rounds) == 3


@pytest.mark.asyncio
async def test_no_fix_warning_is_skipped_without_regeneration():
    generator = DummyGenerator()
    validator = DummyValidator(
        lambda number: [_issue("n5", Severity.WARNING, correction="no-fix")]
    )

    outcome = await _run(generator, validator)

    assert outcome.reason is TerminationReason.SUCCESS
    assert outcome.state.skipped_nodes == {"n5"}
    assert len(generator.calls) == 1
    assert [i.node_id for i in outcome.unresolved] == ["n5"]


@pytest.mark.asyncio
async def test_info_issues_are_not_unresolved():
    validator = DummyValidator(lambda number: [_issue("n1", Severity.INFO)])

    outcome = await _run(DummyGenerator(), validator)

    assert outcome.reason is TerminationReason.SUCCESS
    assert outcome.unresolved == []
    assert len(outcome.issues) == 1


@pytest.mark.asyncio
async def test_incomplete_nodes_are_regenerated():
    generator = DummyGenerator(skip={"n7"})

    outcome = await _run(generator, DummyValidator())

    assert outcome.reason is TerminationReason.SUCCESS
    assert generator.calls[1] == ["n7"]
    assert outcome.state.corrections[0].success is True
    assert outcome.graph.empty_node_ids() == []


@pytest.mark.asyncio
async def test_cancellation_mid_round_returns_partial_state():
    class CancellingValidator(DummyValidator):
        async def validate(self, ctx, graph, prompts, request):
            raise asyncio.CancelledError()

    outcome = await _run(DummyGenerator(), CancellingValidator())

    assert outcome.reason is TerminationReason.CANCELLED
    assert outcome.graph.empty_node_ids() == []


@pytest.mark.asyncio
async def test_orchestration_errors_propagate():
    class BrokenGenerator(DummyGenerator):
        async def generate_bodies(self, *args, **kwargs):
            raise UndiscoveredToolError("generate_nodes missing")

    with pytest.raises(UndiscoveredToolError):
        await _run(BrokenGenerator(), DummyValidator())


def test_decide_opens_next_round_in_graph_order():
    controller = NegotiationController(DummyGenerator(), DummyValidator())
    graph = story_graph()

    state = NegotiationState(max_rounds=3)
    issues = (_issue("n6"), _issue("n2"), _issue("n2", Severity.WARNING, "local-fix"))

    next_state = controller._decide(make_context(), Deciding(0, issues), graph, state)

    assert next_state == Correcting(
        1,
        ("n2", "n6"),
        {
            "n2": ("quality::age_inappropriate: too scary",),
            "n6": ("quality::age_inappropriate: too scary",),
        },
    )


@pytest.mark.asyncio
async def test_regeneration_receives_the_issues_found_on_each_node():
    generator = DummyGenerator()
    validator = DummyValidator(
        lambda number: [_issue("n3"), _issue("n5", Severity.INFO)] if number == 1 else []
    )

    outcome = await _run(generator, validator)

    assert outcome.reason is TerminationReason.SUCCESS
    assert generator.contexts[0] == {}
    assert generator.calls[1] == ["n3"]
    assert generator.contexts[1] == {"n3": ("quality::age_inappropriate: too scary",)}


@pytest.mark.asyncio
@pytest.mark.skipif(sys.version_info < (3, 11), reason="Task.cancelling() needs Python 3.11")
async def test_handled_cancellation_is_withdrawn_from_the_task():
    started = asyncio.Event()

    class StallingValidator(DummyValidator):
        async def validate(self, ctx, graph, prompts, request):
            started.set()
            await asyncio.sleep(10)

    async def negotiate():
        outcome = await _run(DummyGenerator(), StallingValidator())
        return outcome.reason, asyncio.current_task().cancelling()

    task = asyncio.ensure_future(negotiate())
    await started.wait()
    task.cancel()

    reason, cancelling = await task
    assert reason is TerminationReason.CANCELLED
    assert cancelling == 0
