# tests/orchestration/test_validator_fanout.py

import pytest
from core.discovery import CONSTRAINT_SERVICE, QUALITY_SERVICE
from core.dispatcher import MessageDispatcher
from core.transport import TransportError
from fakes import (
    build_bus,
    capability_table,
    make_context,
    make_request,
    passing_quality,
    prompt_bundle,
    scripted_quality,
    story_graph,
)
from models.issue_models import CorrectionCapability, Severity
from models.tool_models import ConstraintResult, QualityResult
from orchestration.validator_fanout import (
    ValidatorFanout,
    batch_quality_issues,
    constraint_issues,
    quality_issues,
)


def _filled_graph():
    graph = story_graph()
    for node in graph:
        node.body = f"Scene {node.id}."
    return graph


async def _validate(bus, graph=None):
    fanout = ValidatorFanout(MessageDispatcher(bus), capability_table(bus))
    return await fanout.validate(
        make_context(), graph or _filled_graph(), prompt_bundle(), make_request()
    )


def test_passing_scores_produce_no_issues():
    result = QualityResult(
        node_id="n1", age_appropriate_score=0.9, educational_value_score=0.8
    )
    assert quality_issues("n1", result) == []


def test_score_thresholds():
    issues = quality_issues(
        "n1",
        QualityResult(
            age_appropriate_score=0.6,
            educational_value_score=0.2,
            safety_issues=["peril"],
        ),
    )
    by_kind = {str(issue.kind): issue.severity for issue in issues}
    assert by_kind == {
        "quality::age_inappropriate": Severity.WARNING,
        "quality::educational_value": Severity.CRITICAL,
        "quality::safety": Severity.CRITICAL,
    }


@pytest.mark.parametrize(
    "score, severity",
    [(0.39, Severity.CRITICAL), (0.4, Severity.WARNING), (0.55, Severity.WARNING), (0.7, None)],
)
def test_educational_value_tiers(score, severity):
    issues = quality_issues(
        "n1", QualityResult(age_appropriate_score=0.9, educational_value_score=score)
    )
    assert [issue.severity for issue in issues] == ([severity] if severity else [])
    if severity:
        assert str(issues[0].kind) == "quality::educational_value"


def test_constraint_thresholds():
    issues = constraint_issues(
        "n2",
        ConstraintResult(
            vocabulary_violations=["ephemeral", "ubiquitous"],
            theme_consistency_score=0.4,
            missing_elements=["a lighthouse"],
            correction_capability="local-fix",
        ),
    )
    by_kind = {str(issue.kind): issue for issue in issues}
    assert by_kind["constraint::vocabulary"].severity is Severity.WARNING
    assert by_kind["constraint::theme_consistency"].severity is Severity.CRITICAL
    missing = by_kind["constraint::required_elements"]
    assert missing.correction is CorrectionCapability.LOCAL_FIX


@pytest.mark.asyncio
async def test_validate_calls_both_validators_per_node():
    bus = build_bus()

    issues = await _validate(bus)

    assert issues == []
    assert len(bus.calls_to(QUALITY_SERVICE, "validate_quality")) == 8
    assert len(bus.calls_to(CONSTRAINT_SERVICE, "validate_constraints")) == 8
    call = bus.calls_to(CONSTRAINT_SERVICE, "validate_constraints")[0]
    assert call.arguments["required_elements"] == ["a lighthouse"]
    assert call.arguments["system_prompt"] == "Enforce basic vocabulary."


@pytest.mark.asyncio
async def test_explicit_issues_are_merged_and_deduplicated():
    def noisy(arguments, call_number):
        if arguments["node_id"] != "n4":
            return passing_quality(arguments, call_number)
        return {
            "node_id": "n4",
            "age_appropriate_score": 0.4,
            "issues": [
                {"severity": "warning", "kind": "age_inappropriate", "description": "scary"},
                {"severity": "info", "kind": "style", "description": "long sentences"},
            ],
        }

    issues = await _validate(build_bus(quality=noisy))

    assert [(i.node_id, str(i.kind), i.severity) for i in issues] == [
        ("n4", "quality::age_inappropriate", Severity.CRITICAL),
        ("n4", "quality::style", Severity.INFO),
    ]


@pytest.mark.asyncio
async def test_revalidation_of_unchanged_graph_is_stable():
    bus = build_bus(
        quality=scripted_quality(
            lambda node_id, n: {"age_appropriate_score": 0.1} if node_id == "n3" else None
        )
    )
    graph = _filled_graph()

    first = await _validate(bus, graph)
    second = await _validate(bus, graph)

    assert first == second
    assert {issue.node_id for issue in first} == {"n3"}


@pytest.mark.asyncio
async def test_issues_for_unknown_nodes_are_dropped():
    def stray(arguments, call_number):
        return {
            "node_id": arguments["node_id"],
            "issues": [{"node_id": "ghost", "severity": "critical", "kind": "safety"}],
        }

    issues = await _validate(build_bus(quality=stray))

    assert issues == []


@pytest.mark.asyncio
async def test_missing_validator_is_skipped():
    bus = build_bus()
    del bus.catalogues[CONSTRAINT_SERVICE]

    issues = await _validate(bus)

    assert issues == []
    assert bus.calls_to(CONSTRAINT_SERVICE, "validate_constraints") == []


@pytest.mark.asyncio
async def test_validator_outage_flags_covered_nodes():
    def down(arguments, call_number):
        raise TransportError("constraint service down")

    issues = await _validate(build_bus(constraints=down))

    assert len(issues) == 8
    assert {str(issue.kind) for issue in issues} == {"constraint::validator_unavailable"}
    assert all(issue.needs_regeneration for issue in issues)


@pytest.mark.asyncio
async def test_batch_validate_used_when_advertised():
    bus = build_bus()
    bus.add_service(QUALITY_SERVICE, ["validate_quality", "batch_validate"])
    bus.on(
        QUALITY_SERVICE,
        "batch_validate",
        lambda args, n: [
            {"node_id": node["node_id"], "age_appropriate_score": 0.9}
            for node in args["nodes"]
        ],
    )

    issues = await _validate(bus)

    assert issues == []
    assert len(bus.calls_to(QUALITY_SERVICE, "batch_validate")) == 2
    assert bus.calls_to(QUALITY_SERVICE, "validate_quality") == []


@pytest.mark.asyncio
async def test_batch_nodes_without_a_result_fail_validation():
    bus = build_bus()
    bus.add_service(QUALITY_SERVICE, ["validate_quality", "batch_validate"])
    bus.on(
        QUALITY_SERVICE,
        "batch_validate",
        lambda args, n: [{"node_id": args["nodes"][0]["node_id"], "age_appropriate_score": 0.9}],
    )

    issues = await _validate(bus)

    assert {issue.node_id for issue in issues} == {"n2", "n3", "n4", "n6", "n7", "n8"}
    assert {str(issue.kind) for issue in issues} == {"quality::validator_unavailable"}
    assert all(issue.severity is Severity.CRITICAL for issue in issues)


def test_batch_results_are_matched_by_node_id():
    results = [
        QualityResult(node_id="n2", age_appropriate_score=0.2),
        QualityResult(node_id="n1", age_appropriate_score=0.9),
    ]

    issues = batch_quality_issues(["n1", "n2"], results)

    assert [(issue.node_id, str(issue.kind)) for issue in issues] == [
        ("n2", "quality::age_inappropriate")
    ]
