# orchestration/negotiation.py
"""Bounded generate/validate/correct loop over a planned story graph.

The controller walks a small state machine. Each state is an immutable value
and every step returns the next one, so a state such as "generating with no
targets" cannot be represented. ``Deciding`` applies the round policy:

* no node needs regeneration: terminate with success;
* the round limit is reached: terminate with max-rounds-exhausted;
* otherwise open the next correction round for the affected nodes.

The round counter grows by one per correction round and never exceeds
``max_rounds``, so the loop makes at most ``max_rounds + 1`` decisions.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from collections.abc import Iterable, Mapping
from typing import Any, Union

import structlog
from config import settings
from core.errors import OrchestrationError
from models.graph_models import StoryGraph
from models.issue_models import (
    CorrectionCapability,
    IssueCategory,
    IssueKind,
    Severity,
    ValidationIssue,
    classify_issues,
    merge_issues,
)
from models.prompt_models import PromptBundle
from models.request_models import GenerationRequest
from models.trace_models import PipelinePhase

from orchestration.batching import withdraw_cancellation
from orchestration.context import RequestContext
from orchestration.events import PipelineEventPublisher, PipelineEventType
from orchestration.node_generator import NodeGenerator
from orchestration.validator_fanout import ValidatorFanout

logger = structlog.get_logger(__name__)


class TerminationReason(str, Enum):
    SUCCESS = "success"
    MAX_ROUNDS_EXHAUSTED = "max-rounds-exhausted"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Planning:
    pass


@dataclass(frozen=True)
class Generating:
    round: int
    targets: tuple[str, ...]
    feedback: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class Validating:
    round: int
    incomplete: tuple[str, ...] = ()


@dataclass(frozen=True)
class Deciding:
    round: int
    pending_issues: tuple[ValidationIssue, ...]


@dataclass(frozen=True)
class Correcting:
    round: int
    nodes: tuple[str, ...]
    feedback: Mapping[str, tuple[str, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class Terminating:
    reason: TerminationReason
    error: OrchestrationError | None = None


ControlState = Union[Planning, Generating, Validating, Deciding, Correcting, Terminating]


@dataclass
class CorrectionRecord:
    node_id: str
    kind: str
    attempt: int
    success: bool


@dataclass
class NegotiationState:
    """Round bookkeeping for one request."""

    max_rounds: int
    current_round: int = 0
    issues: list[ValidationIssue] = field(default_factory=list)
    nodes_to_regenerate: set[str] = field(default_factory=set)
    skipped_nodes: set[str] = field(default_factory=set)
    corrections_applied: int = 0
    round_succeeded: bool = False
    corrections: list[CorrectionRecord] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)

    @property
    def validation_rounds(self) -> int:
        return self.current_round + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_round": self.current_round,
            "max_rounds": self.max_rounds,
            "validation_rounds": self.validation_rounds,
            "issues": [issue.model_dump(mode="json") for issue in self.issues],
            "nodes_to_regenerate": sorted(self.nodes_to_regenerate),
            "skipped_nodes": sorted(self.skipped_nodes),
            "corrections_applied": self.corrections_applied,
            "round_succeeded": self.round_succeeded,
            "corrections": [
                {
                    "node_id": record.node_id,
                    "kind": record.kind,
                    "attempt": record.attempt,
                    "success": record.success,
                }
                for record in self.corrections
            ],
        }


@dataclass
class NegotiationOutcome:
    graph: StoryGraph
    issues: list[ValidationIssue]
    state: NegotiationState
    reason: TerminationReason

    @property
    def unresolved(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity is not Severity.INFO]


def correction_feedback(
    issues: Iterable[ValidationIssue], nodes: Iterable[str]
) -> dict[str, tuple[str, ...]]:
    """Describe the issues found on each node that is about to be regenerated."""
    wanted = set(nodes)
    feedback: dict[str, dict[str, None]] = {}
    for issue in issues:
        if issue.node_id in wanted:
            note = f"{issue.kind}: {issue.description}"
            feedback.setdefault(issue.node_id, {})[note] = None
    return {node_id: tuple(notes) for node_id, notes in feedback.items()}


def incomplete_issues(node_ids: tuple[str, ...]) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            node_id=node_id,
            severity=Severity.CRITICAL,
            kind=IssueKind(category=IssueCategory.GENERATION, sub_kind="incomplete"),
            description="node body was not generated",
            correction=CorrectionCapability.REGENERATE,
        )
        for node_id in node_ids
    ]


class NegotiationController:
    def __init__(
        self,
        generator: NodeGenerator,
        validator: ValidatorFanout,
        events: PipelineEventPublisher | None = None,
    ):
        self._generator = generator
        self._validator = validator
        self._events = events

    async def run(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        max_rounds: int | None = None,
    ) -> NegotiationOutcome:
        state = NegotiationState(
            max_rounds=max_rounds if max_rounds is not None else settings.NEGOTIATION_MAX_ROUNDS
        )
        control: ControlState = Planning()
        try:
            while not isinstance(control, Terminating):
                control = await self._step(ctx, control, graph, prompts, request, state)
        except asyncio.CancelledError:
            withdraw_cancellation()
            control = Terminating(TerminationReason.CANCELLED)
            logger.warning(
                "Negotiation cancelled mid-round.",
                request_id=ctx.request_id,
                round=state.current_round,
            )
            ctx.tracer.record_round(state.current_round, control.reason.value)
        except OrchestrationError as e:
            ctx.tracer.record_round(
                state.current_round, TerminationReason.FATAL.value, error=e.code
            )
            if state.current_round > 0:
                ctx.tracer.end_phase(PipelinePhase.NEGOTIATION, success=False, error=e.code)
            raise

        if state.current_round > 0:
            ctx.tracer.end_phase(
                PipelinePhase.NEGOTIATION,
                success=control.reason is not TerminationReason.CANCELLED,
            )
        return NegotiationOutcome(graph, list(state.issues), state, control.reason)

    async def _step(
        self,
        ctx: RequestContext,
        control: ControlState,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        state: NegotiationState,
    ) -> ControlState:
        if isinstance(control, Planning):
            ctx.tracer.record_round(0, "planning", max_rounds=state.max_rounds)
            return Generating(0, tuple(graph.empty_node_ids()))

        if isinstance(control, Generating):
            with ctx.in_phase(PipelinePhase.NODES) as phase_ctx:
                report = await self._generator.generate_bodies(
                    phase_ctx,
                    graph,
                    prompts,
                    request,
                    node_ids=control.targets,
                    correction_context=control.feedback,
                )
            return Validating(control.round, tuple(report.incomplete))

        if isinstance(control, Validating):
            if self._events is not None:
                await self._events.publish(
                    ctx,
                    PipelineEventType.VALIDATION_STARTED,
                    75,
                    round=control.round,
                )
            with ctx.in_phase(PipelinePhase.VALIDATION) as phase_ctx:
                found = await self._validator.validate(phase_ctx, graph, prompts, request)
            issues = merge_issues(found + incomplete_issues(control.incomplete))
            state.issues = issues
            if control.round > 0:
                await self._account_corrections(ctx, graph, state, control)
            return Deciding(control.round, tuple(issues))

        if isinstance(control, Deciding):
            return self._decide(ctx, control, graph, state)

        if isinstance(control, Correcting):
            if control.round == 1:
                ctx.tracer.begin_phase(PipelinePhase.NEGOTIATION)
            state.current_round = control.round
            state.nodes_to_regenerate = set(control.nodes)
            state.corrections_applied = 0
            state.round_succeeded = False
            for node_id in control.nodes:
                state.attempts[node_id] = state.attempts.get(node_id, 0) + 1
            graph.clear_bodies(control.nodes)
            ctx.tracer.record_round(control.round, "correcting", nodes=list(control.nodes))
            if self._events is not None:
                await self._events.publish(
                    ctx,
                    PipelineEventType.NEGOTIATION_ROUND,
                    80,
                    round=control.round,
                    nodes=list(control.nodes),
                )
            logger.info(
                "Starting correction round.",
                request_id=ctx.request_id,
                round=control.round,
                max_rounds=state.max_rounds,
                nodes=list(control.nodes),
            )
            return Generating(control.round, control.nodes, control.feedback)

        raise TypeError(f"no transition from {control!r}")

    def _decide(
        self,
        ctx: RequestContext,
        control: Deciding,
        graph: StoryGraph,
        state: NegotiationState,
    ) -> ControlState:
        classification = classify_issues(control.pending_issues)
        regenerate = classification.regenerate_nodes
        state.skipped_nodes = classification.skipped_nodes - regenerate

        if not regenerate:
            state.round_succeeded = True
            ctx.tracer.record_round(
                control.round, TerminationReason.SUCCESS.value, skipped=sorted(state.skipped_nodes)
            )
            return Terminating(TerminationReason.SUCCESS)

        if control.round >= state.max_rounds:
            ctx.tracer.record_round(
                control.round,
                TerminationReason.MAX_ROUNDS_EXHAUSTED.value,
                unresolved=sorted(regenerate),
            )
            logger.warning(
                "Negotiation rounds exhausted with unresolved issues.",
                request_id=ctx.request_id,
                rounds=control.round,
                unresolved_nodes=sorted(regenerate),
            )
            return Terminating(TerminationReason.MAX_ROUNDS_EXHAUSTED)

        nodes = tuple(sorted(regenerate, key=graph.index_of))
        return Correcting(
            control.round + 1, nodes, correction_feedback(control.pending_issues, nodes)
        )

    async def _account_corrections(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        state: NegotiationState,
        control: Validating,
    ) -> None:
        still_failing = {issue.node_id for issue in state.issues if issue.needs_regeneration}
        for node_id in sorted(state.nodes_to_regenerate, key=graph.index_of):
            success = (
                node_id not in control.incomplete
                and graph.node(node_id).has_body
                and node_id not in still_failing
            )
            record = CorrectionRecord(
                node_id=node_id,
                kind=CorrectionCapability.REGENERATE.value,
                attempt=state.attempts[node_id],
                success=success,
            )
            state.corrections.append(record)
            if success:
                state.corrections_applied += 1
            ctx.tracer.record_correction(node_id, record.kind, success, record.attempt)

        ctx.tracer.record_round(
            control.round,
            "round_completed",
            corrections_applied=state.corrections_applied,
        )
        if self._events is not None:
            await self._events.publish(
                ctx,
                PipelineEventType.NEGOTIATION_ROUND_COMPLETED,
                90,
                round=control.round,
                corrections_applied=state.corrections_applied,
            )
