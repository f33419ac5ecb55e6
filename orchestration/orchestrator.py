# orchestration/orchestrator.py
"""Primary orchestrator running one generation request through every phase."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from config import settings
from core.capabilities import CapabilityTable
from core.discovery import DiscoveryRegistry
from core.dispatcher import MessageDispatcher
from core.errors import OrchestrationCancelledError, OrchestrationError, RequestInvalidError
from core.transport import MessageTransport
from models.graph_models import StoryGraph
from models.request_models import GenerationRequest
from models.result_models import OrchestrationResult, ResultStatus, TrailStep
from models.trace_models import IssueSummary, PipelinePhase
from pydantic import ValidationError
from utils.logging import request_log_context

from orchestration.batching import withdraw_cancellation
from orchestration.context import RequestContext
from orchestration.events import PipelineEventPublisher, PipelineEventType
from orchestration.graph_planner import GraphPlanner
from orchestration.negotiation import (
    NegotiationController,
    NegotiationOutcome,
    TerminationReason,
)
from orchestration.node_generator import NodeGenerator
from orchestration.prompt_assembler import ModelCatalog, PromptAssembler
from orchestration.tracer import ExecutionTracer
from orchestration.trail_assembly import graph_to_trail_steps
from orchestration.validator_fanout import ValidatorFanout

logger = structlog.get_logger(__name__)

_STATUS_BY_REASON = {
    TerminationReason.SUCCESS: ResultStatus.SUCCESS,
    TerminationReason.MAX_ROUNDS_EXHAUSTED: ResultStatus.PARTIAL,
    TerminationReason.FATAL: ResultStatus.FATAL,
    TerminationReason.CANCELLED: ResultStatus.CANCELLED,
}


@dataclass
class _PipelineRun:
    """Whatever a request has produced so far, kept for partial results."""

    ctx: RequestContext
    graph: StoryGraph | None = None
    outcome: NegotiationOutcome | None = None
    trail_steps: list[TrailStep] = field(default_factory=list)


class TrailOrchestrator:
    def __init__(
        self,
        dispatcher: MessageDispatcher,
        registry: DiscoveryRegistry,
        events: PipelineEventPublisher | None = None,
    ):
        logger.info("Initializing TaleTrail orchestrator...")
        self.dispatcher = dispatcher
        self.registry = registry
        self.events = events
        self.models = ModelCatalog(dispatcher)

    @classmethod
    def from_transport(cls, transport: MessageTransport) -> TrailOrchestrator:
        dispatcher = MessageDispatcher(transport)
        return cls(
            dispatcher,
            DiscoveryRegistry(dispatcher),
            PipelineEventPublisher(transport),
        )

    async def orchestrate(
        self,
        request: GenerationRequest | Mapping[str, Any],
        *,
        max_rounds: int | None = None,
        request_id: str | None = None,
    ) -> OrchestrationResult:
        """Run ``request`` to completion; failures come back as results, not raises."""
        request_id = request_id or str(uuid.uuid4())
        log = logger.bind(request_id=request_id)

        try:
            if not isinstance(request, GenerationRequest):
                request = GenerationRequest.model_validate(dict(request))
        except ValidationError as e:
            error = RequestInvalidError(
                "generation request failed validation",
                details={
                    "errors": [
                        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                        for err in e.errors()
                    ]
                },
            )
            log.error("Rejected invalid generation request.", error=str(e))
            tracer = ExecutionTracer(request_id=request_id)
            return OrchestrationResult(
                status=ResultStatus.FATAL,
                request_id=request_id,
                trace=tracer.summary(ResultStatus.FATAL.value),
                error=error.to_error_object(),
            )

        run = _PipelineRun(ctx=RequestContext.for_request(request, request_id))
        with request_log_context(request_id, run.ctx.tenant):
            return await self._execute(run, request, max_rounds, log)

    async def _execute(
        self,
        run: _PipelineRun,
        request: GenerationRequest,
        max_rounds: int | None,
        log: Any,
    ) -> OrchestrationResult:
        log.info(
            "Starting orchestration.",
            tenant=run.ctx.tenant,
            theme=request.theme,
            node_count=request.node_count,
        )

        status: ResultStatus
        error_object: dict[str, Any] | None = None
        deadline = settings.PIPELINE_REQUEST_DEADLINE_SECS
        try:
            if deadline:
                await asyncio.wait_for(self._run_pipeline(run, request, max_rounds), deadline)
            else:
                await self._run_pipeline(run, request, max_rounds)
        except asyncio.TimeoutError:
            status = ResultStatus.CANCELLED
            error_object = OrchestrationCancelledError(
                f"request deadline of {deadline}s expired",
                details={"deadline_secs": deadline},
            ).to_error_object()
            log.warning("Request deadline expired; returning partial state.")
        except asyncio.CancelledError:
            withdraw_cancellation()
            status = ResultStatus.CANCELLED
            error_object = OrchestrationCancelledError("request was cancelled").to_error_object()
            log.warning("Orchestration cancelled; returning partial state.")
        except OrchestrationError as e:
            status = ResultStatus.FATAL
            error_object = e.to_error_object()
            log.error("Orchestration failed.", code=e.code, error=e.message)
        else:
            assert run.outcome is not None
            status = _STATUS_BY_REASON[run.outcome.reason]
            if status is ResultStatus.CANCELLED:
                error_object = OrchestrationCancelledError(
                    "request was cancelled during negotiation"
                ).to_error_object()

        return await self._finish(run, status, error_object)

    async def _run_pipeline(
        self,
        run: _PipelineRun,
        request: GenerationRequest,
        max_rounds: int | None,
    ) -> None:
        ctx = run.ctx

        with ctx.in_phase(PipelinePhase.DISCOVERY) as phase_ctx:
            descriptors = await self.registry.discover_all(ctx=phase_ctx)
            capabilities = CapabilityTable.from_descriptors(descriptors)

        with ctx.in_phase(PipelinePhase.PROMPTS) as phase_ctx:
            prompts = await PromptAssembler(self.dispatcher, capabilities, self.models).assemble(
                phase_ctx, request
            )
        await self._publish(
            ctx,
            PipelineEventType.PROMPTS_GENERATED,
            10,
            prompts=[kind.value for kind in prompts.kinds],
        )

        with ctx.in_phase(PipelinePhase.STRUCTURE) as phase_ctx:
            run.graph = await GraphPlanner(self.dispatcher, capabilities).plan(
                phase_ctx, request, prompts.story
            )
        await self._publish(
            ctx,
            PipelineEventType.STRUCTURE_CREATED,
            20,
            nodes=len(run.graph),
            convergence_points=len(run.graph.convergence_ids),
        )

        controller = NegotiationController(
            NodeGenerator(self.dispatcher, capabilities, self.events),
            ValidatorFanout(self.dispatcher, capabilities),
            self.events,
        )
        run.outcome = await controller.run(ctx, run.graph, prompts, request, max_rounds)
        if run.outcome.reason is TerminationReason.CANCELLED:
            return

        with ctx.in_phase(PipelinePhase.ASSEMBLY):
            run.trail_steps = graph_to_trail_steps(run.graph)

    async def _finish(
        self,
        run: _PipelineRun,
        status: ResultStatus,
        error: dict[str, Any] | None,
    ) -> OrchestrationResult:
        ctx = run.ctx
        unresolved = [
            IssueSummary(
                node_id=issue.node_id,
                severity=issue.severity.value,
                issue_type=str(issue.kind),
                description=issue.description,
            )
            for issue in (run.outcome.unresolved if run.outcome else [])
        ]

        if status in (ResultStatus.SUCCESS, ResultStatus.PARTIAL):
            await self._publish(
                ctx,
                PipelineEventType.COMPLETE,
                100,
                status=status.value,
                unresolved_issues=len(unresolved),
            )
        else:
            await self._publish(
                ctx,
                PipelineEventType.FAILED,
                100,
                status=status.value,
                error=(error or {}).get("code"),
            )

        trace = ctx.tracer.summary(status.value, unresolved)
        logger.info(
            "Orchestration finished.",
            request_id=ctx.request_id,
            status=status.value,
            phases=[phase.value for phase in trace.phases_completed],
            invocations=len(trace.service_invocations),
            corrections=len(trace.corrections),
            unresolved_issues=len(unresolved),
            duration_ms=round(trace.total_duration_ms, 1),
        )
        return OrchestrationResult(
            status=status,
            request_id=ctx.request_id,
            trace=trace,
            graph=run.graph,
            trail_steps=run.trail_steps,
            unresolved_issues=unresolved,
            negotiation=run.outcome.state if run.outcome else None,
            error=error,
        )

    async def _publish(
        self,
        ctx: RequestContext,
        event_type: PipelineEventType,
        progress: int,
        **details: Any,
    ) -> None:
        if self.events is not None:
            await self.events.publish(ctx, event_type, progress, **details)

    async def aclose(self) -> None:
        await self.dispatcher.transport.aclose()
