# orchestration/node_generator.py
"""Generate node bodies in bounded-concurrency batches and merge them into the graph."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

import structlog
from config import settings
from core.capabilities import CapabilityTable, ToolHandle
from core.discovery import STORY_SERVICE
from core.dispatcher import MessageDispatcher
from core.errors import DispatchError, NodeGeneratorIncompleteError
from models.graph_models import StoryGraph
from models.prompt_models import PromptBundle
from models.request_models import GenerationRequest
from models.tool_models import GeneratedNode
from models.trace_models import PipelinePhase

from orchestration.batching import batch_concurrency, gather_cancelling, partition_batches
from orchestration.context import RequestContext
from orchestration.events import PipelineEventPublisher, PipelineEventType
from orchestration.graph_planner import GraphPlanner

logger = structlog.get_logger(__name__)

# Progress window reported while node batches run
_PROGRESS_START = 25
_PROGRESS_END = 70


@dataclass
class GenerationReport:
    requested: list[str] = field(default_factory=list)
    generated: list[str] = field(default_factory=list)
    incomplete: list[str] = field(default_factory=list)
    batches: int = 0
    retried_batches: int = 0


class NodeGenerator:
    def __init__(
        self,
        dispatcher: MessageDispatcher,
        capabilities: CapabilityTable,
        events: PipelineEventPublisher | None = None,
    ):
        self._dispatcher = dispatcher
        self._capabilities = capabilities
        self._events = events

    async def generate_bodies(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        node_ids: Iterable[str] | None = None,
        correction_context: Mapping[str, Sequence[str]] | None = None,
    ) -> GenerationReport:
        """Fill the body of every empty node (or of ``node_ids`` if given).

        ``correction_context`` maps a node being regenerated to the issues
        found on its previous body; each batch carries the entries for its nodes.

        A batch missing nodes is retried once with just the missing nodes;
        whatever is still missing is reported in ``incomplete``.
        """
        candidates = list(node_ids) if node_ids is not None else graph.empty_node_ids()
        targets = [node_id for node_id in candidates if not graph.node(node_id).has_body]
        report = GenerationReport(requested=targets)
        if not targets:
            return report

        handle = self._capabilities.handle(STORY_SERVICE, "generate_nodes")
        batches = partition_batches(targets)
        report.batches = len(batches)
        semaphore = asyncio.Semaphore(batch_concurrency())
        completed = 0

        async def run_batch(number: int, batch: list[str]) -> list[str]:
            nonlocal completed
            async with semaphore:
                await self._publish(
                    ctx,
                    PipelineEventType.BATCH_STARTED,
                    completed,
                    len(batches),
                    batch_number=number,
                    node_ids=batch,
                )
                try:
                    await self._generate_batch(
                        ctx, handle, graph, prompts, request, batch, correction_context
                    )
                    missing: list[str] = []
                except NodeGeneratorIncompleteError as first:
                    report.retried_batches += 1
                    logger.warning(
                        "Node batch incomplete; retrying once.",
                        request_id=ctx.request_id,
                        batch=number,
                        missing=first.missing,
                    )
                    try:
                        await self._generate_batch(
                            ctx, handle, graph, prompts, request, first.missing, correction_context
                        )
                        missing = []
                    except NodeGeneratorIncompleteError as second:
                        missing = second.missing
                        ctx.tracer.record_issue(
                            PipelinePhase.NODES,
                            second.message,
                            code=second.code,
                            missing=missing,
                        )
                completed += 1
                await self._publish(
                    ctx,
                    PipelineEventType.BATCH_COMPLETED,
                    completed,
                    len(batches),
                    batch_number=number,
                    incomplete=missing,
                )
                return missing

        results = await gather_cancelling(
            run_batch(number, batch) for number, batch in enumerate(batches, start=1)
        )
        incomplete = {node_id for missing in results for node_id in missing}
        report.incomplete = [node_id for node_id in targets if node_id in incomplete]
        report.generated = [node_id for node_id in targets if node_id not in incomplete]
        GraphPlanner.verify(graph)

        logger.info(
            "Node generation finished.",
            request_id=ctx.request_id,
            requested=len(targets),
            generated=len(report.generated),
            incomplete=len(report.incomplete),
            batches=report.batches,
        )
        return report

    async def _generate_batch(
        self,
        ctx: RequestContext,
        handle: ToolHandle,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        batch: list[str],
        correction_context: Mapping[str, Sequence[str]] | None = None,
    ) -> None:
        story = prompts.story
        context = correction_context or {}
        try:
            result = await handle.invoke(
                ctx,
                self._dispatcher,
                timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS,
                node_ids=batch,
                nodes=graph.outline(batch),
                theme=request.theme,
                age_group=request.age_group.value,
                language=request.language.value,
                vocabulary_level=request.vocabulary_level.value,
                educational_goals=list(request.educational_goals),
                required_elements=list(request.required_elements),
                system_prompt=story.system_prompt,
                user_prompt=story.user_prompt,
                model_id=story.model_id,
                parameters=story.parameters.model_dump(),
                correction_context={
                    node_id: list(context[node_id]) for node_id in batch if node_id in context
                },
            )
        except DispatchError as e:
            raise NodeGeneratorIncompleteError(
                f"generate_nodes failed for batch: {e.message}", missing=list(batch)
            ) from e

        filled = merge_generated_nodes(graph, batch, result.nodes)
        missing = [node_id for node_id in batch if node_id not in filled]
        if missing:
            raise NodeGeneratorIncompleteError(
                f"{len(missing)} of {len(batch)} requested nodes missing from reply",
                missing=missing,
            )

    async def _publish(
        self,
        ctx: RequestContext,
        event_type: PipelineEventType,
        completed: int,
        total: int,
        **details: object,
    ) -> None:
        if self._events is None:
            return
        progress = _PROGRESS_START + (_PROGRESS_END - _PROGRESS_START) * completed // max(
            total, 1
        )
        await self._events.publish(ctx, event_type, progress, **details)


def merge_generated_nodes(
    graph: StoryGraph, requested: list[str], generated: list[GeneratedNode]
) -> set[str]:
    """Write generated bodies into ``graph`` and return the ids filled.

    Only bodies, annotations and choice texts are taken from the reply; the
    structure planned earlier is kept as is.
    """
    wanted = set(requested)
    filled: set[str] = set()
    for item in generated:
        if item.id not in wanted:
            logger.warning("Ignoring unrequested node in reply.", node_id=item.id)
            continue
        if not item.body.strip():
            continue
        node = graph.node(item.id)
        node.body = item.body
        if item.educational_annotation:
            node.educational_annotation = item.educational_annotation
        choices = {choice.id: choice for choice in node.choices}
        for generated_choice in item.choices:
            choice = choices.get(generated_choice.id)
            if choice is None:
                logger.warning(
                    "Ignoring unknown choice in reply.",
                    node_id=item.id,
                    choice_id=generated_choice.id,
                )
                continue
            target_id = graph.at(choice.target).id
            if generated_choice.target_node_id not in (None, target_id):
                logger.warning(
                    "Ignoring attempt to rewire a choice.",
                    node_id=item.id,
                    choice_id=choice.id,
                    planned=target_id,
                    proposed=generated_choice.target_node_id,
                )
            if generated_choice.text:
                choice.text = generated_choice.text
        filled.add(item.id)
    return filled
