# orchestration/graph_planner.py
"""Request a story skeleton and verify its structure locally."""

from __future__ import annotations

import structlog
from config import settings
from core.capabilities import CapabilityTable
from core.discovery import STORY_SERVICE
from core.dispatcher import MessageDispatcher
from core.errors import DispatchError, StructureInvalidError
from models.graph_models import StoryGraph
from models.prompt_models import PromptPackage
from models.request_models import GenerationRequest
from models.tool_models import StructureResult

from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)


class GraphPlanner:
    """Plans the DAG; the service's own structure claims are never trusted."""

    def __init__(self, dispatcher: MessageDispatcher, capabilities: CapabilityTable):
        self._dispatcher = dispatcher
        self._capabilities = capabilities

    async def plan(
        self,
        ctx: RequestContext,
        request: GenerationRequest,
        story_prompt: PromptPackage,
    ) -> StoryGraph:
        handle = self._capabilities.handle(STORY_SERVICE, "generate_structure")
        skeleton: StructureResult = await handle.invoke(
            ctx,
            self._dispatcher,
            timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS,
            node_count=request.node_count,
            max_depth=settings.DAG_MAX_DEPTH,
            convergence_point_ratio=settings.DAG_CONVERGENCE_POINT_RATIO,
            theme=request.theme,
            age_group=request.age_group.value,
            language=request.language.value,
            educational_goals=list(request.educational_goals),
            system_prompt=story_prompt.system_prompt,
            user_prompt=story_prompt.user_prompt,
        )

        graph = StoryGraph.from_skeleton(skeleton)
        self.verify(graph, expected_count=request.node_count)
        if self._capabilities.has(STORY_SERVICE, "validate_paths"):
            await self._confirm_paths(ctx, graph)

        logger.info(
            "Story structure planned.",
            request_id=ctx.request_id,
            nodes=len(graph),
            start=graph.start_id,
            convergence_points=len(graph.convergence_ids),
            max_depth=graph.max_depth(),
        )
        return graph

    @staticmethod
    def verify(graph: StoryGraph, expected_count: int | None = None) -> None:
        graph.check_invariants(
            max_depth=settings.DAG_MAX_DEPTH,
            convergence_ratio=settings.DAG_CONVERGENCE_POINT_RATIO,
            tolerance=settings.DAG_CONVERGENCE_TOLERANCE,
            expected_count=expected_count,
        )

    async def _confirm_paths(self, ctx: RequestContext, graph: StoryGraph) -> None:
        handle = self._capabilities.handle(STORY_SERVICE, "validate_paths")
        try:
            result = await handle.invoke(
                ctx,
                self._dispatcher,
                timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS,
                start_node_id=graph.start_id,
                nodes=graph.outline(graph.node_ids),
            )
        except DispatchError as e:
            logger.warning(
                "Path validation unavailable; relying on local checks.",
                request_id=ctx.request_id,
                error=str(e),
            )
            return
        if not result.valid:
            raise StructureInvalidError(
                "story service rejected the planned paths",
                details={"issues": result.issues},
            )
