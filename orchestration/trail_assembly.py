# orchestration/trail_assembly.py
"""Flatten a finished story graph into ordered trail steps."""

from __future__ import annotations

import re

import structlog
from models.graph_models import StoryGraph
from models.result_models import TrailChoice, TrailStep

logger = structlog.get_logger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s")
_TITLE_MAX_CHARS = 80


def _title_from_body(body: str) -> str | None:
    text = body.strip()
    if not text:
        return None
    first = _SENTENCE_END.split(text, maxsplit=1)[0]
    if len(first) > _TITLE_MAX_CHARS:
        first = first[: _TITLE_MAX_CHARS - 3].rstrip() + "..."
    return first


def graph_to_trail_steps(graph: StoryGraph) -> list[TrailStep]:
    """Return one step per node in breadth-first order from the start node."""
    depths = graph.depths()
    indegrees = graph.indegrees()
    order = sorted(
        graph.node_ids,
        key=lambda node_id: (depths.get(node_id, len(graph) + 1), graph.index_of(node_id)),
    )

    steps: list[TrailStep] = []
    for step_order, node_id in enumerate(order, start=1):
        node = graph.node(node_id)
        position = graph.index_of(node_id)
        steps.append(
            TrailStep(
                step_order=step_order,
                node_id=node.id,
                title=_title_from_body(node.body),
                body=node.body,
                choices=[
                    TrailChoice(
                        id=choice.id,
                        text=choice.text,
                        next_node_id=graph.at(choice.target).id,
                    )
                    for choice in node.choices
                ],
                is_convergence=node.is_convergence,
                depth=depths.get(node.id, 0),
                educational_annotation=node.educational_annotation,
                metadata={
                    "incoming_edges": indegrees[position],
                    "outgoing_edges": len(node.choices),
                    "convergence_point": node.is_convergence,
                },
            )
        )
    logger.debug("Assembled trail steps.", steps=len(steps))
    return steps
