"""Result envelope and trail steps returned by an orchestration run."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .graph_models import StoryGraph
from .trace_models import IssueSummary, TraceArtifact

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from orchestration.negotiation import NegotiationState


class ResultStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"
    CANCELLED = "cancelled"


class TrailChoice(BaseModel):
    id: str
    text: str
    next_node_id: str


class TrailStep(BaseModel):
    step_order: int
    node_id: str
    title: str | None = None
    body: str
    choices: list[TrailChoice] = Field(default_factory=list)
    is_convergence: bool = False
    is_required: bool = True
    depth: int
    educational_annotation: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass
class OrchestrationResult:
    """What the caller receives for every request, whatever the outcome."""

    status: ResultStatus
    request_id: str
    trace: TraceArtifact
    graph: StoryGraph | None = None
    trail_steps: list[TrailStep] = field(default_factory=list)
    unresolved_issues: list[IssueSummary] = field(default_factory=list)
    negotiation: NegotiationState | None = None
    error: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "request_id": self.request_id,
            "graph": self.graph.to_dict() if self.graph is not None else None,
            "trail_steps": [step.model_dump(mode="json") for step in self.trail_steps],
            "unresolved_issues": [
                issue.model_dump(mode="json") for issue in self.unresolved_issues
            ],
            "negotiation": self.negotiation.to_dict() if self.negotiation else None,
            "error": self.error,
            "trace": self.trace.model_dump(mode="json", exclude={"entries"}),
        }
