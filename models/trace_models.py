"""Execution trace records and the summary artifact emitted per request."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PipelinePhase(str, Enum):
    DISCOVERY = "discovery"
    PROMPTS = "prompts"
    STRUCTURE = "structure"
    NODES = "nodes"
    VALIDATION = "validation"
    NEGOTIATION = "negotiation"
    ASSEMBLY = "assembly"


class EntryKind(str, Enum):
    INVOCATION = "invocation"
    PHASE = "phase"
    ROUND = "round"
    CORRECTION = "correction"
    EVENT = "event"
    ISSUE = "issue"


class TraceEntry(BaseModel):
    seq: int
    kind: EntryKind
    phase: PipelinePhase | None = None
    service: str | None = None
    tool: str | None = None
    duration_ms: float = 0.0
    success: bool = True
    error: str | None = None
    call_request_id: str | None = None
    attempt: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ServiceInvocationSummary(BaseModel):
    service: str
    tool: str
    duration_ms: float
    success: bool
    request_id: str | None = None
    attempt: int | None = None
    phase: PipelinePhase | None = None
    error: str | None = None


class CorrectionSummary(BaseModel):
    node_id: str
    type: str
    success: bool
    attempts: int


class IssueSummary(BaseModel):
    node_id: str
    severity: str
    issue_type: str
    description: str


class PhaseTotal(BaseModel):
    invocations: int = 0
    failures: int = 0
    duration_ms: float = 0.0


class TraceArtifact(BaseModel):
    """Summary of one orchestration request, produced when it terminates."""

    request_id: str
    status: str
    total_duration_ms: float
    phases_completed: list[PipelinePhase] = Field(default_factory=list)
    phase_totals: dict[str, PhaseTotal] = Field(default_factory=dict)
    service_invocations: list[ServiceInvocationSummary] = Field(default_factory=list)
    corrections: list[CorrectionSummary] = Field(default_factory=list)
    unresolved_issues: list[IssueSummary] = Field(default_factory=list)
    events_published: list[str] = Field(default_factory=list)
    dropped_entries: int = 0
    entries: list[TraceEntry] = Field(default_factory=list)
