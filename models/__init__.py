"""Central package for orchestration data models."""

from .graph_models import Choice, Edge, Node, StoryGraph
from .issue_models import (
    CorrectionCapability,
    IssueCategory,
    IssueClassification,
    IssueKind,
    Severity,
    ValidationIssue,
    classify_issues,
    merge_issues,
)
from .prompt_models import GenerationParameters, PromptBundle, PromptKind, PromptPackage
from .request_models import AgeGroup, GenerationRequest, Language, VocabularyLevel
from .result_models import OrchestrationResult, ResultStatus, TrailChoice, TrailStep
from .trace_models import (
    CorrectionSummary,
    IssueSummary,
    PipelinePhase,
    ServiceInvocationSummary,
    TraceArtifact,
    TraceEntry,
)

__all__ = [
    "AgeGroup",
    "Choice",
    "CorrectionCapability",
    "CorrectionSummary",
    "Edge",
    "GenerationParameters",
    "GenerationRequest",
    "IssueCategory",
    "IssueClassification",
    "IssueKind",
    "IssueSummary",
    "Language",
    "Node",
    "OrchestrationResult",
    "PipelinePhase",
    "PromptBundle",
    "PromptKind",
    "PromptPackage",
    "ResultStatus",
    "ServiceInvocationSummary",
    "Severity",
    "StoryGraph",
    "TraceArtifact",
    "TraceEntry",
    "TrailChoice",
    "TrailStep",
    "ValidationIssue",
    "VocabularyLevel",
    "classify_issues",
    "merge_issues",
]
