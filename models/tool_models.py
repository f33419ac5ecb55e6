"""Argument and result contracts for the tools the orchestrator invokes."""

from __future__ import annotations

from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .issue_models import CorrectionCapability, Severity


class ToolArguments(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ToolResult(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# --- prompt-helper ---------------------------------------------------------


class StoryPromptArgs(ToolArguments):
    theme: str
    age_group: str
    language: str
    educational_goals: list[str] = Field(default_factory=list)


class ValidationPromptArgs(ToolArguments):
    age_group: str
    language: str
    content_type: str = "story"


class ConstraintPromptArgs(ToolArguments):
    vocabulary_level: str
    language: str
    required_elements: list[str] = Field(default_factory=list)


class ModelForLanguageArgs(ToolArguments):
    language: str


class ModelForLanguageResult(ToolResult):
    model_id: str = Field(
        validation_alias=AliasChoices("model_id", "model", "model_name")
    )


# --- story-generator -------------------------------------------------------


class GenerateStructureArgs(ToolArguments):
    node_count: int
    max_depth: int
    convergence_point_ratio: float | None
    theme: str
    age_group: str
    language: str
    educational_goals: list[str] = Field(default_factory=list)
    system_prompt: str
    user_prompt: str = ""


class StructureResult(ToolResult):
    """Skeleton as returned by ``generate_structure``.

    ``nodes`` is either a list of node objects or a mapping from node id to
    node object. A top-level ``dag`` wrapper is unwrapped.
    """

    nodes: list[dict[str, Any]] | dict[str, dict[str, Any]]
    start_node_id: str | None = None
    edges: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_dag(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("dag"), dict):
            return data["dag"]
        return data


class NodeOutline(BaseModel):
    id: str
    is_convergence: bool = False
    choices: list[dict[str, str]] = Field(default_factory=list)


class GenerateNodesArgs(ToolArguments):
    node_ids: list[str]
    nodes: list[NodeOutline]
    theme: str
    age_group: str
    language: str
    vocabulary_level: str
    educational_goals: list[str] = Field(default_factory=list)
    required_elements: list[str] = Field(default_factory=list)
    system_prompt: str
    user_prompt: str = ""
    model_id: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    # issues from the previous validation, keyed by the node being regenerated
    correction_context: dict[str, list[str]] = Field(default_factory=dict)


class GeneratedChoice(ToolResult):
    id: str
    text: str = ""
    target_node_id: str | None = Field(
        None, validation_alias=AliasChoices("target_node_id", "next_node_id")
    )


class GeneratedNode(ToolResult):
    id: str = Field(validation_alias=AliasChoices("id", "node_id"))
    body: str = Field("", validation_alias=AliasChoices("body", "text", "content"))
    choices: list[GeneratedChoice] = Field(default_factory=list)
    educational_annotation: str | None = Field(
        None,
        validation_alias=AliasChoices("educational_annotation", "educational_content"),
    )

    @field_validator("body", mode="before")
    @classmethod
    def _flatten_content(cls, value: Any) -> Any:
        # Some generators nest the text as {"text": ..., "choices": [...]}
        if isinstance(value, dict):
            return value.get("text", "")
        return value

    @model_validator(mode="before")
    @classmethod
    def _lift_nested_choices(cls, data: Any) -> Any:
        if (
            isinstance(data, dict)
            and "choices" not in data
            and isinstance(data.get("content"), dict)
        ):
            data = {**data, "choices": data["content"].get("choices", [])}
        return data


class GenerateNodesResult(ToolResult):
    nodes: list[GeneratedNode] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"nodes": data}
        return data


class ValidatePathsArgs(ToolArguments):
    start_node_id: str
    nodes: list[NodeOutline]


class ValidatePathsResult(ToolResult):
    valid: bool = Field(True, validation_alias=AliasChoices("valid", "is_valid"))
    issues: list[str] = Field(default_factory=list)


# --- validators ------------------------------------------------------------


class ReportedIssue(ToolResult):
    """An explicit issue as reported by a validator."""

    node_id: str | None = None
    severity: Severity
    kind: str = "general"
    description: str = ""
    correction: CorrectionCapability = Field(
        CorrectionCapability.REGENERATE,
        validation_alias=AliasChoices(
            "correction", "capability", "correction_capability"
        ),
    )

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> Any:
        return Severity(value) if isinstance(value, str) else value

    @field_validator("correction", mode="before")
    @classmethod
    def _coerce_correction(cls, value: Any) -> Any:
        return CorrectionCapability(value) if isinstance(value, str) else value


class ValidateQualityArgs(ToolArguments):
    node_id: str
    content: str
    age_group: str
    language: str
    educational_goals: list[str] = Field(default_factory=list)
    system_prompt: str | None = None


class BatchValidateNode(BaseModel):
    node_id: str
    content: str


class BatchValidateArgs(ToolArguments):
    nodes: list[BatchValidateNode]
    age_group: str
    language: str
    educational_goals: list[str] = Field(default_factory=list)
    system_prompt: str | None = None


class QualityResult(ToolResult):
    node_id: str | None = None
    age_appropriate_score: float | None = None
    educational_value_score: float | None = None
    safety_issues: list[str] = Field(default_factory=list)
    issues: list[ReportedIssue] = Field(default_factory=list)
    correction_capability: CorrectionCapability | None = None

    @field_validator("correction_capability", mode="before")
    @classmethod
    def _coerce_correction(cls, value: Any) -> Any:
        return CorrectionCapability(value) if isinstance(value, str) else value


class BatchValidateResult(ToolResult):
    results: list[QualityResult] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_list(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"results": data}
        return data


class ValidateConstraintsArgs(ToolArguments):
    node_id: str
    content: str
    theme: str
    vocabulary_level: str
    language: str
    required_elements: list[str] = Field(default_factory=list)
    system_prompt: str | None = None


class ConstraintResult(ToolResult):
    node_id: str | None = None
    vocabulary_violations: list[str] = Field(default_factory=list)
    theme_consistency_score: float | None = None
    missing_elements: list[str] = Field(default_factory=list)
    issues: list[ReportedIssue] = Field(default_factory=list)
    correction_capability: CorrectionCapability | None = None

    @field_validator("correction_capability", mode="before")
    @classmethod
    def _coerce_correction(cls, value: Any) -> Any:
        return CorrectionCapability(value) if isinstance(value, str) else value
