"""Prompt packages produced by the prompt service for downstream tools."""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class PromptKind(str, Enum):
    STORY = "story"
    VALIDATION = "validation"
    CONSTRAINT = "constraint"


class GenerationParameters(BaseModel):
    model_config = ConfigDict(extra="ignore")

    temperature: float = 0.7
    max_tokens: int = Field(
        2048, validation_alias=AliasChoices("max_tokens", "max_output_tokens")
    )
    top_p: float = 1.0
    stop_sequences: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("stop_sequences", "stop")
    )


class PromptPackage(BaseModel):
    """System/user prompt pair plus the model settings chosen for it."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    system_prompt: str
    user_prompt: str = ""
    language: str | None = None
    model_id: str | None = Field(
        None, validation_alias=AliasChoices("model_id", "llm_model", "model")
    )
    parameters: GenerationParameters = Field(
        default_factory=GenerationParameters,
        validation_alias=AliasChoices("parameters", "llm_config"),
    )
    kind: PromptKind | None = None
    fallback_used: bool = False


class PromptBundle(BaseModel):
    """Prompt packages by kind; only the story package is guaranteed."""

    story: PromptPackage
    validation: PromptPackage | None = None
    constraint: PromptPackage | None = None

    def get(self, kind: PromptKind) -> PromptPackage | None:
        return getattr(self, kind.value)

    @property
    def kinds(self) -> list[PromptKind]:
        return [kind for kind in PromptKind if self.get(kind) is not None]
