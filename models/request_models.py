"""Pydantic models describing an incoming content-generation request."""

from __future__ import annotations

from enum import Enum

from config import settings
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AgeGroup(str, Enum):
    AGES_6_8 = "6-8"
    AGES_9_11 = "9-11"
    AGES_12_14 = "12-14"
    AGES_15_17 = "15-17"
    ADULT = "18+"


class Language(str, Enum):
    EN = "en"
    DE = "de"


class VocabularyLevel(str, Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class GenerationRequest(BaseModel):
    """Immutable input for one orchestration run."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    theme: str
    age_group: AgeGroup
    language: Language
    vocabulary_level: VocabularyLevel = VocabularyLevel.INTERMEDIATE
    node_count: int = Field(default_factory=lambda: settings.DAG_DEFAULT_NODE_COUNT)
    educational_goals: list[str] = Field(default_factory=list)
    required_elements: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    tenant_id: str

    @field_validator("theme", "tenant_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def _node_count_in_range(self) -> GenerationRequest:
        low, high = settings.DAG_MIN_NODE_COUNT, settings.DAG_MAX_NODE_COUNT
        if not low <= self.node_count <= high:
            raise ValueError(f"node_count must lie within [{low}, {high}]")
        return self

    @property
    def tenant(self) -> str:
        return f"tenant-{self.tenant_id}"
