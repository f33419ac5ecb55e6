"""Validation issues reported by the quality and constraint validators."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"

    @classmethod
    def _missing_(cls, value: object) -> Severity | None:
        aliases = {"error": cls.CRITICAL, "warn": cls.WARNING, "info": cls.INFO}
        if isinstance(value, str):
            return aliases.get(value.lower()) or cls.__members__.get(value.upper())
        return None

    @property
    def rank(self) -> int:
        return {"critical": 2, "warning": 1, "info": 0}[self.value]


class CorrectionCapability(str, Enum):
    LOCAL_FIX = "local-fix"
    REGENERATE = "regenerate"
    NO_FIX = "no-fix"

    @classmethod
    def _missing_(cls, value: object) -> CorrectionCapability | None:
        aliases = {
            "canfixlocally": cls.LOCAL_FIX,
            "local_fix": cls.LOCAL_FIX,
            "needsrevision": cls.REGENERATE,
            "nofixpossible": cls.NO_FIX,
            "no_fix": cls.NO_FIX,
        }
        if isinstance(value, str):
            return aliases.get(value.replace("-", "").lower()) or aliases.get(
                value.lower()
            )
        return None

    @property
    def rank(self) -> int:
        return {"regenerate": 2, "local-fix": 1, "no-fix": 0}[self.value]


class IssueCategory(str, Enum):
    QUALITY = "quality"
    CONSTRAINT = "constraint"
    GENERATION = "generation"


class IssueKind(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: IssueCategory
    sub_kind: str = "general"

    @classmethod
    def parse(cls, raw: str, default: IssueCategory) -> IssueKind:
        """Read ``quality::age_inappropriate`` or a bare sub-kind."""
        if "::" in raw:
            category, _, sub_kind = raw.partition("::")
            try:
                return cls(category=IssueCategory(category), sub_kind=sub_kind)
            except ValueError:
                return cls(category=default, sub_kind=raw)
        return cls(category=default, sub_kind=raw or "general")

    def __str__(self) -> str:
        return f"{self.category.value}::{self.sub_kind}"


class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    node_id: str
    severity: Severity
    kind: IssueKind
    description: str
    correction: CorrectionCapability = CorrectionCapability.REGENERATE

    @property
    def dedupe_key(self) -> tuple[str, IssueKind]:
        return (self.node_id, self.kind)

    @property
    def needs_regeneration(self) -> bool:
        if self.severity is Severity.CRITICAL:
            return True
        return (
            self.severity is Severity.WARNING
            and self.correction is not CorrectionCapability.NO_FIX
        )


def merge_issues(issues: Iterable[ValidationIssue]) -> list[ValidationIssue]:
    """Deduplicate by node and kind keeping the strongest report.

    Severity takes the maximum; on equal severity the more actionable
    correction wins. Output is ordered by node id and kind.
    """
    merged: dict[tuple[str, IssueKind], ValidationIssue] = {}
    for issue in issues:
        current = merged.get(issue.dedupe_key)
        if current is None or (issue.severity.rank, issue.correction.rank) > (
            current.severity.rank,
            current.correction.rank,
        ):
            merged[issue.dedupe_key] = issue
    return sorted(merged.values(), key=lambda i: (i.node_id, str(i.kind)))


@dataclass
class IssueClassification:
    """Issues partitioned by the negotiation policy."""

    regenerate: list[ValidationIssue] = field(default_factory=list)
    skipped: list[ValidationIssue] = field(default_factory=list)
    informational: list[ValidationIssue] = field(default_factory=list)

    @property
    def regenerate_nodes(self) -> set[str]:
        return {issue.node_id for issue in self.regenerate}

    @property
    def skipped_nodes(self) -> set[str]:
        return {issue.node_id for issue in self.skipped}


def classify_issues(issues: Iterable[ValidationIssue]) -> IssueClassification:
    classification = IssueClassification()
    for issue in issues:
        if issue.needs_regeneration:
            classification.regenerate.append(issue)
        elif issue.severity is Severity.WARNING:
            classification.skipped.append(issue)
        else:
            classification.informational.append(issue)
    return classification
