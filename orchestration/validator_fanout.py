# orchestration/validator_fanout.py
"""Run quality and constraint validators over generated nodes and merge their issues."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog
from config import settings
from core.capabilities import CapabilityTable
from core.discovery import CONSTRAINT_SERVICE, QUALITY_SERVICE
from core.dispatcher import MessageDispatcher
from core.errors import DispatchError
from models.graph_models import StoryGraph
from models.issue_models import (
    CorrectionCapability,
    IssueCategory,
    IssueKind,
    Severity,
    ValidationIssue,
    merge_issues,
)
from models.prompt_models import PromptBundle
from models.request_models import GenerationRequest
from models.tool_models import ConstraintResult, QualityResult, ReportedIssue
from models.trace_models import PipelinePhase

from orchestration.batching import batch_concurrency, gather_cancelling, partition_batches
from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)

AGE_SCORE_CRITICAL = 0.5
AGE_SCORE_WARNING = 0.7
EDUCATIONAL_SCORE_CRITICAL = 0.4
EDUCATIONAL_SCORE_WARNING = 0.7
VOCABULARY_VIOLATIONS_CRITICAL = 5
THEME_SCORE_CRITICAL = 0.5
THEME_SCORE_WARNING = 0.7


def _reported(
    node_id: str, reported: list[ReportedIssue], category: IssueCategory
) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            node_id=issue.node_id or node_id,
            severity=issue.severity,
            kind=IssueKind.parse(issue.kind, category),
            description=issue.description or IssueKind.parse(issue.kind, category).sub_kind,
            correction=issue.correction,
        )
        for issue in reported
    ]


def quality_issues(node_id: str, result: QualityResult) -> list[ValidationIssue]:
    """Translate a quality reply into issues; passing scores produce none."""
    node_id = result.node_id or node_id
    correction = result.correction_capability or CorrectionCapability.REGENERATE
    issues = _reported(node_id, result.issues, IssueCategory.QUALITY)

    score = result.age_appropriate_score
    if score is not None and score < AGE_SCORE_WARNING:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=Severity.CRITICAL if score < AGE_SCORE_CRITICAL else Severity.WARNING,
                kind=IssueKind(category=IssueCategory.QUALITY, sub_kind="age_inappropriate"),
                description=f"age appropriateness score {score:.2f}",
                correction=correction,
            )
        )
    score = result.educational_value_score
    if score is not None and score < EDUCATIONAL_SCORE_WARNING:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=(
                    Severity.CRITICAL
                    if score < EDUCATIONAL_SCORE_CRITICAL
                    else Severity.WARNING
                ),
                kind=IssueKind(category=IssueCategory.QUALITY, sub_kind="educational_value"),
                description=f"educational value score {score:.2f}",
                correction=correction,
            )
        )
    if result.safety_issues:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=Severity.CRITICAL,
                kind=IssueKind(category=IssueCategory.QUALITY, sub_kind="safety"),
                description="; ".join(result.safety_issues),
                correction=correction,
            )
        )
    return issues


def constraint_issues(node_id: str, result: ConstraintResult) -> list[ValidationIssue]:
    node_id = result.node_id or node_id
    correction = result.correction_capability or CorrectionCapability.REGENERATE
    issues = _reported(node_id, result.issues, IssueCategory.CONSTRAINT)

    violations = result.vocabulary_violations
    if violations:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=(
                    Severity.CRITICAL
                    if len(violations) > VOCABULARY_VIOLATIONS_CRITICAL
                    else Severity.WARNING
                ),
                kind=IssueKind(category=IssueCategory.CONSTRAINT, sub_kind="vocabulary"),
                description="words above vocabulary level: " + ", ".join(violations[:10]),
                correction=correction,
            )
        )
    score = result.theme_consistency_score
    if score is not None and score < THEME_SCORE_WARNING:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=Severity.CRITICAL if score < THEME_SCORE_CRITICAL else Severity.WARNING,
                kind=IssueKind(category=IssueCategory.CONSTRAINT, sub_kind="theme_consistency"),
                description=f"theme consistency score {score:.2f}",
                correction=correction,
            )
        )
    if result.missing_elements:
        issues.append(
            ValidationIssue(
                node_id=node_id,
                severity=Severity.CRITICAL,
                kind=IssueKind(category=IssueCategory.CONSTRAINT, sub_kind="required_elements"),
                description="missing required elements: " + ", ".join(result.missing_elements),
                correction=correction,
            )
        )
    return issues


def unavailable_issues(
    node_ids: list[str], category: IssueCategory, reason: str
) -> list[ValidationIssue]:
    """Treat a failed validator call as critical for every node it covered."""
    return [
        ValidationIssue(
            node_id=node_id,
            severity=Severity.CRITICAL,
            kind=IssueKind(category=category, sub_kind="validator_unavailable"),
            description=reason,
            correction=CorrectionCapability.REGENERATE,
        )
        for node_id in node_ids
    ]


def batch_quality_issues(
    batch: list[str], results: list[QualityResult]
) -> list[ValidationIssue]:
    """Match batch results to nodes by id; a node without a result fails validation.

    A result that omits its node id is taken to answer the node at its position.
    """
    answered: dict[str, QualityResult] = {}
    for position, result in enumerate(results):
        node_id = result.node_id
        if node_id is None and position < len(batch):
            node_id = batch[position]
        if node_id in batch:
            answered.setdefault(node_id, result)

    issues: list[ValidationIssue] = []
    missing: list[str] = []
    for node_id in batch:
        if node_id in answered:
            issues.extend(quality_issues(node_id, answered[node_id]))
        else:
            missing.append(node_id)
    if missing:
        logger.warning("batch_validate returned no result for some nodes.", nodes=missing)
        issues.extend(
            unavailable_issues(missing, IssueCategory.QUALITY, "no result from batch_validate")
        )
    return issues


class ValidatorFanout:
    def __init__(self, dispatcher: MessageDispatcher, capabilities: CapabilityTable):
        self._dispatcher = dispatcher
        self._capabilities = capabilities

    async def validate(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
    ) -> list[ValidationIssue]:
        node_ids = [node.id for node in graph if node.has_body]
        batches = partition_batches(node_ids)
        runs: list[Awaitable[list[ValidationIssue]]] = []

        if self._capabilities.has(QUALITY_SERVICE, "validate_quality"):
            runs.append(
                self._run_batched(
                    batches,
                    lambda batch: self._quality_batch(ctx, graph, prompts, request, batch),
                )
            )
        else:
            self._skip(ctx, QUALITY_SERVICE)
        if self._capabilities.has(CONSTRAINT_SERVICE, "validate_constraints"):
            runs.append(
                self._run_batched(
                    batches,
                    lambda batch: self._constraint_batch(ctx, graph, prompts, request, batch),
                )
            )
        else:
            self._skip(ctx, CONSTRAINT_SERVICE)

        collected = await gather_cancelling(runs)
        issues: list[ValidationIssue] = []
        for issue in (issue for group in collected for issue in group):
            if issue.node_id not in graph:
                logger.warning(
                    "Dropping issue for unknown node.",
                    request_id=ctx.request_id,
                    node_id=issue.node_id,
                    kind=str(issue.kind),
                )
                continue
            issues.append(issue)

        merged = merge_issues(issues)
        logger.info(
            "Validation finished.",
            request_id=ctx.request_id,
            nodes=len(node_ids),
            issues=len(merged),
        )
        return merged

    def _skip(self, ctx: RequestContext, service: str) -> None:
        logger.warning(
            "Validator not discovered; skipping it.",
            request_id=ctx.request_id,
            service=service,
        )
        ctx.tracer.record_issue(
            PipelinePhase.VALIDATION, f"{service} skipped: not discovered"
        )

    async def _run_batched(
        self,
        batches: list[list[str]],
        run_batch: Callable[[list[str]], Awaitable[list[ValidationIssue]]],
    ) -> list[ValidationIssue]:
        semaphore = asyncio.Semaphore(batch_concurrency())

        async def bounded(batch: list[str]) -> list[ValidationIssue]:
            async with semaphore:
                return await run_batch(batch)

        results = await gather_cancelling(bounded(batch) for batch in batches)
        return [issue for group in results for issue in group]

    async def _quality_batch(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        batch: list[str],
    ) -> list[ValidationIssue]:
        prompt = prompts.validation.system_prompt if prompts.validation else None
        if self._capabilities.has(QUALITY_SERVICE, "batch_validate"):
            handle = self._capabilities.handle(QUALITY_SERVICE, "batch_validate")
            try:
                reply = await handle.invoke(
                    ctx,
                    self._dispatcher,
                    timeout=settings.PIPELINE_VALIDATION_TIMEOUT_SECS,
                    nodes=[
                        {"node_id": node_id, "content": graph.node(node_id).body}
                        for node_id in batch
                    ],
                    age_group=request.age_group.value,
                    language=request.language.value,
                    educational_goals=list(request.educational_goals),
                    system_prompt=prompt,
                )
            except DispatchError as e:
                return unavailable_issues(batch, IssueCategory.QUALITY, e.message)
            return batch_quality_issues(batch, reply.results)

        handle = self._capabilities.handle(QUALITY_SERVICE, "validate_quality")

        async def one(node_id: str) -> list[ValidationIssue]:
            try:
                result = await handle.invoke(
                    ctx,
                    self._dispatcher,
                    timeout=settings.PIPELINE_VALIDATION_TIMEOUT_SECS,
                    node_id=node_id,
                    content=graph.node(node_id).body,
                    age_group=request.age_group.value,
                    language=request.language.value,
                    educational_goals=list(request.educational_goals),
                    system_prompt=prompt,
                )
            except DispatchError as e:
                return unavailable_issues([node_id], IssueCategory.QUALITY, e.message)
            return quality_issues(node_id, result)

        results = await gather_cancelling(one(node_id) for node_id in batch)
        return [issue for group in results for issue in group]

    async def _constraint_batch(
        self,
        ctx: RequestContext,
        graph: StoryGraph,
        prompts: PromptBundle,
        request: GenerationRequest,
        batch: list[str],
    ) -> list[ValidationIssue]:
        prompt = prompts.constraint.system_prompt if prompts.constraint else None
        handle = self._capabilities.handle(CONSTRAINT_SERVICE, "validate_constraints")

        async def one(node_id: str) -> list[ValidationIssue]:
            try:
                result = await handle.invoke(
                    ctx,
                    self._dispatcher,
                    timeout=settings.PIPELINE_VALIDATION_TIMEOUT_SECS,
                    node_id=node_id,
                    content=graph.node(node_id).body,
                    theme=request.theme,
                    vocabulary_level=request.vocabulary_level.value,
                    language=request.language.value,
                    required_elements=list(request.required_elements),
                    system_prompt=prompt,
                )
            except DispatchError as e:
                return unavailable_issues([node_id], IssueCategory.CONSTRAINT, e.message)
            return constraint_issues(node_id, result)

        results = await gather_cancelling(one(node_id) for node_id in batch)
        return [issue for group in results for issue in group]
