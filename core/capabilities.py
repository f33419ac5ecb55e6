# core/capabilities.py
"""Typed capability table built from discovered service descriptors.

Each ``(service, tool)`` pair the orchestrator knows how to call is bound to an
argument model and a result model. Components obtain a ``ToolHandle`` from the
table instead of dispatching on raw tool-name strings, so a call to a tool that
was never discovered fails at startup of the request rather than on the wire.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import structlog
from models.prompt_models import PromptPackage
from models.tool_models import (
    BatchValidateArgs,
    BatchValidateResult,
    ConstraintPromptArgs,
    ConstraintResult,
    GenerateNodesArgs,
    GenerateNodesResult,
    GenerateStructureArgs,
    ModelForLanguageArgs,
    ModelForLanguageResult,
    QualityResult,
    StoryPromptArgs,
    StructureResult,
    ToolArguments,
    ValidateConstraintsArgs,
    ValidatePathsArgs,
    ValidatePathsResult,
    ValidateQualityArgs,
    ValidationPromptArgs,
)
from pydantic import BaseModel, ValidationError

from core.discovery import (
    CONSTRAINT_SERVICE,
    PROMPT_SERVICE,
    QUALITY_SERVICE,
    STORY_SERVICE,
    ServiceDescriptor,
)
from core.errors import ToolInvocationError, UndiscoveredToolError

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from orchestration.context import RequestContext

    from core.dispatcher import MessageDispatcher, RetryPolicy

logger = structlog.get_logger(__name__)

ResultT = TypeVar("ResultT", bound=BaseModel)


@dataclass(frozen=True)
class ToolContract:
    args_model: type[ToolArguments]
    result_model: type[BaseModel]


TOOL_CONTRACTS: dict[tuple[str, str], ToolContract] = {
    (PROMPT_SERVICE, "generate_story_prompts"): ToolContract(
        StoryPromptArgs, PromptPackage
    ),
    (PROMPT_SERVICE, "generate_validation_prompts"): ToolContract(
        ValidationPromptArgs, PromptPackage
    ),
    (PROMPT_SERVICE, "generate_constraint_prompts"): ToolContract(
        ConstraintPromptArgs, PromptPackage
    ),
    (PROMPT_SERVICE, "get_model_for_language"): ToolContract(
        ModelForLanguageArgs, ModelForLanguageResult
    ),
    (STORY_SERVICE, "generate_structure"): ToolContract(
        GenerateStructureArgs, StructureResult
    ),
    (STORY_SERVICE, "generate_nodes"): ToolContract(
        GenerateNodesArgs, GenerateNodesResult
    ),
    (STORY_SERVICE, "validate_paths"): ToolContract(
        ValidatePathsArgs, ValidatePathsResult
    ),
    (QUALITY_SERVICE, "validate_quality"): ToolContract(
        ValidateQualityArgs, QualityResult
    ),
    (QUALITY_SERVICE, "batch_validate"): ToolContract(
        BatchValidateArgs, BatchValidateResult
    ),
    (CONSTRAINT_SERVICE, "validate_constraints"): ToolContract(
        ValidateConstraintsArgs, ConstraintResult
    ),
}


@dataclass(frozen=True)
class ToolHandle(Generic[ResultT]):
    """Bound tool of a discovered service."""

    service: str
    tool: str
    contract: ToolContract

    def build(self, **arguments: Any) -> dict[str, Any]:
        model = self.contract.args_model(**arguments)
        return model.model_dump(mode="json")

    def decode(self, content: Any, request_id: str | None = None) -> ResultT:
        try:
            return self.contract.result_model.model_validate(content)  # type: ignore[return-value]
        except ValidationError as e:
            raise ToolInvocationError(
                f"unexpected reply shape from '{self.tool}': {e.error_count()} errors",
                service=self.service,
                tool=self.tool,
                request_id=request_id,
                details={"errors": e.errors(include_url=False)[:5]},
            ) from e

    async def invoke(
        self,
        ctx: RequestContext,
        dispatcher: MessageDispatcher,
        *,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        **arguments: Any,
    ) -> ResultT:
        content = await dispatcher.dispatch(
            ctx,
            self.service,
            self.tool,
            self.build(**arguments),
            timeout=timeout,
            retry_policy=retry_policy,
        )
        try:
            return self.decode(content)
        except ToolInvocationError as e:
            ctx.tracer.record_issue(
                ctx.phase, e.message, service=self.service, tool=self.tool
            )
            raise


class CapabilityTable:
    """Handles for every discovered tool with a known contract."""

    def __init__(self, handles: Mapping[tuple[str, str], ToolHandle[Any]]):
        self._handles = dict(handles)

    @classmethod
    def from_descriptors(
        cls, descriptors: Mapping[str, ServiceDescriptor | None]
    ) -> CapabilityTable:
        handles: dict[tuple[str, str], ToolHandle[Any]] = {}
        for service, descriptor in descriptors.items():
            if descriptor is None:
                continue
            for tool in descriptor.tool_names:
                contract = TOOL_CONTRACTS.get((service, tool))
                if contract is None:
                    logger.debug(
                        "Ignoring advertised tool without a contract.",
                        service=service,
                        tool=tool,
                    )
                    continue
                handles[(service, tool)] = ToolHandle(service, tool, contract)
        return cls(handles)

    def has(self, service: str, tool: str) -> bool:
        return (service, tool) in self._handles

    def has_service(self, service: str) -> bool:
        return any(key[0] == service for key in self._handles)

    def handle(self, service: str, tool: str) -> ToolHandle[Any]:
        try:
            return self._handles[(service, tool)]
        except KeyError:
            raise UndiscoveredToolError(
                f"tool '{tool}' of '{service}' was not discovered",
                details={"service": service, "tool": tool},
            ) from None

    def __len__(self) -> int:
        return len(self._handles)


__all__ = [
    "CapabilityTable",
    "TOOL_CONTRACTS",
    "ToolContract",
    "ToolHandle",
]
