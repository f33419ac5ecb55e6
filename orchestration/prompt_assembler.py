# orchestration/prompt_assembler.py
"""Fetch story, validation and constraint prompt packages concurrently."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from async_lru import alru_cache
from config import settings
from core.capabilities import CapabilityTable, ToolHandle
from core.discovery import PROMPT_SERVICE
from core.dispatcher import MessageDispatcher
from core.errors import (
    DispatchError,
    DispatchTimeoutError,
    OrchestrationError,
    PromptStoryFailedError,
)
from models.prompt_models import PromptBundle, PromptKind, PromptPackage
from models.request_models import GenerationRequest, Language
from models.trace_models import PipelinePhase

from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)

PROMPT_TOOLS: dict[PromptKind, str] = {
    PromptKind.STORY: "generate_story_prompts",
    PromptKind.VALIDATION: "generate_validation_prompts",
    PromptKind.CONSTRAINT: "generate_constraint_prompts",
}


def _prompt_arguments(kind: PromptKind, request: GenerationRequest) -> dict[str, Any]:
    if kind is PromptKind.STORY:
        return {
            "theme": request.theme,
            "age_group": request.age_group.value,
            "language": request.language.value,
            "educational_goals": list(request.educational_goals),
        }
    if kind is PromptKind.VALIDATION:
        return {
            "age_group": request.age_group.value,
            "language": request.language.value,
            "content_type": "story",
        }
    return {
        "vocabulary_level": request.vocabulary_level.value,
        "language": request.language.value,
        "required_elements": list(request.required_elements),
    }


class ModelCatalog:
    """Model id per tenant and language as named by the prompt service.

    Lookups are process-level calls outside any request trace. A failed lookup
    raises and is not cached, so the next request asks again.
    """

    def __init__(self, dispatcher: MessageDispatcher, maxsize: int | None = None):
        self._dispatcher = dispatcher
        self.model_for = alru_cache(maxsize=maxsize or settings.MODEL_CACHE_SIZE)(self._lookup)

    async def _lookup(self, handle: ToolHandle, language: Language, tenant: str) -> str:
        result = await handle.invoke(
            RequestContext.system(tenant),
            self._dispatcher,
            timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS,
            language=language.value,
        )
        logger.info(
            "Resolved model for language.",
            language=language.value,
            tenant=tenant,
            model_id=result.model_id,
        )
        return result.model_id


class PromptAssembler:
    """Only the story package is mandatory; the others are best effort."""

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        capabilities: CapabilityTable,
        models: ModelCatalog | None = None,
    ):
        self._dispatcher = dispatcher
        self._capabilities = capabilities
        self._models = models or ModelCatalog(dispatcher)

    async def assemble(
        self, ctx: RequestContext, request: GenerationRequest
    ) -> PromptBundle:
        tasks = {
            kind: asyncio.ensure_future(self._fetch(ctx, kind, request))
            for kind in PromptKind
        }
        try:
            _, pending = await asyncio.wait(
                tasks.values(), timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS
            )
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        packages: dict[PromptKind, PromptPackage] = {}
        for kind, task in tasks.items():
            if task.cancelled():
                error: BaseException | None = DispatchTimeoutError(
                    "prompt generation did not settle within the pipeline timeout",
                    service=PROMPT_SERVICE,
                    tool=PROMPT_TOOLS[kind],
                )
            else:
                error = task.exception()
            if error is None:
                packages[kind] = task.result()
                continue
            if not isinstance(error, OrchestrationError):
                raise error
            if kind is PromptKind.STORY:
                logger.error(
                    "Story prompt generation failed.",
                    request_id=ctx.request_id,
                    error=str(error),
                )
                raise PromptStoryFailedError(
                    f"story prompts unavailable: {error.message}",
                    details={"cause": error.code},
                ) from error
            logger.warning(
                f"{kind.value.capitalize()} prompt generation failed; continuing without it.",
                request_id=ctx.request_id,
                error=str(error),
            )
            ctx.tracer.record_issue(
                PipelinePhase.PROMPTS,
                f"{kind.value} prompt package omitted",
                code=error.code,
            )

        for kind, package in list(packages.items()):
            if package.model_id is None:
                model_id = await self.resolve_model(ctx, request.language)
                packages[kind] = package.model_copy(update={"model_id": model_id})

        logger.info(
            "Prompt generation completed.",
            request_id=ctx.request_id,
            prompts_generated=len(packages),
        )
        return PromptBundle(
            story=packages[PromptKind.STORY],
            validation=packages.get(PromptKind.VALIDATION),
            constraint=packages.get(PromptKind.CONSTRAINT),
        )

    async def _fetch(
        self, ctx: RequestContext, kind: PromptKind, request: GenerationRequest
    ) -> PromptPackage:
        handle = self._capabilities.handle(PROMPT_SERVICE, PROMPT_TOOLS[kind])
        package: PromptPackage = await handle.invoke(
            ctx,
            self._dispatcher,
            timeout=settings.PIPELINE_GENERATION_TIMEOUT_SECS,
            **_prompt_arguments(kind, request),
        )
        return package.model_copy(
            update={"kind": kind, "language": package.language or request.language.value}
        )

    async def resolve_model(self, ctx: RequestContext, language: Language) -> str:
        """Model for ``language``, remembered once the prompt service names one."""
        if not self._capabilities.has(PROMPT_SERVICE, "get_model_for_language"):
            return settings.DEFAULT_MODEL_ID
        handle = self._capabilities.handle(PROMPT_SERVICE, "get_model_for_language")
        try:
            return await self._models.model_for(handle, language, ctx.tenant)
        except DispatchError as e:
            logger.warning(
                "Model lookup failed; using the default model.",
                language=language.value,
                error=str(e),
            )
            return settings.DEFAULT_MODEL_ID
