# core/discovery.py
"""Process-wide registry of discovered bus services and their tool catalogues."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from config import settings
from models.trace_models import PipelinePhase
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from core.dispatcher import MessageDispatcher, RetryPolicy, discovery_subject
from core.errors import DiscoveryError, DiscoveryRequiredMissingError, DispatchError
from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)

PROMPT_SERVICE = "prompt-helper"
STORY_SERVICE = "story-generator"
QUALITY_SERVICE = "quality-control"
CONSTRAINT_SERVICE = "constraint-enforcer"

# Tools a service must advertise before the pipeline may rely on it
REQUIRED_TOOLS: dict[str, tuple[str, ...]] = {
    PROMPT_SERVICE: (
        "generate_story_prompts",
        "generate_validation_prompts",
        "generate_constraint_prompts",
    ),
    STORY_SERVICE: ("generate_structure", "generate_nodes"),
    QUALITY_SERVICE: ("validate_quality",),
    CONSTRAINT_SERVICE: ("validate_constraints",),
}


class ServiceHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class ToolCapabilities(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    batching: bool = False
    retry: bool = False
    caching: bool = False
    streaming: bool = False


class ToolDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    name: str
    input_schema: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("input_schema", "inputSchema"),
    )
    output_schema: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("output_schema", "outputSchema"),
    )
    capabilities: ToolCapabilities = Field(default_factory=ToolCapabilities)


class ServiceDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    protocol_version: str
    tools: tuple[ToolDescriptor, ...]
    health: ServiceHealth = ServiceHealth.HEALTHY
    last_probed: datetime

    @property
    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]

    def has_tool(self, name: str) -> bool:
        return any(tool.name == name for tool in self.tools)


@dataclass
class _CacheEntry:
    descriptor: ServiceDescriptor
    probed_at: float


class DiscoveryRegistry:
    """TTL cache of service descriptors with single-flight probing.

    The cache, in-flight probes and failure counters are only mutated while
    holding ``_lock``. Concurrent callers for the same service await one shared
    probe task.
    """

    def __init__(
        self,
        dispatcher: MessageDispatcher,
        ttl_secs: float | None = None,
        evict_after_failures: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._dispatcher = dispatcher
        self._ttl = ttl_secs if ttl_secs is not None else settings.DISCOVERY_TTL_SECS
        self._evict_after = (
            evict_after_failures
            if evict_after_failures is not None
            else settings.DISCOVERY_EVICT_AFTER_FAILURES
        )
        self._clock = clock
        self._lock = asyncio.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[ServiceDescriptor]] = {}
        self._failures: dict[str, int] = {}
        self.probe_count = 0

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        return self._clock() - entry.probed_at < self._ttl

    def cached(self, service: str) -> ServiceDescriptor | None:
        entry = self._cache.get(service)
        return entry.descriptor if entry is not None else None

    def clear(self) -> None:
        """Forget every cached descriptor and failure count."""
        self._cache.clear()
        self._failures.clear()
        logger.info("Discovery cache cleared.")

    async def discover(
        self, service: str, ctx: RequestContext | None = None
    ) -> ServiceDescriptor:
        async with self._lock:
            entry = self._cache.get(service)
            if entry is not None and self._is_fresh(entry):
                return entry.descriptor
            task = self._inflight.get(service)
            if task is None:
                task = asyncio.ensure_future(self._refresh(service, ctx))
                self._inflight[service] = task
        return await asyncio.shield(task)

    async def _refresh(
        self, service: str, ctx: RequestContext | None
    ) -> ServiceDescriptor:
        try:
            descriptor = await self._probe(service, ctx)
        except asyncio.CancelledError:
            self._inflight.pop(service, None)
            raise
        except (DispatchError, DiscoveryError) as e:
            async with self._lock:
                self._inflight.pop(service, None)
                failures = self._failures.get(service, 0) + 1
                self._failures[service] = failures
                entry = self._cache.get(service)
                if entry is not None and failures < self._evict_after:
                    stale = entry.descriptor.model_copy(
                        update={"health": ServiceHealth.DEGRADED}
                    )
                    self._cache[service] = _CacheEntry(stale, entry.probed_at)
                    logger.warning(
                        "Discovery re-probe failed; serving stale descriptor.",
                        service=service,
                        failures=failures,
                        error=str(e),
                    )
                    return stale
                if entry is not None:
                    del self._cache[service]
                    logger.warning(
                        "Evicted service after repeated probe failures.",
                        service=service,
                        failures=failures,
                    )
            raise DiscoveryError(
                f"discovery of '{service}' failed: {e}", details={"service": service}
            ) from e
        async with self._lock:
            self._inflight.pop(service, None)
            self._failures.pop(service, None)
            self._cache[service] = _CacheEntry(descriptor, self._clock())
        logger.info(
            "Discovered service.", service=service, tools=descriptor.tool_names
        )
        return descriptor

    async def _probe(
        self, service: str, ctx: RequestContext | None
    ) -> ServiceDescriptor:
        self.probe_count += 1
        probe_ctx = (ctx or RequestContext.system("discovery")).for_phase(
            PipelinePhase.DISCOVERY
        )
        content = await self._dispatcher.dispatch(
            probe_ctx,
            service,
            "list_tools",
            {},
            timeout=settings.DISCOVERY_TIMEOUT_SECS,
            subject=discovery_subject(service, "list_tools"),
        )
        return self._parse_descriptor(service, content)

    @staticmethod
    def _parse_descriptor(service: str, content: Any) -> ServiceDescriptor:
        if isinstance(content, list):
            content = {"tools": content}
        if not isinstance(content, dict):
            raise DiscoveryError(
                f"'{service}' answered list_tools with {type(content).__name__}",
                details={"service": service},
            )
        try:
            tools = tuple(
                ToolDescriptor.model_validate(tool) for tool in content.get("tools", [])
            )
            health = ServiceHealth(content.get("health", ServiceHealth.HEALTHY.value))
        except (ValidationError, ValueError) as e:
            raise DiscoveryError(
                f"'{service}' returned a malformed tool catalogue: {e}",
                details={"service": service},
            ) from e
        return ServiceDescriptor(
            name=service,
            protocol_version=str(
                content.get("protocol_version", settings.PROTOCOL_VERSION)
            ),
            tools=tools,
            health=health,
            last_probed=datetime.now(timezone.utc),
        )

    async def health_check(
        self, service: str, ctx: RequestContext | None = None
    ) -> ServiceHealth:
        async with self._lock:
            entry = self._cache.get(service)
            if entry is not None and self._is_fresh(entry):
                return entry.descriptor.health
        probe_ctx = (ctx or RequestContext.system("discovery")).for_phase(
            PipelinePhase.DISCOVERY
        )
        try:
            content = await self._dispatcher.dispatch(
                probe_ctx,
                service,
                "health",
                {},
                timeout=settings.DISCOVERY_TIMEOUT_SECS,
                retry_policy=RetryPolicy(max_attempts=1),
                subject=discovery_subject(service, "health"),
            )
        except DispatchError as e:
            logger.warning("Health probe failed.", service=service, error=str(e))
            status = ServiceHealth.UNAVAILABLE
        else:
            raw = content.get("status") if isinstance(content, dict) else content
            try:
                status = ServiceHealth(raw) if raw else ServiceHealth.HEALTHY
            except ValueError:
                logger.warning(
                    "Unknown health status reported.", service=service, status=raw
                )
                status = ServiceHealth.DEGRADED
        async with self._lock:
            entry = self._cache.get(service)
            if entry is not None:
                self._cache[service] = _CacheEntry(
                    entry.descriptor.model_copy(update={"health": status}),
                    entry.probed_at,
                )
        return status

    async def discover_all(
        self,
        required: Iterable[str] | None = None,
        optional: Iterable[str] | None = None,
        ctx: RequestContext | None = None,
    ) -> dict[str, ServiceDescriptor | None]:
        """Discover every service; fail fast when a required one is missing.

        Optional services that cannot be discovered map to ``None``.
        """
        required_names = list(
            required if required is not None else settings.DISCOVERY_REQUIRED_SERVICES
        )
        optional_names = [
            name
            for name in (
                optional
                if optional is not None
                else settings.DISCOVERY_OPTIONAL_SERVICES
            )
            if name not in required_names
        ]
        names = required_names + optional_names
        results = await asyncio.gather(
            *(self.discover(name, ctx) for name in names), return_exceptions=True
        )

        discovered: dict[str, ServiceDescriptor | None] = {}
        missing: dict[str, str] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if not isinstance(result, DiscoveryError):
                    raise result
                reason = result.message
            else:
                lacking = [
                    tool
                    for tool in REQUIRED_TOOLS.get(name, ())
                    if not result.has_tool(tool)
                ]
                if not lacking:
                    discovered[name] = result
                    continue
                reason = f"missing tools: {', '.join(lacking)}"

            if name in required_names:
                missing[name] = reason
            else:
                logger.warning(
                    "Optional service unavailable; continuing without it.",
                    service=name,
                    reason=reason,
                )
                discovered[name] = None

        if missing:
            raise DiscoveryRequiredMissingError(
                f"required services unavailable: {', '.join(sorted(missing))}",
                details={"missing": missing},
            )
        return discovered
