# orchestration/events.py
"""Pipeline progress events published on the bus for observers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import structlog
from config import settings
from core.transport import MessageTransport, TransportError
from pydantic import BaseModel, Field

from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)


class PipelineEventType(str, Enum):
    PROMPTS_GENERATED = "prompts_generated"
    STRUCTURE_CREATED = "structure_created"
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    VALIDATION_STARTED = "validation_started"
    NEGOTIATION_ROUND = "negotiation_round"
    NEGOTIATION_ROUND_COMPLETED = "negotiation_round_completed"
    COMPLETE = "complete"
    FAILED = "failed"


class PipelineEvent(BaseModel):
    request_id: str
    tenant: str
    event_type: PipelineEventType
    progress: int = Field(ge=0, le=100)
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PipelineEventPublisher:
    """Best-effort publisher; a failed publish is logged and traced, never raised."""

    def __init__(
        self,
        transport: MessageTransport,
        subject: str | None = None,
        enabled: bool | None = None,
    ):
        self._transport = transport
        self._subject = subject or settings.EVENTS_SUBJECT
        self._enabled = settings.EVENTS_ENABLED if enabled is None else enabled

    async def publish(
        self,
        ctx: RequestContext,
        event_type: PipelineEventType,
        progress: int,
        message: str = "",
        **details: Any,
    ) -> bool:
        if not self._enabled:
            return False
        event = PipelineEvent(
            request_id=ctx.request_id,
            tenant=ctx.tenant,
            event_type=event_type,
            progress=max(0, min(100, progress)),
            message=message,
            details=details,
        )
        try:
            await self._transport.publish(
                self._subject, event.model_dump_json().encode("utf-8")
            )
        except TransportError as e:
            logger.warning(
                "Failed to publish pipeline event.",
                request_id=ctx.request_id,
                event_type=event_type.value,
                error=str(e),
            )
            ctx.tracer.record_event(event_type.value, success=False, error=str(e))
            return False
        ctx.tracer.record_event(event_type.value)
        return True
