# orchestration/context.py
"""Per-request context threaded through every core operation."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace

from models.request_models import GenerationRequest
from models.trace_models import PipelinePhase

from orchestration.tracer import ExecutionTracer


@dataclass(frozen=True)
class RequestContext:
    """Tenant, tracing metadata and trace sink for one orchestration request.

    Passed explicitly as the first argument of core operations instead of
    living in ambient state, so concurrent requests never share tracing data.
    """

    request_id: str
    tenant: str
    trace_id: str
    tracer: ExecutionTracer
    phase: PipelinePhase | None = None

    @classmethod
    def for_request(
        cls, request: GenerationRequest, request_id: str | None = None
    ) -> RequestContext:
        request_id = request_id or str(uuid.uuid4())
        return cls(
            request_id=request_id,
            tenant=request.tenant,
            trace_id=request_id,
            tracer=ExecutionTracer(request_id=request_id),
        )

    @classmethod
    def system(cls, purpose: str = "orchestrator") -> RequestContext:
        """Context for process-level calls that belong to no request."""
        request_id = str(uuid.uuid4())
        return cls(
            request_id=request_id,
            tenant=purpose,
            trace_id=request_id,
            tracer=ExecutionTracer(request_id=request_id),
        )

    def for_phase(self, phase: PipelinePhase) -> RequestContext:
        return replace(self, phase=phase)

    @contextmanager
    def in_phase(self, phase: PipelinePhase) -> Iterator[RequestContext]:
        """Trace the begin and end of ``phase`` around the enclosed block."""
        self.tracer.begin_phase(phase)
        try:
            yield self.for_phase(phase)
        except BaseException as e:
            self.tracer.end_phase(
                phase, success=False, error=getattr(e, "code", type(e).__name__)
            )
            raise
        self.tracer.end_phase(phase)
