# core/dispatcher.py
"""
Sends envelope-framed tool calls to bus services and awaits the correlated
reply. Handles per-attempt timeouts, exponential backoff with jitter, and
records every attempt in the caller's execution trace.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from config import settings
from pydantic import ValidationError

from core.envelope import (
    Meta,
    ReplyEnvelope,
    RequestEnvelope,
    ToolCall,
    TracingMeta,
    decode_tool_content,
    new_request_id,
    new_span_id,
)
from core.errors import (
    DispatchError,
    DispatchTimeoutError,
    DispatchTransportError,
    ToolInvocationError,
)
from core.transport import MessageTransport, TransportError, TransportTimeout

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from orchestration.context import RequestContext

logger = structlog.get_logger(__name__)


def service_subject(service: str) -> str:
    return f"{settings.SUBJECT_PREFIX}.{service}.request"


def discovery_subject(service: str, tool: str) -> str:
    return f"{settings.SUBJECT_PREFIX}.discovery.{tool}.{service}"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.PIPELINE_RETRY_MAX_ATTEMPTS,
            base_delay=settings.PIPELINE_RETRY_BASE_DELAY_SECS,
            max_delay=settings.PIPELINE_RETRY_MAX_DELAY_SECS,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay / 2)


class MessageDispatcher:
    """Request/reply client shared by every request in the process."""

    def __init__(
        self,
        transport: MessageTransport,
        max_concurrency: int = settings.DISPATCH_MAX_CONCURRENCY,
    ):
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.request_count = 0
        logger.info(
            f"MessageDispatcher initialized with a concurrency limit of {max_concurrency}."
        )

    @property
    def transport(self) -> MessageTransport:
        return self._transport

    async def dispatch(
        self,
        ctx: RequestContext,
        service: str,
        tool: str,
        arguments: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        subject: str | None = None,
    ) -> Any:
        """Call ``tool`` on ``service`` and return the decoded reply content.

        All attempts reuse one request id. Timeouts and transport failures are
        retried; error replies from the service are not.
        """
        policy = retry_policy or RetryPolicy.from_settings()
        timeout = timeout if timeout is not None else settings.PIPELINE_GENERATION_TIMEOUT_SECS
        subject = subject or service_subject(service)
        request_id = new_request_id()
        envelope = RequestEnvelope(
            meta=Meta(
                request_id=request_id,
                tenant=ctx.tenant,
                tracing=TracingMeta(trace_id=ctx.trace_id, span_id=new_span_id()),
            ),
            payload=ToolCall(tool_name=tool, arguments=arguments or {}),
        )
        body = envelope.model_dump_json().encode("utf-8")

        last_error: DispatchError | None = None
        for attempt in range(1, policy.max_attempts + 1):
            started = time.monotonic()
            try:
                async with self._semaphore:
                    self.request_count += 1
                    raw = await asyncio.wait_for(
                        self._transport.request(subject, body, timeout), timeout
                    )
                reply = ReplyEnvelope.model_validate_json(raw)
                if reply.meta.request_id != request_id:
                    raise DispatchTransportError(
                        f"reply correlated to '{reply.meta.request_id}'",
                        service=service,
                        tool=tool,
                        request_id=request_id,
                    )
            except (asyncio.TimeoutError, TransportTimeout):
                last_error = DispatchTimeoutError(
                    f"'{tool}' on '{service}' timed out after {timeout}s",
                    service=service,
                    tool=tool,
                    request_id=request_id,
                )
            except (TransportError, ValidationError) as e_transport:
                last_error = DispatchTransportError(
                    f"'{tool}' on '{service}' failed: {e_transport}",
                    service=service,
                    tool=tool,
                    request_id=request_id,
                )
            except DispatchTransportError as e_corr:
                last_error = e_corr
            else:
                try:
                    content = self._unwrap(reply, service, tool, request_id)
                except ToolInvocationError as e_tool:
                    self._record(
                        ctx, service, tool, started, request_id, attempt, error=e_tool
                    )
                    raise
                self._record(ctx, service, tool, started, request_id, attempt)
                return content

            self._record(
                ctx, service, tool, started, request_id, attempt, error=last_error
            )
            if attempt < policy.max_attempts:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"Dispatch '{service}.{tool}' (Attempt {attempt}/{policy.max_attempts}): "
                    f"{last_error.message}. Retrying in {delay:.2f}s.",
                    request_id=request_id,
                )
                await asyncio.sleep(delay)

        assert last_error is not None
        logger.error(
            f"Dispatch '{service}.{tool}': all {policy.max_attempts} attempts failed.",
            request_id=request_id,
            code=last_error.code,
        )
        raise last_error

    def _unwrap(
        self, reply: ReplyEnvelope, service: str, tool: str, request_id: str
    ) -> Any:
        if reply.error is not None:
            raise ToolInvocationError(
                f"{reply.error.code}: {reply.error.message}",
                service=service,
                tool=tool,
                request_id=request_id,
                details={"remote": reply.error.model_dump(exclude_none=True)},
            )
        if reply.tool_response is None:
            raise ToolInvocationError(
                "reply carried neither a tool response nor an error",
                service=service,
                tool=tool,
                request_id=request_id,
            )
        content = decode_tool_content(reply.tool_response.content)
        if reply.tool_response.is_error:
            raise ToolInvocationError(
                f"tool reported an error: {content}",
                service=service,
                tool=tool,
                request_id=request_id,
            )
        return content

    def _record(
        self,
        ctx: RequestContext,
        service: str,
        tool: str,
        started: float,
        request_id: str,
        attempt: int,
        error: DispatchError | None = None,
    ) -> None:
        ctx.tracer.record_invocation(
            phase=ctx.phase,
            service=service,
            tool=tool,
            duration_ms=(time.monotonic() - started) * 1000,
            success=error is None,
            call_request_id=request_id,
            attempt=attempt,
            error=error.code if error else None,
        )
