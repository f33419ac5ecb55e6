# core/errors.py
"""Error taxonomy for the orchestration core.

Every error carries a stable ``code`` so the orchestrator can turn it into a
result envelope without inspecting messages.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base class for all failures surfaced by the orchestration core."""

    code = "orchestration-error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_object(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class DispatchError(OrchestrationError):
    code = "dispatch-error"

    def __init__(
        self,
        message: str,
        *,
        service: str,
        tool: str,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        merged = {"service": service, "tool": tool}
        if request_id:
            merged["request_id"] = request_id
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.service = service
        self.tool = tool
        self.request_id = request_id


class DispatchTimeoutError(DispatchError):
    """No correlated reply arrived before the deadline on every attempt."""

    code = "dispatch-timeout"


class DispatchTransportError(DispatchError):
    """The transport failed, or the reply was malformed or uncorrelated."""

    code = "dispatch-transport"


class ToolInvocationError(DispatchError):
    """The service answered with an error object or an error tool response."""

    code = "tool-error"


class DiscoveryError(OrchestrationError):
    code = "discovery-failed"


class DiscoveryRequiredMissingError(DiscoveryError):
    code = "discovery-required-missing"


class UndiscoveredToolError(OrchestrationError):
    code = "tool-undiscovered"


class PromptStoryFailedError(OrchestrationError):
    code = "prompt-story-failed"


class StructureInvalidError(OrchestrationError):
    code = "structure-invalid"


class NodeGeneratorIncompleteError(OrchestrationError):
    """A node batch came back without some of the requested nodes."""

    code = "node-generator-incomplete"

    def __init__(self, message: str, *, missing: list[str]):
        super().__init__(message, details={"missing": missing})
        self.missing = missing


class RequestInvalidError(OrchestrationError):
    code = "request-invalid"


class OrchestrationCancelledError(OrchestrationError):
    code = "cancelled"
