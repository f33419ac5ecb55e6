# core/envelope.py
"""Envelope framing for tool calls exchanged over the message bus."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from config import settings
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_request_id() -> str:
    return str(uuid.uuid4())


def new_span_id() -> str:
    return uuid.uuid4().hex[:16]


class TracingMeta(BaseModel):
    trace_id: str
    span_id: str | None = None


class Meta(BaseModel):
    request_id: str
    tenant: str
    timestamp: datetime = Field(default_factory=_utcnow)
    tracing: TracingMeta | None = None
    version: str = Field(default_factory=lambda: settings.PROTOCOL_VERSION)


class ToolCall(BaseModel):
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolResponse(BaseModel):
    content: Any = None
    is_error: bool = False


class ErrorObject(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class RequestEnvelope(BaseModel):
    meta: Meta
    payload: ToolCall


class ReplyEnvelope(BaseModel):
    meta: Meta
    tool_response: ToolResponse | None = None
    error: ErrorObject | None = None


def decode_tool_content(content: Any) -> Any:
    """Unwrap MCP-style text blocks and JSON strings into plain data.

    Services reply either with structured JSON or with a list of content
    blocks whose first text block holds a JSON document. Text that is not JSON
    is returned unchanged.
    """
    if isinstance(content, list) and content and isinstance(content[0], dict):
        first = content[0]
        if first.get("type") == "text" and "text" in first:
            content = first["text"]
    if isinstance(content, str):
        stripped = content.strip()
        if stripped.startswith(("{", "[")):
            try:
                return json.loads(stripped)
            except json.JSONDecodeError:
                return content
    return content
