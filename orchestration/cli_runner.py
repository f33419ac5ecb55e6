# orchestration/cli_runner.py
"""Command-line runner for the TaleTrail orchestrator."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import structlog
import yaml
from config import settings
from core.transport import HttpGatewayTransport
from models.result_models import OrchestrationResult, ResultStatus
from rich.console import Console
from rich.table import Table
from utils.logging import setup_logging

from orchestration.orchestrator import TrailOrchestrator

logger = structlog.get_logger(__name__)

EXIT_CODES = {
    ResultStatus.SUCCESS: 0,
    ResultStatus.PARTIAL: 1,
    ResultStatus.FATAL: 2,
    ResultStatus.CANCELLED: 3,
}


def load_request_file(path: str | Path) -> dict[str, Any]:
    """Read a generation request from a YAML or JSON file."""
    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError(f"request file {path} must contain a mapping")
    return data


def render_summary(result: OrchestrationResult, console: Console | None = None) -> None:
    console = console or Console()
    trace = result.trace

    table = Table(title=f"TaleTrail request {result.request_id}")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", result.status.value)
    table.add_row("Phases", ", ".join(phase.value for phase in trace.phases_completed))
    table.add_row("Nodes", str(len(result.graph)) if result.graph is not None else "-")
    table.add_row("Trail steps", str(len(result.trail_steps)))
    table.add_row("Service calls", str(len(trace.service_invocations)))
    table.add_row("Corrections", str(len(trace.corrections)))
    if result.negotiation is not None:
        table.add_row("Validation rounds", str(result.negotiation.validation_rounds))
    table.add_row("Duration", f"{trace.total_duration_ms / 1000:.1f}s")
    if result.error:
        table.add_row("Error", f"{result.error['code']}: {result.error['message']}")
    console.print(table)

    if result.unresolved_issues:
        issues = Table(title="Unresolved issues")
        issues.add_column("Node")
        issues.add_column("Severity")
        issues.add_column("Kind")
        issues.add_column("Description")
        for issue in result.unresolved_issues:
            issues.add_row(issue.node_id, issue.severity, issue.issue_type, issue.description)
        console.print(issues)


async def _run(
    request: dict[str, Any], gateway: str, max_rounds: int | None
) -> OrchestrationResult:
    transport = HttpGatewayTransport(gateway, settings.BUS_GATEWAY_TOKEN)
    orchestrator = TrailOrchestrator.from_transport(transport)
    try:
        return await orchestrator.orchestrate(request, max_rounds=max_rounds)
    finally:
        await orchestrator.aclose()


def run(
    request_path: str,
    gateway: str | None = None,
    max_rounds: int | None = None,
    as_json: bool = False,
) -> int:
    """Run one orchestration and return the process exit code."""
    setup_logging()
    try:
        request = load_request_file(request_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error("Could not load request file.", path=request_path, error=str(e))
        return EXIT_CODES[ResultStatus.FATAL]

    try:
        result = asyncio.run(_run(request, gateway or settings.BUS_GATEWAY_URL, max_rounds))
    except KeyboardInterrupt:
        logger.info("TaleTrail orchestrator shutting down due to KeyboardInterrupt...")
        return EXIT_CODES[ResultStatus.CANCELLED]

    if as_json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        render_summary(result)
    return EXIT_CODES[result.status]
