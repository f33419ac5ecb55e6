# orchestration/tracer.py
"""Append-only execution trace kept for the life of one request."""

from __future__ import annotations

import itertools
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog
from config import settings
from models.trace_models import (
    CorrectionSummary,
    EntryKind,
    IssueSummary,
    PhaseTotal,
    PipelinePhase,
    ServiceInvocationSummary,
    TraceArtifact,
    TraceEntry,
)
from pydantic import ValidationError

logger = structlog.get_logger(__name__)


@dataclass
class ExecutionTracer:
    """Record service invocations, phase transitions, rounds and corrections.

    The tracer never raises into the pipeline. Once ``max_entries`` is reached,
    or if an entry cannot be built, the entry is dropped and counted instead.
    """

    request_id: str
    max_entries: int = field(default_factory=lambda: settings.TRACE_MAX_ENTRIES)
    clock: Callable[[], float] = time.monotonic
    entries: list[TraceEntry] = field(default_factory=list)
    dropped_entries: int = 0
    _seq: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)
    _phases_completed: list[PipelinePhase] = field(default_factory=list, repr=False)
    _phase_started: dict[PipelinePhase, float] = field(default_factory=dict, repr=False)
    _started_at: float | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._started_at = self.clock()

    def record(self, kind: EntryKind, **fields: Any) -> TraceEntry | None:
        if len(self.entries) >= self.max_entries:
            self._drop(kind)
            return None
        try:
            entry = TraceEntry(seq=next(self._seq), kind=kind, **fields)
            self.entries.append(entry)
        except (MemoryError, ValidationError):
            self._drop(kind)
            return None
        return entry

    def _drop(self, kind: EntryKind) -> None:
        self.dropped_entries += 1
        if self.dropped_entries == 1:
            logger.warning(
                "Trace capacity reached; dropping further entries.",
                request_id=self.request_id,
                kind=kind.value,
            )

    def record_invocation(
        self,
        *,
        phase: PipelinePhase | None,
        service: str,
        tool: str,
        duration_ms: float,
        success: bool,
        call_request_id: str | None = None,
        attempt: int | None = None,
        error: str | None = None,
    ) -> TraceEntry | None:
        return self.record(
            EntryKind.INVOCATION,
            phase=phase,
            service=service,
            tool=tool,
            duration_ms=duration_ms,
            success=success,
            call_request_id=call_request_id,
            attempt=attempt,
            error=error,
        )

    def begin_phase(self, phase: PipelinePhase) -> None:
        self._phase_started[phase] = self.clock()
        self.record(EntryKind.PHASE, phase=phase, details={"transition": "begin"})

    def end_phase(
        self, phase: PipelinePhase, success: bool = True, error: str | None = None
    ) -> None:
        started = self._phase_started.pop(phase, None)
        duration_ms = (self.clock() - started) * 1000 if started is not None else 0.0
        self.record(
            EntryKind.PHASE,
            phase=phase,
            duration_ms=duration_ms,
            success=success,
            error=error,
            details={"transition": "end"},
        )
        if success and phase not in self._phases_completed:
            self._phases_completed.append(phase)

    def record_round(self, round_number: int, state: str, **details: Any) -> None:
        self.record(
            EntryKind.ROUND,
            phase=PipelinePhase.NEGOTIATION,
            details={"round": round_number, "state": state, **details},
        )

    def record_correction(
        self, node_id: str, correction_type: str, success: bool, attempts: int
    ) -> None:
        self.record(
            EntryKind.CORRECTION,
            phase=PipelinePhase.NEGOTIATION,
            success=success,
            details={
                "node_id": node_id,
                "type": correction_type,
                "attempts": attempts,
            },
        )

    def record_event(
        self, event_type: str, success: bool = True, error: str | None = None
    ) -> None:
        self.record(
            EntryKind.EVENT,
            success=success,
            error=error,
            details={"event_type": event_type},
        )

    def record_issue(
        self, phase: PipelinePhase | None, description: str, **details: Any
    ) -> None:
        self.record(
            EntryKind.ISSUE,
            phase=phase,
            success=False,
            error=description,
            details=details,
        )

    @property
    def phases_completed(self) -> list[PipelinePhase]:
        return list(self._phases_completed)

    def invocations(self) -> list[TraceEntry]:
        return [e for e in self.entries if e.kind is EntryKind.INVOCATION]

    def summary(
        self, status: str, unresolved: Iterable[IssueSummary] = ()
    ) -> TraceArtifact:
        """Produce the trace artifact for the terminated request."""
        started = self._started_at if self._started_at is not None else self.clock()
        invocations: list[ServiceInvocationSummary] = []
        totals: dict[str, PhaseTotal] = {}
        corrections: list[CorrectionSummary] = []
        events: list[str] = []

        for entry in self.entries:
            if entry.kind is EntryKind.INVOCATION:
                invocations.append(
                    ServiceInvocationSummary(
                        service=entry.service or "",
                        tool=entry.tool or "",
                        duration_ms=entry.duration_ms,
                        success=entry.success,
                        request_id=entry.call_request_id,
                        attempt=entry.attempt,
                        phase=entry.phase,
                        error=entry.error,
                    )
                )
                key = entry.phase.value if entry.phase else "unphased"
                total = totals.setdefault(key, PhaseTotal())
                total.invocations += 1
                total.duration_ms += entry.duration_ms
                if not entry.success:
                    total.failures += 1
            elif entry.kind is EntryKind.CORRECTION:
                corrections.append(
                    CorrectionSummary(
                        node_id=entry.details["node_id"],
                        type=entry.details["type"],
                        success=entry.success,
                        attempts=entry.details["attempts"],
                    )
                )
            elif entry.kind is EntryKind.EVENT and entry.success:
                events.append(entry.details["event_type"])

        return TraceArtifact(
            request_id=self.request_id,
            status=status,
            total_duration_ms=(self.clock() - started) * 1000,
            phases_completed=self.phases_completed,
            phase_totals=totals,
            service_invocations=invocations,
            corrections=corrections,
            unresolved_issues=list(unresolved),
            events_published=events,
            dropped_entries=self.dropped_entries,
            entries=list(self.entries),
        )
