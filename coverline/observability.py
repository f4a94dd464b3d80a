"""Pipeline observability — structured events, observers and metrics.

The pipeline never writes to a logging backend directly for its stage
bookkeeping; it emits :class:`PipelineEvent` records to an injected
:class:`PipelineObserver`.  Three observers are provided:

- :class:`LoggingObserver` — forwards events to a stdlib logger
- :class:`MetricsRecorder` — keeps per-stage latency and per-carrier
  success/failure counters and response times in memory
- :class:`CompositeObserver` — fans an event out to several observers
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger("coverline.observability")

EventLevel = Literal["debug", "info", "warning", "error"]

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class PipelineEvent(BaseModel):
    """A single structured pipeline event.

    Attributes:
        name: Dotted event name (``stage.completed``, ``carrier.failed`` ...).
        level: Severity of the event.
        request_id: Pipeline run the event belongs to.
        stage: Stage name, when the event is stage-scoped.
        carrier_id: Carrier id, when the event is carrier-scoped.
        duration_ms: Elapsed time, for timing events.
        attributes: Free-form extra data.
    """

    name: str
    level: EventLevel = "info"
    request_id: str | None = None
    stage: str | None = None
    carrier_id: str | None = None
    duration_ms: float | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class StageStats(BaseModel):
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class CarrierStats(BaseModel):
    success: int = 0
    failure: int = 0
    failures_by_kind: dict[str, int] = Field(default_factory=dict)
    total_ms: float = 0.0
    timed_calls: int = 0
    last_success_at: datetime | None = None

    @property
    def calls(self) -> int:
        return self.success + self.failure

    @property
    def success_rate(self) -> float:
        return self.success / self.calls if self.calls else 0.0

    @property
    def error_rate(self) -> float:
        return self.failure / self.calls if self.calls else 0.0

    @property
    def mean_ms(self) -> float:
        return self.total_ms / self.timed_calls if self.timed_calls else 0.0

    def record_duration(self, duration_ms: float | None) -> None:
        if duration_ms is not None:
            self.total_ms += duration_ms
            self.timed_calls += 1


# ---------------------------------------------------------------------------
# Observers
# ---------------------------------------------------------------------------


class PipelineObserver(Protocol):
    def emit(self, event: PipelineEvent) -> None: ...


class NullObserver:
    """Discards every event."""

    def emit(self, event: PipelineEvent) -> None:
        return None


class LoggingObserver:
    """Writes events to a stdlib logger at the event's level."""

    def __init__(self, name: str = "coverline.pipeline") -> None:
        self._logger = logging.getLogger(name)

    def emit(self, event: PipelineEvent) -> None:
        parts = [event.name]
        if event.request_id:
            parts.append(f"request={event.request_id}")
        if event.stage:
            parts.append(f"stage={event.stage}")
        if event.carrier_id:
            parts.append(f"carrier={event.carrier_id}")
        if event.duration_ms is not None:
            parts.append(f"duration_ms={event.duration_ms:.1f}")
        for key, value in event.attributes.items():
            parts.append(f"{key}={value}")
        self._logger.log(_LEVELS[event.level], " ".join(parts))


class MetricsRecorder:
    """In-memory counters fed from pipeline events.

    ``stage.completed`` events update per-stage latency; ``carrier.succeeded``
    and ``carrier.failed`` events update per-carrier counters;
    ``pipeline.completed`` increments the run counter.
    """

    def __init__(self) -> None:
        self.stages: dict[str, StageStats] = defaultdict(StageStats)
        self.carriers: dict[str, CarrierStats] = defaultdict(CarrierStats)
        self.runs = 0
        self.quotes_returned = 0

    def emit(self, event: PipelineEvent) -> None:
        if event.name == "stage.completed" and event.stage:
            stats = self.stages[event.stage]
            duration = event.duration_ms or 0.0
            stats.count += 1
            stats.total_ms += duration
            stats.max_ms = max(stats.max_ms, duration)
        elif event.name == "carrier.succeeded" and event.carrier_id:
            stats = self.carriers[event.carrier_id]
            stats.success += 1
            stats.last_success_at = datetime.now(timezone.utc)
            stats.record_duration(event.duration_ms)
        elif event.name == "carrier.failed" and event.carrier_id:
            stats = self.carriers[event.carrier_id]
            stats.failure += 1
            stats.record_duration(event.duration_ms)
            kind = str(event.attributes.get("kind", "error"))
            stats.failures_by_kind[kind] = stats.failures_by_kind.get(kind, 0) + 1
        elif event.name == "pipeline.completed":
            self.runs += 1
            self.quotes_returned += int(event.attributes.get("quotes", 0))

    def carrier_stats(self, carrier_id: str) -> CarrierStats | None:
        """Counters for one carrier, or ``None`` if it has not been called."""
        return self.carriers.get(carrier_id)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serialisable copy of all counters."""
        return {
            "runs": self.runs,
            "quotes_returned": self.quotes_returned,
            "stages": {
                name: {
                    "count": s.count,
                    "mean_ms": round(s.mean_ms, 2),
                    "max_ms": round(s.max_ms, 2),
                }
                for name, s in self.stages.items()
            },
            "carriers": {
                cid: {
                    "success": c.success,
                    "failure": c.failure,
                    "success_rate": round(c.success_rate, 4),
                    "error_rate": round(c.error_rate, 4),
                    "avg_response_ms": round(c.mean_ms, 2),
                    "failures_by_kind": dict(c.failures_by_kind),
                }
                for cid, c in self.carriers.items()
            },
        }


class CompositeObserver:
    """Forwards each event to every wrapped observer.

    A failing observer is logged and skipped so observability can never
    break a pipeline run.
    """

    def __init__(self, *observers: PipelineObserver) -> None:
        self.observers = list(observers)

    def emit(self, event: PipelineEvent) -> None:
        for observer in self.observers:
            try:
                observer.emit(event)
            except Exception:
                logger.exception("Observer %r failed on event %s", observer, event.name)
