"""Assignment attempt tracing."""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Generator
from uuid import UUID

from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class TraceEvent:
    """Individual step of one assignment attempt."""

    timestamp: datetime
    step: str
    delivery_id: UUID
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AssignmentTracer:
    """Times the locate, rank and commit steps of one assignment attempt."""

    def __init__(self, delivery_id: UUID):
        self.delivery_id = delivery_id
        self.events: list[TraceEvent] = []
        self.start_time = time.perf_counter()

    def add_event(
        self,
        step: str,
        duration_ms: float | None = None,
        **metadata: Any,
    ) -> None:
        """Add a trace event."""
        event = TraceEvent(
            timestamp=datetime.now(timezone.utc),
            step=step,
            delivery_id=self.delivery_id,
            duration_ms=duration_ms,
            metadata=metadata,
        )
        self.events.append(event)

        logger.debug(
            "trace_event",
            delivery_id=str(self.delivery_id),
            step=step,
            duration_ms=duration_ms,
            **metadata,
        )

    @contextmanager
    def trace_operation(
        self,
        step: str,
        **metadata: Any,
    ) -> Generator[dict[str, Any], None, None]:
        """
        Context manager that times one step.

        Yields a dict the caller may fill with extra metadata (candidate
        counts, chosen rider) that is recorded when the step finishes.
        """
        start = time.perf_counter()
        extra: dict[str, Any] = {}
        try:
            yield extra
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.add_event(step, duration_ms=duration_ms, **metadata, **extra)

    def get_trace_summary(self) -> dict[str, Any]:
        """Get a summary of the trace."""
        total_duration = (time.perf_counter() - self.start_time) * 1000

        return {
            "delivery_id": str(self.delivery_id),
            "total_duration_ms": round(total_duration, 3),
            "total_events": len(self.events),
            "events": [
                {
                    "timestamp": event.timestamp.isoformat(),
                    "step": event.step,
                    "duration_ms": (
                        round(event.duration_ms, 3) if event.duration_ms is not None else None
                    ),
                    "metadata": event.metadata,
                }
                for event in self.events
            ],
        }
