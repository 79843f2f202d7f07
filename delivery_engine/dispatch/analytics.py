"""Operational analytics over recent deliveries."""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel

from delivery_engine.models.delivery import Delivery, DeliveryStatus
from delivery_engine.state.clock import Clock
from delivery_engine.state.deliveries import DeliveryStore

SUCCESSFUL_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.COMPLETED})


class Timeframe(str, Enum):
    """Reporting windows."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class AssignmentAnalytics(BaseModel):
    """How assignment has been going over a timeframe."""

    timeframe: Timeframe
    since: datetime
    total_assignments: int = 0
    average_assignment_minutes: float = 0.0
    successful_deliveries: int = 0
    accepted: int = 0
    declined: int = 0
    expired: int = 0


class DeliveryMetrics(BaseModel):
    """Delivery throughput over a timeframe."""

    timeframe: Timeframe
    since: datetime
    total_orders: int = 0
    assigned_orders: int = 0
    delivered_orders: int = 0
    assignment_rate: float = 0.0
    delivery_rate: float = 0.0
    average_assignment_minutes: float = 0.0
    average_delivery_minutes: float = 0.0


def timeframe_start(timeframe: Timeframe, now: datetime) -> datetime:
    """Start of the reporting window. A day runs from UTC midnight."""
    if timeframe == Timeframe.DAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if timeframe == Timeframe.WEEK:
        return now - timedelta(days=7)
    return now - timedelta(days=30)


def _minutes(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return (end - start).total_seconds() / 60


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _reached(delivery: Delivery, status: DeliveryStatus) -> bool:
    return any(entry.status == status for entry in delivery.status_history)


class DeliveryAnalytics:
    """Aggregates read from the delivery store. Read-only."""

    def __init__(self, store: DeliveryStore, clock: Clock):
        self.store = store
        self.clock = clock

    async def _window(self, timeframe: Timeframe) -> tuple[datetime, list[Delivery]]:
        now = await self.clock.now()
        since = timeframe_start(timeframe, now)
        return since, await self.store.created_between(since, now)

    async def assignment_analytics(
        self,
        timeframe: Timeframe = Timeframe.DAY,
    ) -> AssignmentAnalytics:
        """Assignments made in the window and how riders responded to them."""
        since, deliveries = await self._window(timeframe)

        assigned = [d for d in deliveries if d.time_logs.assigned_at is not None]
        latencies = [
            m
            for m in (_minutes(d.created_at, d.time_logs.assigned_at) for d in assigned)
            if m is not None
        ]

        return AssignmentAnalytics(
            timeframe=timeframe,
            since=since,
            total_assignments=len(assigned),
            average_assignment_minutes=_mean(latencies),
            successful_deliveries=sum(1 for d in assigned if d.status in SUCCESSFUL_STATUSES),
            accepted=sum(1 for d in assigned if _reached(d, DeliveryStatus.ACCEPTED)),
            declined=sum(1 for d in assigned if _reached(d, DeliveryStatus.DECLINED)),
            expired=sum(1 for d in assigned if _reached(d, DeliveryStatus.EXPIRED)),
        )

    async def delivery_metrics(self, timeframe: Timeframe = Timeframe.DAY) -> DeliveryMetrics:
        """Orders created in the window, how many got a rider and how many arrived."""
        since, deliveries = await self._window(timeframe)

        assigned = [d for d in deliveries if d.time_logs.assigned_at is not None]
        delivered = [d for d in assigned if d.status in SUCCESSFUL_STATUSES]

        assignment_minutes = [
            m
            for m in (_minutes(d.created_at, d.time_logs.assigned_at) for d in assigned)
            if m is not None
        ]
        delivery_minutes = [
            m
            for m in (
                _minutes(d.time_logs.assigned_at, d.time_logs.delivered_at) for d in delivered
            )
            if m is not None
        ]

        total = len(deliveries)
        return DeliveryMetrics(
            timeframe=timeframe,
            since=since,
            total_orders=total,
            assigned_orders=len(assigned),
            delivered_orders=len(delivered),
            assignment_rate=len(assigned) / total * 100 if total else 0.0,
            delivery_rate=len(delivered) / len(assigned) * 100 if assigned else 0.0,
            average_assignment_minutes=_mean(assignment_minutes),
            average_delivery_minutes=_mean(delivery_minutes),
        )
