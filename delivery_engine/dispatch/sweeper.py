"""Periodic expiry and reconciliation sweeps."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable
from uuid import UUID

from delivery_engine.dispatch.lifecycle import DeliveryLifecycle
from delivery_engine.errors import DeliveryEngineError
from delivery_engine.state.clock import Clock
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import DispatchLogger, get_logger

logger = get_logger(__name__)


@dataclass
class SweepReport:
    """What one sweep did."""

    started_at: datetime
    scanned: int = 0
    expired: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass
class ReconciliationReport:
    """Riders whose busy flags disagreed with the deliveries they hold."""

    checked: int = 0
    repaired: dict[str, dict[str, int | bool]] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


class ExpirySweeper:
    """
    Expires offers whose acceptance window has elapsed.

    Uses the same strict "now > expiry" test as a late rider response, and
    every expiry is a status-conditional write, so a sweep racing a response
    resolves to exactly one outcome and re-running a sweep is harmless.
    """

    def __init__(
        self,
        store: DeliveryStore,
        lifecycle: DeliveryLifecycle,
        clock: Clock,
        batch_size: int = 100,
        on_expired: Callable[[UUID], Awaitable[object]] | None = None,
    ):
        self.store = store
        self.lifecycle = lifecycle
        self.clock = clock
        self.batch_size = batch_size
        self.on_expired = on_expired
        self.logger = DispatchLogger("expiry_sweeper")

    async def sweep_once(self) -> SweepReport:
        """Expire every overdue offer in one batch."""
        now = await self.clock.now()
        report = SweepReport(started_at=now)

        delivery_ids = await self.store.expired_offers(now, limit=self.batch_size)
        report.scanned = len(delivery_ids)

        for delivery_id in delivery_ids:
            try:
                if await self.lifecycle.expire(delivery_id, now):
                    report.expired.append(delivery_id)
                else:
                    report.skipped.append(delivery_id)
            except Exception as exc:
                # One bad record must not stall the rest of the batch
                report.failed[delivery_id] = str(exc)
                self.logger.log_error(str(exc), delivery_id=delivery_id, stage="expire")
                continue

            if self.on_expired is not None and delivery_id in report.expired:
                try:
                    await self.on_expired(UUID(delivery_id))
                except Exception as exc:
                    report.failed[delivery_id] = str(exc)
                    self.logger.log_error(str(exc), delivery_id=delivery_id, stage="reassign")

        if report.scanned:
            logger.info(
                "expiry_sweep_completed",
                scanned=report.scanned,
                expired=len(report.expired),
                skipped=len(report.skipped),
                failed=len(report.failed),
            )
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        """Sweep on a fixed cadence until cancelled."""
        logger.info("expiry_sweeper_started", interval_seconds=interval_seconds)
        try:
            while True:
                try:
                    await self.sweep_once()
                except Exception as exc:
                    # Storage outages are retried on the next tick
                    self.logger.log_error(str(exc), stage="sweep")
                await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            logger.info("expiry_sweeper_stopped")
            raise


class RiderReconciler:
    """
    Repairs rider busy flags from the deliveries they actually hold.

    A rider's active_delivery_count and is_on_delivery are derived data;
    this sweep recomputes them and logs every mismatch as a reconciliation
    gap before fixing it.
    """

    def __init__(
        self,
        state_manager: StateManager,
        store: DeliveryStore,
        directory: RiderDirectory,
    ):
        self.state = state_manager
        self.store = store
        self.directory = directory
        self.logger = DispatchLogger("rider_reconciler")

    async def reconcile_rider(self, rider_id: UUID) -> dict[str, int | bool] | None:
        """Fix one rider; returns the corrected values if anything changed."""
        held_ids = [
            str(delivery.id)
            for delivery in await self.store.for_rider(rider_id)
            if delivery.rider_id == rider_id
        ]

        async def apply(tx: Transaction) -> dict[str, int | bool] | None:
            holding = 0
            for delivery_id in held_ids:
                delivery = await self.store.load(tx, delivery_id)
                if delivery.rider_id == rider_id and delivery.holds_rider:
                    holding += 1

            rider = await self.directory.load(tx, rider_id)
            on_delivery = holding > 0
            if rider.active_delivery_count == holding and rider.is_on_delivery == on_delivery:
                return None

            self.logger.log_reconciliation_gap(
                delivery_id=",".join(held_ids) or "-",
                rider_id=rider_id,
                attempted="rider_flags_repair",
                timestamp=rider.updated_at,
                recorded_count=rider.active_delivery_count,
                recorded_on_delivery=rider.is_on_delivery,
                actual_count=holding,
            )
            rider.active_delivery_count = holding
            rider.is_on_delivery = on_delivery
            if on_delivery:
                rider.is_available = False
            self.directory.stage(tx, rider)
            return {"active_delivery_count": holding, "is_on_delivery": on_delivery}

        return await self.state.transaction(apply)

    async def reconcile_all(self) -> ReconciliationReport:
        report = ReconciliationReport()
        for rider in await self.directory.list_riders():
            report.checked += 1
            try:
                repaired = await self.reconcile_rider(rider.id)
            except DeliveryEngineError as exc:
                report.failed[str(rider.id)] = exc.message
                self.logger.log_error(exc.message, rider_id=str(rider.id), stage="reconcile")
                continue
            if repaired is not None:
                report.repaired[str(rider.id)] = repaired

        logger.info(
            "rider_reconciliation_completed",
            checked=report.checked,
            repaired=len(report.repaired),
            failed=len(report.failed),
        )
        return report
