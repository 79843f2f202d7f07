"""Reassignment after decline, expiry or rider unavailability."""

from uuid import UUID

from delivery_engine.dispatch.lifecycle import DeliveryLifecycle
from delivery_engine.dispatch.orchestrator import AssignmentOrchestrator
from delivery_engine.errors import DeliveryEngineError
from delivery_engine.models.assignment import AssignmentResult, Urgency
from delivery_engine.models.delivery import DeliveryStatus
from delivery_engine.models.user import Actor
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import DispatchLogger

# A rider going offline pulls back deliveries in these states
UNAVAILABILITY_STATUSES = frozenset(
    {
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
    }
)


class ReassignmentHandler:
    """Releases the current rider and runs a high-urgency assignment."""

    def __init__(
        self,
        store: DeliveryStore,
        directory: RiderDirectory,
        lifecycle: DeliveryLifecycle,
        orchestrator: AssignmentOrchestrator,
    ):
        self.store = store
        self.directory = directory
        self.lifecycle = lifecycle
        self.orchestrator = orchestrator
        self.logger = DispatchLogger("reassignment_handler")

    async def reassign(
        self,
        delivery_id: UUID,
        reason: str,
        actor: Actor | None = None,
    ) -> AssignmentResult:
        """
        Move a delivery to a new rider.

        The held rider is released before any new rider is engaged. If no
        replacement is found the delivery lands in the manual-assignment
        queue.
        """
        actor = actor or Actor.system()
        delivery, previous_rider_id = await self.lifecycle.reopen_for_reassignment(
            delivery_id, reason, actor
        )

        criteria = self.orchestrator.criteria_for(
            delivery,
            urgency=Urgency.HIGH,
            exclude_rider_ids={previous_rider_id} if previous_rider_id else set(),
        )
        result = await self.orchestrator.assign(criteria)

        if not result.success:
            await self.orchestrator.enqueue_manual_assignment(
                delivery_id, f"Reassignment failed: {result.reason}", actor
            )

        self.logger.log_assignment(
            delivery_id,
            result.success,
            rider_id=result.rider.rider_id if result.rider else None,
            reason=result.reason,
            trigger=reason,
            previous_rider_id=str(previous_rider_id) if previous_rider_id else None,
        )
        return result

    async def handle_rider_unavailable(
        self,
        rider_id: UUID,
        reason: str,
        actor: Actor | None = None,
    ) -> list[AssignmentResult]:
        """Take a rider offline and reassign every delivery they still hold."""
        actor = actor or Actor.system()
        await self.directory.set_availability(rider_id, location=None, available=False)

        results = []
        for delivery in await self.store.for_rider(rider_id):
            if delivery.rider_id != rider_id or delivery.status not in UNAVAILABILITY_STATUSES:
                continue
            try:
                results.append(
                    await self.reassign(delivery.id, f"Rider unavailable: {reason}", actor)
                )
            except DeliveryEngineError as exc:
                self.logger.log_error(exc.message, delivery_id=delivery.id, rider_id=str(rider_id))
        return results
