"""Assignment orchestration: locate, rank, commit."""

import math
from datetime import datetime
from uuid import UUID

from redis.exceptions import RedisError

from delivery_engine.collaborators.orders import OrderService
from delivery_engine.config import DispatchPolicy
from delivery_engine.dispatch.lifecycle import offer_to_rider
from delivery_engine.dispatch.locator import CandidateLocator
from delivery_engine.dispatch.ranking import RankingEngine
from delivery_engine.errors import (
    DeliveryEngineError,
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
    ReconciliationGap,
)
from delivery_engine.models.assignment import (
    AssignmentCriteria,
    AssignmentResult,
    RiderScore,
    Urgency,
)
from delivery_engine.models.delivery import Delivery, DeliveryStatus
from delivery_engine.models.order import Order
from delivery_engine.models.rider import RiderStatus, VehicleType
from delivery_engine.models.user import Actor, Role
from delivery_engine.state.clock import Clock
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import DispatchLogger, get_logger
from delivery_engine.utils.tracing import AssignmentTracer

logger = get_logger(__name__)

MISSING_COORDINATES = "missing coordinates"
NO_AVAILABLE_RIDERS = "no available riders"
NO_QUALIFIED_RIDERS = "no riders meet requirements"


class AssignmentOrchestrator:
    """
    Drives one assignment attempt end to end.

    Candidates are located and ranked without writing anything. The
    assignment itself is a single transaction over the delivery and the
    chosen rider; if the rider was taken in the meantime the next ranked
    candidate is tried. A failed attempt leaves no state behind.
    """

    def __init__(
        self,
        state_manager: StateManager,
        store: DeliveryStore,
        directory: RiderDirectory,
        locator: CandidateLocator,
        ranking: RankingEngine,
        orders: OrderService,
        clock: Clock,
        policy: DispatchPolicy,
    ):
        self.state = state_manager
        self.store = store
        self.directory = directory
        self.locator = locator
        self.ranking = ranking
        self.orders = orders
        self.clock = clock
        self.policy = policy
        self.logger = DispatchLogger("assignment_orchestrator")

    def estimate_minutes(self, distance_km: float, vehicle_type: VehicleType) -> int:
        """Travel time at the vehicle's average speed plus prep and handover."""
        speed = self.policy.speed_for(vehicle_type.value)
        travel = math.ceil(distance_km / speed * 60)
        return travel + self.policy.prep_minutes + self.policy.handover_minutes

    def classify_urgency(self, order: Order, now: datetime) -> Urgency:
        """Triage tag from order age, value and fee. Does not affect ranking."""
        policy = self.policy
        age_minutes = (now - order.created_at).total_seconds() / 60

        if (
            age_minutes > policy.high_urgency_age_minutes
            or order.total > policy.high_value_threshold
            or order.delivery_fee > policy.premium_fee_threshold
        ):
            return Urgency.HIGH
        if (
            age_minutes > policy.medium_urgency_age_minutes
            or order.total > policy.medium_value_threshold
        ):
            return Urgency.MEDIUM
        return Urgency.LOW

    @staticmethod
    def criteria_for(
        delivery: Delivery,
        urgency: Urgency = Urgency.LOW,
        vehicle_requirement: VehicleType | None = None,
        exclude_rider_ids: set[UUID] | None = None,
    ) -> AssignmentCriteria:
        return AssignmentCriteria(
            delivery_id=delivery.id,
            destination=delivery.delivery_location.coordinates,
            city=delivery.delivery_location.city,
            order_value=delivery.order_value,
            urgency=urgency,
            vehicle_requirement=vehicle_requirement,
            exclude_rider_ids=exclude_rider_ids or set(),
        )

    def _failure(
        self,
        criteria: AssignmentCriteria,
        reason: str,
        tracer: AssignmentTracer,
        alternates: list[RiderScore] | None = None,
    ) -> AssignmentResult:
        self.logger.log_assignment(
            criteria.delivery_id, False, reason=reason, urgency=criteria.urgency.value
        )
        return AssignmentResult(
            success=False,
            delivery_id=criteria.delivery_id,
            reason=reason,
            alternates=alternates or [],
            trace=tracer.get_trace_summary(),
        )

    async def assign(self, criteria: AssignmentCriteria) -> AssignmentResult:
        """
        Place a delivery with the best-ranked available rider.

        Returns success=False with a reason when nobody can take it; the
        caller routes such deliveries to the manual-assignment queue.
        """
        tracer = AssignmentTracer(criteria.delivery_id)

        if criteria.destination is None:
            return self._failure(criteria, MISSING_COORDINATES, tracer)

        with tracer.trace_operation("locate") as info:
            candidates = await self.locator.locate(criteria)
            info["candidates"] = len(candidates)
        if not candidates:
            return self._failure(criteria, NO_AVAILABLE_RIDERS, tracer)

        with tracer.trace_operation("rank") as info:
            ranked = self.ranking.rank(candidates, criteria)
            info["qualified"] = len(ranked)
        if not ranked:
            return self._failure(criteria, NO_QUALIFIED_RIDERS, tracer)

        with tracer.trace_operation("commit") as info:
            committed = await self._commit(criteria, ranked)
            info["committed"] = committed is not None
        if committed is None:
            return self._failure(criteria, NO_AVAILABLE_RIDERS, tracer, alternates=ranked)

        chosen, delivery = committed
        alternates = [score for score in ranked if score.rider_id != chosen.rider_id]
        estimated = self.estimate_minutes(chosen.distance_km, chosen.vehicle_type)

        self.logger.log_assignment(
            criteria.delivery_id,
            True,
            rider_id=chosen.rider_id,
            score=chosen.total,
            distance_km=chosen.distance_km,
            urgency=criteria.urgency.value,
            estimated_minutes=estimated,
        )
        return AssignmentResult(
            success=True,
            delivery_id=criteria.delivery_id,
            rider=chosen,
            alternates=alternates[: self.policy.alternates_count],
            estimated_minutes=estimated,
            acceptance_expiry_time=delivery.acceptance_expiry_time,
            trace=tracer.get_trace_summary(),
        )

    async def _commit(
        self,
        criteria: AssignmentCriteria,
        ranked: list[RiderScore],
    ) -> tuple[RiderScore, Delivery] | None:
        now = await self.clock.now()

        for score in ranked:

            async def apply(tx: Transaction, score: RiderScore = score) -> Delivery | None:
                delivery = await self.store.load(tx, criteria.delivery_id)
                if delivery.status != DeliveryStatus.PENDING_ASSIGNMENT:
                    raise InvalidTransition(
                        f"Delivery is {delivery.status.value}, not pending assignment",
                        delivery_id=str(criteria.delivery_id),
                    )

                rider = await self.directory.load(tx, score.rider_id)
                if (
                    not rider.is_assignable
                    or rider.active_delivery_count >= self.policy.max_active_deliveries
                ):
                    return None

                offer_to_rider(
                    delivery,
                    rider,
                    now,
                    self.policy,
                    notes=f"Auto-assigned (score {score.total:.1f}, {score.distance_km:.2f} km)",
                    updated_by=Actor.system().label,
                )
                delivery.urgency = criteria.urgency.value
                self.directory.stage(tx, rider)
                self.store.stage(tx, delivery)
                return delivery

            try:
                delivery = await self.state.transaction(apply)
            except RedisError as exc:
                self.logger.log_reconciliation_gap(
                    criteria.delivery_id,
                    score.rider_id,
                    attempted="pending_assignment->awaiting_rider_response",
                    timestamp=now,
                    error=str(exc),
                )
                raise ReconciliationGap(
                    "Assignment outcome unknown; logged as a reconciliation gap",
                    delivery_id=str(criteria.delivery_id),
                    rider_id=str(score.rider_id),
                ) from exc

            if delivery is not None:
                return score, delivery

            logger.debug(
                "candidate_taken",
                delivery_id=str(criteria.delivery_id),
                rider_id=str(score.rider_id),
            )

        return None

    async def manual_assign(
        self,
        delivery_id: UUID,
        rider_id: UUID,
        actor: Actor,
        notes: str | None = None,
    ) -> Delivery:
        """Admin override: offer the delivery to a specific rider."""
        if actor.role != Role.ADMIN:
            raise PermissionDenied("Only admins can assign riders manually")
        now = await self.clock.now()

        async def apply(tx: Transaction) -> Delivery:
            delivery = await self.store.load(tx, delivery_id)
            if delivery.status != DeliveryStatus.PENDING_ASSIGNMENT:
                raise PreconditionFailed(
                    f"Delivery is {delivery.status.value}, not pending assignment"
                )

            rider = await self.directory.load(tx, rider_id)
            if rider.status != RiderStatus.ACTIVE:
                raise PreconditionFailed("Rider is not active", rider_id=str(rider_id))
            if rider.is_on_delivery:
                raise PreconditionFailed("Rider is already on a delivery", rider_id=str(rider_id))
            if rider.security_deposit < self.policy.min_security_deposit:
                shortfall = self.policy.min_security_deposit - rider.security_deposit
                raise PreconditionFailed(
                    f"Rider security deposit is below the required "
                    f"{self.policy.min_security_deposit} (short by {shortfall})",
                    rider_id=str(rider_id),
                )

            offer_to_rider(
                delivery,
                rider,
                now,
                self.policy,
                notes=notes or "Manually assigned by admin",
                updated_by=actor.label,
            )
            self.directory.stage(tx, rider)
            self.store.stage(tx, delivery)
            return delivery

        delivery = await self.state.transaction(apply)
        self.logger.log_assignment(delivery_id, True, rider_id=rider_id, manual=True)
        return delivery

    async def enqueue_manual_assignment(
        self,
        delivery_id: UUID,
        reason: str,
        actor: Actor | None = None,
    ) -> Delivery:
        """Flag a delivery for a human dispatcher and note why on the order."""
        actor = actor or Actor.system()
        now = await self.clock.now()

        async def apply(tx: Transaction) -> Delivery:
            delivery = await self.store.load(tx, delivery_id)
            delivery.needs_manual_assignment = True
            delivery.manual_assignment_reason = reason
            delivery.manual_assignment_at = now
            delivery.add_note(
                "manual_assignment",
                f"Added to manual assignment queue: {reason}",
                now,
                actor=actor.label,
            )
            self.store.stage(tx, delivery)
            return delivery

        delivery = await self.state.transaction(apply)
        logger.warning(
            "manual_assignment_queued", delivery_id=str(delivery_id), reason=reason
        )

        try:
            order = await self.orders.get_order(delivery.order_id)
            await self.orders.append_order_history(
                order.id,
                order.status,
                reason=f"Added to manual assignment queue: {reason}",
                actor=actor.label,
            )
        except DeliveryEngineError as exc:
            self.logger.log_error(exc.message, delivery_id=delivery_id)
        return delivery
