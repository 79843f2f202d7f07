"""Operational surface of the delivery engine."""

from decimal import Decimal
from uuid import UUID

from delivery_engine.collaborators.identity import IdentityService, RedisIdentityService
from delivery_engine.collaborators.orders import OrderService, RedisOrderService
from delivery_engine.collaborators.wallet import RedisWalletService, WalletService
from delivery_engine.config import DispatchPolicy, Settings, get_settings
from delivery_engine.dispatch.analytics import (
    AssignmentAnalytics,
    DeliveryAnalytics,
    DeliveryMetrics,
    Timeframe,
)
from delivery_engine.dispatch.lifecycle import DeliveryLifecycle
from delivery_engine.dispatch.locator import CandidateLocator, haversine_km
from delivery_engine.dispatch.orchestrator import AssignmentOrchestrator
from delivery_engine.dispatch.ranking import RankingEngine
from delivery_engine.dispatch.reassignment import ReassignmentHandler
from delivery_engine.dispatch.sweeper import ExpirySweeper, RiderReconciler
from delivery_engine.errors import (
    DeliveryEngineError,
    ExpiredWindow,
    PermissionDenied,
    PreconditionFailed,
)
from delivery_engine.models.assignment import AssignmentCriteria, AssignmentResult, Urgency
from delivery_engine.models.delivery import (
    Delivery,
    DeliveryLocation,
    DeliveryStatus,
    PaymentStatus,
    calculate_delivery_fee,
    calculate_rider_payment,
)
from delivery_engine.models.rider import (
    DocumentStatus,
    Location,
    Rider,
    RiderStatus,
    VehicleType,
)
from delivery_engine.models.user import Actor
from delivery_engine.state.clock import Clock, ServerClock
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import DispatchLogger, get_logger

logger = get_logger(__name__)


class DeliveryEngine:
    """
    Wires the dispatch components together and exposes the operations the
    HTTP layer and background tasks call.
    """

    def __init__(
        self,
        state_manager: StateManager,
        orders: OrderService,
        wallet: WalletService,
        identity: IdentityService,
        clock: Clock,
        policy: DispatchPolicy,
        sweep_batch_size: int = 100,
    ):
        self.state = state_manager
        self.orders = orders
        self.wallet = wallet
        self.identity = identity
        self.clock = clock
        self.policy = policy
        self.logger = DispatchLogger("delivery_engine")

        self.store = DeliveryStore(state_manager)
        self.directory = RiderDirectory(state_manager, policy)
        self.locator = CandidateLocator(self.directory, policy)
        self.ranking = RankingEngine(policy)
        self.orchestrator = AssignmentOrchestrator(
            state_manager,
            self.store,
            self.directory,
            self.locator,
            self.ranking,
            orders,
            clock,
            policy,
        )
        self.lifecycle = DeliveryLifecycle(
            state_manager, self.store, self.directory, orders, wallet, clock, policy
        )
        self.reassignment = ReassignmentHandler(
            self.store, self.directory, self.lifecycle, self.orchestrator
        )
        self.analytics = DeliveryAnalytics(self.store, clock)
        self.sweeper = ExpirySweeper(
            self.store,
            self.lifecycle,
            clock,
            batch_size=sweep_batch_size,
            on_expired=self._reassign_expired if policy.reassign_on_expiry else None,
        )
        self.reconciler = RiderReconciler(state_manager, self.store, self.directory)

    # Deliveries

    async def create_delivery(
        self,
        order_id: UUID,
        pickup: DeliveryLocation | None = None,
    ) -> Delivery:
        """Open the delivery record for an order, priced from its distance."""
        order = await self.orders.get_order(order_id)
        if order.delivery_address is None:
            raise PreconditionFailed("Order has no delivery address", order_id=str(order_id))

        pickup = pickup or order.pickup_address
        distance_km = None
        if pickup and pickup.coordinates and order.delivery_address.coordinates:
            distance_km = round(
                haversine_km(pickup.coordinates, order.delivery_address.coordinates), 2
            )

        if order.delivery_fee > 0:
            fee = order.delivery_fee
        else:
            fee = calculate_delivery_fee(
                distance_km or 0.0, self.policy.base_delivery_fee, self.policy.fee_per_km
            )
        now = await self.clock.now()

        delivery = Delivery(
            order_id=order.id,
            customer_id=order.customer_id,
            pickup_location=pickup,
            delivery_location=order.delivery_address,
            distance_km=distance_km,
            order_value=order.total,
            delivery_fee=fee,
            rider_payment=calculate_rider_payment(
                fee, self.policy.platform_fee_rate, self.policy.min_rider_payment
            ),
            created_at=now,
            updated_at=now,
        )
        return await self.store.create(delivery)

    async def process_paid_order(self, order_id: UUID) -> AssignmentResult | None:
        """
        React to an order being paid.

        Creates the delivery if needed and tries to place it. Returns None
        when there is nothing to assign: pickup orders and deliveries that
        already left pending assignment.
        """
        order = await self.orders.get_order(order_id)
        if not order.is_home_delivery:
            logger.info("order_skipped_not_home_delivery", order_id=str(order_id))
            return None

        delivery = await self.store.find_by_order(order.id)
        if delivery is None:
            delivery = await self.create_delivery(order.id)
        if delivery.status != DeliveryStatus.PENDING_ASSIGNMENT or delivery.rider_id:
            logger.info(
                "order_already_assigned",
                order_id=str(order_id),
                delivery_id=str(delivery.id),
                status=delivery.status.value,
            )
            return None

        urgency = self.orchestrator.classify_urgency(order, await self.clock.now())
        return await self._assign_or_enqueue(
            self.orchestrator.criteria_for(delivery, urgency=urgency)
        )

    async def _assign_or_enqueue(
        self,
        criteria: AssignmentCriteria,
        actor: Actor | None = None,
    ) -> AssignmentResult:
        result = await self.orchestrator.assign(criteria)
        if not result.success:
            await self.orchestrator.enqueue_manual_assignment(
                criteria.delivery_id, result.reason or "assignment failed", actor
            )
        return result

    async def assign_rider(
        self,
        delivery_id: UUID,
        actor: Actor | None = None,
        urgency: Urgency = Urgency.LOW,
        vehicle_requirement: VehicleType | None = None,
    ) -> AssignmentResult:
        """Run automatic assignment for a pending delivery."""
        actor = actor or Actor.system()
        if not actor.is_privileged:
            raise PermissionDenied("Only administrators can trigger assignment")
        delivery = await self.store.get(delivery_id)
        criteria = self.orchestrator.criteria_for(
            delivery, urgency=urgency, vehicle_requirement=vehicle_requirement
        )
        return await self._assign_or_enqueue(criteria, actor)

    async def manual_assign_rider(
        self,
        delivery_id: UUID,
        rider_id: UUID,
        actor: Actor,
        notes: str | None = None,
    ) -> Delivery:
        return await self.orchestrator.manual_assign(delivery_id, rider_id, actor, notes)

    async def reassign_order(
        self,
        delivery_id: UUID,
        reason: str,
        actor: Actor | None = None,
    ) -> AssignmentResult:
        return await self.reassignment.reassign(delivery_id, reason, actor)

    async def respond_to_assignment(
        self,
        delivery_id: UUID,
        actor: Actor,
        accept: bool,
        notes: str | None = None,
    ) -> Delivery:
        """Rider accepts or declines; optionally moves on to the next rider."""
        try:
            delivery = await self.lifecycle.respond(delivery_id, actor, accept, notes)
        except ExpiredWindow:
            if self.policy.reassign_on_expiry:
                await self._reassign_after(delivery_id, "Offer expired")
            raise

        if delivery.status == DeliveryStatus.DECLINED and self.policy.reassign_on_decline:
            await self._reassign_after(delivery_id, "Rider declined")
        return delivery

    async def _reassign_after(self, delivery_id: UUID, reason: str) -> None:
        # The rider's response is already committed; a failed follow-up is only logged
        try:
            await self.reassignment.reassign(delivery_id, reason)
        except DeliveryEngineError as exc:
            self.logger.log_error(exc.message, delivery_id=delivery_id, trigger=reason)

    async def _reassign_expired(self, delivery_id: UUID) -> AssignmentResult:
        return await self.reassignment.reassign(delivery_id, "Offer expired")

    async def update_status(
        self,
        delivery_id: UUID,
        status: DeliveryStatus,
        actor: Actor,
        notes: str | None = None,
    ) -> Delivery:
        return await self.lifecycle.transition(delivery_id, status, actor, notes)

    async def release_payment(
        self,
        delivery_id: UUID,
        actor: Actor,
        payment_ref: str | None = None,
    ) -> Delivery:
        return await self.lifecycle.release_payment(delivery_id, actor, payment_ref)

    async def rate_delivery(
        self,
        delivery_id: UUID,
        actor: Actor,
        rating: int,
        feedback: str | None = None,
    ) -> Delivery:
        return await self.lifecycle.rate(delivery_id, actor, rating, feedback)

    async def get_delivery(self, delivery_id: UUID) -> Delivery:
        return await self.store.get(delivery_id)

    async def get_delivery_by_order(self, order_id: UUID) -> Delivery | None:
        return await self.store.find_by_order(order_id)

    async def list_deliveries(
        self,
        status: DeliveryStatus | None = None,
        rider_id: UUID | None = None,
        customer_id: UUID | None = None,
        city: str | None = None,
        payment_status: PaymentStatus | None = None,
        unassigned_only: bool = False,
        awaiting_response_only: bool = False,
        pending_payment_only: bool = False,
    ) -> list[Delivery]:
        return await self.store.list_deliveries(
            status=status,
            rider_id=rider_id,
            customer_id=customer_id,
            city=city,
            payment_status=payment_status,
            unassigned_only=unassigned_only,
            awaiting_response_only=awaiting_response_only,
            pending_payment_only=pending_payment_only,
        )

    async def list_pending_assignments(self) -> list[Delivery]:
        """Deliveries still waiting for a rider, oldest first."""
        pending = await self.store.list_deliveries(status=DeliveryStatus.PENDING_ASSIGNMENT)
        return sorted(pending, key=lambda d: d.created_at)

    async def manual_assignment_queue(self) -> list[Delivery]:
        return await self.store.manual_queue()

    # Analytics

    async def get_assignment_analytics(
        self,
        timeframe: Timeframe = Timeframe.DAY,
    ) -> AssignmentAnalytics:
        return await self.analytics.assignment_analytics(timeframe)

    async def get_delivery_metrics(self, timeframe: Timeframe = Timeframe.DAY) -> DeliveryMetrics:
        return await self.analytics.delivery_metrics(timeframe)

    # Riders

    async def register_rider(self, rider: Rider) -> Rider:
        return await self.directory.register(rider)

    async def add_verification_document(
        self,
        rider_id: UUID,
        document_type: str,
        url: str,
    ) -> Rider:
        return await self.directory.add_verification_document(rider_id, document_type, url)

    async def verify_document(
        self,
        rider_id: UUID,
        index: int,
        status: DocumentStatus,
        actor: Actor,
        notes: str | None = None,
    ) -> Rider:
        if not actor.is_privileged:
            raise PermissionDenied("Only administrators can review documents")
        return await self.directory.verify_document(rider_id, index, status, notes)

    async def set_rider_status(self, rider_id: UUID, status: RiderStatus, actor: Actor) -> Rider:
        if not actor.is_privileged:
            raise PermissionDenied("Only administrators can change rider status")
        return await self.directory.set_status(rider_id, status)

    async def update_security_deposit(
        self,
        rider_id: UUID,
        amount: Decimal,
        actor: Actor,
    ) -> Rider:
        if not actor.is_privileged:
            raise PermissionDenied("Only administrators can update security deposits")
        return await self.directory.update_security_deposit(rider_id, amount)

    async def check_security_deposit_requirement(self, rider_id: UUID) -> dict:
        return await self.directory.check_security_deposit(rider_id)

    async def update_location(
        self,
        rider_id: UUID,
        location: Location | None,
        is_available: bool | None = None,
    ) -> Rider:
        return await self.directory.set_availability(
            rider_id, location, is_available, at=await self.clock.now()
        )

    async def get_rider(self, rider_id: UUID) -> Rider:
        return await self.directory.get(rider_id)

    async def get_rider_by_user(self, user_id: UUID) -> Rider:
        return await self.directory.get_by_user_id(user_id)

    async def list_riders(
        self,
        status: RiderStatus | None = None,
        is_available: bool | None = None,
        city: str | None = None,
        vehicle_type: VehicleType | None = None,
        min_deposit: Decimal | None = None,
        exclude_on_delivery: bool = False,
    ) -> list[Rider]:
        return await self.directory.list_riders(
            status=status,
            is_available=is_available,
            city=city,
            vehicle_type=vehicle_type,
            min_deposit=min_deposit,
            exclude_on_delivery=exclude_on_delivery,
        )

    async def handle_rider_unavailable(
        self,
        rider_id: UUID,
        reason: str,
        actor: Actor | None = None,
    ) -> list[AssignmentResult]:
        return await self.reassignment.handle_rider_unavailable(rider_id, reason, actor)


def build_engine(
    state_manager: StateManager,
    settings: Settings | None = None,
    clock: Clock | None = None,
    orders: OrderService | None = None,
    wallet: WalletService | None = None,
    identity: IdentityService | None = None,
) -> DeliveryEngine:
    """Build an engine with Redis-backed collaborators unless others are given."""
    settings = settings or get_settings()
    return DeliveryEngine(
        state_manager,
        orders=orders or RedisOrderService(state_manager),
        wallet=wallet or RedisWalletService(state_manager),
        identity=identity or RedisIdentityService(state_manager),
        clock=clock or ServerClock(state_manager),
        policy=settings.dispatch,
        sweep_batch_size=settings.sweep_batch_size,
    )
