"""Delivery lifecycle state machine."""

from datetime import datetime, timedelta
from uuid import UUID

from delivery_engine.collaborators.orders import OrderService
from delivery_engine.collaborators.wallet import WalletService
from delivery_engine.config import DispatchPolicy
from delivery_engine.errors import (
    DeliveryEngineError,
    ExpiredWindow,
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
)
from delivery_engine.models.delivery import (
    RIDER_HOLDING_STATUSES,
    Delivery,
    DeliveryStatus,
    PaymentStatus,
)
from delivery_engine.models.order import OrderStatus
from delivery_engine.models.rider import DeliveryOutcome, Rider
from delivery_engine.models.user import Actor, Role
from delivery_engine.state.clock import Clock
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import DispatchLogger, get_logger

logger = get_logger(__name__)

TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING_ASSIGNMENT: frozenset(
        {DeliveryStatus.AWAITING_RIDER_RESPONSE, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.AWAITING_RIDER_RESPONSE: frozenset(
        {
            DeliveryStatus.ACCEPTED,
            DeliveryStatus.DECLINED,
            DeliveryStatus.EXPIRED,
            DeliveryStatus.CANCELLED,
        }
    ),
    DeliveryStatus.ACCEPTED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset({DeliveryStatus.IN_TRANSIT, DeliveryStatus.CANCELLED}),
    DeliveryStatus.IN_TRANSIT: frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.DELIVERED: frozenset({DeliveryStatus.COMPLETED}),
    DeliveryStatus.COMPLETED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
    DeliveryStatus.DECLINED: frozenset(),
    DeliveryStatus.EXPIRED: frozenset(),
}

RIDER_TRANSITIONS = frozenset(
    {DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED}
)

# Statuses a reassignment may pull a delivery back from
REASSIGNABLE_STATUSES = frozenset(
    {
        DeliveryStatus.PENDING_ASSIGNMENT,
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DECLINED,
        DeliveryStatus.EXPIRED,
    }
)

AUTO_EXPIRY_NOTE = "Acceptance window elapsed; offer expired automatically"


def can_transition(from_status: DeliveryStatus, to_status: DeliveryStatus) -> bool:
    """Check if a status transition is legal."""
    return to_status in TRANSITIONS.get(from_status, frozenset())


def enter_status(
    delivery: Delivery,
    status: DeliveryStatus,
    now: datetime,
    policy: DispatchPolicy,
    notes: str | None = None,
    updated_by: str | None = None,
) -> None:
    """Record a status change with its audit entry and time-log stamp."""
    logs = delivery.time_logs
    if status == DeliveryStatus.AWAITING_RIDER_RESPONSE:
        logs.assigned_at = now
        delivery.acceptance_expiry_time = now + timedelta(
            seconds=policy.acceptance_window_seconds
        )
    elif status in (DeliveryStatus.ACCEPTED, DeliveryStatus.DECLINED):
        logs.responded_at = now
    elif status == DeliveryStatus.PICKED_UP:
        logs.picked_up_at = now
    elif status == DeliveryStatus.IN_TRANSIT:
        logs.in_transit_at = now
    elif status == DeliveryStatus.DELIVERED:
        logs.delivered_at = now
    elif status == DeliveryStatus.COMPLETED:
        logs.confirmed_at = now
    elif status == DeliveryStatus.CANCELLED:
        logs.cancelled_at = now

    delivery.record_status(status, now, notes=notes, updated_by=updated_by)


def offer_to_rider(
    delivery: Delivery,
    rider: Rider,
    now: datetime,
    policy: DispatchPolicy,
    notes: str | None = None,
    updated_by: str | None = None,
) -> None:
    """Pair a pending delivery with a rider and open the acceptance window."""
    delivery.rider_id = rider.id
    delivery.seen_by_rider = False
    delivery.needs_manual_assignment = False
    delivery.manual_assignment_reason = None
    delivery.manual_assignment_at = None
    enter_status(
        delivery,
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        now,
        policy,
        notes=notes,
        updated_by=updated_by,
    )
    rider.mark_on_delivery()


def apply_rider_effects(
    rider: Rider,
    previous: DeliveryStatus,
    target: DeliveryStatus,
    delivery: Delivery,
    now: datetime,
) -> None:
    """Mutate the assigned rider for a status change of their delivery."""
    held = previous in RIDER_HOLDING_STATUSES

    if target == DeliveryStatus.DELIVERED and delivery.time_logs.picked_up_at:
        minutes = (now - delivery.time_logs.picked_up_at).total_seconds() / 60
        rider.record_outcome(duration_minutes=minutes)
    elif target == DeliveryStatus.COMPLETED:
        rider.record_outcome(DeliveryOutcome.COMPLETED)
        if held:
            rider.release()
    elif target == DeliveryStatus.CANCELLED and held:
        rider.record_outcome(DeliveryOutcome.CANCELLED)
        rider.release()
    elif target == DeliveryStatus.DECLINED and held:
        rider.record_outcome(DeliveryOutcome.REJECTED)
        rider.release()
    elif target == DeliveryStatus.EXPIRED and held:
        rider.release()


class DeliveryLifecycle:
    """
    Owns delivery status changes.

    Every change is a single optimistic transaction over the delivery and,
    where affected, its rider: the status read at the start is the status
    the write is conditioned on, so two concurrent requests from the same
    state cannot both succeed.
    """

    def __init__(
        self,
        state_manager: StateManager,
        store: DeliveryStore,
        directory: RiderDirectory,
        orders: OrderService,
        wallet: WalletService,
        clock: Clock,
        policy: DispatchPolicy,
    ):
        self.state = state_manager
        self.store = store
        self.directory = directory
        self.orders = orders
        self.wallet = wallet
        self.clock = clock
        self.policy = policy
        self.logger = DispatchLogger("delivery_lifecycle")

    async def _actor_rider_id(self, actor: Actor) -> UUID | None:
        if actor.role != Role.RIDER or actor.user_id is None:
            return None
        rider = await self.directory.get_by_user_id(actor.user_id)
        return rider.id

    @staticmethod
    def check_permission(
        delivery: Delivery,
        target: DeliveryStatus,
        actor: Actor,
        actor_rider_id: UUID | None,
    ) -> None:
        """Raise PermissionDenied unless the actor may request this transition."""
        if actor.is_privileged:
            return

        if actor.role == Role.RIDER:
            if target not in RIDER_TRANSITIONS:
                raise PermissionDenied(
                    f"Riders can only update status to {sorted(s.value for s in RIDER_TRANSITIONS)}"
                )
            if actor_rider_id is None or delivery.rider_id != actor_rider_id:
                raise PermissionDenied("Only the assigned rider can update this delivery")
            return

        if actor.role == Role.CUSTOMER:
            if target != DeliveryStatus.COMPLETED:
                raise PermissionDenied("Customers can only confirm a delivery as completed")
            if delivery.customer_id != actor.user_id:
                raise PermissionDenied("You can only confirm your own deliveries")
            return

        raise PermissionDenied("Not allowed")

    async def transition(
        self,
        delivery_id: UUID,
        target: DeliveryStatus,
        actor: Actor,
        notes: str | None = None,
    ) -> Delivery:
        """Apply a role-gated status change and its side effects."""
        actor_rider_id = await self._actor_rider_id(actor)
        now = await self.clock.now()

        async def apply(tx: Transaction) -> tuple[Delivery, DeliveryStatus]:
            delivery = await self.store.load(tx, delivery_id)
            self.check_permission(delivery, target, actor, actor_rider_id)

            previous = delivery.status
            if not can_transition(previous, target):
                raise InvalidTransition(
                    f"Cannot change delivery status from {previous.value} to {target.value}",
                    delivery_id=str(delivery_id),
                )
            if target == DeliveryStatus.AWAITING_RIDER_RESPONSE:
                raise PreconditionFailed(
                    "Deliveries are offered to riders through assignment, not status updates"
                )

            enter_status(
                delivery,
                target,
                now,
                self.policy,
                notes=notes or f"Status updated to {target.value}",
                updated_by=actor.label,
            )

            if delivery.rider_id is not None:
                rider = await self.directory.load(tx, delivery.rider_id)
                apply_rider_effects(rider, previous, target, delivery, now)
                self.directory.stage(tx, rider)

            self.store.stage(tx, delivery)
            return delivery, previous

        delivery, previous = await self.state.transaction(apply)
        self.logger.log_transition(
            delivery_id, previous.value, target.value, actor=actor.label
        )

        if target == DeliveryStatus.PICKED_UP:
            await self._sync_order(delivery, OrderStatus.SHIPPED, actor)
        elif target == DeliveryStatus.COMPLETED:
            await self._sync_order(delivery, OrderStatus.DELIVERED, actor)

        return delivery

    async def _sync_order(self, delivery: Delivery, status: OrderStatus, actor: Actor) -> None:
        # The delivery record is authoritative; a failed order update is logged for replay
        try:
            await self.orders.set_order_status(
                delivery.order_id,
                status,
                reason=f"Delivery {delivery.status.value}",
                actor=actor.label,
            )
        except DeliveryEngineError as exc:
            self.logger.log_error(
                exc.message,
                delivery_id=delivery.id,
                order_id=str(delivery.order_id),
                order_status=status.value,
            )

    def _expire(self, delivery: Delivery, rider: Rider | None, now: datetime, notes: str) -> None:
        previous = delivery.status
        enter_status(
            delivery,
            DeliveryStatus.EXPIRED,
            now,
            self.policy,
            notes=notes,
            updated_by=Actor.system().label,
        )
        if rider is not None:
            apply_rider_effects(rider, previous, DeliveryStatus.EXPIRED, delivery, now)

    async def respond(
        self,
        delivery_id: UUID,
        actor: Actor,
        accept: bool,
        notes: str | None = None,
    ) -> Delivery:
        """
        Accept or decline an offer as the assigned rider.

        Expiry is checked before the response itself: a response after the
        window forces the delivery to expired and is rejected with
        ExpiredWindow whatever its content.
        """
        actor_rider_id = await self._actor_rider_id(actor)
        if actor_rider_id is None:
            raise PermissionDenied("Only riders can respond to delivery offers")
        now = await self.clock.now()

        async def apply(tx: Transaction) -> tuple[Delivery, bool]:
            delivery = await self.store.load(tx, delivery_id)
            if delivery.status != DeliveryStatus.AWAITING_RIDER_RESPONSE:
                raise InvalidTransition(
                    f"Delivery is {delivery.status.value}, not awaiting a rider response",
                    delivery_id=str(delivery_id),
                )
            if delivery.rider_id != actor_rider_id:
                raise PermissionDenied("This delivery is not assigned to you")

            rider = await self.directory.load(tx, actor_rider_id)

            if delivery.acceptance_expiry_time is None or now > delivery.acceptance_expiry_time:
                self._expire(delivery, rider, now, "Rider responded after the acceptance window")
                self.directory.stage(tx, rider)
                self.store.stage(tx, delivery)
                return delivery, True

            target = DeliveryStatus.ACCEPTED if accept else DeliveryStatus.DECLINED
            enter_status(
                delivery,
                target,
                now,
                self.policy,
                notes=notes or f"Rider {'accepted' if accept else 'declined'} the delivery",
                updated_by=actor.label,
            )
            delivery.seen_by_rider = True
            apply_rider_effects(
                rider, DeliveryStatus.AWAITING_RIDER_RESPONSE, target, delivery, now
            )

            self.directory.stage(tx, rider)
            self.store.stage(tx, delivery)
            return delivery, False

        delivery, expired = await self.state.transaction(apply)

        if expired:
            self.logger.log_transition(
                delivery_id,
                DeliveryStatus.AWAITING_RIDER_RESPONSE.value,
                DeliveryStatus.EXPIRED.value,
                actor=actor.label,
                late_response=True,
            )
            raise ExpiredWindow(
                "Delivery acceptance time has expired", delivery_id=str(delivery_id)
            )

        self.logger.log_transition(
            delivery_id,
            DeliveryStatus.AWAITING_RIDER_RESPONSE.value,
            delivery.status.value,
            actor=actor.label,
        )
        return delivery

    async def expire(self, delivery_id: UUID | str, now: datetime) -> bool:
        """
        Expire an offer whose window closed before now.

        Returns False without writing when the delivery has already left
        awaiting_rider_response or its window is still open.
        """

        async def apply(tx: Transaction) -> bool:
            delivery = await self.store.load(tx, delivery_id)
            if delivery.status != DeliveryStatus.AWAITING_RIDER_RESPONSE:
                # Drop a stale index entry left by an older writer
                tx.zrem(self.store.AWAITING_KEY, str(delivery.id))
                return False
            if delivery.acceptance_expiry_time and now <= delivery.acceptance_expiry_time:
                return False

            rider = None
            if delivery.rider_id is not None:
                rider = await self.directory.load(tx, delivery.rider_id)
            self._expire(delivery, rider, now, AUTO_EXPIRY_NOTE)
            if rider is not None:
                self.directory.stage(tx, rider)
            self.store.stage(tx, delivery)
            return True

        expired = await self.state.transaction(apply)
        if expired:
            self.logger.log_transition(
                delivery_id,
                DeliveryStatus.AWAITING_RIDER_RESPONSE.value,
                DeliveryStatus.EXPIRED.value,
                actor=Actor.system().label,
            )
        return expired

    async def reopen_for_reassignment(
        self,
        delivery_id: UUID,
        reason: str,
        actor: Actor,
    ) -> tuple[Delivery, UUID | None]:
        """
        Detach the current rider and put the delivery back to pending assignment.

        This is the only path out of declined or expired, and it is reserved
        for reassignment. Returns the delivery and the rider it was detached
        from; that rider is released only if the delivery still held them.
        """
        if not actor.is_privileged:
            raise PermissionDenied("Only administrators can reassign deliveries")
        now = await self.clock.now()

        async def apply(tx: Transaction) -> tuple[Delivery, UUID | None]:
            delivery = await self.store.load(tx, delivery_id)
            previous = delivery.status
            if previous not in REASSIGNABLE_STATUSES:
                raise InvalidTransition(
                    f"Cannot reassign a delivery that is {previous.value}",
                    delivery_id=str(delivery_id),
                )
            if previous == DeliveryStatus.PENDING_ASSIGNMENT:
                return delivery, None

            detached = delivery.rider_id
            if detached is not None and previous in RIDER_HOLDING_STATUSES:
                rider = await self.directory.load(tx, detached)
                rider.release()
                rider.record_outcome(DeliveryOutcome.REASSIGNED)
                self.directory.stage(tx, rider)

            delivery.rider_id = None
            delivery.seen_by_rider = False
            enter_status(
                delivery,
                DeliveryStatus.PENDING_ASSIGNMENT,
                now,
                self.policy,
                notes=f"Reassignment: {reason}",
                updated_by=actor.label,
            )
            self.store.stage(tx, delivery)
            return delivery, detached

        delivery, detached = await self.state.transaction(apply)
        logger.info(
            "delivery_reopened",
            delivery_id=str(delivery_id),
            detached_rider_id=str(detached) if detached else None,
            reason=reason,
        )
        return delivery, detached

    async def release_payment(
        self,
        delivery_id: UUID,
        actor: Actor,
        payment_ref: str | None = None,
    ) -> Delivery:
        """Credit the rider's payment for a completed delivery, once."""
        if actor.role != Role.ADMIN:
            raise PermissionDenied("Only admins can release payments to riders")

        delivery = await self.store.get(delivery_id)
        if delivery.status != DeliveryStatus.COMPLETED:
            raise PreconditionFailed("Payment can only be released for completed deliveries")
        if delivery.payment_status != PaymentStatus.PENDING:
            raise PreconditionFailed(f"Payment is already {delivery.payment_status.value}")
        if delivery.rider_id is None:
            raise PreconditionFailed("No rider assigned to this delivery")

        rider = await self.directory.get(delivery.rider_id)
        if delivery.rider_payment > 0:
            await self.wallet.credit(
                rider.user_id,
                delivery.rider_payment,
                memo=f"Delivery payment for order {delivery.order_id}",
                idempotency_ref=f"delivery:{delivery.id}:payment",
            )
        now = await self.clock.now()

        async def apply(tx: Transaction) -> Delivery:
            current = await self.store.load(tx, delivery_id)
            if current.payment_status != PaymentStatus.PENDING:
                return current

            current.payment_status = PaymentStatus.RELEASED
            current.payment_ref = payment_ref or f"payment_{int(now.timestamp() * 1000)}"
            current.time_logs.payment_released_at = now
            current.updated_at = now

            held_rider = await self.directory.load(tx, current.rider_id)
            held_rider.record_outcome(earnings=current.rider_payment)
            self.directory.stage(tx, held_rider)
            self.store.stage(tx, current)
            return current

        released = await self.state.transaction(apply)
        logger.info(
            "payment_released",
            delivery_id=str(delivery_id),
            rider_id=str(rider.id),
            amount=str(released.rider_payment),
            payment_ref=released.payment_ref,
        )
        return released

    async def rate(
        self,
        delivery_id: UUID,
        actor: Actor,
        rating: int,
        feedback: str | None = None,
    ) -> Delivery:
        """Record the customer's one-time rating and feed it to the rider's average."""
        if actor.role != Role.CUSTOMER:
            raise PermissionDenied("Only customers can rate deliveries")
        if not 1 <= rating <= 5:
            raise PreconditionFailed("Rating must be between 1 and 5")
        now = await self.clock.now()

        async def apply(tx: Transaction) -> Delivery:
            delivery = await self.store.load(tx, delivery_id)
            if delivery.customer_id != actor.user_id:
                raise PermissionDenied("You can only rate your own deliveries")
            if delivery.status not in (DeliveryStatus.DELIVERED, DeliveryStatus.COMPLETED):
                raise PreconditionFailed("Can only rate delivered or completed deliveries")
            if delivery.rating is not None:
                raise PreconditionFailed("Delivery has already been rated")

            delivery.rating = rating
            delivery.feedback = feedback
            delivery.updated_at = now

            if delivery.rider_id is not None:
                rider = await self.directory.load(tx, delivery.rider_id)
                rider.record_outcome(rating=rating)
                self.directory.stage(tx, rider)
            self.store.stage(tx, delivery)
            return delivery

        delivery = await self.state.transaction(apply)
        logger.info("delivery_rated", delivery_id=str(delivery_id), rating=rating)
        return delivery
