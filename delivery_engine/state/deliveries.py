"""Delivery persistence and indexes."""

from datetime import datetime
from uuid import UUID

from delivery_engine.errors import NotFound, PreconditionFailed
from delivery_engine.models.delivery import Delivery, DeliveryStatus, PaymentStatus
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)


class DeliveryStore:
    """
    Stores delivery records in Redis.

    Besides the record itself, every write keeps these indexes in step:
    a per-order uniqueness key, a creation-time sorted set, a sorted set of
    open offers scored by acceptance expiry, the manual-assignment queue and
    a per-rider set of every delivery the rider was ever offered.
    """

    CREATED_KEY = "deliveries:created"
    AWAITING_KEY = "deliveries:awaiting"
    MANUAL_QUEUE_KEY = "deliveries:manual_queue"

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    @staticmethod
    def delivery_key(delivery_id: UUID | str) -> str:
        return f"delivery:{delivery_id}"

    @staticmethod
    def order_key(order_id: UUID | str) -> str:
        return f"delivery:order:{order_id}"

    @staticmethod
    def rider_deliveries_key(rider_id: UUID | str) -> str:
        return f"rider:{rider_id}:deliveries"

    async def load(self, tx: Transaction, delivery_id: UUID | str) -> Delivery:
        """Read a delivery inside a transaction, watching it for changes."""
        data = await tx.get(self.delivery_key(delivery_id))
        if not data:
            raise NotFound("Delivery not found", delivery_id=str(delivery_id))
        return Delivery.model_validate(data)

    def stage(self, tx: Transaction, delivery: Delivery) -> None:
        """Buffer a delivery write and its index updates into a transaction."""
        delivery_id = str(delivery.id)
        tx.set(self.delivery_key(delivery_id), delivery.model_dump(mode="json"))

        if (
            delivery.status == DeliveryStatus.AWAITING_RIDER_RESPONSE
            and delivery.acceptance_expiry_time is not None
        ):
            tx.zadd(self.AWAITING_KEY, {delivery_id: delivery.acceptance_expiry_time.timestamp()})
        else:
            tx.zrem(self.AWAITING_KEY, delivery_id)

        if delivery.needs_manual_assignment and not delivery.is_terminal:
            queued_at = delivery.manual_assignment_at or delivery.updated_at
            tx.zadd(self.MANUAL_QUEUE_KEY, {delivery_id: queued_at.timestamp()})
        else:
            tx.zrem(self.MANUAL_QUEUE_KEY, delivery_id)

        if delivery.rider_id is not None:
            tx.sadd(self.rider_deliveries_key(delivery.rider_id), delivery_id)

    async def create(self, delivery: Delivery) -> Delivery:
        """Persist a new delivery. One delivery per order."""

        async def apply(tx: Transaction) -> Delivery:
            if await tx.get(self.order_key(delivery.order_id)):
                raise PreconditionFailed(
                    "Delivery already exists for this order", order_id=str(delivery.order_id)
                )
            tx.set(self.order_key(delivery.order_id), str(delivery.id))
            tx.zadd(self.CREATED_KEY, {str(delivery.id): delivery.created_at.timestamp()})
            self.stage(tx, delivery)
            return delivery

        created = await self.state.transaction(apply)
        logger.info(
            "delivery_created",
            delivery_id=str(created.id),
            order_id=str(created.order_id),
        )
        return created

    async def get(self, delivery_id: UUID | str) -> Delivery:
        data = await self.state.get(self.delivery_key(delivery_id))
        if not data:
            raise NotFound("Delivery not found", delivery_id=str(delivery_id))
        return Delivery.model_validate(data)

    async def find_by_order(self, order_id: UUID) -> Delivery | None:
        delivery_id = await self.state.get(self.order_key(order_id))
        if not delivery_id:
            return None
        return await self.get(delivery_id)

    async def get_many(self, delivery_ids: list[str]) -> list[Delivery]:
        keys = [self.delivery_key(delivery_id) for delivery_id in delivery_ids]
        return [Delivery.model_validate(data) for data in await self.state.mget(keys) if data]

    async def for_rider(self, rider_id: UUID) -> list[Delivery]:
        """Every delivery the rider was ever offered."""
        ids = await self.state.smembers(self.rider_deliveries_key(rider_id))
        return await self.get_many(sorted(ids))

    async def created_between(
        self,
        start: datetime,
        end: datetime | None = None,
    ) -> list[Delivery]:
        ids = await self.state.zrangebyscore(
            self.CREATED_KEY,
            start.timestamp(),
            end.timestamp() if end else "+inf",
        )
        return await self.get_many(ids)

    async def expired_offers(self, now: datetime, limit: int | None = None) -> list[str]:
        """Ids of open offers whose acceptance window closed strictly before now."""
        return await self.state.zrangebyscore(
            self.AWAITING_KEY, "-inf", f"({now.timestamp()}", limit=limit
        )

    async def manual_queue(self) -> list[Delivery]:
        """Deliveries waiting for a human dispatcher, oldest first."""
        return await self.get_many(await self.state.zrange(self.MANUAL_QUEUE_KEY))

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
        """List deliveries matching all given filters, newest first."""
        if rider_id is not None:
            deliveries = await self.for_rider(rider_id)
        else:
            deliveries = await self.get_many(await self.state.zrange(self.CREATED_KEY))

        def keep(delivery: Delivery) -> bool:
            if status is not None and delivery.status != status:
                return False
            if rider_id is not None and delivery.rider_id != rider_id:
                return False
            if customer_id is not None and delivery.customer_id != customer_id:
                return False
            if city is not None and delivery.delivery_location.city.lower() != city.lower():
                return False
            if payment_status is not None and delivery.payment_status != payment_status:
                return False
            if unassigned_only and delivery.rider_id is not None:
                return False
            if (
                awaiting_response_only
                and delivery.status != DeliveryStatus.AWAITING_RIDER_RESPONSE
            ):
                return False
            if pending_payment_only and (
                delivery.status != DeliveryStatus.COMPLETED
                or delivery.payment_status != PaymentStatus.PENDING
            ):
                return False
            return True

        return sorted(filter(keep, deliveries), key=lambda d: d.created_at, reverse=True)
