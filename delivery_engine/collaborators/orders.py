"""Order collaborator contract and its Redis-backed implementation."""

from typing import Protocol
from uuid import UUID

from delivery_engine.errors import NotFound
from delivery_engine.models.order import Order, OrderHistoryEntry, OrderStatus
from delivery_engine.models.rider import utcnow
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)


class OrderService(Protocol):
    """What the engine may ask of the order system."""

    async def get_order(self, order_id: UUID) -> Order: ...

    async def set_order_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> None: ...

    async def append_order_history(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> None: ...


class RedisOrderService:
    """Order records shared through Redis with the order system."""

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    @staticmethod
    def order_key(order_id: UUID | str) -> str:
        return f"order:{order_id}"

    async def save_order(self, order: Order) -> Order:
        await self.state.set(self.order_key(order.id), order.model_dump(mode="json"))
        return order

    async def get_order(self, order_id: UUID) -> Order:
        data = await self.state.get(self.order_key(order_id))
        if not data:
            raise NotFound("Order not found", order_id=str(order_id))
        return Order.model_validate(data)

    async def _update(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None,
        actor: str | None,
        change_status: bool,
    ) -> None:
        async def apply(tx: Transaction) -> None:
            data = await tx.get(self.order_key(order_id))
            if not data:
                raise NotFound("Order not found", order_id=str(order_id))
            order = Order.model_validate(data)
            now = utcnow()
            if change_status:
                order.status = status
            order.history.append(
                OrderHistoryEntry(status=status, reason=reason, actor=actor, timestamp=now)
            )
            order.updated_at = now
            tx.set(self.order_key(order_id), order.model_dump(mode="json"))

        await self.state.transaction(apply)

    async def set_order_status(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> None:
        await self._update(order_id, status, reason, actor, change_status=True)
        logger.info("order_status_updated", order_id=str(order_id), status=status.value)

    async def append_order_history(
        self,
        order_id: UUID,
        status: OrderStatus,
        reason: str | None = None,
        actor: str | None = None,
    ) -> None:
        await self._update(order_id, status, reason, actor, change_status=False)
