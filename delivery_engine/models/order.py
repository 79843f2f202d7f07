"""Order view consumed from the order collaborator."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from delivery_engine.models.delivery import DeliveryLocation
from delivery_engine.models.rider import utcnow


class OrderStatus(str, Enum):
    """Order status progression as seen by the delivery engine."""

    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderHistoryEntry(BaseModel):
    """Order-side audit entry."""

    status: OrderStatus
    reason: str | None = None
    actor: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class Order(BaseModel):
    """Order details needed for dispatch."""

    id: UUID = Field(default_factory=uuid4)
    order_number: str | None = None
    customer_id: UUID
    status: OrderStatus = OrderStatus.PENDING

    # Fulfilment
    is_home_delivery: bool = True
    pickup_address: DeliveryLocation | None = None
    delivery_address: DeliveryLocation | None = None

    # Pricing
    total: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    history: list[OrderHistoryEntry] = Field(default_factory=list)
