"""Delivery models."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from delivery_engine.models.rider import Location, utcnow


class DeliveryStatus(str, Enum):
    """Delivery status progression."""

    PENDING_ASSIGNMENT = "pending_assignment"
    AWAITING_RIDER_RESPONSE = "awaiting_rider_response"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DECLINED = "declined"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.DECLINED,
        DeliveryStatus.EXPIRED,
    }
)

# Statuses in which the delivery holds its rider
RIDER_HOLDING_STATUSES = frozenset(
    {
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DELIVERED,
    }
)


class PaymentStatus(str, Enum):
    """Rider payment release status."""

    PENDING = "pending"
    RELEASED = "released"
    CANCELLED = "cancelled"


class DeliveryLocation(BaseModel):
    """Pickup or drop-off point."""

    address: str
    city: str
    state: str | None = None
    coordinates: Location | None = None
    instructions: str | None = None


class TimeLog(BaseModel):
    """Timestamps of lifecycle milestones."""

    assigned_at: datetime | None = None
    responded_at: datetime | None = None
    picked_up_at: datetime | None = None
    in_transit_at: datetime | None = None
    delivered_at: datetime | None = None
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None
    payment_released_at: datetime | None = None


class StatusHistoryEntry(BaseModel):
    """One audit-trail entry."""

    status: DeliveryStatus
    timestamp: datetime
    notes: str | None = None
    updated_by: str | None = None


class DeliveryNote(BaseModel):
    """Operational marker that is not a status change, e.g. manual queueing."""

    kind: str
    message: str
    timestamp: datetime
    actor: str | None = None


class Delivery(BaseModel):
    """Delivery record for one order."""

    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    customer_id: UUID
    rider_id: UUID | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING_ASSIGNMENT

    # Locations
    pickup_location: DeliveryLocation | None = None
    delivery_location: DeliveryLocation

    # Economics
    distance_km: float | None = Field(default=None, ge=0)
    order_value: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    rider_payment: Decimal = Field(default=Decimal("0"), ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_ref: str | None = None

    # Timing
    time_logs: TimeLog = Field(default_factory=TimeLog)
    acceptance_expiry_time: datetime | None = None
    seen_by_rider: bool = False

    # Audit
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)
    notes: list[DeliveryNote] = Field(default_factory=list)

    # Triage
    urgency: str | None = None
    needs_manual_assignment: bool = False
    manual_assignment_reason: str | None = None
    manual_assignment_at: datetime | None = None

    # Feedback
    rating: int | None = Field(default=None, ge=1, le=5)
    feedback: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def holds_rider(self) -> bool:
        """True while the assigned rider is engaged by this delivery."""
        return self.rider_id is not None and self.status in RIDER_HOLDING_STATUSES

    def record_status(
        self,
        status: DeliveryStatus,
        at: datetime,
        notes: str | None = None,
        updated_by: str | None = None,
    ) -> None:
        """Move to a new status and append exactly one audit entry."""
        self.status = status
        self.status_history.append(
            StatusHistoryEntry(status=status, timestamp=at, notes=notes, updated_by=updated_by)
        )
        self.updated_at = at

    def add_note(self, kind: str, message: str, at: datetime, actor: str | None = None) -> None:
        self.notes.append(DeliveryNote(kind=kind, message=message, timestamp=at, actor=actor))
        self.updated_at = at


def calculate_delivery_fee(
    distance_km: float,
    base_fee: Decimal,
    per_km: Decimal,
) -> Decimal:
    """Base fee plus a per-kilometre rate, rounded to whole currency units."""
    fee = base_fee + per_km * Decimal(str(distance_km))
    return fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def calculate_rider_payment(
    delivery_fee: Decimal,
    platform_rate: Decimal,
    minimum: Decimal,
) -> Decimal:
    """Rider share of the fee after the platform cut, never below the minimum."""
    payment = (delivery_fee * (Decimal("1") - platform_rate)).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return max(payment, minimum)
