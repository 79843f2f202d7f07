"""Data models for the delivery engine."""

from delivery_engine.models.assignment import (
    AssignmentCriteria,
    AssignmentResult,
    Candidate,
    RiderScore,
    ScoreFactors,
    Urgency,
)
from delivery_engine.models.delivery import (
    Delivery,
    DeliveryLocation,
    DeliveryStatus,
    PaymentStatus,
    StatusHistoryEntry,
    TimeLog,
)
from delivery_engine.models.order import Order, OrderStatus
from delivery_engine.models.rider import (
    DeliveryOutcome,
    DeliveryStats,
    DocumentStatus,
    Location,
    Rider,
    RiderStatus,
    Vehicle,
    VehicleType,
    VerificationDocument,
)
from delivery_engine.models.user import Actor, Role, User

__all__ = [
    # Assignment
    "AssignmentCriteria",
    "AssignmentResult",
    "Candidate",
    "RiderScore",
    "ScoreFactors",
    "Urgency",
    # Delivery
    "Delivery",
    "DeliveryLocation",
    "DeliveryStatus",
    "PaymentStatus",
    "StatusHistoryEntry",
    "TimeLog",
    # Order
    "Order",
    "OrderStatus",
    # Rider
    "DeliveryOutcome",
    "DeliveryStats",
    "DocumentStatus",
    "Location",
    "Rider",
    "RiderStatus",
    "Vehicle",
    "VehicleType",
    "VerificationDocument",
    # Identity
    "Actor",
    "Role",
    "User",
]
