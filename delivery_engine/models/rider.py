"""Rider models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiderStatus(str, Enum):
    """Administrative rider status."""

    PENDING_VERIFICATION = "pending_verification"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class VehicleType(str, Enum):
    """Supported courier vehicles."""

    FOOT = "foot"
    BICYCLE = "bicycle"
    MOTORCYCLE = "motorcycle"
    CAR = "car"
    VAN = "van"


class DocumentStatus(str, Enum):
    """Verification state of an onboarding document."""

    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DeliveryOutcome(str, Enum):
    """Outcomes recorded against a rider's stats."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    REASSIGNED = "reassigned"


REQUIRED_DOCUMENTS = ("id_card", "drivers_license", "vehicle_documents")


class Location(BaseModel):
    """Geographic location."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Vehicle(BaseModel):
    """Rider vehicle details."""

    type: VehicleType
    model: str | None = None
    license_plate: str | None = None
    year: int | None = None
    color: str | None = None


class VerificationDocument(BaseModel):
    """An onboarding document awaiting or past review."""

    type: str
    url: str
    status: DocumentStatus = DocumentStatus.PENDING
    uploaded_at: datetime = Field(default_factory=utcnow)
    reviewed_at: datetime | None = None
    notes: str | None = None


class DeliveryStats(BaseModel):
    """Reputation and performance counters."""

    completed_deliveries: int = 0
    cancelled_deliveries: int = 0
    rejected_deliveries: int = 0
    reassigned_deliveries: int = 0
    average_delivery_time: float = 0.0
    average_rating: float = 0.0
    total_ratings: int = 0
    total_earnings: Decimal = Decimal("0")


class Rider(BaseModel):
    """Courier profile and live dispatch state."""

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str | None = None
    status: RiderStatus = RiderStatus.PENDING_VERIFICATION
    vehicle: Vehicle

    # Position and coverage
    current_location: Location | None = None
    location_updated_at: datetime | None = None
    service_areas: list[str] = Field(default_factory=list)
    max_delivery_distance: float = Field(default=10.0, gt=0)

    # Dispatch flags
    is_available: bool = False
    is_on_delivery: bool = False
    active_delivery_count: int = Field(default=0, ge=0)

    verification_documents: list[VerificationDocument] = Field(default_factory=list)
    stats: DeliveryStats = Field(default_factory=DeliveryStats)
    security_deposit: Decimal = Field(default=Decimal("0"), ge=0)
    notes: str | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_assignable(self) -> bool:
        """Check if rider can receive a new offer."""
        return (
            self.status == RiderStatus.ACTIVE
            and self.is_available
            and not self.is_on_delivery
        )

    def serves(self, city: str) -> bool:
        """Check if the rider covers a destination city."""
        wanted = city.strip().lower()
        return any(area.strip().lower() == wanted for area in self.service_areas)

    def mark_on_delivery(self) -> None:
        """Take one more delivery; a busy rider stops receiving offers."""
        self.active_delivery_count += 1
        self.is_on_delivery = True
        self.is_available = False

    def release(self) -> None:
        """Drop one held delivery. Availability is left for the rider to restore."""
        self.active_delivery_count = max(0, self.active_delivery_count - 1)
        self.is_on_delivery = self.active_delivery_count > 0

    def record_outcome(
        self,
        outcome: DeliveryOutcome | None = None,
        duration_minutes: float | None = None,
        rating: int | None = None,
        earnings: Decimal | None = None,
    ) -> None:
        """
        Update stats with one delivery outcome.

        Averages are incremental: new = (old * (n - 1) + value) / n where n is
        the updated count for that metric. A duration recorded before the
        completion is counted as the delivery about to complete.
        """
        stats = self.stats

        if outcome == DeliveryOutcome.COMPLETED:
            stats.completed_deliveries += 1
        elif outcome == DeliveryOutcome.CANCELLED:
            stats.cancelled_deliveries += 1
        elif outcome == DeliveryOutcome.REJECTED:
            stats.rejected_deliveries += 1
        elif outcome == DeliveryOutcome.REASSIGNED:
            stats.reassigned_deliveries += 1

        if duration_minutes is not None:
            n = stats.completed_deliveries
            if outcome != DeliveryOutcome.COMPLETED:
                n += 1
            stats.average_delivery_time = (
                stats.average_delivery_time * (n - 1) + duration_minutes
            ) / n

        if rating is not None:
            stats.total_ratings += 1
            n = stats.total_ratings
            stats.average_rating = (stats.average_rating * (n - 1) + rating) / n

        if earnings is not None:
            stats.total_earnings += earnings

        self.updated_at = utcnow()

    def documents_verified(self) -> bool:
        """True when every uploaded document has been verified."""
        return bool(self.verification_documents) and all(
            doc.status == DocumentStatus.VERIFIED for doc in self.verification_documents
        )
