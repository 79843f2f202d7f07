"""Assignment attempt models. These are returned and logged, never persisted."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from delivery_engine.models.rider import Location, Rider, VehicleType


class Urgency(str, Enum):
    """Coarse triage priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AssignmentCriteria(BaseModel):
    """What the orchestrator needs to place one delivery."""

    delivery_id: UUID
    destination: Location | None = None
    city: str
    order_value: Decimal = Decimal("0")
    urgency: Urgency = Urgency.LOW
    vehicle_requirement: VehicleType | None = None
    exclude_rider_ids: set[UUID] = Field(default_factory=set)


class Candidate(BaseModel):
    """A rider under consideration, with distance to the destination."""

    rider: Rider
    distance_km: float


class ScoreFactors(BaseModel):
    """Component scores, each in [0, 100]."""

    distance: float
    rating: float
    experience: float
    workload: float
    vehicle: float


class RiderScore(BaseModel):
    """Weighted score of one candidate."""

    rider_id: UUID
    name: str | None = None
    vehicle_type: VehicleType
    distance_km: float
    total: float
    factors: ScoreFactors


class AssignmentResult(BaseModel):
    """Outcome of one orchestrator invocation."""

    success: bool
    delivery_id: UUID
    rider: RiderScore | None = None
    alternates: list[RiderScore] = Field(default_factory=list)
    estimated_minutes: int | None = None
    acceptance_expiry_time: datetime | None = None
    reason: str | None = None
    trace: dict[str, Any] | None = None
