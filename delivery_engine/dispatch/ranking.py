"""Weighted multi-factor ranking of delivery candidates."""

import math
from decimal import Decimal

from delivery_engine.config import DispatchPolicy
from delivery_engine.models.assignment import (
    AssignmentCriteria,
    Candidate,
    RiderScore,
    ScoreFactors,
)
from delivery_engine.models.rider import Rider, VehicleType

# (order value ceiling, score at or below it, score above it)
VEHICLE_FIT: dict[VehicleType, tuple[Decimal, float, float]] = {
    VehicleType.FOOT: (Decimal("5000"), 80.0, 20.0),
    VehicleType.BICYCLE: (Decimal("15000"), 90.0, 40.0),
    VehicleType.MOTORCYCLE: (Decimal("50000"), 100.0, 80.0),
    VehicleType.CAR: (Decimal("100000"), 95.0, 100.0),
    VehicleType.VAN: (Decimal("50000"), 60.0, 100.0),
}
DEFAULT_VEHICLE_FIT = 50.0


class RankingEngine:
    """Scores candidates and orders them best first. Pure and deterministic."""

    def __init__(self, policy: DispatchPolicy):
        self.policy = policy

    def distance_score(self, distance_km: float) -> float:
        policy = self.policy
        if distance_km <= policy.priority_radius_km:
            return 100.0
        span = policy.max_search_radius_km - policy.priority_radius_km
        return max(0.0, 100.0 - (distance_km - policy.priority_radius_km) / span * 100.0)

    def rating_score(self, rating: float) -> float:
        minimum = self.policy.min_rider_rating
        if rating < minimum:
            return 0.0
        return min(100.0, (rating - minimum) / (5.0 - minimum) * 100.0)

    @staticmethod
    def experience_score(completed: int) -> float:
        # Early deliveries count for more than later ones
        if completed <= 0:
            return 20.0
        return min(100.0, 20.0 + math.log10(completed + 1) * 35.0)

    @staticmethod
    def workload_score(rider: Rider) -> float:
        if not rider.is_assignable:
            return 0.0
        return max(0.0, 100.0 - rider.active_delivery_count * 33.0)

    def vehicle_score(self, vehicle_type: VehicleType, criteria: AssignmentCriteria) -> float:
        ceiling, at_or_below, above = VEHICLE_FIT.get(
            vehicle_type, (Decimal("0"), DEFAULT_VEHICLE_FIT, DEFAULT_VEHICLE_FIT)
        )
        fit = at_or_below if criteria.order_value <= ceiling else above

        if criteria.vehicle_requirement and vehicle_type != criteria.vehicle_requirement:
            if self.policy.strict_vehicle_requirement:
                return 0.0
            return fit * self.policy.vehicle_penalty_factor
        return fit

    def score(self, candidate: Candidate, criteria: AssignmentCriteria) -> RiderScore:
        """Compute the component and weighted scores for one candidate."""
        rider = candidate.rider
        factors = ScoreFactors(
            distance=self.distance_score(candidate.distance_km),
            rating=self.rating_score(rider.stats.average_rating),
            experience=self.experience_score(rider.stats.completed_deliveries),
            workload=self.workload_score(rider),
            vehicle=self.vehicle_score(rider.vehicle.type, criteria),
        )

        weights = self.policy.weights
        total = (
            factors.distance * weights.distance
            + factors.rating * weights.rating
            + factors.experience * weights.experience
            + factors.workload * weights.workload
            + factors.vehicle * weights.vehicle
        )

        return RiderScore(
            rider_id=rider.id,
            name=rider.name,
            vehicle_type=rider.vehicle.type,
            distance_km=round(candidate.distance_km, 3),
            total=total,
            factors=factors,
        )

    def rank(
        self,
        candidates: list[Candidate],
        criteria: AssignmentCriteria,
    ) -> list[RiderScore]:
        """
        Score, drop those under the threshold and sort best first.

        Ties on total score go to the nearer rider, then to the lower
        rider id so the order never depends on input order.
        """
        scored = [self.score(candidate, criteria) for candidate in candidates]
        passing = [s for s in scored if s.total >= self.policy.min_assignment_score]
        passing.sort(key=lambda s: (-s.total, s.distance_km, str(s.rider_id)))
        return passing
