"""Candidate search around a delivery destination."""

import math

from delivery_engine.config import DispatchPolicy
from delivery_engine.models.assignment import AssignmentCriteria, Candidate
from delivery_engine.models.rider import Location
from delivery_engine.state.riders import RiderDirectory
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: Location, b: Location) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)
    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


class CandidateLocator:
    """Finds eligible riders near a destination. Never writes."""

    def __init__(self, directory: RiderDirectory, policy: DispatchPolicy):
        self.directory = directory
        self.policy = policy

    async def locate(self, criteria: AssignmentCriteria) -> list[Candidate]:
        """
        Eligible riders within the search radius, nearest first.

        Riders must be active, available, not on a delivery, have a known
        position, serve the destination city and sit below the workload
        ceiling. An empty list is a normal result.
        """
        if criteria.destination is None:
            return []

        riders = await self.directory.find_eligible(criteria.city)

        candidates = []
        for rider in riders:
            if rider.id in criteria.exclude_rider_ids:
                continue

            distance = haversine_km(rider.current_location, criteria.destination)
            if distance > self.policy.max_search_radius_km:
                continue
            if rider.active_delivery_count >= self.policy.max_active_deliveries:
                continue

            candidates.append(Candidate(rider=rider, distance_km=distance))

        candidates.sort(key=lambda c: (c.distance_km, str(c.rider.id)))

        logger.debug(
            "candidates_located",
            delivery_id=str(criteria.delivery_id),
            city=criteria.city,
            considered=len(riders),
            within_radius=len(candidates),
        )
        return candidates
