"""Shared test helpers."""

from datetime import datetime, timedelta

from delivery_engine.models.rider import Location, Rider
from delivery_engine.models.user import Actor, Role

# Victoria Island, Lagos
DESTINATION = Location(lat=6.4300, lng=3.4250)
PICKUP = Location(lat=6.4474, lng=3.4706)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    async def now(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


def offset(location: Location, km_north: float) -> Location:
    """A point km_north kilometres due north of location."""
    return Location(lat=location.lat + km_north / 111.195, lng=location.lng)


def rider_actor(rider: Rider) -> Actor:
    return Actor(user_id=rider.user_id, role=Role.RIDER, name=rider.name)
