"""Authoritative time source for expiry decisions."""

from datetime import datetime
from typing import Protocol

from delivery_engine.state.manager import StateManager


class Clock(Protocol):
    async def now(self) -> datetime: ...


class ServerClock:
    """
    Reads time from the Redis server.

    API handlers and the sweeper may run on different hosts; comparing
    expiry against one server's clock keeps both paths in agreement.
    """

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    async def now(self) -> datetime:
        return await self.state.server_time()
