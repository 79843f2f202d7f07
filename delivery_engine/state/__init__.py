"""State management modules."""

from delivery_engine.state.clock import Clock, ServerClock
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.state.riders import RiderDirectory

__all__ = [
    "Clock",
    "ServerClock",
    "DeliveryStore",
    "RiderDirectory",
    "StateManager",
    "Transaction",
]
