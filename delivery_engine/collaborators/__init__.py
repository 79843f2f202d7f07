"""Contracts for the systems the delivery engine depends on."""

from delivery_engine.collaborators.identity import IdentityService, RedisIdentityService
from delivery_engine.collaborators.orders import OrderService, RedisOrderService
from delivery_engine.collaborators.wallet import RedisWalletService, WalletService

__all__ = [
    "IdentityService",
    "OrderService",
    "WalletService",
    "RedisIdentityService",
    "RedisOrderService",
    "RedisWalletService",
]
