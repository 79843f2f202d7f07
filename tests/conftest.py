"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from delivery_engine.collaborators import (
    RedisIdentityService,
    RedisOrderService,
    RedisWalletService,
)
from delivery_engine.config import DispatchPolicy
from delivery_engine.dispatch.engine import DeliveryEngine
from delivery_engine.models.delivery import Delivery, DeliveryLocation
from delivery_engine.models.order import Order, OrderStatus
from delivery_engine.models.rider import (
    DeliveryStats,
    Location,
    Rider,
    RiderStatus,
    Vehicle,
    VehicleType,
)
from delivery_engine.models.user import Actor, Role, User
from delivery_engine.state.manager import StateManager
from delivery_engine.state.riders import RiderDirectory
from tests.helpers import DESTINATION, PICKUP, FrozenClock, offset


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[FakeAsyncRedis, None]:
    """In-memory Redis speaking the real protocol, WATCH/MULTI included."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def state_manager(redis_client: FakeAsyncRedis) -> StateManager:
    """Create a test state manager."""
    return StateManager(redis_client)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> DispatchPolicy:
    """Single-offer policy; reassignment tests build their own engine."""
    return DispatchPolicy(reassign_on_decline=False, reassign_on_expiry=False)


@pytest.fixture
def identity(state_manager: StateManager) -> RedisIdentityService:
    return RedisIdentityService(state_manager)


@pytest.fixture
def orders(state_manager: StateManager) -> RedisOrderService:
    return RedisOrderService(state_manager)


@pytest.fixture
def wallet(state_manager: StateManager) -> RedisWalletService:
    return RedisWalletService(state_manager)


@pytest.fixture
def engine(
    state_manager: StateManager,
    orders: RedisOrderService,
    wallet: RedisWalletService,
    identity: RedisIdentityService,
    clock: FrozenClock,
    policy: DispatchPolicy,
) -> DeliveryEngine:
    """Engine wired to fake Redis and a frozen clock."""
    return DeliveryEngine(state_manager, orders, wallet, identity, clock, policy)


# Sample data fixtures


@pytest_asyncio.fixture
async def admin(identity: RedisIdentityService) -> Actor:
    user = await identity.save_user(User(name="Dispatch Admin", role=Role.ADMIN))
    return Actor.from_user(user)


@pytest_asyncio.fixture
async def customer(identity: RedisIdentityService) -> Actor:
    user = await identity.save_user(User(name="Test Customer", role=Role.CUSTOMER))
    return Actor.from_user(user)


@pytest.fixture
def make_rider(
    engine: DeliveryEngine,
    identity: RedisIdentityService,
    state_manager: StateManager,
) -> Callable[..., Awaitable[Rider]]:
    """Factory for active, available riders at a given distance from DESTINATION."""

    async def factory(
        name: str = "Test Rider",
        km_away: float | None = 1.0,
        vehicle: VehicleType = VehicleType.MOTORCYCLE,
        rating: float = 4.5,
        completed: int = 10,
        city: str = "Lagos",
        available: bool = True,
        status: RiderStatus = RiderStatus.ACTIVE,
        deposit: Decimal = Decimal("70000"),
    ) -> Rider:
        user = await identity.save_user(User(name=name, role=Role.RIDER))
        rider = await engine.directory.register(
            Rider(
                user_id=user.id,
                name=name,
                vehicle=Vehicle(type=vehicle),
                service_areas=[city],
                stats=DeliveryStats(
                    average_rating=rating,
                    completed_deliveries=completed,
                    total_ratings=completed,
                ),
                security_deposit=deposit,
            )
        )
        rider.status = status
        rider.is_available = available
        rider.current_location = offset(DESTINATION, km_away) if km_away is not None else None
        await state_manager.set(RiderDirectory.rider_key(rider.id), rider.model_dump(mode="json"))
        return rider

    return factory


@pytest.fixture
def make_order(
    orders: RedisOrderService,
    customer: Actor,
    clock: FrozenClock,
) -> Callable[..., Awaitable[Order]]:
    """Factory for paid home-delivery orders to DESTINATION."""

    async def factory(
        total: Decimal = Decimal("20000"),
        delivery_fee: Decimal = Decimal("0"),
        coordinates: Location | None = DESTINATION,
        is_home_delivery: bool = True,
        age_minutes: float = 0,
    ) -> Order:
        return await orders.save_order(
            Order(
                customer_id=customer.user_id,
                status=OrderStatus.PAID,
                is_home_delivery=is_home_delivery,
                pickup_address=DeliveryLocation(
                    address="12 Admiralty Way", city="Lagos", coordinates=PICKUP
                ),
                delivery_address=DeliveryLocation(
                    address="5 Ozumba Mbadiwe Ave", city="Lagos", coordinates=coordinates
                ),
                total=total,
                delivery_fee=delivery_fee,
                created_at=clock.current - timedelta(minutes=age_minutes),
            )
        )

    return factory


@pytest.fixture
def make_delivery(
    engine: DeliveryEngine,
    make_order: Callable[..., Awaitable[Order]],
) -> Callable[..., Awaitable[Delivery]]:
    """Factory for pending deliveries backed by a paid order."""

    async def factory(**order_fields) -> Delivery:
        order = await make_order(**order_fields)
        return await engine.create_delivery(order.id)

    return factory
