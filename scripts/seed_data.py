"""Seed users, riders and paid orders for local runs."""

import asyncio
from decimal import Decimal

from delivery_engine.collaborators import RedisIdentityService, RedisOrderService
from delivery_engine.dispatch import DeliveryEngine, build_engine
from delivery_engine.models.delivery import DeliveryLocation
from delivery_engine.models.order import Order, OrderStatus
from delivery_engine.models.rider import (
    REQUIRED_DOCUMENTS,
    DocumentStatus,
    Location,
    Rider,
    Vehicle,
    VehicleType,
)
from delivery_engine.models.user import Actor, Role, User
from delivery_engine.state.manager import StateManager

RIDERS = [
    ("Chinedu Okafor", VehicleType.MOTORCYCLE, Location(lat=6.4281, lng=3.4219)),
    ("Aisha Bello", VehicleType.BICYCLE, Location(lat=6.4355, lng=3.4150)),
    ("Tunde Adeyemi", VehicleType.CAR, Location(lat=6.4550, lng=3.3941)),
    ("Ngozi Eze", VehicleType.MOTORCYCLE, Location(lat=6.4698, lng=3.5852)),
    ("Emeka Obi", VehicleType.VAN, Location(lat=6.5244, lng=3.3792)),
]

STORE = DeliveryLocation(
    address="12 Admiralty Way, Lekki Phase 1",
    city="Lagos",
    state="Lagos",
    coordinates=Location(lat=6.4474, lng=3.4706),
)

DROP_OFFS = [
    ("5 Ozumba Mbadiwe Ave, Victoria Island", Location(lat=6.4300, lng=3.4250), "15000"),
    ("22 Awolowo Rd, Ikoyi", Location(lat=6.4500, lng=3.4300), "62000"),
    ("3 Allen Ave, Ikeja", Location(lat=6.6018, lng=3.3515), "120000"),
]


async def seed_users(identity: RedisIdentityService) -> tuple[User, User]:
    """Seed an admin and a customer."""
    print("Seeding users...")

    admin = await identity.save_user(User(name="Dispatch Admin", role=Role.ADMIN))
    customer = await identity.save_user(
        User(name="Funke Akindele", role=Role.CUSTOMER, email="funke@example.com")
    )
    print(f"  ✓ Admin {admin.id}")
    print(f"  ✓ Customer {customer.id}")
    return admin, customer


async def seed_riders(
    engine: DeliveryEngine,
    identity: RedisIdentityService,
    admin: User,
) -> None:
    """Seed verified, available riders around Lagos."""
    print("Seeding riders...")
    actor = Actor.from_user(admin)

    for name, vehicle_type, location in RIDERS:
        user = await identity.save_user(User(name=name, role=Role.RIDER))
        rider = await engine.register_rider(
            Rider(
                user_id=user.id,
                name=name,
                vehicle=Vehicle(type=vehicle_type),
                service_areas=["Lagos"],
            )
        )
        for document_type in REQUIRED_DOCUMENTS:
            await engine.add_verification_document(
                rider.id, document_type, f"https://files.example.com/{rider.id}/{document_type}"
            )
        for index in range(len(REQUIRED_DOCUMENTS)):
            await engine.verify_document(rider.id, index, DocumentStatus.VERIFIED, actor)
        await engine.update_security_deposit(rider.id, Decimal("70000"), actor)
        await engine.update_location(rider.id, location, is_available=True)
        print(f"  ✓ Added {name} ({vehicle_type.value}) as rider {rider.id}")


async def seed_orders(orders: RedisOrderService, customer: User) -> None:
    """Seed paid home-delivery orders."""
    print("Seeding orders...")

    for number, (address, location, total) in enumerate(DROP_OFFS, 1):
        order = await orders.save_order(
            Order(
                order_number=f"ORD-{number:05d}",
                customer_id=customer.id,
                status=OrderStatus.PAID,
                pickup_address=STORE,
                delivery_address=DeliveryLocation(
                    address=address, city="Lagos", state="Lagos", coordinates=location
                ),
                total=Decimal(total),
            )
        )
        print(f"  ✓ Added {order.order_number} ({order.id}) total {order.total}")


async def main() -> None:
    """Run all seed functions."""
    print("\n" + "=" * 50)
    print("  Seeding Delivery Engine Data")
    print("=" * 50 + "\n")

    state_manager = StateManager()
    await state_manager.connect()
    engine = build_engine(state_manager)
    identity = RedisIdentityService(state_manager)
    orders = RedisOrderService(state_manager)

    admin, customer = await seed_users(identity)
    await seed_riders(engine, identity, admin)
    await seed_orders(orders, customer)

    await state_manager.disconnect()

    print("\n" + "=" * 50)
    print("  ✓ All data seeded successfully!")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
