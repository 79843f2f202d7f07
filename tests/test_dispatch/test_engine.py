"""Tests for the engine's operational surface."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from delivery_engine.dispatch.analytics import Timeframe
from delivery_engine.dispatch.engine import DeliveryEngine
from delivery_engine.errors import NotFound, PermissionDenied, PreconditionFailed
from delivery_engine.models.assignment import Urgency
from delivery_engine.models.delivery import (
    DeliveryStatus,
    PaymentStatus,
    calculate_delivery_fee,
    calculate_rider_payment,
)
from delivery_engine.models.rider import (
    REQUIRED_DOCUMENTS,
    DocumentStatus,
    Rider,
    RiderStatus,
    Vehicle,
    VehicleType,
)
from delivery_engine.models.user import Actor, Role, User
from tests.helpers import DESTINATION, rider_actor


def test_fee_and_payment_rules() -> None:
    assert calculate_delivery_fee(4.0, Decimal("300"), Decimal("50")) == Decimal("500")
    assert calculate_delivery_fee(2.25, Decimal("300"), Decimal("50")) == Decimal("413")
    rate, minimum = Decimal("0.20"), Decimal("500")
    assert calculate_rider_payment(Decimal("6000"), rate, minimum) == Decimal("4800")
    assert calculate_rider_payment(Decimal("400"), rate, minimum) == Decimal("500")


# Deliveries


@pytest.mark.asyncio
async def test_create_delivery_prices_from_distance(engine: DeliveryEngine, make_order) -> None:
    order = await make_order()

    delivery = await engine.create_delivery(order.id)

    assert delivery.status == DeliveryStatus.PENDING_ASSIGNMENT
    assert delivery.customer_id == order.customer_id
    assert delivery.order_value == order.total
    assert delivery.distance_km == pytest.approx(5.4, abs=0.2)
    fee = calculate_delivery_fee(delivery.distance_km, Decimal("300"), Decimal("50"))
    assert delivery.delivery_fee == fee
    assert delivery.rider_payment == calculate_rider_payment(fee, Decimal("0.20"), Decimal("500"))
    assert delivery.status_history == []


@pytest.mark.asyncio
async def test_create_delivery_keeps_order_fee(engine: DeliveryEngine, make_order) -> None:
    order = await make_order(delivery_fee=Decimal("6000"))

    delivery = await engine.create_delivery(order.id)

    assert delivery.delivery_fee == Decimal("6000")
    assert delivery.rider_payment == Decimal("4800")


@pytest.mark.asyncio
async def test_create_delivery_without_coordinates(engine: DeliveryEngine, make_order) -> None:
    order = await make_order(coordinates=None)

    delivery = await engine.create_delivery(order.id)

    assert delivery.distance_km is None
    assert delivery.delivery_fee == Decimal("300")
    assert delivery.rider_payment == Decimal("500")


@pytest.mark.asyncio
async def test_one_delivery_per_order(engine: DeliveryEngine, make_order) -> None:
    order = await make_order()
    first = await engine.create_delivery(order.id)

    with pytest.raises(PreconditionFailed):
        await engine.create_delivery(order.id)
    with pytest.raises(NotFound):
        await engine.create_delivery(uuid4())

    assert (await engine.get_delivery_by_order(order.id)).id == first.id
    assert await engine.get_delivery_by_order(uuid4()) is None


@pytest.mark.asyncio
async def test_process_paid_order_assigns(engine: DeliveryEngine, make_rider, make_order) -> None:
    rider = await make_rider()
    order = await make_order(age_minutes=130)

    result = await engine.process_paid_order(order.id)

    assert result.success
    assert result.rider.rider_id == rider.id
    delivery = await engine.get_delivery_by_order(order.id)
    assert delivery.status == DeliveryStatus.AWAITING_RIDER_RESPONSE
    assert delivery.urgency == Urgency.HIGH.value

    # A repeated payment event finds nothing left to do
    assert await engine.process_paid_order(order.id) is None


@pytest.mark.asyncio
async def test_process_paid_order_skips_pickup_orders(engine: DeliveryEngine, make_order) -> None:
    order = await make_order(is_home_delivery=False)

    assert await engine.process_paid_order(order.id) is None
    assert await engine.get_delivery_by_order(order.id) is None


@pytest.mark.asyncio
async def test_process_paid_order_queues_when_nobody_is_free(
    engine: DeliveryEngine, make_order
) -> None:
    order = await make_order()

    result = await engine.process_paid_order(order.id)

    assert not result.success
    delivery = await engine.get_delivery_by_order(order.id)
    assert delivery.status == DeliveryStatus.PENDING_ASSIGNMENT
    assert delivery.needs_manual_assignment is True
    assert delivery.status_history == []
    assert delivery.notes[-1].kind == "manual_assignment"

    stored_order = await engine.orders.get_order(order.id)
    assert stored_order.history[-1].reason.startswith("Added to manual assignment queue")


@pytest.mark.asyncio
async def test_assign_rider_requires_privilege(
    engine: DeliveryEngine, make_delivery, customer: Actor
) -> None:
    delivery = await make_delivery()

    with pytest.raises(PermissionDenied):
        await engine.assign_rider(delivery.id, customer)


@pytest.mark.asyncio
async def test_listing_filters(
    engine: DeliveryEngine, make_rider, make_delivery, customer: Actor, admin: Actor, clock
) -> None:
    rider = await make_rider()
    first = await make_delivery()
    clock.advance(minutes=1)
    second = await make_delivery()
    clock.advance(minutes=1)
    third = await make_delivery()

    await engine.assign_rider(third.id)
    actor = rider_actor(rider)
    await engine.respond_to_assignment(third.id, actor, accept=True)
    for status in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED):
        await engine.update_status(third.id, status, actor)
    await engine.update_status(third.id, DeliveryStatus.COMPLETED, customer)

    pending = await engine.list_pending_assignments()
    assert [d.id for d in pending] == [first.id, second.id]

    everything = await engine.list_deliveries()
    assert [d.id for d in everything] == [third.id, second.id, first.id]

    assert [d.id for d in await engine.list_deliveries(rider_id=rider.id)] == [third.id]
    assert [d.id for d in await engine.list_deliveries(pending_payment_only=True)] == [third.id]
    assert len(await engine.list_deliveries(unassigned_only=True)) == 2
    assert len(await engine.list_deliveries(customer_id=customer.user_id)) == 3
    assert await engine.list_deliveries(city="Abuja") == []
    assert len(await engine.list_deliveries(city="lagos")) == 3

    await engine.release_payment(third.id, admin)
    assert await engine.list_deliveries(pending_payment_only=True) == []
    assert len(await engine.list_deliveries(payment_status=PaymentStatus.RELEASED)) == 1


# Riders


async def register(engine: DeliveryEngine, identity, name: str = "New Rider") -> Rider:
    user = await identity.save_user(User(name=name, role=Role.RIDER))
    return await engine.register_rider(
        Rider(
            user_id=user.id,
            name=name,
            vehicle=Vehicle(type=VehicleType.BICYCLE),
            service_areas=["Lagos"],
        )
    )


@pytest.mark.asyncio
async def test_rider_onboarding(engine: DeliveryEngine, identity, admin: Actor) -> None:
    rider = await register(engine, identity)
    assert rider.status == RiderStatus.PENDING_VERIFICATION

    with pytest.raises(PreconditionFailed):
        await engine.register_rider(rider)
    with pytest.raises(PreconditionFailed):
        await engine.add_verification_document(rider.id, "selfie", "https://docs/selfie.png")
    with pytest.raises(PreconditionFailed, match="not verified"):
        await engine.update_location(rider.id, DESTINATION, is_available=True)

    for doc_type in REQUIRED_DOCUMENTS:
        rider = await engine.add_verification_document(
            rider.id, doc_type, f"https://docs/{doc_type}.png"
        )
    with pytest.raises(PermissionDenied):
        await engine.verify_document(rider.id, 0, DocumentStatus.VERIFIED, rider_actor(rider))
    with pytest.raises(NotFound):
        await engine.verify_document(rider.id, 7, DocumentStatus.VERIFIED, admin)

    for index in range(len(REQUIRED_DOCUMENTS) - 1):
        rider = await engine.verify_document(rider.id, index, DocumentStatus.VERIFIED, admin)
    assert rider.status == RiderStatus.PENDING_VERIFICATION

    rider = await engine.verify_document(
        rider.id, len(REQUIRED_DOCUMENTS) - 1, DocumentStatus.VERIFIED, admin
    )
    assert rider.status == RiderStatus.ACTIVE

    rider = await engine.update_location(rider.id, DESTINATION, is_available=True)
    assert rider.is_assignable
    assert rider.current_location == DESTINATION
    assert (await engine.get_rider_by_user(rider.user_id)).id == rider.id


@pytest.mark.asyncio
async def test_security_deposit(engine: DeliveryEngine, make_rider, admin: Actor) -> None:
    rider = await make_rider(deposit=Decimal("50000"))

    check = await engine.check_security_deposit_requirement(rider.id)
    assert check["is_eligible"] is False
    assert check["shortfall"] == Decimal("20000")

    with pytest.raises(PermissionDenied):
        await engine.update_security_deposit(rider.id, Decimal("70000"), rider_actor(rider))
    with pytest.raises(PreconditionFailed):
        await engine.update_security_deposit(rider.id, Decimal("-1"), admin)

    await engine.update_security_deposit(rider.id, Decimal("70000"), admin)
    check = await engine.check_security_deposit_requirement(rider.id)
    assert check["is_eligible"] is True
    assert check["shortfall"] == Decimal("0")


@pytest.mark.asyncio
async def test_suspended_rider_gets_no_offers(
    engine: DeliveryEngine, make_rider, make_delivery, admin: Actor
) -> None:
    rider = await make_rider()
    await engine.set_rider_status(rider.id, RiderStatus.SUSPENDED, admin)
    delivery = await make_delivery()

    result = await engine.assign_rider(delivery.id)

    assert not result.success
    assert [r.id for r in await engine.list_riders(status=RiderStatus.SUSPENDED)] == [rider.id]


@pytest.mark.asyncio
async def test_list_riders_filters(engine: DeliveryEngine, make_rider) -> None:
    bike = await make_rider("Bike", vehicle=VehicleType.BICYCLE)
    car = await make_rider("Car", vehicle=VehicleType.CAR, available=False)
    await make_rider("Abuja", city="Abuja")

    assert [r.id for r in await engine.list_riders(vehicle_type=VehicleType.CAR)] == [car.id]
    assert {r.id for r in await engine.list_riders(city="Lagos")} == {bike.id, car.id}
    assert len(await engine.list_riders(is_available=True)) == 2


# Analytics


@pytest.mark.asyncio
async def test_analytics(
    engine: DeliveryEngine, make_rider, make_delivery, clock
) -> None:
    near = await make_rider("Near", km_away=0.5)
    far = await make_rider("Far", km_away=2.0)
    delivered = await make_delivery()
    declined = await make_delivery()

    clock.advance(minutes=10)
    assert (await engine.assign_rider(delivered.id)).rider.rider_id == near.id
    assert (await engine.assign_rider(declined.id)).rider.rider_id == far.id

    near_actor = rider_actor(near)
    await engine.respond_to_assignment(delivered.id, near_actor, accept=True)
    await engine.respond_to_assignment(declined.id, rider_actor(far), accept=False)
    await engine.update_status(delivered.id, DeliveryStatus.PICKED_UP, near_actor)
    await engine.update_status(delivered.id, DeliveryStatus.IN_TRANSIT, near_actor)
    clock.advance(minutes=20)
    await engine.update_status(delivered.id, DeliveryStatus.DELIVERED, near_actor)
    await make_delivery()

    analytics = await engine.get_assignment_analytics(Timeframe.DAY)
    assert analytics.total_assignments == 2
    assert analytics.average_assignment_minutes == pytest.approx(10.0)
    assert analytics.successful_deliveries == 1
    assert (analytics.accepted, analytics.declined, analytics.expired) == (1, 1, 0)

    metrics = await engine.get_delivery_metrics(Timeframe.WEEK)
    assert metrics.total_orders == 3
    assert metrics.assigned_orders == 2
    assert metrics.delivered_orders == 1
    assert metrics.assignment_rate == pytest.approx(200 / 3)
    assert metrics.delivery_rate == pytest.approx(50.0)
    assert metrics.average_delivery_minutes == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_analytics_on_empty_window(engine: DeliveryEngine, clock) -> None:
    metrics = await engine.get_delivery_metrics(Timeframe.MONTH)

    assert metrics.total_orders == 0
    assert metrics.assignment_rate == 0.0
    assert metrics.since == clock.current - timedelta(days=30)
