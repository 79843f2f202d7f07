"""Tests for the delivery lifecycle state machine."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from delivery_engine.dispatch.engine import DeliveryEngine
from delivery_engine.dispatch.lifecycle import TRANSITIONS, can_transition
from delivery_engine.errors import (
    ExpiredWindow,
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
)
from delivery_engine.models.delivery import Delivery, DeliveryStatus, PaymentStatus
from delivery_engine.models.order import OrderStatus
from delivery_engine.models.rider import Rider
from delivery_engine.models.user import Actor, Role
from tests.helpers import rider_actor


@pytest_asyncio.fixture
async def offered(engine: DeliveryEngine, make_rider, make_delivery) -> tuple[Delivery, Rider]:
    """A delivery awaiting the response of a freshly assigned rider."""
    rider = await make_rider(completed=0)
    delivery = await make_delivery()
    result = await engine.orchestrator.assign(engine.orchestrator.criteria_for(delivery))
    assert result.success
    return await engine.get_delivery(delivery.id), rider


async def advance(
    engine: DeliveryEngine,
    delivery: Delivery,
    rider: Rider,
    customer: Actor,
    until: DeliveryStatus,
) -> Delivery:
    """Walk an offered delivery along the happy path up to a status."""
    actor = rider_actor(rider)
    delivery = await engine.respond_to_assignment(delivery.id, actor, accept=True)
    for status in (DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT, DeliveryStatus.DELIVERED):
        if delivery.status == until:
            return delivery
        delivery = await engine.update_status(delivery.id, status, actor)
    if until == DeliveryStatus.COMPLETED:
        delivery = await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, customer)
    return delivery


def test_terminal_statuses_have_no_exits() -> None:
    for status in (
        DeliveryStatus.COMPLETED,
        DeliveryStatus.CANCELLED,
        DeliveryStatus.DECLINED,
        DeliveryStatus.EXPIRED,
    ):
        assert TRANSITIONS[status] == frozenset()

    assert can_transition(DeliveryStatus.DELIVERED, DeliveryStatus.COMPLETED)
    assert not can_transition(DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED)
    assert not can_transition(DeliveryStatus.PENDING_ASSIGNMENT, DeliveryStatus.ACCEPTED)


@pytest.mark.asyncio
async def test_accept_keeps_rider_busy(engine: DeliveryEngine, offered, clock) -> None:
    delivery, rider = offered

    accepted = await engine.respond_to_assignment(delivery.id, rider_actor(rider), accept=True)

    assert accepted.status == DeliveryStatus.ACCEPTED
    assert accepted.seen_by_rider is True
    assert accepted.time_logs.responded_at == clock.current
    stored = await engine.get_rider(rider.id)
    assert stored.is_on_delivery is True


@pytest.mark.asyncio
async def test_decline_releases_rider(engine: DeliveryEngine, offered) -> None:
    delivery, rider = offered

    declined = await engine.respond_to_assignment(delivery.id, rider_actor(rider), accept=False)

    assert declined.status == DeliveryStatus.DECLINED
    stored = await engine.get_rider(rider.id)
    assert stored.is_on_delivery is False
    assert stored.active_delivery_count == 0
    assert stored.is_available is False
    assert stored.stats.rejected_deliveries == 1


@pytest.mark.asyncio
async def test_accept_at_exact_expiry_is_on_time(engine: DeliveryEngine, offered, clock) -> None:
    delivery, rider = offered
    clock.advance(seconds=180)

    accepted = await engine.respond_to_assignment(delivery.id, rider_actor(rider), accept=True)

    assert accepted.status == DeliveryStatus.ACCEPTED


@pytest.mark.asyncio
@pytest.mark.parametrize("accept", [True, False])
async def test_late_response_expires_offer(
    engine: DeliveryEngine, offered, clock, accept: bool
) -> None:
    """Whatever its content, a response after the window forces expiry."""
    delivery, rider = offered
    clock.advance(seconds=181)

    with pytest.raises(ExpiredWindow):
        await engine.respond_to_assignment(delivery.id, rider_actor(rider), accept=accept)

    stored = await engine.get_delivery(delivery.id)
    assert stored.status == DeliveryStatus.EXPIRED
    assert len(stored.status_history) == 2
    assert (await engine.get_rider(rider.id)).is_on_delivery is False


@pytest.mark.asyncio
async def test_only_assigned_rider_may_respond(
    engine: DeliveryEngine, offered, make_rider, customer: Actor
) -> None:
    delivery, _ = offered
    other = await make_rider("Other")

    with pytest.raises(PermissionDenied):
        await engine.respond_to_assignment(delivery.id, rider_actor(other), accept=True)
    with pytest.raises(PermissionDenied):
        await engine.respond_to_assignment(delivery.id, customer, accept=True)

    assert (await engine.get_delivery(delivery.id)).status == DeliveryStatus.AWAITING_RIDER_RESPONSE


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(engine: DeliveryEngine, offered) -> None:
    delivery, rider = offered
    actor = rider_actor(rider)

    outcomes = await asyncio.gather(
        engine.respond_to_assignment(delivery.id, actor, accept=True),
        engine.respond_to_assignment(delivery.id, actor, accept=True),
        return_exceptions=True,
    )

    winners = [o for o in outcomes if isinstance(o, Delivery)]
    losers = [o for o in outcomes if isinstance(o, InvalidTransition)]
    assert len(winners) == 1
    assert len(losers) == 1

    stored = await engine.get_delivery(delivery.id)
    assert [e.status for e in stored.status_history] == [
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        DeliveryStatus.ACCEPTED,
    ]


@pytest.mark.asyncio
async def test_happy_path_side_effects(
    engine: DeliveryEngine, offered, customer: Actor, clock
) -> None:
    delivery, rider = offered
    actor = rider_actor(rider)

    await engine.respond_to_assignment(delivery.id, actor, accept=True)
    await engine.update_status(delivery.id, DeliveryStatus.PICKED_UP, actor)
    order = await engine.orders.get_order(delivery.order_id)
    assert order.status == OrderStatus.SHIPPED

    clock.advance(minutes=5)
    await engine.update_status(delivery.id, DeliveryStatus.IN_TRANSIT, actor)
    clock.advance(minutes=15)
    delivered = await engine.update_status(delivery.id, DeliveryStatus.DELIVERED, actor)
    assert delivered.time_logs.delivered_at == clock.current

    completed = await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, customer)

    assert completed.time_logs.confirmed_at == clock.current
    assert [e.status for e in completed.status_history] == [
        DeliveryStatus.AWAITING_RIDER_RESPONSE,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.DELIVERED,
        DeliveryStatus.COMPLETED,
    ]
    assert completed.status_history[-1].status == completed.status

    order = await engine.orders.get_order(delivery.order_id)
    assert order.status == OrderStatus.DELIVERED

    stored = await engine.get_rider(rider.id)
    assert stored.is_on_delivery is False
    assert stored.stats.completed_deliveries == 1
    assert stored.stats.average_delivery_time == pytest.approx(20.0)


@pytest.mark.asyncio
async def test_completed_is_terminal(
    engine: DeliveryEngine, offered, customer: Actor
) -> None:
    """Confirming a delivery twice fails the second time."""
    delivery, rider = offered
    await advance(engine, delivery, rider, customer, DeliveryStatus.DELIVERED)

    await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, customer)
    with pytest.raises(InvalidTransition):
        await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, customer)

    stored = await engine.get_delivery(delivery.id)
    assert len(stored.status_history) == 6


@pytest.mark.asyncio
async def test_role_permissions(
    engine: DeliveryEngine, offered, make_rider, customer: Actor, identity
) -> None:
    delivery, rider = offered
    actor = rider_actor(rider)
    await engine.respond_to_assignment(delivery.id, actor, accept=True)

    with pytest.raises(PermissionDenied):
        await engine.update_status(delivery.id, DeliveryStatus.CANCELLED, actor)

    other = await make_rider("Other")
    with pytest.raises(PermissionDenied):
        await engine.update_status(delivery.id, DeliveryStatus.PICKED_UP, rider_actor(other))

    with pytest.raises(PermissionDenied):
        await engine.update_status(delivery.id, DeliveryStatus.PICKED_UP, customer)

    stranger = Actor(user_id=rider.id, role=Role.CUSTOMER)
    with pytest.raises(PermissionDenied):
        await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, stranger)

    stored = await engine.get_delivery(delivery.id)
    assert stored.status == DeliveryStatus.ACCEPTED
    assert len(stored.status_history) == 2


@pytest.mark.asyncio
async def test_customer_cannot_skip_delivery(
    engine: DeliveryEngine, offered, customer: Actor
) -> None:
    delivery, rider = offered
    await advance(engine, delivery, rider, customer, DeliveryStatus.IN_TRANSIT)

    with pytest.raises(InvalidTransition):
        await engine.update_status(delivery.id, DeliveryStatus.COMPLETED, customer)


@pytest.mark.asyncio
async def test_admin_cancel_releases_rider(engine: DeliveryEngine, offered, admin: Actor) -> None:
    delivery, rider = offered
    await engine.respond_to_assignment(delivery.id, rider_actor(rider), accept=True)

    cancelled = await engine.update_status(
        delivery.id, DeliveryStatus.CANCELLED, admin, notes="Customer unreachable"
    )

    assert cancelled.status == DeliveryStatus.CANCELLED
    assert cancelled.time_logs.cancelled_at is not None
    assert cancelled.status_history[-1].notes == "Customer unreachable"
    stored = await engine.get_rider(rider.id)
    assert stored.is_on_delivery is False
    assert stored.stats.cancelled_deliveries == 1


@pytest.mark.asyncio
async def test_illegal_transitions_rejected(
    engine: DeliveryEngine, make_delivery, admin: Actor
) -> None:
    delivery = await make_delivery()

    with pytest.raises(InvalidTransition):
        await engine.update_status(delivery.id, DeliveryStatus.DELIVERED, admin)
    with pytest.raises(PreconditionFailed):
        await engine.update_status(delivery.id, DeliveryStatus.AWAITING_RIDER_RESPONSE, admin)

    assert (await engine.get_delivery(delivery.id)).status_history == []


@pytest.mark.asyncio
async def test_release_payment(
    engine: DeliveryEngine, offered, customer: Actor, admin: Actor
) -> None:
    delivery, rider = offered

    with pytest.raises(PreconditionFailed):
        await engine.release_payment(delivery.id, admin)

    await advance(engine, delivery, rider, customer, DeliveryStatus.COMPLETED)

    with pytest.raises(PermissionDenied):
        await engine.release_payment(delivery.id, customer)

    released = await engine.release_payment(delivery.id, admin, payment_ref="PAY-1")

    assert released.payment_status == PaymentStatus.RELEASED
    assert released.payment_ref == "PAY-1"
    assert released.time_logs.payment_released_at is not None
    assert len(released.status_history) == 6
    assert await engine.wallet.get_balance(rider.user_id) == released.rider_payment
    assert (await engine.get_rider(rider.id)).stats.total_earnings == released.rider_payment

    with pytest.raises(PreconditionFailed):
        await engine.release_payment(delivery.id, admin)
    assert await engine.wallet.get_balance(rider.user_id) == released.rider_payment


@pytest.mark.asyncio
async def test_rate_delivery(
    engine: DeliveryEngine, offered, customer: Actor, make_rider
) -> None:
    delivery, rider = offered

    with pytest.raises(PreconditionFailed):
        await engine.rate_delivery(delivery.id, customer, 5)

    await advance(engine, delivery, rider, customer, DeliveryStatus.DELIVERED)

    stranger = Actor(user_id=rider.user_id, role=Role.CUSTOMER)
    with pytest.raises(PermissionDenied):
        await engine.rate_delivery(delivery.id, stranger, 5)
    with pytest.raises(PreconditionFailed):
        await engine.rate_delivery(delivery.id, customer, 6)

    rated = await engine.rate_delivery(delivery.id, customer, 4, feedback="Quick")

    assert rated.rating == 4
    assert rated.feedback == "Quick"
    stored = await engine.get_rider(rider.id)
    assert stored.stats.total_ratings == 1
    assert stored.stats.average_rating == pytest.approx(4.0)

    with pytest.raises(PreconditionFailed, match="already been rated"):
        await engine.rate_delivery(delivery.id, customer, 5)

