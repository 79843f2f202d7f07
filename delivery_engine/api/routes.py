"""API routes for the delivery engine."""

from dataclasses import asdict
from decimal import Decimal
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from delivery_engine.dispatch.analytics import AssignmentAnalytics, DeliveryMetrics, Timeframe
from delivery_engine.dispatch.engine import DeliveryEngine, build_engine
from delivery_engine.errors import NotFound, PermissionDenied
from delivery_engine.models.assignment import AssignmentResult, Urgency
from delivery_engine.models.delivery import (
    Delivery,
    DeliveryLocation,
    DeliveryStatus,
    PaymentStatus,
)
from delivery_engine.models.rider import (
    DocumentStatus,
    Location,
    Rider,
    RiderStatus,
    Vehicle,
    VehicleType,
)
from delivery_engine.models.user import Actor, Role
from delivery_engine.state.manager import get_state_manager
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


# Request Models


class CreateDeliveryRequest(BaseModel):
    """Open a delivery for an order."""

    order_id: UUID
    pickup: DeliveryLocation | None = None


class AssignRequest(BaseModel):
    urgency: Urgency = Urgency.LOW
    vehicle_requirement: VehicleType | None = None


class ManualAssignRequest(BaseModel):
    rider_id: UUID
    notes: str | None = None


class ReassignRequest(BaseModel):
    reason: str = Field(min_length=1)


class RespondRequest(BaseModel):
    """Rider's answer to an offer."""

    accept: bool
    notes: str | None = None


class StatusUpdateRequest(BaseModel):
    status: DeliveryStatus
    notes: str | None = None


class ReleasePaymentRequest(BaseModel):
    payment_ref: str | None = None


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    feedback: str | None = None


class RegisterRiderRequest(BaseModel):
    """Onboarding request. Admins may register on behalf of another user."""

    user_id: UUID | None = None
    name: str | None = None
    vehicle: Vehicle
    service_areas: list[str] = Field(min_length=1)
    max_delivery_distance: float = Field(default=10.0, gt=0)


class DocumentRequest(BaseModel):
    type: str
    url: str


class DocumentReviewRequest(BaseModel):
    status: DocumentStatus
    notes: str | None = None


class SecurityDepositRequest(BaseModel):
    amount: Decimal = Field(ge=0)


class LocationUpdateRequest(BaseModel):
    """Position report, optionally opting in or out of offers."""

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    is_available: bool | None = None


class RiderStatusRequest(BaseModel):
    status: RiderStatus


class UnavailableRequest(BaseModel):
    reason: str = Field(min_length=1)


# Dependencies

_engine: DeliveryEngine | None = None


async def get_engine() -> DeliveryEngine:
    """Get the shared engine instance."""
    global _engine
    if _engine is None:
        _engine = build_engine(await get_state_manager())
    return _engine


async def get_actor(
    x_user_id: str | None = Header(default=None),
    engine: DeliveryEngine = Depends(get_engine),
) -> Actor:
    """Resolve the calling user from the X-User-Id header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-Id must be a UUID",
        )
    try:
        user = await engine.identity.get_user(user_id)
    except NotFound:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )
    return Actor.from_user(user)


def require_privileged(actor: Actor) -> None:
    if not actor.is_privileged:
        raise PermissionDenied("Administrator access required")


async def require_rider_or_admin(engine: DeliveryEngine, actor: Actor, rider_id: UUID) -> None:
    """Riders may only act on their own profile."""
    if actor.is_privileged:
        return
    if actor.role != Role.RIDER or actor.user_id is None:
        raise PermissionDenied("Only the rider or an administrator can do this")
    rider = await engine.get_rider(rider_id)
    if rider.user_id != actor.user_id:
        raise PermissionDenied("You can only manage your own rider profile")


# Delivery endpoints


@router.post("/deliveries", status_code=status.HTTP_201_CREATED)
async def create_delivery(
    request: CreateDeliveryRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Open a delivery for an order."""
    require_privileged(actor)
    return await engine.create_delivery(request.order_id, request.pickup)


@router.post("/orders/{order_id}/paid")
async def order_paid(
    order_id: UUID,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """
    Order-paid hook.

    Creates the delivery when needed and runs automatic assignment. Orders
    that need no assignment are reported as skipped.
    """
    require_privileged(actor)
    result = await engine.process_paid_order(order_id)
    if result is None:
        return {"order_id": str(order_id), "skipped": True}
    return {
        "order_id": str(order_id),
        "skipped": False,
        "assignment": result.model_dump(mode="json"),
    }


@router.get("/deliveries")
async def list_deliveries(
    delivery_status: DeliveryStatus | None = None,
    rider_id: UUID | None = None,
    customer_id: UUID | None = None,
    city: str | None = None,
    payment_status: PaymentStatus | None = None,
    unassigned_only: bool = False,
    awaiting_response_only: bool = False,
    pending_payment_only: bool = False,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> list[Delivery]:
    """List deliveries. Customers only see their own."""
    if actor.role == Role.CUSTOMER:
        customer_id = actor.user_id
    elif actor.role == Role.RIDER:
        rider_id = (await engine.get_rider_by_user(actor.user_id)).id

    return await engine.list_deliveries(
        status=delivery_status,
        rider_id=rider_id,
        customer_id=customer_id,
        city=city,
        payment_status=payment_status,
        unassigned_only=unassigned_only,
        awaiting_response_only=awaiting_response_only,
        pending_payment_only=pending_payment_only,
    )


@router.get("/deliveries/{delivery_id}")
async def get_delivery(
    delivery_id: UUID,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Get delivery details."""
    delivery = await engine.get_delivery(delivery_id)
    if actor.role == Role.CUSTOMER and delivery.customer_id != actor.user_id:
        raise PermissionDenied("You can only view your own deliveries")
    return delivery


@router.get("/orders/{order_id}/delivery")
async def get_delivery_for_order(
    order_id: UUID,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Get the delivery opened for an order."""
    delivery = await engine.get_delivery_by_order(order_id)
    if delivery is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found for this order",
        )
    if actor.role == Role.CUSTOMER and delivery.customer_id != actor.user_id:
        raise PermissionDenied("You can only view your own deliveries")
    return delivery


@router.post("/deliveries/{delivery_id}/assign")
async def assign_rider(
    delivery_id: UUID,
    request: AssignRequest = AssignRequest(),
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> AssignmentResult:
    """Run automatic assignment for a pending delivery."""
    return await engine.assign_rider(
        delivery_id,
        actor,
        urgency=request.urgency,
        vehicle_requirement=request.vehicle_requirement,
    )


@router.post("/deliveries/{delivery_id}/manual-assign")
async def manual_assign_rider(
    delivery_id: UUID,
    request: ManualAssignRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Offer the delivery to a chosen rider."""
    return await engine.manual_assign_rider(delivery_id, request.rider_id, actor, request.notes)


@router.post("/deliveries/{delivery_id}/reassign")
async def reassign_delivery(
    delivery_id: UUID,
    request: ReassignRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> AssignmentResult:
    """Release the current rider and look for another."""
    return await engine.reassign_order(delivery_id, request.reason, actor)


@router.post("/deliveries/{delivery_id}/respond")
async def respond_to_assignment(
    delivery_id: UUID,
    request: RespondRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Accept or decline an offer."""
    return await engine.respond_to_assignment(delivery_id, actor, request.accept, request.notes)


@router.patch("/deliveries/{delivery_id}/status")
async def update_delivery_status(
    delivery_id: UUID,
    request: StatusUpdateRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Advance a delivery through its lifecycle."""
    return await engine.update_status(delivery_id, request.status, actor, request.notes)


@router.post("/deliveries/{delivery_id}/release-payment")
async def release_payment(
    delivery_id: UUID,
    request: ReleasePaymentRequest = ReleasePaymentRequest(),
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Credit the rider for a completed delivery."""
    return await engine.release_payment(delivery_id, actor, request.payment_ref)


@router.post("/deliveries/{delivery_id}/rating")
async def rate_delivery(
    delivery_id: UUID,
    request: RatingRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Delivery:
    """Rate a delivered order."""
    return await engine.rate_delivery(delivery_id, actor, request.rating, request.feedback)


# Rider endpoints


@router.post("/riders", status_code=status.HTTP_201_CREATED)
async def register_rider(
    request: RegisterRiderRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    """Register a rider profile pending verification."""
    user_id = request.user_id if actor.is_privileged and request.user_id else actor.user_id
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="user_id is required",
        )

    rider = Rider(
        user_id=user_id,
        name=request.name or actor.name,
        vehicle=request.vehicle,
        service_areas=request.service_areas,
        max_delivery_distance=request.max_delivery_distance,
    )
    return await engine.register_rider(rider)


@router.get("/riders")
async def list_riders(
    rider_status: RiderStatus | None = None,
    is_available: bool | None = None,
    city: str | None = None,
    vehicle_type: VehicleType | None = None,
    min_deposit: Decimal | None = None,
    exclude_on_delivery: bool = False,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> list[Rider]:
    """List riders."""
    require_privileged(actor)
    return await engine.list_riders(
        status=rider_status,
        is_available=is_available,
        city=city,
        vehicle_type=vehicle_type,
        min_deposit=min_deposit,
        exclude_on_delivery=exclude_on_delivery,
    )


@router.get("/riders/{rider_id}")
async def get_rider(
    rider_id: UUID,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    await require_rider_or_admin(engine, actor, rider_id)
    return await engine.get_rider(rider_id)


@router.post("/riders/{rider_id}/documents")
async def add_verification_document(
    rider_id: UUID,
    request: DocumentRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    """Upload a verification document for review."""
    await require_rider_or_admin(engine, actor, rider_id)
    return await engine.add_verification_document(rider_id, request.type, request.url)


@router.patch("/riders/{rider_id}/documents/{index}")
async def review_document(
    rider_id: UUID,
    index: int,
    request: DocumentReviewRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    """Verify or reject one document."""
    return await engine.verify_document(rider_id, index, request.status, actor, request.notes)


@router.patch("/riders/{rider_id}/status")
async def set_rider_status(
    rider_id: UUID,
    request: RiderStatusRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    return await engine.set_rider_status(rider_id, request.status, actor)


@router.put("/riders/{rider_id}/security-deposit")
async def update_security_deposit(
    rider_id: UUID,
    request: SecurityDepositRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    return await engine.update_security_deposit(rider_id, request.amount, actor)


@router.get("/riders/{rider_id}/security-deposit")
async def check_security_deposit(
    rider_id: UUID,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Check the rider against the deposit required for manual assignment."""
    await require_rider_or_admin(engine, actor, rider_id)
    return await engine.check_security_deposit_requirement(rider_id)


@router.put("/riders/{rider_id}/location")
async def update_location(
    rider_id: UUID,
    request: LocationUpdateRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> Rider:
    """Report the rider's position and availability."""
    await require_rider_or_admin(engine, actor, rider_id)
    return await engine.update_location(
        rider_id, Location(lat=request.lat, lng=request.lng), request.is_available
    )


@router.post("/riders/{rider_id}/unavailable")
async def rider_unavailable(
    rider_id: UUID,
    request: UnavailableRequest,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> list[AssignmentResult]:
    """Take a rider offline and reassign what they hold."""
    await require_rider_or_admin(engine, actor, rider_id)
    return await engine.handle_rider_unavailable(rider_id, request.reason, Actor.system())


# Admin endpoints


@router.get("/admin/assignments/pending")
async def list_pending_assignments(
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> list[Delivery]:
    require_privileged(actor)
    return await engine.list_pending_assignments()


@router.get("/admin/assignments/manual-queue")
async def manual_assignment_queue(
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> list[Delivery]:
    """Deliveries waiting for a human dispatcher."""
    require_privileged(actor)
    return await engine.manual_assignment_queue()


@router.get("/admin/analytics/assignments")
async def assignment_analytics(
    timeframe: Timeframe = Timeframe.DAY,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> AssignmentAnalytics:
    require_privileged(actor)
    return await engine.get_assignment_analytics(timeframe)


@router.get("/admin/analytics/deliveries")
async def delivery_metrics(
    timeframe: Timeframe = Timeframe.DAY,
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> DeliveryMetrics:
    require_privileged(actor)
    return await engine.get_delivery_metrics(timeframe)


@router.post("/admin/sweeps/expiry")
async def run_expiry_sweep(
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Run one expiry sweep now."""
    require_privileged(actor)
    report = await engine.sweeper.sweep_once()
    return asdict(report)


@router.post("/admin/sweeps/reconcile")
async def run_reconciliation(
    engine: DeliveryEngine = Depends(get_engine),
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Repair rider busy flags from the deliveries they hold."""
    require_privileged(actor)
    report = await engine.reconciler.reconcile_all()
    logger.info("reconciliation_requested", actor=actor.label)
    return asdict(report)
