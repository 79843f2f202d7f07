"""Rider directory backed by Redis."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable
from uuid import UUID

from delivery_engine.config import DispatchPolicy
from delivery_engine.errors import NotFound, PreconditionFailed
from delivery_engine.models.rider import (
    REQUIRED_DOCUMENTS,
    DeliveryOutcome,
    DocumentStatus,
    Location,
    Rider,
    RiderStatus,
    VehicleType,
    VerificationDocument,
    utcnow,
)
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)


class RiderDirectory:
    """Owns rider records and their area and user indexes."""

    ALL_KEY = "riders:all"

    def __init__(self, state_manager: StateManager, policy: DispatchPolicy):
        self.state = state_manager
        self.policy = policy

    @staticmethod
    def rider_key(rider_id: UUID | str) -> str:
        return f"rider:{rider_id}"

    @staticmethod
    def area_key(city: str) -> str:
        return f"riders:area:{city.strip().lower()}"

    @staticmethod
    def user_key(user_id: UUID | str) -> str:
        return f"rider:user:{user_id}"

    # Transaction helpers

    async def load(self, tx: Transaction, rider_id: UUID | str) -> Rider:
        """Read a rider inside a transaction, watching it for changes."""
        data = await tx.get(self.rider_key(rider_id))
        if not data:
            raise NotFound("Rider not found", rider_id=str(rider_id))
        return Rider.model_validate(data)

    def stage(self, tx: Transaction, rider: Rider) -> None:
        """Buffer a rider write into a transaction."""
        tx.set(self.rider_key(rider.id), rider.model_dump(mode="json"))

    async def _mutate(self, rider_id: UUID, change: Callable[[Rider], Any]) -> Rider:
        async def apply(tx: Transaction) -> Rider:
            rider = await self.load(tx, rider_id)
            change(rider)
            rider.updated_at = utcnow()
            self.stage(tx, rider)
            return rider

        return await self.state.transaction(apply)

    # Onboarding

    async def register(self, rider: Rider) -> Rider:
        """Create a rider in pending verification. One rider per user."""

        async def apply(tx: Transaction) -> Rider:
            if await tx.get(self.user_key(rider.user_id)):
                raise PreconditionFailed(
                    "Rider profile already exists for this user", user_id=str(rider.user_id)
                )
            rider.status = RiderStatus.PENDING_VERIFICATION
            tx.set(self.user_key(rider.user_id), str(rider.id))
            tx.sadd(self.ALL_KEY, str(rider.id))
            for area in rider.service_areas:
                tx.sadd(self.area_key(area), str(rider.id))
            self.stage(tx, rider)
            return rider

        created = await self.state.transaction(apply)
        logger.info("rider_registered", rider_id=str(created.id), user_id=str(created.user_id))
        return created

    async def add_verification_document(
        self,
        rider_id: UUID,
        document_type: str,
        url: str,
    ) -> Rider:
        """Attach a document for review."""
        if document_type not in REQUIRED_DOCUMENTS:
            raise PreconditionFailed(
                f"Unknown document type '{document_type}', expected one of {list(REQUIRED_DOCUMENTS)}"
            )

        def change(rider: Rider) -> None:
            rider.verification_documents.append(
                VerificationDocument(type=document_type, url=url)
            )

        return await self._mutate(rider_id, change)

    async def verify_document(
        self,
        rider_id: UUID,
        index: int,
        status: DocumentStatus,
        notes: str | None = None,
    ) -> Rider:
        """Review one document; a pending rider becomes active once all are verified."""

        def change(rider: Rider) -> None:
            if index < 0 or index >= len(rider.verification_documents):
                raise NotFound("Document not found", rider_id=str(rider_id), index=index)
            document = rider.verification_documents[index]
            document.status = status
            document.reviewed_at = utcnow()
            document.notes = notes
            if rider.documents_verified() and rider.status == RiderStatus.PENDING_VERIFICATION:
                rider.status = RiderStatus.ACTIVE

        rider = await self._mutate(rider_id, change)
        if rider.status == RiderStatus.ACTIVE:
            logger.info("rider_activated", rider_id=str(rider_id))
        return rider

    async def set_status(self, rider_id: UUID, status: RiderStatus) -> Rider:
        """Administrative status change."""

        def change(rider: Rider) -> None:
            rider.status = status

        return await self._mutate(rider_id, change)

    async def update_security_deposit(self, rider_id: UUID, amount: Decimal) -> Rider:
        if amount < 0:
            raise PreconditionFailed("Security deposit cannot be negative")

        def change(rider: Rider) -> None:
            rider.security_deposit = amount

        return await self._mutate(rider_id, change)

    async def check_security_deposit(self, rider_id: UUID) -> dict[str, Any]:
        """Report whether the rider meets the deposit required for manual assignment."""
        rider = await self.get(rider_id)
        required = self.policy.min_security_deposit
        return {
            "is_eligible": rider.security_deposit >= required,
            "current_deposit": rider.security_deposit,
            "required_deposit": required,
            "shortfall": max(Decimal("0"), required - rider.security_deposit),
        }

    # Reads

    async def get(self, rider_id: UUID | str) -> Rider:
        data = await self.state.get(self.rider_key(rider_id))
        if not data:
            raise NotFound("Rider not found", rider_id=str(rider_id))
        return Rider.model_validate(data)

    async def get_by_user_id(self, user_id: UUID) -> Rider:
        rider_id = await self.state.get(self.user_key(user_id))
        if not rider_id:
            raise NotFound("Rider not found for user", user_id=str(user_id))
        return await self.get(rider_id)

    async def _load_many(self, ids: set[str]) -> list[Rider]:
        keys = [self.rider_key(rider_id) for rider_id in sorted(ids)]
        return [Rider.model_validate(data) for data in await self.state.mget(keys) if data]

    async def list_riders(
        self,
        status: RiderStatus | None = None,
        is_available: bool | None = None,
        city: str | None = None,
        vehicle_type: VehicleType | None = None,
        min_deposit: Decimal | None = None,
        exclude_on_delivery: bool = False,
    ) -> list[Rider]:
        """List riders matching all given filters, newest first."""
        ids = await self.state.smembers(self.area_key(city) if city else self.ALL_KEY)
        riders = await self._load_many(ids)

        def keep(rider: Rider) -> bool:
            if status is not None and rider.status != status:
                return False
            if is_available is not None and rider.is_available != is_available:
                return False
            if vehicle_type is not None and rider.vehicle.type != vehicle_type:
                return False
            if min_deposit is not None and rider.security_deposit < min_deposit:
                return False
            if exclude_on_delivery and rider.is_on_delivery:
                return False
            return True

        return sorted(filter(keep, riders), key=lambda r: r.created_at, reverse=True)

    async def find_eligible(self, city: str) -> list[Rider]:
        """Assignable riders with a known position who serve the city."""
        riders = await self._load_many(await self.state.smembers(self.area_key(city)))
        return [
            rider
            for rider in riders
            if rider.is_assignable and rider.current_location is not None and rider.serves(city)
        ]

    # Dispatch mutations

    async def set_on_delivery(self, rider_id: UUID, on_delivery: bool) -> Rider:
        """Take or drop one delivery. Taking one always clears availability."""

        def change(rider: Rider) -> None:
            if on_delivery:
                rider.mark_on_delivery()
            else:
                rider.release()

        return await self._mutate(rider_id, change)

    async def set_availability(
        self,
        rider_id: UUID,
        location: Location | None,
        available: bool | None,
        at: datetime | None = None,
    ) -> Rider:
        """Report position and optionally opt in or out of offers."""

        def change(rider: Rider) -> None:
            if location is not None:
                rider.current_location = location
                rider.location_updated_at = at or utcnow()
            if available is not None:
                if available and rider.status != RiderStatus.ACTIVE:
                    raise PreconditionFailed(
                        "Rider is not verified", rider_id=str(rider_id), status=rider.status.value
                    )
                rider.is_available = available

        return await self._mutate(rider_id, change)

    async def record_outcome(
        self,
        rider_id: UUID,
        outcome: DeliveryOutcome | None = None,
        duration_minutes: float | None = None,
        rating: int | None = None,
        earnings: Decimal | None = None,
    ) -> Rider:
        """Apply one outcome to the rider's stats. Callers de-duplicate."""

        def change(rider: Rider) -> None:
            rider.record_outcome(outcome, duration_minutes, rating, earnings)

        return await self._mutate(rider_id, change)
