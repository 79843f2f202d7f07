"""Wallet collaborator contract and its Redis-backed implementation."""

from decimal import Decimal
from typing import Protocol
from uuid import UUID

from delivery_engine.models.rider import utcnow
from delivery_engine.state.manager import StateManager, Transaction
from delivery_engine.utils.logging import get_logger

logger = get_logger(__name__)


class WalletService(Protocol):
    """Credits rider earnings. Deduplicates by idempotency_ref."""

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        memo: str,
        idempotency_ref: str,
    ) -> bool: ...


class RedisWalletService:
    """Minimal ledger: one balance per user plus a record per applied credit."""

    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    @staticmethod
    def wallet_key(user_id: UUID | str) -> str:
        return f"wallet:{user_id}"

    @staticmethod
    def credit_key(idempotency_ref: str) -> str:
        return f"wallet:credit:{idempotency_ref}"

    async def get_balance(self, user_id: UUID) -> Decimal:
        data = await self.state.get(self.wallet_key(user_id))
        if not data:
            return Decimal("0")
        return Decimal(data["balance"])

    async def credit(
        self,
        user_id: UUID,
        amount: Decimal,
        memo: str,
        idempotency_ref: str,
    ) -> bool:
        """Credit once per idempotency_ref. Returns False for a replay."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")

        async def apply(tx: Transaction) -> bool:
            if await tx.get(self.credit_key(idempotency_ref)):
                return False
            wallet = await tx.get(self.wallet_key(user_id)) or {
                "user_id": str(user_id),
                "balance": "0",
            }
            wallet["balance"] = str(Decimal(wallet["balance"]) + amount)
            tx.set(self.wallet_key(user_id), wallet)
            tx.set(
                self.credit_key(idempotency_ref),
                {
                    "user_id": str(user_id),
                    "amount": str(amount),
                    "memo": memo,
                    "created_at": utcnow().isoformat(),
                },
            )
            return True

        applied = await self.state.transaction(apply)
        logger.info(
            "wallet_credit",
            user_id=str(user_id),
            amount=str(amount),
            idempotency_ref=idempotency_ref,
            applied=applied,
        )
        return applied
