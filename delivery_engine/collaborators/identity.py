"""Identity collaborator contract and its Redis-backed implementation."""

from typing import Protocol
from uuid import UUID

from delivery_engine.errors import NotFound
from delivery_engine.models.user import User
from delivery_engine.state.manager import StateManager


class IdentityService(Protocol):
    """Read-only user lookup."""

    async def get_user(self, user_id: UUID) -> User: ...


class RedisIdentityService:
    def __init__(self, state_manager: StateManager):
        self.state = state_manager

    @staticmethod
    def user_key(user_id: UUID | str) -> str:
        return f"user:{user_id}"

    async def save_user(self, user: User) -> User:
        await self.state.set(self.user_key(user.id), user.model_dump(mode="json"))
        return user

    async def get_user(self, user_id: UUID) -> User:
        data = await self.state.get(self.user_key(user_id))
        if not data:
            raise NotFound("User not found", user_id=str(user_id))
        return User.model_validate(data)
