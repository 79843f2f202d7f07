"""Tests for the Redis state manager and its optimistic transactions."""

from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import FakeAsyncRedis

from delivery_engine.errors import ConcurrentUpdate, PreconditionFailed
from delivery_engine.state.deliveries import DeliveryStore
from delivery_engine.state.manager import StateManager, Transaction


@pytest.mark.asyncio
async def test_json_round_trip(state_manager: StateManager) -> None:
    await state_manager.set("thing:1", {"name": "crate", "items": [1, 2]})

    assert await state_manager.get("thing:1") == {"name": "crate", "items": [1, 2]}
    assert await state_manager.get("thing:missing") is None
    assert await state_manager.mget(["thing:1", "thing:missing"]) == [
        {"name": "crate", "items": [1, 2]},
        None,
    ]


@pytest.mark.asyncio
async def test_transaction_commits_buffered_writes(state_manager: StateManager) -> None:
    async def apply(tx: Transaction) -> str:
        current = await tx.get("counter") or {"value": 0}
        tx.set("counter", {"value": current["value"] + 1})
        tx.sadd("members", "a", "b")
        return "done"

    assert await state_manager.transaction(apply) == "done"
    assert await state_manager.get("counter") == {"value": 1}
    assert await state_manager.smembers("members") == {"a", "b"}


@pytest.mark.asyncio
async def test_transaction_aborts_on_raise(state_manager: StateManager) -> None:
    await state_manager.set("record", {"status": "open"})

    async def apply(tx: Transaction) -> None:
        await tx.get("record")
        tx.set("record", {"status": "closed"})
        tx.sadd("closed", "record")
        raise PreconditionFailed("not allowed")

    with pytest.raises(PreconditionFailed):
        await state_manager.transaction(apply)

    assert await state_manager.get("record") == {"status": "open"}
    assert await state_manager.smembers("closed") == set()


@pytest.mark.asyncio
async def test_transaction_retries_after_conflict(
    state_manager: StateManager, redis_client: FakeAsyncRedis
) -> None:
    attempts = []

    async def apply(tx: Transaction) -> int:
        current = await tx.get("balance") or {"value": 0}
        attempts.append(current["value"])
        if len(attempts) == 1:
            # Another writer gets in between read and commit
            await redis_client.set("balance", '{"value": 10}')
        tx.set("balance", {"value": current["value"] + 5})
        return current["value"] + 5

    assert await state_manager.transaction(apply) == 15
    assert attempts == [0, 10]
    assert await state_manager.get("balance") == {"value": 15}


@pytest.mark.asyncio
async def test_transaction_gives_up_after_retries(
    state_manager: StateManager, redis_client: FakeAsyncRedis
) -> None:
    attempts = 0

    async def apply(tx: Transaction) -> None:
        nonlocal attempts
        attempts += 1
        await tx.get("hot")
        await redis_client.set("hot", str(attempts))
        tx.set("hot", "mine")

    with pytest.raises(ConcurrentUpdate):
        await state_manager.transaction(apply, retries=3)

    assert attempts == 3
    assert await state_manager.get("hot") == 3


@pytest.mark.asyncio
async def test_expired_offers_bound_is_exclusive(state_manager: StateManager) -> None:
    store = DeliveryStore(state_manager)
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    await state_manager.zadd(
        DeliveryStore.AWAITING_KEY,
        {
            "overdue": (now - timedelta(seconds=1)).timestamp(),
            "boundary": now.timestamp(),
            "open": (now + timedelta(seconds=1)).timestamp(),
        },
    )

    assert await store.expired_offers(now) == ["overdue"]
    assert await store.expired_offers(now + timedelta(seconds=1)) == ["overdue", "boundary"]
    assert await store.expired_offers(now + timedelta(seconds=5), limit=1) == ["overdue"]


def test_set_helpers_keep_builtin_annotations() -> None:
    assert StateManager.smembers.__annotations__["return"] == set[str]
    assert Transaction.smembers.__annotations__["return"] == set[str]
