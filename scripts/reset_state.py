"""Remove delivery engine data from Redis (useful for local runs)."""

import asyncio

from delivery_engine.state.manager import StateManager

KEY_PATTERNS = [
    "delivery:*",
    "deliveries:*",
    "rider:*",
    "riders:*",
    "order:*",
    "wallet:*",
    "user:*",
]


async def reset_all_state() -> None:
    """Delete every key the engine and its local collaborators write."""
    print("\n⚠️  WARNING: This will delete all delivery engine data from Redis!")
    response = input("Are you sure? (yes/no): ")

    if response.lower() != "yes":
        print("Cancelled.")
        return

    print("\nResetting state...")

    state_manager = StateManager()
    await state_manager.connect()

    deleted = 0
    for pattern in KEY_PATTERNS:
        # SCAN rather than KEYS so a shared instance is not blocked
        async for key in state_manager.redis_client.scan_iter(match=pattern, count=500):
            await state_manager.delete(key)
            deleted += 1

    await state_manager.disconnect()

    print(f"✓ Deleted {deleted} keys\n")


if __name__ == "__main__":
    asyncio.run(reset_all_state())
