"""
Redis-based per-booking lease.

The guarded ``UPDATE`` already admits exactly one accept per booking on a
store with row-level atomic conditional updates.  For storage engines that
cannot promise that, ``accept`` can additionally run under a short lease on
``lease:booking:<id>`` (``settings.accept_lease_enabled``).  A driver that
cannot take the lease has lost the race, exactly as if the write had
affected zero rows.

Implementation uses SET NX EX for acquire and a Lua script for atomic
check-and-delete on release.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LeaseUnavailable(Exception):
    """Another holder owns the lease."""


class BookingLease:
    def __init__(
        self, client: aioredis.Redis, booking_id: str, ttl_seconds: int = 10
    ):
        self.redis = client
        self.key = f"lease:booking:{booking_id}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> None:
        """Release only if we still own the lease (atomic via Lua)."""
        await self.redis.eval(_RELEASE_LUA, 1, self.key, self.token)

    # context-manager support
    async def __aenter__(self):
        if not await self.acquire():
            raise LeaseUnavailable(f"Could not acquire lease: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()
