"""Per-vehicle critical sections around "check availability + insert".

The availability check reads, the insert writes; without a lock two requests
for the same vehicle can both pass the check. ``LocalSlotLock`` covers a
single backend process. ``RedisSlotLock`` takes a short ``SET NX PX`` hold so
several workers behind one database serialise too. On PostgreSQL the
exclusion constraint in the initial migration remains the last line of
defence either way.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol
from uuid import uuid4

import redis.asyncio as redis

from rentaldesk.app.core.errors import ConflictError

logger = logging.getLogger(__name__)

HOLD_POLL_SECONDS = 0.05


# Compare-and-delete in one round trip so a hold that expired and was taken by
# another worker is never dropped.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def hold_key(vehicle_id: int) -> str:
    return f"hold:vehicle:{vehicle_id}"


class SlotLock(Protocol):
    def hold(self, vehicle_id: int) -> AbstractAsyncContextManager[None]: ...


class LocalSlotLock:
    def __init__(self, wait_seconds: float = 5.0) -> None:
        self.wait_seconds = wait_seconds
        self._locks: dict[int, asyncio.Lock] = {}

    @asynccontextmanager
    async def hold(self, vehicle_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(vehicle_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
        except asyncio.TimeoutError as exc:
            raise ConflictError("Vehicle temporarily held by another request") from exc
        try:
            yield
        finally:
            lock.release()


class RedisSlotLock:
    def __init__(self, client: redis.Redis, ttl_ms: int = 30_000, wait_ms: int = 5_000) -> None:
        self.client = client
        self.ttl_ms = ttl_ms
        self.wait_ms = wait_ms
        self._release = client.register_script(RELEASE_SCRIPT)

    async def _acquire(self, key: str, token: str) -> bool:
        deadline = asyncio.get_running_loop().time() + self.wait_ms / 1000
        while True:
            if await self.client.set(key, token, nx=True, px=self.ttl_ms):
                return True
            if asyncio.get_running_loop().time() >= deadline:
                return False
            await asyncio.sleep(HOLD_POLL_SECONDS)

    @asynccontextmanager
    async def hold(self, vehicle_id: int) -> AsyncIterator[None]:
        key = hold_key(vehicle_id)
        token = str(uuid4())
        if not await self._acquire(key, token):
            logger.info("slot_lock.busy", extra={"vehicle_id": vehicle_id})
            raise ConflictError("Vehicle temporarily held by another request")
        try:
            yield
        finally:
            if not await self._release(keys=[key], args=[token]):
                logger.warning("slot_lock.expired", extra={"vehicle_id": vehicle_id})
