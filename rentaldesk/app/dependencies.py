from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from rentaldesk.app.core import redis_client as redis_module
from rentaldesk.app.core.config import settings
from rentaldesk.app.db.session import get_session
from rentaldesk.app.db.store import RentalStore
from rentaldesk.app.services.availability import AvailabilityOracle
from rentaldesk.app.services.identity import (
    CustomerIdentityResolver,
    IdentityCache,
    MemoryIdentityCache,
    RedisIdentityCache,
)
from rentaldesk.app.services.locks import LocalSlotLock, RedisSlotLock, SlotLock
from rentaldesk.app.services.reservations import ReservationOrchestrator
from rentaldesk.app.services.sanitizer import business_timezone
from rentaldesk.app.services.status_sync import StatusSynchronizer


def _slot_lock(request: Request) -> SlotLock:
    # Shared across requests: a lock per request would serialise nothing.
    lock = getattr(request.app.state, "slot_lock", None)
    if lock is None:
        if settings.SLOT_LOCK_BACKEND == "redis" and redis_module.redis_client is not None:
            lock = RedisSlotLock(
                redis_module.redis_client,
                ttl_ms=settings.SLOT_LOCK_TTL_MS,
                wait_ms=settings.SLOT_LOCK_WAIT_MS,
            )
        else:
            lock = LocalSlotLock(wait_seconds=settings.SLOT_LOCK_WAIT_MS / 1000)
        request.app.state.slot_lock = lock
    return lock


def _identity_cache(request: Request) -> IdentityCache:
    cache = getattr(request.app.state, "identity_cache", None)
    if cache is None:
        if redis_module.redis_client is not None:
            cache = RedisIdentityCache(
                redis_module.redis_client, ttl_seconds=settings.CUSTOMER_CACHE_TTL_SECONDS
            )
        else:
            cache = MemoryIdentityCache(ttl_seconds=settings.CUSTOMER_CACHE_TTL_SECONDS)
        request.app.state.identity_cache = cache
    return cache


def get_store(session: AsyncSession = Depends(get_session)) -> RentalStore:
    return RentalStore(session)


def get_oracle(store: RentalStore = Depends(get_store)) -> AvailabilityOracle:
    return AvailabilityOracle(store, max_search_days=settings.NEXT_SLOT_SEARCH_DAYS)


def get_orchestrator(
    request: Request,
    store: RentalStore = Depends(get_store),
    oracle: AvailabilityOracle = Depends(get_oracle),
) -> ReservationOrchestrator:
    return ReservationOrchestrator(
        store,
        oracle,
        StatusSynchronizer(store),
        CustomerIdentityResolver(store, _identity_cache(request)),
        _slot_lock(request),
        tz=business_timezone(settings.BUSINESS_TIMEZONE),
        approval_min_total=settings.APPROVAL_MIN_TOTAL_AMOUNT,
    )
