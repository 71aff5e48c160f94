from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from rentaldesk.app.core.errors import IdentityGuaranteeFailure, ReservationError
from rentaldesk.app.db.store import RentalStore
from rentaldesk.app.services.sanitizer import format_date, is_blank, is_valid_customer_id
from rentaldesk.app.services.types import CustomerIdentity, IdentityResolution

logger = logging.getLogger(__name__)

MANDATORY_FIELDS = ("full_name", "phone")
OPTIONAL_FIELDS = ("email", "nationality", "licence_number", "id_number", "id_scan_url")


class IdentityCache(Protocol):
    async def get(self, customer_id: str) -> CustomerIdentity | None: ...

    async def set(self, identity: CustomerIdentity) -> None: ...

    async def invalidate(self, customer_id: str) -> None: ...


class MemoryIdentityCache:
    """Process-local cache with a fixed time-to-live per entry."""

    def __init__(self, ttl_seconds: float = 30.0, clock=time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, CustomerIdentity]] = {}

    async def get(self, customer_id: str) -> CustomerIdentity | None:
        entry = self._entries.get(customer_id)
        if entry is None:
            return None
        expires_at, identity = entry
        if self._clock() >= expires_at:
            del self._entries[customer_id]
            return None
        return identity

    async def set(self, identity: CustomerIdentity) -> None:
        self._entries[identity.id] = (self._clock() + self.ttl_seconds, identity)

    async def invalidate(self, customer_id: str) -> None:
        self._entries.pop(customer_id, None)


class RedisIdentityCache:
    """Shares resolved identities between workers; entries expire via ``EX``."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 30, prefix: str = "customer:") -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _key(self, customer_id: str) -> str:
        return f"{self.prefix}{customer_id}"

    async def get(self, customer_id: str) -> CustomerIdentity | None:
        try:
            payload = await self.client.get(self._key(customer_id))
        except RedisError as exc:
            logger.warning("identity.cache_unavailable", extra={"error": str(exc)})
            return None
        if payload is None:
            return None
        return CustomerIdentity.model_validate_json(payload)

    async def set(self, identity: CustomerIdentity) -> None:
        try:
            await self.client.set(
                self._key(identity.id), identity.model_dump_json(), ex=self.ttl_seconds
            )
        except RedisError as exc:
            logger.warning("identity.cache_unavailable", extra={"error": str(exc)})

    async def invalidate(self, customer_id: str) -> None:
        try:
            await self.client.delete(self._key(customer_id))
        except RedisError as exc:
            logger.warning("identity.cache_unavailable", extra={"error": str(exc)})


def primary_identifier(identity: CustomerIdentity | None) -> str | None:
    """Licence number first, then national id number."""
    if identity is None:
        return None
    for value in (identity.licence_number, identity.id_number):
        if not is_blank(value):
            return value.strip()
    return None


class CustomerIdentityResolver:
    """Guarantees a persisted, well-formed customer before a reservation exists."""

    def __init__(self, store: RentalStore, cache: IdentityCache) -> None:
        self.store = store
        self.cache = cache

    async def lookup(self, customer_id: str) -> CustomerIdentity | None:
        cached = await self.cache.get(customer_id)
        if cached is not None:
            return cached
        identity = await self.store.get_customer(customer_id)
        if identity is not None:
            await self.cache.set(identity)
        return identity

    async def guarantee_identity(self, candidate: Mapping[str, Any] | None) -> IdentityResolution:
        if candidate is None:
            raise IdentityGuaranteeFailure("Customer data is required for reservation creation")

        candidate_id = candidate.get("id")
        try:
            if is_valid_customer_id(candidate_id):
                existing = await self.lookup(candidate_id)
                if existing is not None:
                    logger.debug("identity.reused", extra={"customer_id": existing.id})
                    return IdentityResolution(identity=existing, created=False)
                logger.info("identity.id_not_found", extra={"customer_id": candidate_id})

            missing = [key for key in MANDATORY_FIELDS if is_blank(candidate.get(key))]
            if missing:
                raise IdentityGuaranteeFailure(
                    f"Customer {' and '.join(missing)} required for customer creation"
                )

            fields: dict[str, Any] = {key: str(candidate[key]).strip() for key in MANDATORY_FIELDS}
            for key in OPTIONAL_FIELDS:
                value = candidate.get(key)
                fields[key] = None if is_blank(value) else value
            fields["date_of_birth"] = format_date(candidate.get("date_of_birth"))

            created = await self.store.insert_customer(fields)
        except IdentityGuaranteeFailure as exc:
            logger.error("identity.guarantee_failed", extra={"error": str(exc)})
            raise
        except (ReservationError, SQLAlchemyError) as exc:
            logger.error("identity.guarantee_failed", extra={"error": str(exc)})
            raise IdentityGuaranteeFailure(f"Customer creation failed: {exc}") from exc

        if created is None or not is_valid_customer_id(created.id):
            logger.error("identity.invalid_id", extra={"customer_id": getattr(created, "id", None)})
            raise IdentityGuaranteeFailure(
                "Customer record could not be created/retrieved before reservation linkage"
            )

        await self.cache.set(created)
        logger.info("identity.created", extra={"customer_id": created.id})
        return IdentityResolution(identity=created, created=True)

    async def heal_contact(self, customer_id: str, *, phone: str | None, email: str | None) -> bool:
        """Best-effort write of authority-resolved contact fields back to the customer."""
        try:
            updated = await self.store.update_customer_contact(customer_id, phone=phone, email=email)
        except (ReservationError, SQLAlchemyError) as exc:
            logger.warning("identity.heal_failed", extra={"customer_id": customer_id, "error": str(exc)})
            return False
        await self.cache.invalidate(customer_id)
        if updated:
            logger.info("identity.healed", extra={"customer_id": customer_id})
        return updated
