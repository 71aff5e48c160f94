from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from rentaldesk.app.core.errors import ReservationError, StatusSyncWarning
from rentaldesk.app.db.models import VEHICLE_STATUSES
from rentaldesk.app.db.store import RentalStore
from rentaldesk.app.services.types import ReservationRecord

logger = logging.getLogger(__name__)

RENTAL_TO_VEHICLE_STATUS = {
    "scheduled": "scheduled",
    "active": "rented",
    "confirmed": "rented",
    "completed": "available",
    "cancelled": "available",
}


def vehicle_status_for(rental_status: str) -> str | None:
    return RENTAL_TO_VEHICLE_STATUS.get(rental_status)


class StatusSynchronizer:
    """Keeps ``vehicles.status`` in step with reservation lifecycle events.

    The vehicle status is a projection maintained eagerly on each event rather
    than recomputed from history; it is only consistent because blocking
    reservations never overlap. Every method here is best-effort: failures
    are logged as warnings and reported as ``False``.
    """

    def __init__(self, store: RentalStore) -> None:
        self.store = store

    async def set_status(self, vehicle_id: int, new_status: str) -> bool:
        try:
            if new_status not in VEHICLE_STATUSES:
                raise StatusSyncWarning(f"Unknown vehicle status {new_status!r}")
            if not await self.store.update_vehicle_status(vehicle_id, new_status):
                raise StatusSyncWarning(f"Vehicle {vehicle_id} not found")
        except (ReservationError, SQLAlchemyError) as exc:
            logger.warning(
                "status_sync.failed",
                extra={"vehicle_id": vehicle_id, "vehicle_status": new_status, "error": str(exc)},
            )
            return False

        logger.info(
            "status_sync.updated", extra={"vehicle_id": vehicle_id, "vehicle_status": new_status}
        )
        return True

    async def sync_for_reservation(self, reservation: ReservationRecord) -> bool:
        target = vehicle_status_for(reservation.rental_status)
        if target is None:
            return False
        return await self.set_status(reservation.vehicle_id, target)

    async def release(self, vehicle_id: int) -> bool:
        return await self.set_status(vehicle_id, "available")
