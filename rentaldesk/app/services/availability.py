from __future__ import annotations

import logging
from datetime import datetime, timedelta

from rentaldesk.app.core.errors import ValidationError
from rentaldesk.app.db.models import BLOCKING_RENTAL_STATUSES
from rentaldesk.app.db.store import RentalStore
from rentaldesk.app.services.sanitizer import (
    is_valid_reservation_id,
    sanitize_exclude_reservation_id,
)
from rentaldesk.app.services.types import AvailabilityResult, ReservationRecord

logger = logging.getLogger(__name__)

MAX_NEXT_SLOT_DAYS = 60
# Statuses that only mean "held by a reservation"; a free window may still exist.
RESERVATION_DERIVED_STATUSES = ("available", "scheduled", "rented")


def find_conflicts(
    reservations: list[ReservationRecord], start: datetime, end: datetime
) -> list[ReservationRecord]:
    return [reservation for reservation in reservations if reservation.overlaps(start, end)]


def suggestion_hint(result: AvailabilityResult, suggestion) -> str | None:
    """Explain a suggestion the status gate would still reject."""
    if suggestion is None or result.conflicts:
        return None
    if result.vehicle_status in (None, "available"):
        return None
    return (
        f"Vehicle is {result.vehicle_status}; the suggested slot is free of reservations "
        "but can only be booked once the vehicle is released."
    )


class AvailabilityOracle:
    """Answers "can this vehicle take ``[start, end)``?" against the store."""

    def __init__(self, store: RentalStore, max_search_days: int = MAX_NEXT_SLOT_DAYS) -> None:
        self.store = store
        self.max_search_days = max_search_days

    async def check_availability(
        self,
        vehicle_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
        bypass_for: str | None = None,
    ) -> AvailabilityResult:
        if end <= start:
            raise ValidationError("Rental end must be after rental start", field="rental_end_at")

        vehicle_status = None
        if bypass_for is None:
            vehicle = await self.store.get_vehicle(vehicle_id)
            if vehicle is None:
                return AvailabilityResult(
                    available=False, reason=f"Vehicle with ID {vehicle_id} not found"
                )
            vehicle_status = vehicle.status
            if vehicle.status != "available":
                logger.info(
                    "availability.status_blocked",
                    extra={"vehicle_id": vehicle_id, "vehicle_status": vehicle.status},
                )
                return AvailabilityResult(
                    available=False,
                    reason=(
                        f'Vehicle "{vehicle.name}" is currently {vehicle.status}. '
                        'Only vehicles with "available" status can be booked.'
                    ),
                    vehicle_status=vehicle.status,
                )
        else:
            started = (
                await self.store.get_reservation(bypass_for)
                if is_valid_reservation_id(bypass_for)
                else None
            )
            if started is None:
                return AvailabilityResult(available=False, reason="Reservation not found")
            if started.vehicle_id != vehicle_id:
                logger.warning(
                    "availability.bypass_vehicle_mismatch",
                    extra={"vehicle_id": vehicle_id, "reservation_id": bypass_for},
                )
                return AvailabilityResult(
                    available=False, reason="Vehicle mismatch: reservation does not belong to this vehicle"
                )

        existing = await self.store.list_reservations(
            vehicle_id=vehicle_id,
            statuses=BLOCKING_RENTAL_STATUSES,
            exclude_ids=(sanitize_exclude_reservation_id(exclude_reservation_id), bypass_for),
        )
        conflicts = find_conflicts(existing, start, end)
        if conflicts:
            logger.info(
                "availability.conflict",
                extra={"vehicle_id": vehicle_id, "conflicts": [c.id for c in conflicts]},
            )
            return AvailabilityResult(
                available=False,
                conflicts=conflicts,
                reason=(
                    "Vehicle is already booked during this period. "
                    f"Found {len(conflicts)} conflicting reservation(s)."
                ),
                vehicle_status=vehicle_status,
            )

        return AvailabilityResult(available=True, vehicle_status=vehicle_status)

    async def overlapping_reservations(
        self,
        vehicle_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: str | None = None,
    ) -> list[ReservationRecord]:
        """Blocking reservations intersecting the window, for display only."""
        existing = await self.store.list_reservations(
            vehicle_id=vehicle_id,
            statuses=BLOCKING_RENTAL_STATUSES,
            exclude_ids=(sanitize_exclude_reservation_id(exclude_reservation_id),),
        )
        return find_conflicts(existing, start, end)

    async def find_next_available_slot(
        self,
        vehicle_id: int,
        desired_start: datetime,
        desired_end: datetime,
        max_days: int | None = None,
    ) -> tuple[datetime, datetime] | None:
        """First whole-day offset (from +1 day) at which the same duration fits."""
        if desired_end <= desired_start:
            raise ValidationError("Rental end must be after rental start", field="rental_end_at")

        vehicle = await self.store.get_vehicle(vehicle_id)
        if vehicle is None or vehicle.status not in RESERVATION_DERIVED_STATUSES:
            return None

        days = min(max_days or self.max_search_days, self.max_search_days)
        duration = desired_end - desired_start
        existing = await self.store.list_reservations(
            vehicle_id=vehicle_id,
            statuses=BLOCKING_RENTAL_STATUSES,
            ends_after=desired_start,
        )
        for offset in range(1, days + 1):
            candidate_start = desired_start + timedelta(days=offset)
            candidate_end = candidate_start + duration
            if not find_conflicts(existing, candidate_start, candidate_end):
                logger.debug(
                    "availability.next_slot_found",
                    extra={"vehicle_id": vehicle_id, "offset_days": offset},
                )
                return candidate_start, candidate_end

        logger.info(
            "availability.no_slot", extra={"vehicle_id": vehicle_id, "searched_days": days}
        )
        return None
