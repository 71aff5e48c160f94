from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status

from rentaldesk.app.core.errors import ValidationError
from rentaldesk.app.dependencies import get_oracle
from rentaldesk.app.routers.schemas import (
    AvailabilityCheckIn,
    AvailabilityCheckOut,
    NextSlotIn,
    NextSlotOut,
)
from rentaldesk.app.services.availability import AvailabilityOracle, suggestion_hint
from rentaldesk.app.services.types import Slot

router = APIRouter()


def _require_aware(name: str, value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"{name} must include timezone information"
        )
    return value.astimezone(timezone.utc)


def _window(start_ts: datetime, end_ts: datetime) -> tuple[datetime, datetime]:
    start_utc = _require_aware("start_ts", start_ts)
    end_utc = _require_aware("end_ts", end_ts)
    if end_utc <= start_utc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail="end_ts must be after start_ts")
    return start_utc, end_utc


@router.post("/availability/check", response_model=AvailabilityCheckOut)
async def check_availability(
    payload: AvailabilityCheckIn,
    oracle: AvailabilityOracle = Depends(get_oracle),
) -> AvailabilityCheckOut:
    start_utc, end_utc = _window(payload.start_ts, payload.end_ts)

    try:
        result = await oracle.check_availability(
            payload.vehicle_id,
            start_utc,
            end_utc,
            exclude_reservation_id=payload.exclude_reservation_id,
        )
    except ValidationError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    if not result.available:
        conflicts = result.conflicts
        if not conflicts and result.vehicle_status in ("scheduled", "rented"):
            conflicts = await oracle.overlapping_reservations(
                payload.vehicle_id, start_utc, end_utc, payload.exclude_reservation_id
            )
        suggestion = await oracle.find_next_available_slot(payload.vehicle_id, start_utc, end_utc)
        raise HTTPException(
            status.HTTP_409_CONFLICT,
            detail={
                "message": result.reason,
                "vehicle_status": result.vehicle_status,
                "conflicts": [conflict.model_dump(mode="json") for conflict in conflicts],
                "suggested_slot": (
                    Slot(start=suggestion[0], end=suggestion[1]).model_dump(mode="json")
                    if suggestion
                    else None
                ),
                "hint": suggestion_hint(result, suggestion),
            },
        )

    return AvailabilityCheckOut(
        available=True,
        vehicle_id=payload.vehicle_id,
        start_ts=start_utc,
        end_ts=end_utc,
        vehicle_status=result.vehicle_status,
    )


@router.post("/availability/next-slot", response_model=NextSlotOut)
async def next_slot(
    payload: NextSlotIn,
    oracle: AvailabilityOracle = Depends(get_oracle),
) -> NextSlotOut:
    start_utc, end_utc = _window(payload.start_ts, payload.end_ts)
    suggestion = await oracle.find_next_available_slot(
        payload.vehicle_id, start_utc, end_utc, max_days=payload.max_days
    )
    if suggestion is None:
        return NextSlotOut(vehicle_id=payload.vehicle_id)
    return NextSlotOut(vehicle_id=payload.vehicle_id, slot=Slot(start=suggestion[0], end=suggestion[1]))
