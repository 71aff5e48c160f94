from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from rentaldesk.app.core.errors import FailureKind
from rentaldesk.app.dependencies import get_orchestrator
from rentaldesk.app.routers.schemas import CancelIn, ReservationListOut, ReservationOut
from rentaldesk.app.services.reservations import ReservationOrchestrator
from rentaldesk.app.services.types import BookingOutcome, ReservationRecord


router = APIRouter()

FAILURE_STATUS = {
    FailureKind.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureKind.CONSTRAINT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    FailureKind.CONFLICT: status.HTTP_409_CONFLICT,
    FailureKind.IDENTITY: status.HTTP_400_BAD_REQUEST,
    FailureKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    FailureKind.SYSTEM: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _unwrap(outcome: BookingOutcome) -> ReservationOut:
    if not outcome.ok:
        failure = outcome.failure
        raise HTTPException(FAILURE_STATUS[failure.kind], detail=failure.model_dump(mode="json"))
    return ReservationOut(
        reservation=outcome.reservation,
        customer_created=outcome.customer_created,
        requires_approval=outcome.requires_approval,
        warnings=outcome.warnings,
    )


@router.post("/reservations", response_model=ReservationOut, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: dict[str, Any] = Body(...),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    return _unwrap(await orchestrator.create_reservation(payload))


@router.get("/reservations", response_model=ReservationListOut)
async def list_reservations(
    vehicle_id: int | None = None,
    rental_status: str | None = Query(default=None, alias="status"),
    start: datetime | None = None,
    end: datetime | None = None,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationListOut:
    items = await orchestrator.list_reservations(
        vehicle_id=vehicle_id, status=rental_status, start=start, end=end
    )
    return ReservationListOut(items=items)


@router.get("/reservations/{reservation_id}", response_model=ReservationRecord)
async def get_reservation(
    reservation_id: str,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationRecord:
    reservation = await orchestrator.get_reservation(reservation_id)
    if reservation is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Reservation not found")
    return reservation


@router.patch("/reservations/{reservation_id}", response_model=ReservationOut)
async def update_reservation(
    reservation_id: str,
    payload: dict[str, Any] = Body(...),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    return _unwrap(await orchestrator.update_reservation(reservation_id, payload))


@router.delete("/reservations/{reservation_id}", response_model=ReservationOut)
async def delete_reservation(
    reservation_id: str,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    return _unwrap(await orchestrator.delete_reservation(reservation_id))


@router.post("/reservations/{reservation_id}/start", response_model=ReservationOut)
async def start_reservation(
    reservation_id: str,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    return _unwrap(await orchestrator.start_reservation(reservation_id))


@router.post("/reservations/{reservation_id}/complete", response_model=ReservationOut)
async def complete_reservation(
    reservation_id: str,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    return _unwrap(await orchestrator.complete_reservation(reservation_id))


@router.post("/reservations/{reservation_id}/cancel", response_model=ReservationOut)
async def cancel_reservation(
    reservation_id: str,
    payload: CancelIn | None = None,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationOut:
    reason = payload.reason if payload else None
    return _unwrap(await orchestrator.cancel_reservation(reservation_id, reason))
