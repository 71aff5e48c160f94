from datetime import datetime

from pydantic import BaseModel, Field

from rentaldesk.app.services.types import ReservationRecord, Slot


class AvailabilityCheckIn(BaseModel):
    vehicle_id: int = Field(ge=1)
    # ISO 8601 with offset, e.g. "2025-06-01T10:00:00+01:00"
    start_ts: datetime
    end_ts: datetime
    exclude_reservation_id: str | None = None


class AvailabilityCheckOut(BaseModel):
    available: bool
    vehicle_id: int
    start_ts: datetime
    end_ts: datetime
    vehicle_status: str | None = None


class NextSlotIn(BaseModel):
    vehicle_id: int = Field(ge=1)
    start_ts: datetime
    end_ts: datetime
    max_days: int | None = Field(default=None, ge=1, le=60)


class NextSlotOut(BaseModel):
    vehicle_id: int
    slot: Slot | None = None


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=1024)


class ReservationOut(BaseModel):
    reservation: ReservationRecord
    customer_created: bool = False
    requires_approval: bool = False
    warnings: list[str] = Field(default_factory=list)


class ReservationListOut(BaseModel):
    items: list[ReservationRecord]
