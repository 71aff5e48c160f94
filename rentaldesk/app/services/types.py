from __future__ import annotations

import enum
from datetime import date, datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rentaldesk.app.core.errors import ConstraintKind, FailureKind


def _as_utc(value: datetime | None) -> datetime | None:
    # Some drivers (SQLite) hand back naive values for timestamptz columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VehicleRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    plate_number: str | None = None
    status: str


class CustomerIdentity(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    full_name: str
    phone: str
    email: str | None = None
    date_of_birth: date | None = None
    nationality: str | None = None
    licence_number: str | None = None
    id_number: str | None = None
    id_scan_url: str | None = None


class ReservationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    vehicle_id: int
    customer_id: str
    rental_start_at: datetime
    rental_end_at: datetime
    rental_status: str
    payment_status: str

    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    customer_licence_number: str | None = None
    customer_id_number: str | None = None
    customer_nationality: str | None = None
    customer_place_of_birth: str | None = None
    customer_dob: date | None = None
    customer_issue_date: date | None = None
    linked_display_id: str | None = None

    unit_price: float | None = None
    quantity_days: float | None = None
    transport_fee: float | None = None
    deposit_amount: float | None = None
    damage_deposit: float | None = None
    total_amount: float | None = None
    remaining_amount: float | None = None

    accessories: str | None = None
    notes: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    @field_validator(
        "rental_start_at", "rental_end_at", "started_at", "completed_at", "cancelled_at"
    )
    @classmethod
    def _utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open ``[start, end)`` intersection test."""
        return start < self.rental_end_at and end > self.rental_start_at


class Slot(BaseModel):
    start: datetime
    end: datetime


class AvailabilityResult(BaseModel):
    available: bool
    conflicts: list[ReservationRecord] = Field(default_factory=list)
    reason: str | None = None
    vehicle_status: str | None = None


class IdentityResolution(BaseModel):
    identity: CustomerIdentity
    created: bool


class WorkflowStep(str, enum.Enum):
    START = "start"
    CUSTOMER_RESOLVED = "customer_resolved"
    AVAILABILITY_CONFIRMED = "availability_confirmed"
    PERSISTED = "persisted"
    STATUS_SYNCED = "status_synced"
    DONE = "done"


class BookingFailure(BaseModel):
    kind: FailureKind
    step: WorkflowStep
    message: str
    conflicts: list[ReservationRecord] = Field(default_factory=list)
    suggested_slot: Slot | None = None
    field: str | None = None
    constraint: ConstraintKind | None = None
    hint: str | None = None


class BookingOutcome(BaseModel):
    """Discriminated result of an orchestrator call; ``ok`` tells which half is set."""

    ok: bool
    step: WorkflowStep
    reservation: ReservationRecord | None = None
    customer: CustomerIdentity | None = None
    customer_created: bool = False
    requires_approval: bool = False
    warnings: list[str] = Field(default_factory=list)
    failure: BookingFailure | None = None
