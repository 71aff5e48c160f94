from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any

from asyncpg import exceptions as asyncpg_exc
from sqlalchemy import delete, select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from rentaldesk.app.core.errors import ConflictError, ConstraintError, ConstraintKind
from rentaldesk.app.db.models import RESERVATION_COLUMNS, Customer, Reservation, Vehicle
from rentaldesk.app.services.types import CustomerIdentity, ReservationRecord, VehicleRecord


logger = logging.getLogger(__name__)

_DATE_COLUMNS = {"customer_dob", "customer_issue_date"}
_DATETIME_COLUMNS = {"rental_start_at", "rental_end_at", "started_at", "completed_at", "cancelled_at"}
_CUSTOMER_COLUMNS = frozenset(column.key for column in Customer.__table__.columns) - {
    "created_at",
    "updated_at",
}

_DATE_ERROR_MARKERS = (
    "invalid input syntax for type date",
    "invalid input syntax for type timestamp",
    "date/time field value out of range",
    "reservations_interval_check",
)


def _is_exclusion_violation(orig: BaseException) -> bool:
    if isinstance(orig, asyncpg_exc.ExclusionViolationError):
        return True
    if getattr(orig, "sqlstate", None) == "23P01":
        return True
    return "violates exclusion constraint" in str(orig)


def classify_persistence_error(exc: BaseException, values: Mapping[str, Any] | None = None):
    """Map a driver error onto ConflictError or a ConstraintError subtype."""
    values = values or {}
    orig = getattr(exc, "orig", None) or exc
    message = str(orig)

    if _is_exclusion_violation(orig):
        return ConflictError("Vehicle is already booked during this period.")

    lowered = message.lower()
    if "payment_status" in lowered:
        return ConstraintError(ConstraintKind.PAYMENT_STATUS, message, values.get("payment_status"))
    if "rental_status" in lowered:
        return ConstraintError(ConstraintKind.RENTAL_STATUS, message, values.get("rental_status"))
    if any(marker in lowered for marker in _DATE_ERROR_MARKERS):
        return ConstraintError(ConstraintKind.DATE_FORMAT, message)
    return ConstraintError(ConstraintKind.GENERIC, message)


def _to_date(key: str, value: Any) -> date | None:
    if value is None or (isinstance(value, date) and not isinstance(value, datetime)):
        return value
    if isinstance(value, datetime):
        return value.date()
    try:
        return date.fromisoformat(str(value))
    except ValueError as exc:
        raise ConstraintError(ConstraintKind.DATE_FORMAT, f"{key}={value!r}") from exc


def _to_datetime(key: str, value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, datetime):
        try:
            value = datetime.fromisoformat(str(value))
        except ValueError as exc:
            raise ConstraintError(ConstraintKind.DATE_FORMAT, f"{key}={value!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def reservation_column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Keep canonical reservation columns only, typed for the driver."""
    values: dict[str, Any] = {}
    for key, value in fields.items():
        if key not in RESERVATION_COLUMNS:
            continue
        if key in _DATE_COLUMNS:
            value = _to_date(key, value)
        elif key in _DATETIME_COLUMNS:
            value = _to_datetime(key, value)
        values[key] = value
    return values


class RentalStore:
    """Persistence boundary for vehicles, customers and reservations.

    Every write commits on its own: the booking workflow is an ordered saga,
    not one transaction, so a vehicle status write can fail without undoing
    the reservation that triggered it.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def ping(self) -> None:
        await self.session.execute(text("SELECT 1"))

    # vehicles

    async def get_vehicle(self, vehicle_id: int) -> VehicleRecord | None:
        row = await self.session.scalar(
            select(Vehicle)
            .where(Vehicle.id == vehicle_id)
            .execution_options(populate_existing=True)
        )
        return VehicleRecord.model_validate(row) if row is not None else None

    async def add_vehicle(
        self, name: str, status: str = "available", plate_number: str | None = None
    ) -> VehicleRecord:
        vehicle = Vehicle(name=name, status=status, plate_number=plate_number)
        await self._add(vehicle, {"status": status})
        return VehicleRecord.model_validate(vehicle)

    async def update_vehicle_status(self, vehicle_id: int, status: str) -> bool:
        stmt = update(Vehicle).where(Vehicle.id == vehicle_id).values(status=status)
        return await self._execute_write(stmt, {"status": status}) > 0

    # customers

    async def get_customer(self, customer_id: str) -> CustomerIdentity | None:
        row = await self.session.scalar(
            select(Customer)
            .where(Customer.id == customer_id)
            .execution_options(populate_existing=True)
        )
        return CustomerIdentity.model_validate(row) if row is not None else None

    async def insert_customer(self, fields: Mapping[str, Any]) -> CustomerIdentity:
        values = {key: value for key, value in fields.items() if key in _CUSTOMER_COLUMNS}
        if "date_of_birth" in values:
            values["date_of_birth"] = _to_date("date_of_birth", values["date_of_birth"])
        customer = Customer(**values)
        await self._add(customer, values)
        return CustomerIdentity.model_validate(customer)

    async def update_customer_contact(
        self, customer_id: str, *, phone: str | None, email: str | None
    ) -> bool:
        changes = {key: value for key, value in (("phone", phone), ("email", email)) if value}
        if not changes:
            return False
        stmt = update(Customer).where(Customer.id == customer_id).values(**changes)
        return await self._execute_write(stmt, changes) > 0

    # reservations

    async def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        row = await self.session.scalar(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return ReservationRecord.model_validate(row) if row is not None else None

    async def list_reservations(
        self,
        *,
        vehicle_id: int | None = None,
        statuses: Iterable[str] | None = None,
        exclude_ids: Iterable[str | None] = (),
        starts_before: datetime | None = None,
        ends_after: datetime | None = None,
    ) -> list[ReservationRecord]:
        stmt = select(Reservation).order_by(Reservation.rental_start_at)
        if vehicle_id is not None:
            stmt = stmt.where(Reservation.vehicle_id == vehicle_id)
        if statuses is not None:
            stmt = stmt.where(Reservation.rental_status.in_(list(statuses)))
        excluded = [reservation_id for reservation_id in exclude_ids if reservation_id]
        if excluded:
            stmt = stmt.where(Reservation.id.not_in(excluded))
        if starts_before is not None:
            stmt = stmt.where(Reservation.rental_start_at < _to_datetime("starts_before", starts_before))
        if ends_after is not None:
            stmt = stmt.where(Reservation.rental_end_at > _to_datetime("ends_after", ends_after))

        rows = await self.session.scalars(stmt.execution_options(populate_existing=True))
        return [ReservationRecord.model_validate(row) for row in rows]

    async def insert_reservation(self, fields: Mapping[str, Any]) -> ReservationRecord:
        values = reservation_column_values(fields)
        reservation = Reservation(**values)
        await self._add(reservation, values)
        return ReservationRecord.model_validate(reservation)

    async def update_reservation(
        self, reservation_id: str, fields: Mapping[str, Any]
    ) -> ReservationRecord | None:
        values = reservation_column_values(fields)
        values.pop("id", None)
        reservation = await self.session.get(Reservation, reservation_id, populate_existing=True)
        if reservation is None:
            return None
        for key, value in values.items():
            setattr(reservation, key, value)
        await self._add(reservation, values)
        return ReservationRecord.model_validate(reservation)

    async def delete_reservation(self, reservation_id: str) -> bool:
        stmt = delete(Reservation).where(Reservation.id == reservation_id)
        return await self._execute_write(stmt) > 0

    async def _add(self, instance: Any, values: Mapping[str, Any]) -> None:
        self.session.add(instance)
        try:
            await self.session.commit()
        except DBAPIError as exc:
            await self._fail(exc, values)
        await self.session.refresh(instance)

    async def _execute_write(self, stmt: Any, values: Mapping[str, Any] | None = None) -> int:
        try:
            result = await self.session.execute(stmt)
            await self.session.commit()
        except DBAPIError as exc:
            await self._fail(exc, values)
        return result.rowcount

    async def _fail(self, exc: DBAPIError, values: Mapping[str, Any] | None) -> None:
        await self.session.rollback()
        logger.error("store.write_failed", extra={"error": str(getattr(exc, "orig", exc))})
        raise classify_persistence_error(exc, values) from exc
