"""Booking workflows: create, update, delete and lifecycle transitions.

Creation is an ordered saga rather than one transaction:

    START -> CUSTOMER_RESOLVED -> AVAILABILITY_CONFIRMED -> PERSISTED
          -> STATUS_SYNCED -> DONE

Any of the first four transitions may fail; the outcome then carries the
step that was being attempted. Nothing is written to ``reservations`` before
the customer identity exists. Vehicle status sync and contact healing run
after the reservation is committed and can only add warnings.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone, tzinfo
from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from rentaldesk.app.core.errors import (
    ConflictError,
    ConstraintError,
    FailureKind,
    NotFoundError,
    ReservationError,
    ValidationError,
)
from rentaldesk.app.db.models import BLOCKING_RENTAL_STATUSES
from rentaldesk.app.db.store import RentalStore
from rentaldesk.app.services.availability import AvailabilityOracle, suggestion_hint
from rentaldesk.app.services.identity import CustomerIdentityResolver, primary_identifier
from rentaldesk.app.services.locks import SlotLock
from rentaldesk.app.services.sanitizer import (
    AUTHORITY_FIELDS,
    DEFAULT_PAYMENT_STATUS,
    DEFAULT_RENTAL_STATUS,
    interval_end,
    interval_start,
    is_blank,
    is_valid_reservation_id,
    sanitize_reservation_fields,
)
from rentaldesk.app.services.status_sync import StatusSynchronizer
from rentaldesk.app.services.types import (
    BookingFailure,
    BookingOutcome,
    CustomerIdentity,
    ReservationRecord,
    Slot,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

STARTABLE_STATUSES = ("scheduled", "confirmed")
COMPLETABLE_STATUSES = ("active", "confirmed")
FINAL_STATUSES = ("completed", "cancelled")

# Identity-document snapshot copied from the customer when the caller left it out.
_SNAPSHOT_FIELDS = {
    "customer_licence_number": "licence_number",
    "customer_id_number": "id_number",
    "customer_nationality": "nationality",
    "customer_dob": "date_of_birth",
}


def customer_candidate(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Canonical identity candidate built from booking form fields."""
    return {
        "id": fields.get("customer_id"),
        "full_name": fields.get("customer_name"),
        "phone": fields.get("customer_phone"),
        "email": fields.get("customer_email"),
        "date_of_birth": fields.get("customer_dob"),
        "nationality": fields.get("customer_nationality"),
        "licence_number": fields.get("customer_licence_number"),
        "id_number": fields.get("customer_id_number"),
        "id_scan_url": fields.get("customer_id_scan_url"),
    }


def _authoritative(caller_value: Any, stored_value: Any) -> Any:
    return caller_value if not is_blank(caller_value) else stored_value


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ReservationOrchestrator:
    def __init__(
        self,
        store: RentalStore,
        oracle: AvailabilityOracle,
        status_sync: StatusSynchronizer,
        identity: CustomerIdentityResolver,
        locks: SlotLock,
        tz: tzinfo = timezone.utc,
        approval_min_total: float | None = None,
    ) -> None:
        self.store = store
        self.oracle = oracle
        self.status_sync = status_sync
        self.identity = identity
        self.locks = locks
        self.tz = tz
        self.approval_min_total = approval_min_total

    # reads

    async def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        if not is_valid_reservation_id(reservation_id):
            return None
        return await self.store.get_reservation(reservation_id)

    async def list_reservations(
        self,
        *,
        vehicle_id: int | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ReservationRecord]:
        return await self.store.list_reservations(
            vehicle_id=vehicle_id,
            statuses=[status] if status else None,
            starts_before=end,
            ends_after=start,
        )

    # create

    async def create_reservation(self, fields: Mapping[str, Any] | None) -> BookingOutcome:
        step = WorkflowStep.START
        attempting = WorkflowStep.START
        try:
            cleaned = sanitize_reservation_fields(fields, self.tz)
            vehicle_id = self._require_vehicle(cleaned)
            start, end = self._require_interval(cleaned)
            self._log_step("create", step, vehicle_id=vehicle_id)

            attempting = WorkflowStep.CUSTOMER_RESOLVED
            resolution = await self.identity.guarantee_identity(customer_candidate(cleaned))
            customer = resolution.identity
            step = attempting
            self._log_step("create", step, vehicle_id=vehicle_id, customer_id=customer.id)

            attempting = WorkflowStep.AVAILABILITY_CONFIRMED
            async with self.locks.hold(vehicle_id):
                await self._confirm_availability(vehicle_id, start, end)
                step = attempting
                self._log_step("create", step, vehicle_id=vehicle_id)

                attempting = WorkflowStep.PERSISTED
                payload = self._assemble(cleaned, customer)
                payload.update(
                    vehicle_id=vehicle_id,
                    customer_id=customer.id,
                    rental_start_at=start,
                    rental_end_at=end,
                )
                payload.pop("id", None)
                payload.setdefault("rental_status", DEFAULT_RENTAL_STATUS)
                payload.setdefault("payment_status", DEFAULT_PAYMENT_STATUS)
                self._require_contact(payload)
                reservation = await self.store.insert_reservation(payload)
                step = attempting
                self._log_step("create", step, vehicle_id=vehicle_id, reservation_id=reservation.id)
        except (ReservationError, SQLAlchemyError, RedisError) as exc:
            return self._failed("create", exc, attempting, step)

        warnings = await self._after_write("create", reservation, customer)
        return BookingOutcome(
            ok=True,
            step=WorkflowStep.DONE,
            reservation=reservation,
            customer=customer,
            customer_created=resolution.created,
            requires_approval=self._requires_approval(reservation),
            warnings=warnings,
        )

    # update

    async def update_reservation(
        self, reservation_id: str, fields: Mapping[str, Any] | None
    ) -> BookingOutcome:
        return await self._update("update", reservation_id, fields)

    async def start_reservation(self, reservation_id: str) -> BookingOutcome:
        """Hand over the vehicle; the only path that skips the vehicle status gate."""

        def guard(current: ReservationRecord) -> str | None:
            if current.rental_status not in STARTABLE_STATUSES:
                return f"Reservation is {current.rental_status}, not scheduled"
            if current.started_at is not None:
                return "Reservation has already been started"
            return None

        return await self._update(
            "start",
            reservation_id,
            {"rental_status": "active", "started_at": _now()},
            guard=guard,
            force_check=True,
        )

    async def complete_reservation(self, reservation_id: str) -> BookingOutcome:
        def guard(current: ReservationRecord) -> str | None:
            if current.rental_status not in COMPLETABLE_STATUSES:
                return f"Reservation is {current.rental_status}, not active"
            return None

        return await self._update(
            "complete",
            reservation_id,
            {"rental_status": "completed", "completed_at": _now()},
            guard=guard,
        )

    async def cancel_reservation(self, reservation_id: str, reason: str | None = None) -> BookingOutcome:
        def guard(current: ReservationRecord) -> str | None:
            if current.rental_status in FINAL_STATUSES:
                return f"Cannot cancel {current.rental_status} reservation"
            return None

        return await self._update(
            "cancel",
            reservation_id,
            {"rental_status": "cancelled", "cancelled_at": _now(), "cancellation_reason": reason},
            guard=guard,
        )

    async def _update(
        self,
        operation: str,
        reservation_id: str,
        fields: Mapping[str, Any] | None,
        *,
        guard: Callable[[ReservationRecord], str | None] | None = None,
        force_check: bool = False,
    ) -> BookingOutcome:
        step = WorkflowStep.START
        attempting = WorkflowStep.START
        customer: CustomerIdentity | None = None
        created = False
        try:
            current = await self._require_reservation(reservation_id)
            cleaned = sanitize_reservation_fields(fields, self.tz)
            cleaned.pop("id", None)
            if guard is not None and (problem := guard(current)):
                raise ValidationError(problem, field="rental_status")

            vehicle_id = current.vehicle_id
            if "vehicle_id" in cleaned:
                vehicle_id = self._require_vehicle(cleaned)
            start = interval_start(cleaned, self.tz) or current.rental_start_at
            end = interval_end(cleaned, self.tz) or current.rental_end_at
            if end <= start:
                raise ValidationError("Rental end must be after rental start", field="rental_end_at")
            new_status = cleaned.get("rental_status", current.rental_status)
            self._log_step(operation, step, vehicle_id=vehicle_id, reservation_id=reservation_id)

            attempting = WorkflowStep.CUSTOMER_RESOLVED
            new_customer_id = cleaned.get("customer_id")
            contact_owner = None
            if new_customer_id and new_customer_id != current.customer_id:
                resolution = await self.identity.guarantee_identity(customer_candidate(cleaned))
                customer, created = resolution.identity, resolution.created
                contact_owner = customer
            else:
                # Blank contact fields never erase the stored snapshot.
                for key in AUTHORITY_FIELDS:
                    if key in cleaned and is_blank(cleaned[key]):
                        del cleaned[key]
                if any(key in cleaned for key in AUTHORITY_FIELDS):
                    contact_owner = await self.identity.lookup(current.customer_id)
            step = attempting

            attempting = WorkflowStep.AVAILABILITY_CONFIRMED
            vehicle_changed = vehicle_id != current.vehicle_id
            interval_changed = (start, end) != (current.rental_start_at, current.rental_end_at)
            holds_vehicle = current.rental_status in BLOCKING_RENTAL_STATUSES
            needs_check = new_status in BLOCKING_RENTAL_STATUSES and (
                force_check or vehicle_changed or interval_changed or not holds_vehicle
            )
            async with self.locks.hold(vehicle_id):
                if needs_check:
                    # The reservation already owns its vehicle's status; only
                    # re-gate on status when it moves to another vehicle.
                    bypass = reservation_id if holds_vehicle and not vehicle_changed else None
                    await self._confirm_availability(
                        vehicle_id, start, end, exclude=reservation_id, bypass_for=bypass
                    )
                step = attempting
                self._log_step(operation, step, vehicle_id=vehicle_id, checked=needs_check)

                attempting = WorkflowStep.PERSISTED
                payload = self._assemble(cleaned, customer) if customer else dict(cleaned)
                payload.update(vehicle_id=vehicle_id, rental_start_at=start, rental_end_at=end)
                if customer is not None:
                    payload["customer_id"] = customer.id
                updated = await self.store.update_reservation(reservation_id, payload)
                if updated is None:
                    raise NotFoundError(f"Reservation {reservation_id} not found")
                step = attempting
                self._log_step(operation, step, vehicle_id=vehicle_id, reservation_id=reservation_id)
        except (ReservationError, SQLAlchemyError, RedisError) as exc:
            return self._failed(operation, exc, attempting, step)

        # Vehicle status follows this reservation only when its hold changes;
        # other edits leave whatever another booking set.
        holds_now = updated.rental_status in BLOCKING_RENTAL_STATUSES
        status_changed = updated.rental_status != current.rental_status
        sync_status = (holds_now and (status_changed or vehicle_changed or interval_changed)) or (
            holds_vehicle and not holds_now and not vehicle_changed
        )
        warnings = []
        if holds_vehicle and vehicle_changed and not await self.status_sync.release(current.vehicle_id):
            warnings.append(f"Vehicle {current.vehicle_id} status could not be reset to available")
        warnings.extend(
            await self._after_write(operation, updated, contact_owner, sync_status=sync_status)
        )
        return BookingOutcome(
            ok=True,
            step=WorkflowStep.DONE,
            reservation=updated,
            customer=customer,
            customer_created=created,
            requires_approval=self._requires_approval(updated),
            warnings=warnings,
        )

    # delete

    async def delete_reservation(self, reservation_id: str) -> BookingOutcome:
        step = WorkflowStep.START
        try:
            current = await self._require_reservation(reservation_id)
            if not await self.store.delete_reservation(reservation_id):
                raise NotFoundError(f"Reservation {reservation_id} not found")
        except (ReservationError, SQLAlchemyError) as exc:
            return self._failed("delete", exc, WorkflowStep.PERSISTED, step)
        self._log_step(
            "delete", WorkflowStep.PERSISTED, vehicle_id=current.vehicle_id, reservation_id=reservation_id
        )

        warnings = []
        if not await self.status_sync.release(current.vehicle_id):
            warnings.append("Vehicle status could not be reset to available")
        self._log_step("delete", WorkflowStep.STATUS_SYNCED, vehicle_id=current.vehicle_id)
        return BookingOutcome(ok=True, step=WorkflowStep.DONE, reservation=current, warnings=warnings)

    # steps

    def _require_vehicle(self, cleaned: Mapping[str, Any]) -> int:
        vehicle_id = cleaned.get("vehicle_id")
        if vehicle_id is None:
            raise ValidationError("Vehicle selection is required", field="vehicle_id")
        return vehicle_id

    def _require_interval(self, cleaned: Mapping[str, Any]) -> tuple[datetime, datetime]:
        start = interval_start(cleaned, self.tz)
        end = interval_end(cleaned, self.tz)
        if start is None:
            raise ValidationError("Rental start must be a valid date", field="rental_start_at")
        if end is None:
            raise ValidationError("Rental end must be a valid date", field="rental_end_at")
        if end <= start:
            raise ValidationError("Rental end must be after rental start", field="rental_end_at")
        return start, end

    @staticmethod
    def _require_contact(payload: Mapping[str, Any]) -> None:
        if is_blank(payload.get("customer_name")) or is_blank(payload.get("customer_phone")):
            raise ValidationError("Customer name and phone are required", field="customer_phone")

    async def _require_reservation(self, reservation_id: str) -> ReservationRecord:
        if not is_valid_reservation_id(reservation_id):
            raise ValidationError(f"Invalid reservation id: {reservation_id!r}", field="id")
        current = await self.store.get_reservation(reservation_id)
        if current is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return current

    async def _confirm_availability(
        self,
        vehicle_id: int,
        start: datetime,
        end: datetime,
        *,
        exclude: str | None = None,
        bypass_for: str | None = None,
    ) -> None:
        result = await self.oracle.check_availability(
            vehicle_id, start, end, exclude_reservation_id=exclude, bypass_for=bypass_for
        )
        if result.available:
            return

        conflicts = result.conflicts
        if not conflicts and result.vehicle_status in ("scheduled", "rented"):
            conflicts = await self.oracle.overlapping_reservations(
                vehicle_id, start, end, exclude_reservation_id=exclude or bypass_for
            )
        suggestion = await self.oracle.find_next_available_slot(vehicle_id, start, end)
        raise ConflictError(
            result.reason or "Vehicle is not available",
            conflicts,
            suggestion,
            hint=suggestion_hint(result, suggestion),
        )

    def _assemble(self, cleaned: Mapping[str, Any], customer: CustomerIdentity) -> dict[str, Any]:
        """Apply the authority rule: non-blank caller contact wins over stored values."""
        payload = dict(cleaned)
        payload["customer_name"] = _authoritative(cleaned.get("customer_name"), customer.full_name)
        payload["customer_phone"] = _authoritative(cleaned.get("customer_phone"), customer.phone)
        payload["customer_email"] = _authoritative(cleaned.get("customer_email"), customer.email)
        for column, attribute in _SNAPSHOT_FIELDS.items():
            if payload.get(column) is None:
                payload[column] = getattr(customer, attribute)
        payload["linked_display_id"] = primary_identifier(customer)
        return payload

    async def _after_write(
        self,
        operation: str,
        reservation: ReservationRecord,
        customer: CustomerIdentity | None,
        sync_status: bool = True,
    ) -> list[str]:
        warnings = []
        if sync_status:
            if not await self.status_sync.sync_for_reservation(reservation):
                warnings.append("Vehicle status could not be synchronised")
            self._log_step(operation, WorkflowStep.STATUS_SYNCED, vehicle_id=reservation.vehicle_id)

        if customer is not None and (
            reservation.customer_phone != customer.phone
            or (reservation.customer_email and reservation.customer_email != customer.email)
        ):
            healed = await self.identity.heal_contact(
                customer.id, phone=reservation.customer_phone, email=reservation.customer_email
            )
            if not healed:
                warnings.append("Customer contact details could not be updated")
        self._log_step(operation, WorkflowStep.DONE, reservation_id=reservation.id)
        return warnings

    def _requires_approval(self, reservation: ReservationRecord) -> bool:
        if self.approval_min_total is None or reservation.total_amount is None:
            return False
        return reservation.total_amount >= self.approval_min_total

    def _log_step(self, operation: str, step: WorkflowStep, **fields: Any) -> None:
        logger.info("reservation.step", extra={"operation": operation, "step": step.value, **fields})

    def _failed(
        self,
        operation: str,
        exc: Exception,
        attempting: WorkflowStep,
        reached: WorkflowStep,
    ) -> BookingOutcome:
        failure = BookingFailure(
            kind=getattr(exc, "kind", FailureKind.SYSTEM),
            step=attempting,
            message=exc.public_message if isinstance(exc, ReservationError) else "Unexpected error, please retry",
        )
        if isinstance(exc, ValidationError):
            failure.field = exc.field
        elif isinstance(exc, ConflictError):
            failure.conflicts = [c for c in exc.conflicts if isinstance(c, ReservationRecord)]
            if exc.suggested_slot is not None:
                failure.suggested_slot = Slot(start=exc.suggested_slot[0], end=exc.suggested_slot[1])
            failure.hint = exc.hint
        elif isinstance(exc, ConstraintError):
            failure.field = exc.field
            failure.constraint = exc.constraint
            failure.hint = exc.hint

        log = logger.error if failure.kind in (FailureKind.SYSTEM, FailureKind.IDENTITY) else logger.warning
        log(
            "reservation.failed",
            extra={
                "operation": operation,
                "step": attempting.value,
                "kind": failure.kind.value,
                "error": str(exc),
            },
        )
        return BookingOutcome(ok=False, step=reached, failure=failure)
