"""Error taxonomy shared by the reservation services.

Services raise these; the orchestrator turns them into a ``BookingFailure``
so callers can tell "fix input" from "pick another time" from "retry".
"""

from __future__ import annotations

import enum
from typing import Any


class FailureKind(str, enum.Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    CONSTRAINT = "constraint"
    IDENTITY = "identity"
    NOT_FOUND = "not_found"
    SYSTEM = "system"


class ConstraintKind(str, enum.Enum):
    PAYMENT_STATUS = "payment_status"
    RENTAL_STATUS = "rental_status"
    DATE_FORMAT = "date_format"
    GENERIC = "generic"


CONSTRAINT_HINTS = {
    ConstraintKind.PAYMENT_STATUS: "Use one of: paid, unpaid, overdue, refunded.",
    ConstraintKind.RENTAL_STATUS: "Use one of: scheduled, active, completed, cancelled, confirmed.",
    ConstraintKind.DATE_FORMAT: "Send dates as YYYY-MM-DD and date-times as ISO-8601, or leave them empty.",
    ConstraintKind.GENERIC: "Check the submitted values and try again.",
}

CONSTRAINT_FIELDS = {
    ConstraintKind.PAYMENT_STATUS: "payment_status",
    ConstraintKind.RENTAL_STATUS: "rental_status",
}


class ReservationError(Exception):
    """Base class for failures surfaced by the reservation engine."""

    kind = FailureKind.SYSTEM

    @property
    def public_message(self) -> str:
        return str(self)


class ValidationError(ReservationError):
    """Structurally missing or unusable input. Nothing was written."""

    kind = FailureKind.VALIDATION

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class NotFoundError(ReservationError):
    kind = FailureKind.NOT_FOUND


class ConflictError(ReservationError):
    """The vehicle cannot take the requested interval."""

    kind = FailureKind.CONFLICT

    def __init__(
        self,
        reason: str,
        conflicts: list[Any] | None = None,
        suggested_slot: tuple[Any, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.conflicts = list(conflicts or [])
        self.suggested_slot = suggested_slot
        self.hint = hint


class ConstraintError(ReservationError):
    """The store rejected a row despite sanitization."""

    kind = FailureKind.CONSTRAINT

    def __init__(self, constraint: ConstraintKind, detail: str, value: Any = None) -> None:
        self.constraint = constraint
        self.detail = detail
        self.value = value
        self.field = CONSTRAINT_FIELDS.get(constraint)
        self.hint = CONSTRAINT_HINTS[constraint]
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.constraint is ConstraintKind.PAYMENT_STATUS:
            return f"Payment status validation failed. Received: {self.value}"
        if self.constraint is ConstraintKind.RENTAL_STATUS:
            return f"Rental status validation failed. Received: {self.value}"
        if self.constraint is ConstraintKind.DATE_FORMAT:
            return f"Date validation failed: {self.detail}"
        return f"Database write failed: {self.detail}"


class IdentityGuaranteeFailure(ReservationError):
    """A persisted, valid-format customer identity could not be guaranteed."""

    kind = FailureKind.IDENTITY

    @property
    def public_message(self) -> str:
        return "Customer record could not be created or retrieved. Please check the customer details."


class StatusSyncWarning(ReservationError):
    """Vehicle status could not be synchronised. Logged, never propagated."""
