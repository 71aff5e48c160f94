"""Lenient normalisation of loosely-typed reservation input.

``sanitize_reservation_fields`` never fails on a bad value: blanks and
garbage become ``None`` (or a documented default) so the store's CHECK
constraints are never the first line of defence. It only refuses input that
is not a field map at all. Running it twice gives the same result as running
it once.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo

from rentaldesk.app.core.errors import ValidationError
from rentaldesk.app.db.models import CUSTOMER_ID_PREFIX, PAYMENT_STATUSES, RENTAL_STATUSES


logger = logging.getLogger(__name__)

DATE_FIELDS = (
    "rental_start_date",
    "rental_end_date",
    "customer_dob",
    "customer_issue_date",
)

DATETIME_FIELDS = (
    "rental_start_at",
    "rental_end_at",
    "started_at",
    "completed_at",
    "cancelled_at",
)

NUMERIC_FIELDS = (
    "unit_price",
    "quantity_days",
    "transport_fee",
    "deposit_amount",
    "damage_deposit",
    "total_amount",
    "remaining_amount",
)

OPTIONAL_STRING_FIELDS = (
    "customer_licence_number",
    "customer_id_number",
    "customer_place_of_birth",
    "customer_nationality",
    "accessories",
    "notes",
    "cancellation_reason",
)

# Caller-supplied contact fields; passed through untouched so the authority
# rule in the orchestrator sees exactly what the caller sent.
AUTHORITY_FIELDS = ("customer_name", "customer_phone", "customer_email")

# Keys that are never columns and must not reach the store.
DROPPED_FIELDS = ("status", "vehicle", "booking_range")

DEFAULT_PAYMENT_STATUS = "unpaid"
DEFAULT_RENTAL_STATUS = "scheduled"

PAYMENT_STATUS_SYNONYMS = {
    "pending": "unpaid",
    "due": "unpaid",
    "outstanding": "unpaid",
    "completed": "paid",
    "full": "paid",
    "partially_paid": "partial",
    "part_paid": "partial",
}

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
_CLOCK_RE = re.compile(r"^\d{1,2}:\d{2}(:\d{2})?$")


def business_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def is_valid_reservation_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def is_valid_customer_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(CUSTOMER_ID_PREFIX) and len(value) > len(
        CUSTOMER_ID_PREFIX
    )


def sanitize_exclude_reservation_id(value: Any) -> str | None:
    """Return ``value`` if it looks like a reservation id, else ``None``.

    Callers sometimes pass a timestamp or a form index here; excluding nothing
    is safer than failing the whole availability check.
    """
    if not value:
        return None
    if is_valid_reservation_id(value):
        return value
    logger.warning("availability.exclude_id_ignored", extra={"exclude_reservation_id": repr(value)})
    return None


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_datetime(value: Any, tz: tzinfo | None = None) -> datetime | None:
    """Parse ``value`` into an aware UTC datetime; naive input is read in ``tz``."""
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz or timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_date(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    candidate = value.strip()
    try:
        return date.fromisoformat(candidate).isoformat()
    except ValueError:
        pass
    parsed = parse_datetime(candidate)
    return parsed.date().isoformat() if parsed is not None else None


def format_datetime(value: Any, tz: tzinfo | None = None) -> str | None:
    parsed = parse_datetime(value, tz)
    return parsed.isoformat() if parsed is not None else None


def normalize_payment_status(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        return DEFAULT_PAYMENT_STATUS
    status = value.strip().lower()
    status = PAYMENT_STATUS_SYNONYMS.get(status, status)
    if status == "partial":
        # The reservations table has no "partial" payment state.
        logger.warning("sanitizer.partial_payment_remapped", extra={"payment_status": value})
        return DEFAULT_PAYMENT_STATUS
    if status in PAYMENT_STATUSES:
        return status
    return DEFAULT_PAYMENT_STATUS


def normalize_rental_status(value: Any) -> str:
    if not isinstance(value, str):
        return DEFAULT_RENTAL_STATUS
    status = value.strip().lower()
    return status if status in RENTAL_STATUSES else DEFAULT_RENTAL_STATUS


def to_amount(value: Any) -> float | None:
    """Finite, non-negative float or ``None``."""
    if isinstance(value, bool) or is_blank(value):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def to_vehicle_id(value: Any) -> int | None:
    if isinstance(value, bool) or is_blank(value):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0 or not number.is_integer():
        return None
    return int(number)


def sanitize_reservation_fields(
    fields: Mapping[str, Any] | None, tz: tzinfo | None = None
) -> dict[str, Any]:
    """Return a cleaned copy of ``fields``; see the module docstring."""
    if fields is None:
        raise ValidationError("Reservation data is required")
    if not isinstance(fields, Mapping):
        raise ValidationError("Reservation data must be a mapping of field names to values")

    cleaned = {key: value for key, value in fields.items() if key not in DROPPED_FIELDS}

    for key in DATE_FIELDS:
        if key in cleaned:
            cleaned[key] = format_date(cleaned[key])

    for key in DATETIME_FIELDS:
        if key in cleaned:
            cleaned[key] = format_datetime(cleaned[key], tz)

    for key in OPTIONAL_STRING_FIELDS:
        if key in cleaned and is_blank(cleaned[key]):
            cleaned[key] = None

    for key in AUTHORITY_FIELDS:
        if key in fields:
            cleaned[key] = fields[key]

    if "payment_status" in cleaned:
        cleaned["payment_status"] = normalize_payment_status(cleaned["payment_status"])

    if "rental_status" in cleaned:
        cleaned["rental_status"] = normalize_rental_status(cleaned["rental_status"])

    for key in NUMERIC_FIELDS:
        if key in cleaned:
            cleaned[key] = to_amount(cleaned[key])

    if "vehicle_id" in cleaned:
        cleaned["vehicle_id"] = to_vehicle_id(cleaned["vehicle_id"])

    return cleaned


def _with_clock(day: Any, clock: Any, tz: tzinfo | None) -> datetime | None:
    formatted = format_date(day)
    if formatted is None:
        return None
    if isinstance(clock, str) and _CLOCK_RE.match(clock.strip()):
        hour, _, rest = clock.strip().partition(":")
        return parse_datetime(f"{formatted}T{hour.zfill(2)}:{rest}", tz)
    return parse_datetime(formatted, tz)


def interval_start(fields: Mapping[str, Any], tz: tzinfo | None = None) -> datetime | None:
    return parse_datetime(fields.get("rental_start_at"), tz) or _with_clock(
        fields.get("rental_start_date"), fields.get("rental_start_time"), tz
    )


def interval_end(fields: Mapping[str, Any], tz: tzinfo | None = None) -> datetime | None:
    return parse_datetime(fields.get("rental_end_at"), tz) or _with_clock(
        fields.get("rental_end_date"), fields.get("rental_end_time"), tz
    )


def reservation_interval(
    fields: Mapping[str, Any], tz: tzinfo | None = None
) -> tuple[datetime, datetime] | None:
    """Derive the ``[start, end)`` interval of a sanitized field map.

    ``rental_start_at``/``rental_end_at`` win; otherwise the date fields are
    combined with ``rental_start_time``/``rental_end_time`` ("HH:MM").
    """
    start = interval_start(fields, tz)
    end = interval_end(fields, tz)
    if start is None or end is None:
        return None
    return start, end
