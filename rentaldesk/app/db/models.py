"""Canonical persistence schema.

One name per concept: the store maps every caller field onto these columns
and nothing else.
"""

from __future__ import annotations

import secrets
import string
import time
import uuid
from datetime import date, datetime

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


VEHICLE_STATUSES = ("available", "scheduled", "rented", "maintenance", "out_of_service")
RENTAL_STATUSES = ("scheduled", "active", "completed", "cancelled", "confirmed")
# "partial" is deliberately absent; see sanitizer.normalize_payment_status
PAYMENT_STATUSES = ("paid", "unpaid", "overdue", "refunded")
BLOCKING_RENTAL_STATUSES = ("scheduled", "active", "confirmed")

CUSTOMER_ID_PREFIX = "cust_"

_BASE36 = string.digits + string.ascii_lowercase


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


def new_reservation_id() -> str:
    return str(uuid.uuid4())


def new_customer_id() -> str:
    """Return ``cust_<epoch-ms>_<9 base36 chars>``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{CUSTOMER_ID_PREFIX}{int(time.time() * 1000)}_{suffix}"


class Base(DeclarativeBase):
    pass


class Vehicle(Base):
    __tablename__ = "vehicles"
    __table_args__ = (
        CheckConstraint(_in_clause("status", VEHICLE_STATUSES), name="vehicles_status_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    plate_number: Mapped[str | None] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), default="available", server_default="available")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_customer_id)
    full_name: Mapped[str] = mapped_column(String(200))
    phone: Mapped[str] = mapped_column(String(32))
    email: Mapped[str | None] = mapped_column(String(254))
    date_of_birth: Mapped[date | None] = mapped_column(Date)
    nationality: Mapped[str | None] = mapped_column(String(100))
    licence_number: Mapped[str | None] = mapped_column(String(64))
    id_number: Mapped[str | None] = mapped_column(String(64))
    id_scan_url: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint(
            _in_clause("rental_status", RENTAL_STATUSES), name="reservations_rental_status_check"
        ),
        CheckConstraint(
            _in_clause("payment_status", PAYMENT_STATUSES), name="reservations_payment_status_check"
        ),
        CheckConstraint("rental_end_at > rental_start_at", name="reservations_interval_check"),
        Index("ix_reservations_vehicle_status", "vehicle_id", "rental_status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_reservation_id)
    vehicle_id: Mapped[int] = mapped_column(ForeignKey("vehicles.id"), index=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), index=True)

    rental_start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    rental_end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    rental_status: Mapped[str] = mapped_column(String(32), default="scheduled")
    payment_status: Mapped[str] = mapped_column(String(32), default="unpaid")

    customer_name: Mapped[str] = mapped_column(String(200))
    customer_phone: Mapped[str] = mapped_column(String(32))
    customer_email: Mapped[str | None] = mapped_column(String(254))
    customer_licence_number: Mapped[str | None] = mapped_column(String(64))
    customer_id_number: Mapped[str | None] = mapped_column(String(64))
    customer_nationality: Mapped[str | None] = mapped_column(String(100))
    customer_place_of_birth: Mapped[str | None] = mapped_column(String(200))
    customer_dob: Mapped[date | None] = mapped_column(Date)
    customer_issue_date: Mapped[date | None] = mapped_column(Date)
    linked_display_id: Mapped[str | None] = mapped_column(String(64))

    unit_price: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    quantity_days: Mapped[float | None] = mapped_column(Numeric(8, 2, asdecimal=False))
    transport_fee: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    deposit_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    damage_deposit: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    total_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))
    remaining_amount: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False))

    accessories: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


RESERVATION_COLUMNS = frozenset(
    column.key for column in Reservation.__table__.columns
) - {"created_at", "updated_at"}
