"""rental core

Revision ID: 5c1d7a9e2b40
Revises: 
Create Date: 2026-10-18 09:12:04.511873

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '5c1d7a9e2b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist;")

    op.create_table(
        "vehicles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("plate_number", sa.String(32)),
        sa.Column("status", sa.String(32), nullable=False, server_default="available"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "status IN ('available', 'scheduled', 'rented', 'maintenance', 'out_of_service')",
            name="vehicles_status_check",
        ),
    )

    op.create_table(
        "customers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("full_name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(32), nullable=False),
        sa.Column("email", sa.String(254)),
        sa.Column("date_of_birth", sa.Date()),
        sa.Column("nationality", sa.String(100)),
        sa.Column("licence_number", sa.String(64)),
        sa.Column("id_number", sa.String(64)),
        sa.Column("id_scan_url", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("vehicle_id", sa.Integer(), sa.ForeignKey("vehicles.id"), nullable=False, index=True),
        sa.Column("customer_id", sa.String(64), sa.ForeignKey("customers.id"), nullable=False, index=True),
        sa.Column("rental_start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rental_end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("rental_status", sa.String(32), nullable=False, server_default="scheduled"),
        sa.Column("payment_status", sa.String(32), nullable=False, server_default="unpaid"),
        sa.Column("customer_name", sa.String(200), nullable=False),
        sa.Column("customer_phone", sa.String(32), nullable=False),
        sa.Column("customer_email", sa.String(254)),
        sa.Column("customer_licence_number", sa.String(64)),
        sa.Column("customer_id_number", sa.String(64)),
        sa.Column("customer_nationality", sa.String(100)),
        sa.Column("customer_place_of_birth", sa.String(200)),
        sa.Column("customer_dob", sa.Date()),
        sa.Column("customer_issue_date", sa.Date()),
        sa.Column("linked_display_id", sa.String(64)),
        sa.Column("unit_price", sa.Numeric(12, 2)),
        sa.Column("quantity_days", sa.Numeric(8, 2)),
        sa.Column("transport_fee", sa.Numeric(12, 2)),
        sa.Column("deposit_amount", sa.Numeric(12, 2)),
        sa.Column("damage_deposit", sa.Numeric(12, 2)),
        sa.Column("total_amount", sa.Numeric(12, 2)),
        sa.Column("remaining_amount", sa.Numeric(12, 2)),
        sa.Column("accessories", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "rental_status IN ('scheduled', 'active', 'completed', 'cancelled', 'confirmed')",
            name="reservations_rental_status_check",
        ),
        sa.CheckConstraint(
            "payment_status IN ('paid', 'unpaid', 'overdue', 'refunded')",
            name="reservations_payment_status_check",
        ),
        sa.CheckConstraint("rental_end_at > rental_start_at", name="reservations_interval_check"),
    )
    op.create_index("ix_reservations_vehicle_status", "reservations", ["vehicle_id", "rental_status"])

    # Two blocking reservations of one vehicle may never share an instant.
    op.execute(
        """
        ALTER TABLE reservations
          ADD CONSTRAINT reservations_no_overlap
          EXCLUDE USING gist (
            vehicle_id WITH =,
            tstzrange(rental_start_at, rental_end_at, '[)') WITH &&
          )
          WHERE (rental_status IN ('scheduled', 'active', 'confirmed'));
        """
    )


def downgrade() -> None:
    op.execute("ALTER TABLE reservations DROP CONSTRAINT IF EXISTS reservations_no_overlap;")
    op.drop_index("ix_reservations_vehicle_status", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("customers")
    op.drop_table("vehicles")
    op.execute("DROP EXTENSION IF EXISTS btree_gist;")
