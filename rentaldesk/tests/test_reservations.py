import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import booking_fields, build_orchestrator, utc
from rentaldesk.app.core.errors import (
    ConflictError,
    ConstraintError,
    ConstraintKind,
    FailureKind,
)
from rentaldesk.app.db.store import classify_persistence_error
from rentaldesk.app.services.locks import LocalSlotLock
from rentaldesk.app.services.types import WorkflowStep


pytestmark = pytest.mark.asyncio

SCENARIO_A = (utc(2024, 6, 1, 9), utc(2024, 6, 1, 11))
SCENARIO_B = (utc(2024, 6, 1, 10), utc(2024, 6, 1, 12))


async def test_booking_available_vehicle_schedules_it(orchestrator, store, vehicle):
    outcome = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    assert outcome.ok, outcome.failure
    assert outcome.step == WorkflowStep.DONE
    assert outcome.customer_created
    assert outcome.reservation.customer_id == outcome.customer.id
    assert outcome.reservation.rental_status == "scheduled"
    assert outcome.reservation.payment_status == "unpaid"
    assert (outcome.reservation.rental_start_at, outcome.reservation.rental_end_at) == SCENARIO_A
    assert (await store.get_vehicle(vehicle.id)).status == "scheduled"


async def test_overlapping_booking_is_rejected_with_conflicts(orchestrator, store, vehicle):
    first = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    second = await orchestrator.create_reservation(
        booking_fields(vehicle.id, *SCENARIO_B, customer_name="Karim", customer_phone="+212611111111")
    )

    assert not second.ok
    assert second.failure.kind == FailureKind.CONFLICT
    assert second.failure.step == WorkflowStep.AVAILABILITY_CONFIRMED
    assert second.step == WorkflowStep.CUSTOMER_RESOLVED
    assert [c.id for c in second.failure.conflicts] == [first.reservation.id]
    assert second.failure.suggested_slot is not None
    assert second.failure.suggested_slot.start >= SCENARIO_A[1]
    assert "released" in second.failure.hint
    assert (await store.get_vehicle(vehicle.id)).status == "scheduled"
    assert len(await store.list_reservations(vehicle_id=vehicle.id)) == 1


async def test_lifecycle_drives_vehicle_status(orchestrator, store, vehicle):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    active = await orchestrator.update_reservation(booked.reservation.id, {"rental_status": "active"})
    assert active.ok, active.failure
    assert (await store.get_vehicle(vehicle.id)).status == "rented"

    deleted = await orchestrator.delete_reservation(booked.reservation.id)
    assert deleted.ok
    assert (await store.get_vehicle(vehicle.id)).status == "available"
    assert await store.get_reservation(booked.reservation.id) is None


async def test_start_complete_transitions(orchestrator, store, vehicle):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    started = await orchestrator.start_reservation(booked.reservation.id)
    assert started.ok, started.failure
    assert started.reservation.rental_status == "active"
    assert started.reservation.started_at is not None
    assert (await store.get_vehicle(vehicle.id)).status == "rented"

    again = await orchestrator.start_reservation(booked.reservation.id)
    assert not again.ok
    assert again.failure.kind == FailureKind.VALIDATION

    completed = await orchestrator.complete_reservation(booked.reservation.id)
    assert completed.ok
    assert completed.reservation.completed_at is not None
    assert (await store.get_vehicle(vehicle.id)).status == "available"


async def test_cancel_frees_the_vehicle_and_the_window(orchestrator, store, vehicle):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    cancelled = await orchestrator.cancel_reservation(booked.reservation.id, "customer changed plans")
    assert cancelled.ok
    assert cancelled.reservation.cancellation_reason == "customer changed plans"
    assert (await store.get_vehicle(vehicle.id)).status == "available"

    rebooked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_B))
    assert rebooked.ok, rebooked.failure

    twice = await orchestrator.cancel_reservation(booked.reservation.id)
    assert not twice.ok


async def test_reschedule_own_reservation_ignores_itself(orchestrator, vehicle):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    moved = await orchestrator.update_reservation(
        booked.reservation.id,
        {"rental_start_at": SCENARIO_B[0].isoformat(), "rental_end_at": SCENARIO_B[1].isoformat()},
    )

    assert moved.ok, moved.failure
    assert moved.reservation.rental_start_at == SCENARIO_B[0]


async def test_reschedule_into_another_booking_conflicts(orchestrator, store, vehicle):
    a = await orchestrator.create_reservation(booking_fields(vehicle.id, utc(2024, 7, 1), utc(2024, 7, 3)))
    await store.update_vehicle_status(vehicle.id, "available")
    b = await orchestrator.create_reservation(booking_fields(vehicle.id, utc(2024, 7, 5), utc(2024, 7, 7)))
    assert a.ok and b.ok

    moved = await orchestrator.update_reservation(
        a.reservation.id, {"rental_end_at": utc(2024, 7, 6).isoformat()}
    )

    assert not moved.ok
    assert moved.failure.kind == FailureKind.CONFLICT
    assert [c.id for c in moved.failure.conflicts] == [b.reservation.id]
    assert moved.failure.hint is None
    assert (await store.get_reservation(a.reservation.id)).rental_end_at == utc(2024, 7, 3)


async def test_moving_to_another_vehicle_releases_the_old_one(orchestrator, store, vehicle):
    other = await store.add_vehicle("Hyundai i10")
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    moved = await orchestrator.update_reservation(booked.reservation.id, {"vehicle_id": other.id})

    assert moved.ok, moved.failure
    assert moved.reservation.vehicle_id == other.id
    assert (await store.get_vehicle(vehicle.id)).status == "available"
    assert (await store.get_vehicle(other.id)).status == "scheduled"


async def test_missing_vehicle_fails_at_start(orchestrator):
    outcome = await orchestrator.create_reservation(
        {"rental_start_at": "2024-06-01T09:00:00", "rental_end_at": "2024-06-01T11:00:00"}
    )

    assert not outcome.ok
    assert outcome.failure.kind == FailureKind.VALIDATION
    assert outcome.failure.step == WorkflowStep.START
    assert outcome.failure.field == "vehicle_id"


async def test_missing_customer_fails_before_any_write(orchestrator, store, vehicle):
    outcome = await orchestrator.create_reservation(
        booking_fields(vehicle.id, *SCENARIO_A, customer_name="", customer_phone=None)
    )

    assert not outcome.ok
    assert outcome.failure.kind == FailureKind.IDENTITY
    assert outcome.failure.step == WorkflowStep.CUSTOMER_RESOLVED
    assert "could not be created" in outcome.failure.message
    assert await store.list_reservations() == []


async def test_status_gate_blocks_maintenance_vehicle(orchestrator, store):
    vehicle = await store.add_vehicle("Toyota Yaris", status="maintenance")

    outcome = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    assert not outcome.ok
    assert outcome.failure.kind == FailureKind.CONFLICT
    assert "maintenance" in outcome.failure.message
    assert outcome.failure.suggested_slot is None
    assert outcome.failure.hint is None


async def test_existing_customer_contact_is_healed(orchestrator, store, vehicle):
    first = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))
    customer_id = first.customer.id
    other = await store.add_vehicle("Kia Picanto")

    second = await orchestrator.create_reservation(
        booking_fields(
            other.id,
            *SCENARIO_B,
            customer_id=customer_id,
            customer_name="",
            customer_phone="+212677777777",
            customer_email="",
        )
    )

    assert second.ok, second.failure
    assert not second.customer_created
    assert second.reservation.customer_name == "Amina Benali"
    assert second.reservation.customer_phone == "+212677777777"
    assert second.reservation.customer_email == "amina@example.com"
    assert (await store.get_customer(customer_id)).phone == "+212677777777"


async def test_identity_snapshot_and_display_id(orchestrator, vehicle):
    outcome = await orchestrator.create_reservation(
        booking_fields(
            vehicle.id,
            *SCENARIO_A,
            customer_id_number="AB123456",
            customer_nationality="MA",
            payment_status="partial",
            total_amount="1500",
        )
    )

    assert outcome.ok, outcome.failure
    assert outcome.reservation.linked_display_id == "AB123456"
    assert outcome.reservation.customer_nationality == "MA"
    assert outcome.reservation.payment_status == "unpaid"
    assert outcome.reservation.total_amount == 1500.0


async def test_requires_approval_above_threshold(session, vehicle):
    orchestrator = build_orchestrator(session, approval_min_total=1000)

    cheap = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 1), utc(2024, 6, 2), total_amount=400)
    )
    pricey = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 3), utc(2024, 6, 5), total_amount=1000)
    )

    assert cheap.ok and not cheap.requires_approval
    assert not pricey.ok  # status gate: vehicle is scheduled after the first booking

    await orchestrator.cancel_reservation(cheap.reservation.id)
    pricey = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 3), utc(2024, 6, 5), total_amount=1000)
    )
    assert pricey.ok and pricey.requires_approval


async def test_status_sync_failure_is_only_a_warning(orchestrator, store, vehicle, monkeypatch):
    async def broken(vehicle_id, status):
        return False

    monkeypatch.setattr(orchestrator.store, "update_vehicle_status", broken)

    outcome = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    assert outcome.ok
    assert outcome.warnings == ["Vehicle status could not be synchronised"]
    assert await store.get_reservation(outcome.reservation.id) is not None


async def test_unknown_reservation_is_not_found(orchestrator):
    missing = await orchestrator.update_reservation("5b0e7a4c-91d2-4a3f-8f55-0d9c2a6f1e77", {})
    malformed = await orchestrator.delete_reservation("42")

    assert missing.failure.kind == FailureKind.NOT_FOUND
    assert malformed.failure.kind == FailureKind.VALIDATION


async def test_parallel_bookings_for_same_window_yield_one_success(session_factory, vehicle):
    locks = LocalSlotLock()
    sessions = [session_factory() for _ in range(4)]
    try:
        orchestrators = [build_orchestrator(s, locks=locks) for s in sessions]
        outcomes = await asyncio.gather(
            *(
                o.create_reservation(
                    booking_fields(vehicle.id, *SCENARIO_A, customer_phone=f"+21260000000{i}")
                )
                for i, o in enumerate(orchestrators)
            )
        )
    finally:
        for s in sessions:
            await s.close()

    assert sum(outcome.ok for outcome in outcomes) == 1
    assert all(o.failure.kind == FailureKind.CONFLICT for o in outcomes if not o.ok)


@pytest.mark.parametrize(
    "message, kind, field",
    [
        (
            'new row for relation "reservations" violates check constraint '
            '"reservations_payment_status_check"',
            ConstraintKind.PAYMENT_STATUS,
            "payment_status",
        ),
        ("CHECK constraint failed: reservations_rental_status_check", ConstraintKind.RENTAL_STATUS, "rental_status"),
        ('invalid input syntax for type date: ""', ConstraintKind.DATE_FORMAT, None),
        ("NOT NULL constraint failed: reservations.customer_name", ConstraintKind.GENERIC, None),
    ],
)
async def test_constraint_classification(message, kind, field):
    error = classify_persistence_error(
        IntegrityError("INSERT INTO reservations", {}, Exception(message)), {"payment_status": "partial"}
    )

    assert isinstance(error, ConstraintError)
    assert error.constraint == kind
    assert error.field == field
    assert error.hint


async def test_exclusion_violation_is_a_conflict():
    error = classify_persistence_error(
        IntegrityError(
            "INSERT INTO reservations",
            {},
            Exception('conflicting key value violates exclusion constraint "reservations_no_overlap"'),
        )
    )

    assert isinstance(error, ConflictError)


async def test_contact_update_is_written_back_to_customer(orchestrator, store, vehicle):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    updated = await orchestrator.update_reservation(
        booked.reservation.id, {"customer_phone": "+212655555555", "customer_name": ""}
    )

    assert updated.ok, updated.failure
    assert updated.reservation.customer_name == "Amina Benali"
    assert updated.reservation.customer_phone == "+212655555555"
    assert (await store.get_customer(booked.customer.id)).phone == "+212655555555"


async def test_editing_a_finished_reservation_keeps_the_vehicle_held(orchestrator, store, vehicle):
    finished = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))
    await orchestrator.start_reservation(finished.reservation.id)
    await orchestrator.complete_reservation(finished.reservation.id)
    upcoming = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 3, 9), utc(2024, 6, 4, 9))
    )
    assert upcoming.ok, upcoming.failure
    assert (await store.get_vehicle(vehicle.id)).status == "scheduled"

    edited = await orchestrator.update_reservation(finished.reservation.id, {"notes": "late return fee"})

    assert edited.ok, edited.failure
    assert edited.reservation.notes == "late return fee"
    assert (await store.get_vehicle(vehicle.id)).status == "scheduled"
    clash = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 3, 12), utc(2024, 6, 3, 18))
    )
    assert not clash.ok
    assert clash.failure.kind == FailureKind.CONFLICT


async def test_moving_a_finished_reservation_leaves_both_vehicles_alone(orchestrator, store, vehicle):
    other = await store.add_vehicle("Hyundai i10", status="maintenance")
    finished = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))
    await orchestrator.cancel_reservation(finished.reservation.id, "weather")
    upcoming = await orchestrator.create_reservation(
        booking_fields(vehicle.id, utc(2024, 6, 3, 9), utc(2024, 6, 4, 9))
    )
    assert upcoming.ok, upcoming.failure

    moved = await orchestrator.update_reservation(finished.reservation.id, {"vehicle_id": other.id})

    assert moved.ok, moved.failure
    assert moved.reservation.vehicle_id == other.id
    assert (await store.get_vehicle(vehicle.id)).status == "scheduled"
    assert (await store.get_vehicle(other.id)).status == "maintenance"


async def test_update_with_new_customer_relinks_the_reservation(orchestrator, store, vehicle):
    other = await store.add_vehicle("Kia Picanto")
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))
    karim = await orchestrator.create_reservation(
        booking_fields(
            other.id,
            *SCENARIO_A,
            customer_name="Karim Alaoui",
            customer_phone="+212611111111",
            customer_email="karim@example.com",
            customer_id_number="CD987654",
        )
    )
    assert karim.ok, karim.failure

    relinked = await orchestrator.update_reservation(
        booked.reservation.id, {"customer_id": karim.customer.id}
    )

    assert relinked.ok, relinked.failure
    assert relinked.customer.id == karim.customer.id
    assert not relinked.customer_created
    assert relinked.reservation.customer_id == karim.customer.id
    assert relinked.reservation.customer_name == "Karim Alaoui"
    assert relinked.reservation.customer_phone == "+212611111111"
    assert relinked.reservation.customer_email == "karim@example.com"
    assert relinked.reservation.customer_id_number == "CD987654"
    assert (await store.get_customer(booked.customer.id)).phone == "+212600000000"


async def test_update_without_new_customer_never_resolves_identity(orchestrator, store, vehicle, monkeypatch):
    booked = await orchestrator.create_reservation(booking_fields(vehicle.id, *SCENARIO_A))

    async def refuse(candidate):
        raise AssertionError("guarantee_identity must not run for same-customer edits")

    monkeypatch.setattr(orchestrator.identity, "guarantee_identity", refuse)

    same_id = await orchestrator.update_reservation(
        booked.reservation.id, {"customer_id": booked.customer.id, "notes": "child seat"}
    )
    contact_only = await orchestrator.update_reservation(
        booked.reservation.id, {"customer_phone": "+212644444444"}
    )

    assert same_id.ok, same_id.failure
    assert same_id.reservation.customer_id == booked.customer.id
    assert contact_only.ok, contact_only.failure
    assert contact_only.reservation.customer_phone == "+212644444444"
    assert (await store.get_customer(booked.customer.id)).phone == "+212644444444"
