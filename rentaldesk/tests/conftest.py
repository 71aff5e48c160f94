import os
import tempfile
from pathlib import Path

# Settings are read at import time; point them at a throwaway SQLite file and
# keep Redis out of the picture before any rentaldesk module is imported.
_DB_DIR = tempfile.mkdtemp(prefix="rentaldesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_DB_DIR) / 'app.db'}"
os.environ["BUSINESS_TIMEZONE"] = "UTC"
os.environ["SLOT_LOCK_BACKEND"] = "local"
os.environ.pop("REDIS_URL", None)
os.environ.pop("APPROVAL_MIN_TOTAL_AMOUNT", None)

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from rentaldesk.app.db.models import Base  # noqa: E402
from rentaldesk.app.db.store import RentalStore  # noqa: E402
from rentaldesk.app.services.availability import AvailabilityOracle  # noqa: E402
from rentaldesk.app.services.identity import CustomerIdentityResolver, MemoryIdentityCache  # noqa: E402
from rentaldesk.app.services.locks import LocalSlotLock  # noqa: E402
from rentaldesk.app.services.reservations import ReservationOrchestrator  # noqa: E402
from rentaldesk.app.services.status_sync import StatusSynchronizer  # noqa: E402


def utc(year, month, day, hour=0, minute=0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def booking_fields(vehicle_id, start: datetime, end: datetime, **extra) -> dict:
    fields = {
        "vehicle_id": vehicle_id,
        "rental_start_at": start.isoformat(),
        "rental_end_at": end.isoformat(),
        "customer_name": "Amina Benali",
        "customer_phone": "+212600000000",
        "customer_email": "amina@example.com",
    }
    fields.update(extra)
    return fields


def build_orchestrator(
    session: AsyncSession,
    *,
    locks=None,
    cache=None,
    approval_min_total=None,
) -> ReservationOrchestrator:
    store = RentalStore(session)
    return ReservationOrchestrator(
        store,
        AvailabilityOracle(store),
        StatusSynchronizer(store),
        CustomerIdentityResolver(store, cache or MemoryIdentityCache()),
        locks or LocalSlotLock(),
        approval_min_total=approval_min_total,
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rentaldesk.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session) -> RentalStore:
    return RentalStore(session)


@pytest.fixture
def orchestrator(session) -> ReservationOrchestrator:
    return build_orchestrator(session)


@pytest_asyncio.fixture
async def vehicle(store):
    return await store.add_vehicle("Dacia Logan", plate_number="12345-A-6")
