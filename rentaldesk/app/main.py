from contextlib import asynccontextmanager

from fastapi import FastAPI

from rentaldesk.app.core.config import settings
from rentaldesk.app.core.logging_config import configure_logging
from rentaldesk.app.core.redis_client import close_redis, init_redis
import rentaldesk.app.routers.availability as availability
import rentaldesk.app.routers.health as health
import rentaldesk.app.routers.reservations as reservations


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await init_redis()
    try:
        yield
    finally:
        await close_redis()


app = FastAPI(
    title="Rental Desk API",
    lifespan=lifespan,
)

app.include_router(health.router, prefix=settings.API_PREFIX)
app.include_router(availability.router, prefix=settings.API_PREFIX)
app.include_router(reservations.router, prefix=settings.API_PREFIX)
