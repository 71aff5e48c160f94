from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from rentaldesk.app.core import redis_client as redis_module
from rentaldesk.app.dependencies import get_store
from rentaldesk.app.db.store import RentalStore


router = APIRouter()


@router.get("/healthz")
async def healthz() -> dict[str, bool]:
    """Basic liveness check."""
    return {"ok": True}


@router.get("/readiness")
async def readiness(store: RentalStore = Depends(get_store)) -> dict[str, bool]:
    """Ensure the database, and Redis when configured, are reachable."""
    try:
        await store.ping()
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc

    if redis_module.redis_client is not None:
        try:
            await redis_module.redis_client.ping()
        except RedisError as exc:
            raise HTTPException(status_code=503, detail="Redis unavailable") from exc

    return {"ready": True}
