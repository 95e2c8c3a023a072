from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.api.v1 import audit, devices, rollouts, updates, versions
from rollout.core.metrics import snapshot as metrics_snapshot
from rollout.db.session import get_session

api_router = APIRouter()

api_router.include_router(versions.router)
api_router.include_router(devices.router)
api_router.include_router(updates.router)
api_router.include_router(rollouts.router)
api_router.include_router(audit.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    await session.execute(text("SELECT 1"))
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
