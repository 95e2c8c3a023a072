import logging

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core import metrics
from rollout.core.dependencies import require_actor
from rollout.core.errors import TransientStoreError
from rollout.db.session import get_session
from rollout.schemas.device import (
    DeviceRead,
    ForcedUpdateRequest,
    ForcedUpdateResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    UpdateAlertRead,
    VersionHistoryRead,
)
from rollout.services import devices as device_service
from rollout.services import heartbeat as heartbeat_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    payload: HeartbeatRequest,
    response: Response,
    best_effort: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
):
    try:
        result = await heartbeat_service.on_heartbeat(
            session,
            device_id=payload.device_id,
            reported_code=payload.version_code,
            reported_name=payload.version_name,
            app_id=payload.app_id,
            platform=payload.platform,
            region=payload.region,
            metadata=payload.metadata,
        )
    except (TransientStoreError, OperationalError, InterfaceError) as exc:
        if not best_effort:
            raise
        # Accepted but not persisted; the device re-sends on its next check-in.
        metrics.record_heartbeat_degraded()
        logger.warning("heartbeat_not_durable", extra={"device_id": payload.device_id, "error": str(exc)})
        response.status_code = status.HTTP_202_ACCEPTED
        return HeartbeatResponse(durable=False)
    return HeartbeatResponse(
        durable=True,
        device=DeviceRead.model_validate(result.device),
        alert=UpdateAlertRead.model_validate(result.alert) if result.alert else None,
    )


@router.get("", response_model=list[DeviceRead])
async def list_devices(
    region: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    version: str | None = Query(default=None, description="Installed version name"),
    session: AsyncSession = Depends(get_session),
):
    return await device_service.list_devices(session, region=region, platform=platform, version_name=version)


@router.post("/forced-update", response_model=ForcedUpdateResponse)
async def push_forced_update(
    payload: ForcedUpdateRequest,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    pushed = await heartbeat_service.push_forced_update(
        session,
        device_ids=payload.device_ids,
        target_code=payload.target_code,
        target_name=payload.target_name,
        requested_by=actor_id,
    )
    return ForcedUpdateResponse(device_ids=pushed, target_code=payload.target_code, target_name=payload.target_name)


@router.get("/{device_id}", response_model=DeviceRead)
async def get_device(device_id: str, session: AsyncSession = Depends(get_session)):
    return await device_service.require_device(session, device_id)


@router.get("/{device_id}/history", response_model=list[VersionHistoryRead])
async def get_version_history(device_id: str, session: AsyncSession = Depends(get_session)):
    return await device_service.get_version_history(session, device_id)
