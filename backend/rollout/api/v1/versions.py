from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.dependencies import require_actor
from rollout.db.session import get_session
from rollout.schemas.version import (
    TransitionCreate,
    TransitionRead,
    UpdateCheckRead,
    UpgradePathRead,
    VersionCreate,
    VersionRead,
)
from rollout.services import versions as version_service

router = APIRouter(prefix="/versions", tags=["versions"])


@router.post("", response_model=VersionRead, status_code=status.HTTP_201_CREATED)
async def create_version(
    payload: VersionCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await version_service.create_version(
        session,
        app_id=payload.app_id,
        platform=payload.platform,
        version_name=payload.version_name,
        version_code=payload.version_code,
        checksum=payload.checksum,
        created_by=actor_id,
    )


@router.get("", response_model=list[VersionRead])
async def list_versions(
    app_id: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
):
    return await version_service.list_versions(
        session, app_id=app_id, platform=platform, include_inactive=include_inactive
    )


@router.post("/{version_id}/deactivate", response_model=VersionRead)
async def deactivate_version(
    version_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await version_service.deactivate_version(session, version_id, actor_id=actor_id)


@router.post("/transitions", response_model=TransitionRead, status_code=status.HTTP_201_CREATED)
async def create_transition(
    payload: TransitionCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await version_service.create_transition(
        session,
        app_id=payload.app_id,
        platform=payload.platform,
        from_code=payload.from_code,
        to_code=payload.to_code,
        mandatory_intermediate_code=payload.mandatory_intermediate_code,
        is_allowed=payload.is_allowed,
        created_by=actor_id,
    )


@router.get("/transitions", response_model=list[TransitionRead])
async def list_transitions(
    app_id: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    include_inactive: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
):
    return await version_service.list_transitions(
        session, app_id=app_id, platform=platform, include_inactive=include_inactive
    )


@router.post("/transitions/{transition_id}/deactivate", response_model=TransitionRead)
async def deactivate_transition(
    transition_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await version_service.deactivate_transition(session, transition_id, actor_id=actor_id)


@router.get("/path", response_model=UpgradePathRead)
async def upgrade_path(
    app_id: str = Query(min_length=1),
    platform: str = Query(min_length=1),
    from_code: int = Query(ge=0),
    to_code: int = Query(ge=0),
    session: AsyncSession = Depends(get_session),
):
    path = await version_service.resolve_path(session, app_id, platform, from_code, to_code)
    return UpgradePathRead(app_id=app_id, platform=platform, from_code=from_code, to_code=to_code, path=path)


@router.get("/check", response_model=UpdateCheckRead)
async def check_for_update(
    app_id: str = Query(min_length=1),
    platform: str = Query(min_length=1),
    current_code: int = Query(ge=0),
    session: AsyncSession = Depends(get_session),
):
    return await version_service.device_needs_update(session, app_id, platform, current_code)
