from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.dependencies import require_actor
from rollout.db.session import get_session
from rollout.models.update import CampaignStatus
from rollout.schemas.rollout import CampaignCreate, CampaignRead, DashboardRead, ProgressRead
from rollout.services import rollouts as rollout_service

router = APIRouter(prefix="/rollouts", tags=["rollouts"])


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
async def create_campaign(
    payload: CampaignCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await rollout_service.create_campaign(
        session,
        name=payload.name,
        app_id=payload.app_id,
        platform=payload.platform,
        region=payload.region,
        device_ids=payload.device_ids,
        target_code=payload.target_code,
        target_name=payload.target_name,
        requires_approval=payload.requires_approval,
        created_by=actor_id,
    )


@router.get("", response_model=list[CampaignRead])
async def list_campaigns(
    status_filter: CampaignStatus | None = Query(default=None, alias="status"),
    session: AsyncSession = Depends(get_session),
):
    return await rollout_service.list_campaigns(session, status=status_filter)


@router.get("/dashboard", response_model=DashboardRead)
async def dashboard(
    region: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
):
    return await rollout_service.dashboard(session, region=region, platform=platform)


@router.get("/adoption", response_model=dict[str, dict[str, int]])
async def region_adoption(
    platform: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
):
    return await rollout_service.region_adoption(session, platform=platform)


@router.get("/{campaign_id}/progress", response_model=ProgressRead)
async def campaign_progress(campaign_id: UUID, session: AsyncSession = Depends(get_session)):
    tally = await rollout_service.progress(session, campaign_id)
    return ProgressRead.model_validate(tally)


@router.post("/{campaign_id}/cancel", response_model=CampaignRead)
async def cancel_campaign(
    campaign_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await rollout_service.cancel_campaign(session, campaign_id, actor_id=actor_id)
