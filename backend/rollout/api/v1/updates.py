from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.dependencies import require_actor
from rollout.db.session import get_session
from rollout.models.update import UpdateStage, UpdateStatus
from rollout.schemas.update import (
    DecisionRequest,
    FailureReport,
    StageReport,
    TimelineEventRead,
    UpdateCreate,
    UpdateRead,
)
from rollout.services import updates as update_service

router = APIRouter(prefix="/updates", tags=["updates"])


async def _device_actor(update_id: UUID, session: AsyncSession) -> str:
    request = await update_service.get_update(session, update_id)
    return f"device:{request.device_id}"


@router.post("", response_model=UpdateRead, status_code=status.HTTP_201_CREATED)
async def schedule_update(
    payload: UpdateCreate,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await update_service.schedule(
        session,
        device_id=payload.device_id,
        target_code=payload.target_code,
        target_name=payload.target_name,
        scheduled_by=actor_id,
        requires_approval=payload.requires_approval,
    )


@router.get("", response_model=list[UpdateRead])
async def list_updates(
    device_id: str | None = Query(default=None),
    campaign_id: UUID | None = Query(default=None),
    status_filter: UpdateStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=200, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    return await update_service.list_updates(
        session, device_id=device_id, campaign_id=campaign_id, status=status_filter, limit=limit
    )


@router.get("/{update_id}", response_model=UpdateRead)
async def get_update(update_id: UUID, session: AsyncSession = Depends(get_session)):
    return await update_service.get_update(session, update_id)


@router.get("/{update_id}/timeline", response_model=list[TimelineEventRead])
async def get_timeline(update_id: UUID, session: AsyncSession = Depends(get_session)):
    return await update_service.get_timeline(session, update_id)


@router.post("/{update_id}/approve", response_model=UpdateRead)
async def approve_update(
    update_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await update_service.approve(session, update_id, approver_id=actor_id)


@router.post("/{update_id}/reject", response_model=UpdateRead)
async def reject_update(
    update_id: UUID,
    payload: DecisionRequest | None = None,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    reason = payload.reason if payload else None
    return await update_service.reject(session, update_id, approver_id=actor_id, reason=reason)


@router.post("/{update_id}/cancel", response_model=UpdateRead)
async def cancel_update(
    update_id: UUID,
    payload: DecisionRequest | None = None,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    reason = payload.reason if payload else None
    return await update_service.cancel(session, update_id, actor_id=actor_id, reason=reason)


@router.post("/{update_id}/retry", response_model=UpdateRead)
async def retry_update(
    update_id: UUID,
    session: AsyncSession = Depends(get_session),
    actor_id: str = Depends(require_actor),
):
    return await update_service.retry(session, update_id, actor_id=actor_id)


async def _report_stage(
    update_id: UUID, stage: UpdateStage, payload: StageReport | None, session: AsyncSession
):
    actor_id = await _device_actor(update_id, session)
    details = payload.details if payload else None
    return await update_service.transition(session, update_id, stage, details, actor_id=actor_id)


@router.post("/{update_id}/acknowledge", response_model=UpdateRead)
async def acknowledge(
    update_id: UUID, payload: StageReport | None = None, session: AsyncSession = Depends(get_session)
):
    return await _report_stage(update_id, UpdateStage.notified, payload, session)


@router.post("/{update_id}/download-started", response_model=UpdateRead)
async def download_started(
    update_id: UUID, payload: StageReport | None = None, session: AsyncSession = Depends(get_session)
):
    return await _report_stage(update_id, UpdateStage.download_started, payload, session)


@router.post("/{update_id}/download-completed", response_model=UpdateRead)
async def download_completed(
    update_id: UUID, payload: StageReport | None = None, session: AsyncSession = Depends(get_session)
):
    return await _report_stage(update_id, UpdateStage.download_completed, payload, session)


@router.post("/{update_id}/install-started", response_model=UpdateRead)
async def install_started(
    update_id: UUID, payload: StageReport | None = None, session: AsyncSession = Depends(get_session)
):
    return await _report_stage(update_id, UpdateStage.install_started, payload, session)


@router.post("/{update_id}/install-completed", response_model=UpdateRead)
async def install_completed(
    update_id: UUID, payload: StageReport | None = None, session: AsyncSession = Depends(get_session)
):
    actor_id = await _device_actor(update_id, session)
    return await update_service.complete_install(
        session, update_id, details=payload.details if payload else None, actor_id=actor_id
    )


@router.post("/{update_id}/failure", response_model=UpdateRead)
async def report_failure(update_id: UUID, payload: FailureReport, session: AsyncSession = Depends(get_session)):
    actor_id = await _device_actor(update_id, session)
    return await update_service.record_failure(
        session,
        update_id,
        failure_stage=payload.stage,
        failure_reason=payload.reason,
        retriable=payload.retriable,
        actor_id=actor_id,
    )
