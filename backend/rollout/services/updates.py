from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rollout.core import metrics
from rollout.core.config import settings
from rollout.core.errors import ConflictError, NotFoundError, ValidationError
from rollout.models.device import Device
from rollout.models.update import (
    ApprovalStatus,
    UpdateRequest,
    UpdateStage,
    UpdateStatus,
    UpdateTimelineEvent,
)
from rollout.services import audit_chain, device_push, devices
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
DEVICE_ACTOR = "device"

TERMINAL_STAGES = {UpdateStage.install_completed, UpdateStage.rejected, UpdateStage.cancelled}

ALLOWED_TRANSITIONS: dict[UpdateStage, set[UpdateStage]] = {
    UpdateStage.scheduled: {UpdateStage.notified, UpdateStage.failed, UpdateStage.rejected, UpdateStage.cancelled},
    UpdateStage.notified: {UpdateStage.download_started, UpdateStage.failed, UpdateStage.cancelled},
    UpdateStage.download_started: {UpdateStage.download_completed, UpdateStage.failed, UpdateStage.cancelled},
    UpdateStage.download_completed: {UpdateStage.install_started, UpdateStage.failed, UpdateStage.cancelled},
    UpdateStage.install_started: {UpdateStage.install_completed, UpdateStage.failed, UpdateStage.cancelled},
    # failed -> notified is the retry path; failed -> failed is a repeated failure report.
    UpdateStage.failed: {UpdateStage.notified, UpdateStage.failed, UpdateStage.cancelled},
    UpdateStage.install_completed: set(),
    UpdateStage.rejected: set(),
    UpdateStage.cancelled: set(),
}

# Stages a device reports through `transition`; failures, installs and admin
# outcomes have dedicated operations.
DEVICE_PROGRESS_STAGES = {
    UpdateStage.notified,
    UpdateStage.download_started,
    UpdateStage.download_completed,
    UpdateStage.install_started,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def status_for_stage(stage: UpdateStage) -> UpdateStatus:
    if stage == UpdateStage.scheduled:
        return UpdateStatus.pending
    if stage == UpdateStage.install_completed:
        return UpdateStatus.completed
    if stage == UpdateStage.failed:
        return UpdateStatus.failed
    if stage in {UpdateStage.rejected, UpdateStage.cancelled}:
        return UpdateStatus.cancelled
    return UpdateStatus.in_progress


def is_open(request: UpdateRequest) -> bool:
    """True while the request can still make progress (exhausted failures are dead)."""
    if request.current_stage in TERMINAL_STAGES:
        return False
    if request.current_stage == UpdateStage.failed and not request.can_retry:
        return False
    return True


def _append_stage(
    request: UpdateRequest,
    stage: UpdateStage,
    *,
    details: dict[str, Any] | None = None,
    failure_stage: str | None = None,
    failure_reason: str | None = None,
    retriable: bool | None = None,
) -> UpdateTimelineEvent:
    current = UpdateStage(request.current_stage)
    if stage not in ALLOWED_TRANSITIONS[current]:
        raise ConflictError(f"Illegal stage transition {current.value} -> {stage.value}")

    last = request.timeline[-1] if request.timeline else None
    occurred_at = _utcnow()
    if last is not None:
        occurred_at = max(occurred_at, _as_utc(last.occurred_at) + timedelta(microseconds=1))
    event = UpdateTimelineEvent(
        update_id=request.id,
        sequence=(last.sequence + 1) if last is not None else 1,
        stage=stage,
        details=details or {},
        failure_stage=failure_stage,
        failure_reason=failure_reason,
        retriable=retriable,
        occurred_at=occurred_at,
    )
    request.timeline.append(event)
    request.current_stage = stage
    request.status = status_for_stage(stage)
    request.last_stage_at = occurred_at
    return event


async def _load_request(session: AsyncSession, update_id: UUID) -> UpdateRequest:
    result = await session.execute(
        select(UpdateRequest)
        .where(UpdateRequest.id == update_id)
        .options(selectinload(UpdateRequest.timeline))
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError(f"Update {update_id} not found")
    return request


async def _audit(session: AsyncSession, request: UpdateRequest, action: str, actor_id: str, **payload: Any) -> None:
    await audit_chain.append(
        session,
        entity_type="update",
        entity_id=str(request.id),
        action=action,
        actor_id=actor_id,
        payload={"device_id": request.device_id, "stage": request.current_stage.value, **payload},
    )


async def _mutate(
    session: AsyncSession,
    update_id: UUID,
    mutation: Callable[[UpdateRequest], Awaitable[None]],
    *,
    label: str,
) -> UpdateRequest:
    """Load, mutate and commit one request as a compare-and-swap on its row_version."""

    async def unit_of_work() -> UpdateRequest:
        request = await _load_request(session, update_id)
        await mutation(request)
        await session.flush()
        return request

    request = await run_with_conflict_retry(session, unit_of_work, label=label)
    await session.refresh(request)
    await session.refresh(request, attribute_names=["timeline"])
    return request


def _notify(request: UpdateRequest, event: str, **extra: Any) -> None:
    device_push.notify(
        request.device_id,
        event,
        {
            "update_id": str(request.id),
            "stage": request.current_stage.value,
            "target_version_code": request.target_version_code,
            "target_version_name": request.target_version_name,
            **extra,
        },
    )


async def stage_request(
    session: AsyncSession,
    device: Device,
    *,
    target_code: int,
    target_name: str,
    scheduled_by: str,
    requires_approval: bool = False,
    campaign_id: UUID | None = None,
    forced: bool = False,
) -> UpdateRequest:
    """
    Add a new `scheduled` request and its audit event to the session without committing.

    Claims the device's scheduling slot first, so two units of work scheduling
    the same device cannot both commit.
    """
    if target_code <= device.current_version_code:
        raise ValidationError(
            f"Device {device.device_id} already runs {device.current_version_code}; target {target_code} is not newer"
        )
    await devices.claim_scheduling(session, device)
    now = _utcnow()
    request = UpdateRequest(
        device_id=device.device_id,
        campaign_id=campaign_id,
        target_version_code=target_code,
        target_version_name=target_name,
        current_stage=UpdateStage.scheduled,
        status=UpdateStatus.pending,
        scheduled_at=now,
        scheduled_by=scheduled_by,
        approval_status=ApprovalStatus.pending if requires_approval else ApprovalStatus.approved,
        forced=forced,
        retry_count=0,
        max_retries=settings.update_max_retries,
        last_stage_at=now,
        timeline=[
            UpdateTimelineEvent(
                sequence=1,
                stage=UpdateStage.scheduled,
                details={"scheduled_by": scheduled_by, "forced": forced},
                occurred_at=now,
            )
        ],
    )
    session.add(request)
    await session.flush()
    await _audit(
        session,
        request,
        "schedule_update",
        scheduled_by,
        target_version_code=target_code,
        target_version_name=target_name,
        requires_approval=requires_approval,
        forced=forced,
        campaign_id=str(campaign_id) if campaign_id else None,
    )
    return request


async def schedule(
    session: AsyncSession,
    *,
    device_id: str,
    target_code: int,
    target_name: str,
    scheduled_by: str,
    requires_approval: bool = False,
    campaign_id: UUID | None = None,
    forced: bool = False,
) -> UpdateRequest:
    if not target_name or target_code <= 0:
        raise ValidationError("A positive target code and a target name are required")
    if not scheduled_by:
        raise ValidationError("scheduled_by is required")

    async def unit_of_work() -> UpdateRequest:
        device = await devices.require_device(session, device_id)
        return await stage_request(
            session,
            device,
            target_code=target_code,
            target_name=target_name,
            scheduled_by=scheduled_by,
            requires_approval=requires_approval,
            campaign_id=campaign_id,
            forced=forced,
        )

    request = await run_with_conflict_retry(session, unit_of_work, label="schedule_update")
    await announce_scheduled(session, request)
    return request


async def announce_scheduled(session: AsyncSession, request: UpdateRequest) -> None:
    """Post-commit bookkeeping for a newly scheduled request."""
    await session.refresh(request)
    await session.refresh(request, attribute_names=["timeline"])
    metrics.record_update_scheduled()
    logger.info(
        "update_scheduled",
        extra={
            "update_id": str(request.id),
            "device_id": request.device_id,
            "target_version_code": request.target_version_code,
        },
    )
    if request.approval_status == ApprovalStatus.approved:
        _notify(request, "update_scheduled")


async def transition(
    session: AsyncSession,
    update_id: UUID,
    next_stage: UpdateStage,
    details: dict[str, Any] | None = None,
    *,
    actor_id: str = DEVICE_ACTOR,
) -> UpdateRequest:
    """
    Move a request one stage forward.

    Repeating a stage, skipping ahead or going backwards raises ConflictError,
    so a duplicated device report can never add a second timeline entry.
    """
    if next_stage == UpdateStage.install_completed:
        return await complete_install(session, update_id, details=details, actor_id=actor_id)
    if next_stage not in DEVICE_PROGRESS_STAGES:
        raise ValidationError(f"Stage {next_stage.value} has a dedicated operation")

    async def mutation(request: UpdateRequest) -> None:
        if request.approval_status != ApprovalStatus.approved:
            raise ConflictError("Update is awaiting approval")
        if next_stage == UpdateStage.notified and request.current_stage == UpdateStage.failed:
            raise ConflictError("Use retry to re-enter a failed update")
        previous = request.current_stage
        _append_stage(request, next_stage, details=details)
        await _audit(session, request, f"stage_{next_stage.value}", actor_id, previous_stage=previous.value)

    request = await _mutate(session, update_id, mutation, label="stage_transition")
    metrics.record_stage_transition()
    logger.info(
        "update_stage_changed",
        extra={"update_id": str(update_id), "device_id": request.device_id, "stage": next_stage.value},
    )
    _notify(request, "stage_changed")
    return request


async def record_failure(
    session: AsyncSession,
    update_id: UUID,
    *,
    failure_stage: str,
    failure_reason: str,
    retriable: bool = True,
    actor_id: str = DEVICE_ACTOR,
) -> UpdateRequest:
    """
    Record a failed attempt. The caller decides whether to retry based on `can_retry`.
    """
    if not failure_reason or not failure_reason.strip():
        raise ValidationError("failure_reason is required")
    failure_stage = (failure_stage or "").strip() or "unknown"

    async def mutation(request: UpdateRequest) -> None:
        event = _append_stage(
            request,
            UpdateStage.failed,
            details={"failure_stage": failure_stage, "failure_reason": failure_reason, "retriable": retriable},
            failure_stage=failure_stage,
            failure_reason=failure_reason,
            retriable=retriable,
        )
        request.retry_count += 1
        request.last_retry_at = event.occurred_at
        request.failure_stage = failure_stage
        request.failure_reason = failure_reason
        await _audit(
            session,
            request,
            "update_failed",
            actor_id,
            failure_stage=failure_stage,
            failure_reason=failure_reason,
            retriable=retriable,
            retry_count=request.retry_count,
        )

    request = await _mutate(session, update_id, mutation, label="record_failure")
    metrics.record_update_failure()
    logger.warning(
        "update_failed",
        extra={
            "update_id": str(update_id),
            "device_id": request.device_id,
            "failure_stage": failure_stage,
            "failure_reason": failure_reason,
            "retry_count": request.retry_count,
        },
    )
    _notify(request, "update_failed", failure_reason=failure_reason, can_retry=request.can_retry)
    return request


async def retry(session: AsyncSession, update_id: UUID, *, actor_id: str) -> UpdateRequest:
    async def mutation(request: UpdateRequest) -> None:
        if request.current_stage != UpdateStage.failed:
            raise ConflictError("Only failed updates can be retried")
        if not request.can_retry:
            raise ConflictError(f"Retry budget exhausted ({request.retry_count}/{request.max_retries})")
        last = request.timeline[-1] if request.timeline else None
        if last is not None and last.retriable is False:
            raise ConflictError("Last failure was reported as not retriable")
        if request.approval_status != ApprovalStatus.approved:
            raise ConflictError("Update is awaiting approval")
        _append_stage(request, UpdateStage.notified, details={"retry": request.retry_count, "requested_by": actor_id})
        await _audit(session, request, "update_retried", actor_id, retry_count=request.retry_count)

    request = await _mutate(session, update_id, mutation, label="retry_update")
    _notify(request, "update_retry")
    return request


async def complete_install(
    session: AsyncSession,
    update_id: UUID,
    *,
    details: dict[str, Any] | None = None,
    actor_id: str = DEVICE_ACTOR,
) -> UpdateRequest:
    """
    Finish a request and apply its target to the device record.

    This is the only place the lifecycle writes to a device: the installed
    version is raised, an `update_install` history row is appended and a forced
    target that the install satisfies is cleared.
    """

    async def mutation(request: UpdateRequest) -> None:
        if request.approval_status != ApprovalStatus.approved:
            raise ConflictError("Update is awaiting approval")
        device = await devices.require_device(session, request.device_id)
        previous_code = device.current_version_code
        event = _append_stage(request, UpdateStage.install_completed, details=details)
        raised = await devices.apply_installed_version(
            session,
            request.device_id,
            version_code=request.target_version_code,
            version_name=request.target_version_name,
            update_id=request.id,
            installed_at=event.occurred_at,
        )
        await _audit(session, request, "install_completed", actor_id, version_raised=raised)
        await audit_chain.append(
            session,
            entity_type="device",
            entity_id=request.device_id,
            action="version_installed",
            actor_id=actor_id,
            payload={
                "update_id": str(request.id),
                "from_version_code": previous_code,
                "to_version_code": request.target_version_code,
                "version_raised": raised,
            },
        )

    request = await _mutate(session, update_id, mutation, label="complete_install")
    metrics.record_install_completed()
    logger.info(
        "update_install_completed",
        extra={
            "update_id": str(update_id),
            "device_id": request.device_id,
            "target_version_code": request.target_version_code,
        },
    )
    _notify(request, "update_complete")
    return request


async def approve(session: AsyncSession, update_id: UUID, *, approver_id: str) -> UpdateRequest:
    async def mutation(request: UpdateRequest) -> None:
        if request.approval_status != ApprovalStatus.pending:
            raise ConflictError(f"Update approval is already {request.approval_status.value}")
        if request.current_stage in TERMINAL_STAGES:
            raise ConflictError("Update is already finished")
        request.approval_status = ApprovalStatus.approved
        request.approved_by = approver_id
        request.approved_at = _utcnow()
        await _audit(session, request, "update_approved", approver_id)

    request = await _mutate(session, update_id, mutation, label="approve_update")
    _notify(request, "update_scheduled")
    return request


async def reject(
    session: AsyncSession, update_id: UUID, *, approver_id: str, reason: str | None = None
) -> UpdateRequest:
    async def mutation(request: UpdateRequest) -> None:
        if request.approval_status == ApprovalStatus.rejected:
            raise ConflictError("Update is already rejected")
        _append_stage(request, UpdateStage.rejected, details={"reason": reason, "rejected_by": approver_id})
        request.approval_status = ApprovalStatus.rejected
        request.approved_by = approver_id
        request.approved_at = _utcnow()
        await _audit(session, request, "update_rejected", approver_id, reason=reason)

    request = await _mutate(session, update_id, mutation, label="reject_update")
    logger.info("update_rejected", extra={"update_id": str(update_id), "device_id": request.device_id})
    return request


async def cancel(session: AsyncSession, update_id: UUID, *, actor_id: str, reason: str | None = None) -> UpdateRequest:
    async def mutation(request: UpdateRequest) -> None:
        _append_stage(request, UpdateStage.cancelled, details={"reason": reason, "cancelled_by": actor_id})
        await _audit(session, request, "update_cancelled", actor_id, reason=reason)

    request = await _mutate(session, update_id, mutation, label="cancel_update")
    logger.info("update_cancelled", extra={"update_id": str(update_id), "device_id": request.device_id})
    _notify(request, "update_cancelled")
    return request


async def get_update(session: AsyncSession, update_id: UUID) -> UpdateRequest:
    return await _load_request(session, update_id)


async def get_timeline(session: AsyncSession, update_id: UUID) -> list[UpdateTimelineEvent]:
    request = await _load_request(session, update_id)
    return list(request.timeline)


async def list_updates(
    session: AsyncSession,
    *,
    device_id: str | None = None,
    campaign_id: UUID | None = None,
    status: UpdateStatus | None = None,
    limit: int = 200,
) -> list[UpdateRequest]:
    stmt = (
        select(UpdateRequest)
        .options(selectinload(UpdateRequest.timeline))
        .order_by(UpdateRequest.scheduled_at.desc())
        .limit(max(1, min(limit, 1000)))
    )
    if device_id:
        stmt = stmt.where(UpdateRequest.device_id == device_id)
    if campaign_id:
        stmt = stmt.where(UpdateRequest.campaign_id == campaign_id)
    if status:
        stmt = stmt.where(UpdateRequest.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().unique())


async def find_open_update(
    session: AsyncSession, device_id: str, *, target_code: int | None = None
) -> UpdateRequest | None:
    stmt = (
        select(UpdateRequest)
        .where(
            UpdateRequest.device_id == device_id,
            UpdateRequest.current_stage.not_in(list(TERMINAL_STAGES)),
        )
        .order_by(UpdateRequest.scheduled_at.desc())
    )
    if target_code is not None:
        stmt = stmt.where(UpdateRequest.target_version_code == target_code)
    result = await session.execute(stmt)
    for request in result.scalars().all():
        if is_open(request):
            return request
    return None


async def expire_stale_updates(session: AsyncSession, *, cutoff: datetime, limit: int = 200) -> int:
    """Fail every in-progress request whose last stage report predates `cutoff`."""
    result = await session.execute(
        select(UpdateRequest.id, UpdateRequest.current_stage)
        .where(UpdateRequest.status == UpdateStatus.in_progress, UpdateRequest.last_stage_at < cutoff)
        .order_by(UpdateRequest.last_stage_at.asc())
        .limit(max(1, limit))
    )
    expired = 0
    for update_id, stage in result.all():
        try:
            await record_failure(
                session,
                update_id,
                failure_stage=UpdateStage(stage).value,
                failure_reason="Timeout",
                retriable=True,
                actor_id=f"{SYSTEM_ACTOR}:staleness",
            )
        except ConflictError:
            # Moved on since the scan (completed, cancelled, or reported again).
            logger.info("stale_update_skipped", extra={"update_id": str(update_id)})
            continue
        expired += 1
    if expired:
        metrics.record_updates_timed_out(expired)
    return expired
