from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core import metrics
from rollout.core.errors import ConflictError, NotFoundError, ValidationError
from rollout.models.device import Device
from rollout.models.update import ApprovalStatus, CampaignStatus, RolloutCampaign, UpdateRequest, UpdateStatus
from rollout.services import audit_chain, device_push, updates
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)

UNKNOWN_REGION = "Unknown"


@dataclass
class StatusTally:
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    in_progress: int = 0
    cancelled: int = 0

    def add(self, status: UpdateStatus | str, count: int = 1) -> None:
        key = UpdateStatus(status).value
        setattr(self, key, getattr(self, key) + count)
        self.total += count

    @property
    def success_rate(self) -> float:
        return _percent(self.completed, self.total)

    @property
    def failure_rate(self) -> float:
        return _percent(self.failed, self.total)

    @property
    def is_finished(self) -> bool:
        return self.total > 0 and self.pending == 0 and self.in_progress == 0

    def as_dict(self) -> dict:
        data = asdict(self)
        data.update(success_rate=self.success_rate, failure_rate=self.failure_rate, is_finished=self.is_finished)
        return data


def _percent(part: int, total: int) -> float:
    if total == 0:
        return 0
    return round(part * 100 / total, 2)


async def get_campaign(session: AsyncSession, campaign_id: UUID) -> RolloutCampaign:
    campaign = await session.get(RolloutCampaign, campaign_id, populate_existing=True)
    if campaign is None:
        raise NotFoundError(f"Campaign {campaign_id} not found")
    return campaign


async def list_campaigns(session: AsyncSession, *, status: CampaignStatus | None = None) -> list[RolloutCampaign]:
    stmt = select(RolloutCampaign).order_by(RolloutCampaign.created_at.desc())
    if status:
        stmt = stmt.where(RolloutCampaign.status == status)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_campaign(
    session: AsyncSession,
    *,
    name: str,
    app_id: str,
    platform: str,
    device_ids: list[str],
    target_code: int,
    target_name: str,
    created_by: str,
    region: str | None = None,
    requires_approval: bool = False,
) -> RolloutCampaign:
    """
    Schedule one update request per device under a new campaign.

    Every device is checked before anything is written: an unknown device, a
    device of another app or platform, or one already at the target rejects
    the whole campaign.
    """
    wanted = list(dict.fromkeys(d.strip() for d in device_ids if d and d.strip()))
    if not name or not name.strip():
        raise ValidationError("Campaign name is required")
    if not wanted:
        raise ValidationError("At least one device is required")
    if target_code <= 0 or not target_name:
        raise ValidationError("A positive target code and a target name are required")

    async def unit_of_work() -> tuple[RolloutCampaign, list[UpdateRequest]]:
        result = await session.execute(
            select(Device).where(Device.device_id.in_(wanted)).execution_options(populate_existing=True)
        )
        found = {device.device_id: device for device in result.scalars().all()}
        missing = [device_id for device_id in wanted if device_id not in found]
        if missing:
            raise ValidationError(f"Unknown devices: {', '.join(missing)}")
        mismatched = [d for d in wanted if (found[d].app_id, found[d].platform) != (app_id, platform)]
        if mismatched:
            raise ValidationError(f"Devices not on {app_id}/{platform}: {', '.join(mismatched)}")
        current = [d for d in wanted if found[d].current_version_code >= target_code]
        if current:
            raise ValidationError(f"Devices already at or beyond {target_name}: {', '.join(current)}")

        campaign = RolloutCampaign(
            name=name.strip(),
            app_id=app_id,
            platform=platform,
            region=region,
            target_version_code=target_code,
            target_version_name=target_name,
            requires_approval=requires_approval,
            created_by=created_by,
            status=CampaignStatus.active,
        )
        session.add(campaign)
        await session.flush()

        requests = [
            await updates.stage_request(
                session,
                found[device_id],
                target_code=target_code,
                target_name=target_name,
                scheduled_by=created_by,
                requires_approval=requires_approval,
                campaign_id=campaign.id,
            )
            for device_id in wanted
        ]
        await audit_chain.append(
            session,
            entity_type="campaign",
            entity_id=str(campaign.id),
            action="campaign_created",
            actor_id=created_by,
            payload={
                "name": campaign.name,
                "app_id": app_id,
                "platform": platform,
                "region": region,
                "target_version_code": target_code,
                "target_version_name": target_name,
                "requires_approval": requires_approval,
                "device_ids": wanted,
            },
        )
        return campaign, requests

    campaign, requests = await run_with_conflict_retry(session, unit_of_work, label="create_campaign")
    await session.refresh(campaign)
    for request in requests:
        metrics.record_update_scheduled()
        if request.approval_status == ApprovalStatus.approved:
            device_push.notify(
                request.device_id,
                "update_scheduled",
                {
                    "update_id": str(request.id),
                    "campaign_id": str(campaign.id),
                    "target_version_code": target_code,
                    "target_version_name": target_name,
                },
            )
    logger.info(
        "campaign_created",
        extra={"campaign_id": str(campaign.id), "devices": len(requests), "target_version_code": target_code},
    )
    return campaign


async def progress(session: AsyncSession, campaign_id: UUID) -> StatusTally:
    await get_campaign(session, campaign_id)
    result = await session.execute(
        select(UpdateRequest.status, func.count())
        .where(UpdateRequest.campaign_id == campaign_id)
        .group_by(UpdateRequest.status)
    )
    tally = StatusTally()
    for status, count in result.all():
        tally.add(status, int(count))
    return tally


async def cancel_campaign(session: AsyncSession, campaign_id: UUID, *, actor_id: str) -> RolloutCampaign:
    campaign = await get_campaign(session, campaign_id)
    if campaign.status == CampaignStatus.cancelled:
        raise ConflictError("Campaign is already cancelled")

    result = await session.execute(
        select(UpdateRequest.id).where(
            UpdateRequest.campaign_id == campaign_id,
            UpdateRequest.current_stage.not_in(list(updates.TERMINAL_STAGES)),
        )
    )
    cancelled = 0
    for (update_id,) in result.all():
        try:
            await updates.cancel(session, update_id, actor_id=actor_id, reason="campaign_cancelled")
        except ConflictError:
            # Finished between the scan and the cancel.
            continue
        cancelled += 1

    async def unit_of_work() -> RolloutCampaign:
        current = await get_campaign(session, campaign_id)
        current.status = CampaignStatus.cancelled
        await audit_chain.append(
            session,
            entity_type="campaign",
            entity_id=str(campaign_id),
            action="campaign_cancelled",
            actor_id=actor_id,
            payload={"cancelled_updates": cancelled},
        )
        return current

    campaign = await run_with_conflict_retry(session, unit_of_work, label="cancel_campaign")
    await session.refresh(campaign)
    logger.info("campaign_cancelled", extra={"campaign_id": str(campaign_id), "cancelled_updates": cancelled})
    return campaign


async def dashboard(session: AsyncSession, *, region: str | None = None, platform: str | None = None) -> dict:
    """Tally the latest request of every matching device, plus installed versions."""
    device_filter = []
    if region:
        device_filter.append(Device.region == region)
    if platform:
        device_filter.append(Device.platform == platform)

    heatmap_rows = await session.execute(
        select(Device.current_version_name, func.count())
        .where(*device_filter)
        .group_by(Device.current_version_name)
        .order_by(Device.current_version_name)
    )
    version_heatmap = {name: int(count) for name, count in heatmap_rows.all()}

    latest = (
        select(UpdateRequest.device_id, func.max(UpdateRequest.scheduled_at).label("latest_at"))
        .group_by(UpdateRequest.device_id)
        .subquery()
    )
    status_rows = await session.execute(
        select(UpdateRequest.status, func.count())
        .join(
            latest,
            (UpdateRequest.device_id == latest.c.device_id) & (UpdateRequest.scheduled_at == latest.c.latest_at),
        )
        .join(Device, Device.device_id == UpdateRequest.device_id)
        .where(*device_filter)
        .group_by(UpdateRequest.status)
    )
    tally = StatusTally()
    for status, count in status_rows.all():
        tally.add(status, int(count))
    return {"stats": tally.as_dict(), "version_heatmap": version_heatmap}


async def region_adoption(session: AsyncSession, *, platform: str | None = None) -> dict[str, dict[str, int]]:
    stmt = select(Device.region, Device.current_version_name, func.count()).group_by(
        Device.region, Device.current_version_name
    )
    if platform:
        stmt = stmt.where(Device.platform == platform)
    result = await session.execute(stmt)
    adoption: dict[str, dict[str, int]] = {}
    for region, version_name, count in result.all():
        bucket = adoption.setdefault(region or UNKNOWN_REGION, {})
        bucket[version_name] = bucket.get(version_name, 0) + int(count)
    return adoption
