"""Device check-in: registry refresh, update alerts and scheduling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.errors import NotFoundError, ValidationError
from rollout.models.device import Device
from rollout.models.update import UpdateRequest
from rollout.services import audit_chain, device_push, devices, updates, versions
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)

HEARTBEAT_ACTOR = "system:heartbeat"


@dataclass
class UpdateAlert:
    target_code: int
    target_name: str
    forced: bool = False
    latest_code: int | None = None
    path: list[int] | None = None
    update_id: UUID | None = None
    reason: str = ""


@dataclass
class HeartbeatResult:
    device: Device
    alert: UpdateAlert | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


async def _schedule_for_alert(
    session: AsyncSession,
    device: Device,
    alert: UpdateAlert,
    *,
    reported_code: int | None = None,
) -> bool:
    """
    Attach an open request for the alert's target, creating one if needed. True when created.

    The lookup and the insert share one unit of work and the insert claims the
    device's scheduling slot, so concurrent check-ins of one device converge on
    a single request. A forced request and its `forced_update_alert` audit
    event commit together.
    """
    device_id = device.device_id

    async def unit_of_work() -> tuple[UpdateRequest | None, bool]:
        current = await devices.require_device(session, device_id)
        existing = await updates.find_open_update(session, device_id, target_code=alert.target_code)
        if existing is not None:
            return existing, False
        if alert.target_code <= current.current_version_code:
            return None, False
        scheduled_by = HEARTBEAT_ACTOR
        if alert.forced and current.pending_update_requested_by:
            scheduled_by = current.pending_update_requested_by
        request = await updates.stage_request(
            session,
            current,
            target_code=alert.target_code,
            target_name=alert.target_name,
            scheduled_by=scheduled_by,
            forced=alert.forced,
        )
        if alert.forced:
            await audit_chain.append(
                session,
                entity_type="device",
                entity_id=device_id,
                action="forced_update_alert",
                actor_id=HEARTBEAT_ACTOR,
                payload={
                    "target_version_code": alert.target_code,
                    "reported_version_code": reported_code,
                    "update_id": str(request.id),
                },
            )
        return request, True

    request, created = await run_with_conflict_retry(session, unit_of_work, label="heartbeat_schedule")
    if request is None:
        logger.info(
            "heartbeat_target_already_installed",
            extra={"device_id": device_id, "target_version_code": alert.target_code},
        )
        return False
    alert.update_id = request.id
    if created:
        await updates.announce_scheduled(session, request)
    return created


async def _forced_alert(session: AsyncSession, device: Device) -> UpdateAlert:
    alert = UpdateAlert(
        target_code=device.pending_update_code,
        target_name=device.pending_update_name or versions.version_name_from_code(device.pending_update_code),
        forced=True,
        reason="Forced update requested",
    )
    await _schedule_for_alert(session, device, alert, reported_code=device.reported_version_code)
    return alert


async def _catalog_alert(session: AsyncSession, device: Device, reported_code: int) -> UpdateAlert | None:
    check = await versions.device_needs_update(session, device.app_id, device.platform, reported_code)
    if not check.needs_update:
        return None

    alert = UpdateAlert(
        target_code=check.latest_code,
        target_name=check.latest_name,
        latest_code=check.latest_code,
        reason=check.reason,
    )
    try:
        path = await versions.resolve_path(session, device.app_id, device.platform, reported_code, check.latest_code)
    except NotFoundError:
        logger.warning(
            "upgrade_path_missing",
            extra={"device_id": device.device_id, "from_code": reported_code, "to_code": check.latest_code},
        )
        return alert

    alert.path = path
    next_hop = path[1]
    if next_hop != check.latest_code:
        hop_version = await versions.get_version_by_code(session, device.app_id, device.platform, next_hop)
        alert.target_code = next_hop
        alert.target_name = hop_version.version_name if hop_version else versions.version_name_from_code(next_hop)
    await _schedule_for_alert(session, device, alert)
    return alert


async def on_heartbeat(
    session: AsyncSession,
    *,
    device_id: str,
    reported_code: int,
    reported_name: str,
    app_id: str,
    platform: str,
    region: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> HeartbeatResult:
    """
    Handle one device check-in.

    An administrator's forced target wins over the catalog whenever it exceeds
    the reported version. Otherwise the catalog's latest version is reached
    through the resolved path, one hop per request.
    """
    device = await devices.upsert_device(
        session,
        device_id,
        app_id=app_id,
        platform=platform,
        reported_code=reported_code,
        reported_name=reported_name,
        region=region,
        metadata=metadata,
    )

    if device.pending_update_code is not None and device.pending_update_code > reported_code:
        alert = await _forced_alert(session, device)
    else:
        alert = await _catalog_alert(session, device, reported_code)

    if alert is not None:
        logger.info(
            "update_alert",
            extra={
                "device_id": device_id,
                "target_version_code": alert.target_code,
                "forced": alert.forced,
                "update_id": str(alert.update_id) if alert.update_id else None,
            },
        )
        if alert.update_id is not None:
            device_push.notify(
                device_id,
                "update_available",
                {
                    "update_id": str(alert.update_id),
                    "target_version_code": alert.target_code,
                    "target_version_name": alert.target_name,
                    "forced": alert.forced,
                },
            )
    # A replayed write rolls the session back and expires the registry row.
    await session.refresh(device)
    return HeartbeatResult(device=device, alert=alert)


async def push_forced_update(
    session: AsyncSession,
    *,
    device_ids: list[str],
    target_code: int,
    target_name: str,
    requested_by: str,
) -> list[str]:
    wanted = list(dict.fromkeys(d.strip() for d in device_ids if d and d.strip()))
    if not wanted:
        raise ValidationError("At least one device is required")
    if target_code <= 0 or not target_name:
        raise ValidationError("A positive target code and a target name are required")
    if not requested_by:
        raise ValidationError("requested_by is required")

    async def unit_of_work() -> list[str]:
        result = await session.execute(select(Device.device_id).where(Device.device_id.in_(wanted)))
        known = set(result.scalars().all())
        missing = [device_id for device_id in wanted if device_id not in known]
        if missing:
            raise NotFoundError(f"Unknown devices: {', '.join(missing)}")
        requested_at = datetime.now(timezone.utc)
        for device_id in wanted:
            await devices.set_pending_update(
                session,
                device_id,
                target_code=target_code,
                target_name=target_name,
                requested_by=requested_by,
                requested_at=requested_at,
            )
            await audit_chain.append(
                session,
                entity_type="device",
                entity_id=device_id,
                action="forced_update_pushed",
                actor_id=requested_by,
                payload={"target_version_code": target_code, "target_version_name": target_name},
            )
        return wanted

    pushed = await run_with_conflict_retry(session, unit_of_work, label="push_forced_update")
    for device_id in pushed:
        device_push.notify(
            device_id,
            "forced_update",
            {"target_version_code": target_code, "target_version_name": target_name},
        )
    logger.info("forced_update_pushed", extra={"devices": len(pushed), "target_version_code": target_code})
    return pushed
