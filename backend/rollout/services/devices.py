from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.orm.exc import StaleDataError

from rollout.core import metrics
from rollout.core.errors import NotFoundError, ValidationError
from rollout.models.device import Device, DeviceVersionHistory, VersionSource
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)


async def get_device(session: AsyncSession, device_id: str) -> Device | None:
    result = await session.execute(
        select(Device).where(Device.device_id == device_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_device(session: AsyncSession, device_id: str) -> Device:
    device = await get_device(session, device_id)
    if device is None:
        raise NotFoundError(f"Device {device_id} not found")
    return device


async def list_devices(
    session: AsyncSession,
    *,
    region: str | None = None,
    platform: str | None = None,
    version_name: str | None = None,
) -> list[Device]:
    stmt = select(Device).order_by(Device.last_heartbeat_at.desc())
    if region:
        stmt = stmt.where(Device.region == region)
    if platform:
        stmt = stmt.where(Device.platform == platform)
    if version_name:
        stmt = stmt.where(Device.current_version_name == version_name)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_version_history(session: AsyncSession, device_id: str) -> list[DeviceVersionHistory]:
    await require_device(session, device_id)
    result = await session.execute(
        select(DeviceVersionHistory)
        .where(DeviceVersionHistory.device_id == device_id)
        .order_by(DeviceVersionHistory.recorded_at.asc())
    )
    return list(result.scalars().all())


async def upsert_device(
    session: AsyncSession,
    device_id: str,
    *,
    app_id: str,
    platform: str,
    reported_code: int,
    reported_name: str,
    region: str | None = None,
    metadata: dict[str, Any] | None = None,
    source: VersionSource = VersionSource.heartbeat,
) -> Device:
    """
    Create the device on first contact, otherwise refresh it field by field.

    The installed version is taken from the report only at registration; later
    reports land in `reported_version_*` and never move `current_version_*`.
    """
    if not device_id or not app_id or not platform:
        raise ValidationError("device_id, app_id and platform are required")
    if reported_code < 0:
        raise ValidationError("reported version code must not be negative")

    async def unit_of_work() -> Device:
        now = datetime.now(timezone.utc)
        device = await get_device(session, device_id)
        if device is None:
            device = Device(
                device_id=device_id,
                app_id=app_id,
                platform=platform,
                region=region,
                current_version_code=reported_code,
                current_version_name=reported_name,
                reported_version_code=reported_code,
                reported_version_name=reported_name,
                metadata_json=metadata,
                last_heartbeat_at=now,
            )
            session.add(device)
            session.add(
                DeviceVersionHistory(
                    device_id=device_id,
                    version_code=reported_code,
                    version_name=reported_name,
                    source=source,
                    recorded_at=now,
                )
            )
            await session.flush()
            logger.info("device_registered", extra={"device_id": device_id, "platform": platform})
            return device

        previous_reported = device.reported_version_code
        values: dict[Any, Any] = {
            Device.last_heartbeat_at: now,
            Device.reported_version_code: reported_code,
            Device.reported_version_name: reported_name,
        }
        if region:
            values[Device.region] = region
        if metadata is not None:
            values[Device.metadata_json] = metadata
        await session.execute(update(Device).where(Device.device_id == device_id).values(values))
        if reported_code != previous_reported:
            session.add(
                DeviceVersionHistory(
                    device_id=device_id,
                    version_code=reported_code,
                    version_name=reported_name,
                    source=source,
                    recorded_at=now,
                )
            )
        await session.flush()
        return device

    device = await run_with_conflict_retry(session, unit_of_work, label="upsert_device")
    metrics.record_heartbeat()
    await session.refresh(device)
    return device


async def set_pending_update(
    session: AsyncSession,
    device_id: str,
    *,
    target_code: int,
    target_name: str,
    requested_by: str,
    requested_at: datetime,
) -> None:
    await session.execute(
        update(Device)
        .where(Device.device_id == device_id)
        .values(
            {
                Device.pending_update_code: target_code,
                Device.pending_update_name: target_name,
                Device.pending_update_requested_by: requested_by,
                Device.pending_update_requested_at: requested_at,
            }
        )
    )


async def claim_scheduling(session: AsyncSession, device: Device) -> None:
    """
    Take the device's scheduling slot for the current transaction.

    The bump only lands while `schedule_seq` still holds the value this unit of
    work loaded. A concurrent scheduler that committed first leaves zero rows
    matched, and the StaleDataError sends the loser back through the retry
    loop, where it re-reads the winner's request.
    """
    seen = device.schedule_seq
    result = await session.execute(
        update(Device)
        .where(Device.device_id == device.device_id, Device.schedule_seq == seen)
        .values({Device.schedule_seq: seen + 1})
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise StaleDataError(f"Device {device.device_id} was scheduled concurrently")
    set_committed_value(device, "schedule_seq", seen + 1)


async def apply_installed_version(
    session: AsyncSession,
    device_id: str,
    *,
    version_code: int,
    version_name: str,
    update_id: UUID,
    installed_at: datetime,
) -> bool:
    """
    Raise the installed version after a completed install.

    The compare (`current < target`) and the write are one statement, so a
    racing heartbeat or a late duplicate install can never lower the version.
    Returns False when the device was already at or beyond the target.
    """
    result = await session.execute(
        update(Device)
        .where(Device.device_id == device_id, Device.current_version_code < version_code)
        .values({Device.current_version_code: version_code, Device.current_version_name: version_name})
        .execution_options(synchronize_session=False)
    )
    raised = bool(result.rowcount)
    if raised:
        session.add(
            DeviceVersionHistory(
                device_id=device_id,
                version_code=version_code,
                version_name=version_name,
                source=VersionSource.update_install,
                update_id=update_id,
                recorded_at=installed_at,
            )
        )
    else:
        logger.warning(
            "install_did_not_raise_version",
            extra={"device_id": device_id, "update_id": str(update_id), "version_code": version_code},
        )

    # A forced target is satisfied by any install that reaches it.
    await session.execute(
        update(Device)
        .where(Device.device_id == device_id, Device.pending_update_code <= version_code)
        .values(
            {
                Device.pending_update_code: None,
                Device.pending_update_name: None,
                Device.pending_update_requested_by: None,
                Device.pending_update_requested_at: None,
            }
        )
        .execution_options(synchronize_session=False)
    )
    return raised
