from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from rollout.models.device import VersionSource


class HeartbeatRequest(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)
    app_id: str = Field(min_length=1, max_length=64)
    platform: str = Field(min_length=1, max_length=32)
    version_code: int = Field(ge=0)
    version_name: str = Field(min_length=1, max_length=32)
    region: str | None = Field(default=None, max_length=64)
    metadata: dict[str, Any] | None = None


class DeviceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    device_id: str
    app_id: str
    platform: str
    region: str | None = None
    current_version_code: int
    current_version_name: str
    reported_version_code: int | None = None
    reported_version_name: str | None = None
    pending_update_code: int | None = None
    pending_update_name: str | None = None
    pending_update_requested_by: str | None = None
    pending_update_requested_at: datetime | None = None
    status: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    last_heartbeat_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class VersionHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    version_code: int
    version_name: str
    source: VersionSource
    update_id: UUID | None = None
    recorded_at: datetime


class UpdateAlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    target_code: int
    target_name: str
    forced: bool
    latest_code: int | None = None
    path: list[int] | None = None
    update_id: UUID | None = None
    reason: str = ""


class HeartbeatResponse(BaseModel):
    durable: bool = True
    device: DeviceRead | None = None
    alert: UpdateAlertRead | None = None


class ForcedUpdateRequest(BaseModel):
    device_ids: list[str] = Field(min_length=1)
    target_code: int = Field(gt=0)
    target_name: str = Field(min_length=1, max_length=32)


class ForcedUpdateResponse(BaseModel):
    device_ids: list[str]
    target_code: int
    target_name: str
