from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from rollout.models.update import CampaignStatus


class CampaignCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    app_id: str = Field(min_length=1, max_length=64)
    platform: str = Field(min_length=1, max_length=32)
    region: str | None = Field(default=None, max_length=64)
    device_ids: list[str] = Field(min_length=1)
    target_code: int = Field(gt=0)
    target_name: str = Field(min_length=1, max_length=32)
    requires_approval: bool = False


class CampaignRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    app_id: str
    platform: str
    region: str | None = None
    target_version_code: int
    target_version_name: str
    requires_approval: bool
    status: CampaignStatus
    created_by: str
    created_at: datetime


class ProgressRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    completed: int
    failed: int
    pending: int
    in_progress: int
    cancelled: int
    success_rate: float
    failure_rate: float
    is_finished: bool


class DashboardRead(BaseModel):
    stats: ProgressRead
    version_heatmap: dict[str, int]
