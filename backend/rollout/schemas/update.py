from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from rollout.models.update import ApprovalStatus, UpdateStage, UpdateStatus


class UpdateCreate(BaseModel):
    device_id: str = Field(min_length=1, max_length=128)
    target_code: int = Field(gt=0)
    target_name: str = Field(min_length=1, max_length=32)
    requires_approval: bool = False


class TimelineEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    sequence: int
    stage: UpdateStage
    details: dict[str, Any] | None = None
    failure_stage: str | None = None
    failure_reason: str | None = None
    retriable: bool | None = None
    occurred_at: datetime


class UpdateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    device_id: str
    campaign_id: UUID | None = None
    target_version_code: int
    target_version_name: str
    current_stage: UpdateStage
    status: UpdateStatus
    scheduled_at: datetime
    scheduled_by: str
    approval_status: ApprovalStatus
    approved_by: str | None = None
    approved_at: datetime | None = None
    forced: bool
    retry_count: int
    max_retries: int
    can_retry: bool
    last_retry_at: datetime | None = None
    failure_stage: str | None = None
    failure_reason: str | None = None
    last_stage_at: datetime
    timeline: list[TimelineEventRead] = Field(default_factory=list)


class StageReport(BaseModel):
    details: dict[str, Any] | None = None


class FailureReport(BaseModel):
    stage: str = Field(min_length=1, max_length=64)
    reason: str = Field(min_length=1, max_length=500)
    retriable: bool = True


class DecisionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
