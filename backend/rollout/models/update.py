import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rollout.db.base import Base


class UpdateStage(str, enum.Enum):
    scheduled = "scheduled"
    notified = "notified"
    download_started = "download_started"
    download_completed = "download_completed"
    install_started = "install_started"
    install_completed = "install_completed"
    failed = "failed"
    rejected = "rejected"
    cancelled = "cancelled"


class UpdateStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ApprovalStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class CampaignStatus(str, enum.Enum):
    active = "active"
    cancelled = "cancelled"


class RolloutCampaign(Base):
    __tablename__ = "rollout_campaigns"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_version_code: Mapped[int] = mapped_column(Integer, nullable=False)
    target_version_name: Mapped[str] = mapped_column(String(32), nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[CampaignStatus] = mapped_column(Enum(CampaignStatus), nullable=False, default=CampaignStatus.active)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class UpdateRequest(Base):
    __tablename__ = "update_requests"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    device_id: Mapped[str] = mapped_column(String(128), ForeignKey("devices.device_id"), nullable=False, index=True)
    campaign_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("rollout_campaigns.id"), nullable=True, index=True
    )
    target_version_code: Mapped[int] = mapped_column(Integer, nullable=False)
    target_version_name: Mapped[str] = mapped_column(String(32), nullable=False)
    current_stage: Mapped[UpdateStage] = mapped_column(Enum(UpdateStage), nullable=False, default=UpdateStage.scheduled)
    status: Mapped[UpdateStatus] = mapped_column(
        Enum(UpdateStatus), nullable=False, default=UpdateStatus.pending, index=True
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled_by: Mapped[str] = mapped_column(String(128), nullable=False)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        Enum(ApprovalStatus), nullable=False, default=ApprovalStatus.approved
    )
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    forced: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    last_stage_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    timeline: Mapped[list["UpdateTimelineEvent"]] = relationship(
        "UpdateTimelineEvent",
        back_populates="update",
        lazy="selectin",
        order_by="UpdateTimelineEvent.sequence",
    )

    # UPDATE ... WHERE row_version = :seen; a lost race raises StaleDataError at flush.
    __mapper_args__ = {"version_id_col": row_version}

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries


class UpdateTimelineEvent(Base):
    __tablename__ = "update_timeline_events"
    __table_args__ = (UniqueConstraint("update_id", "sequence", name="uq_update_timeline_sequence"),)

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    update_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("update_requests.id"), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[UpdateStage] = mapped_column(Enum(UpdateStage), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    failure_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    retriable: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    update: Mapped[UpdateRequest] = relationship("UpdateRequest", back_populates="timeline")
