import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rollout.db.base import Base


class VersionSource(str, enum.Enum):
    heartbeat = "heartbeat"
    manual = "manual"
    update_install = "update_install"


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    device_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False, index=True)
    app_id: Mapped[str] = mapped_column(String(64), nullable=False)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    region: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    # Installed version: set at registration, then only raised by a completed install.
    current_version_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_version_name: Mapped[str] = mapped_column(String(32), nullable=False, default="0.0.0")
    reported_version_code: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reported_version_name: Mapped[str] = mapped_column(String(32), nullable=False, default="0.0.0")
    pending_update_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    pending_update_name: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_update_requested_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pending_update_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    # Bumped by every scheduling write; concurrent schedulers for one device serialize on it.
    schedule_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    last_heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    version_history: Mapped[list["DeviceVersionHistory"]] = relationship(
        "DeviceVersionHistory",
        back_populates="device",
        lazy="selectin",
        order_by="DeviceVersionHistory.recorded_at",
    )


class DeviceVersionHistory(Base):
    """Append-only record of the versions a device was seen on or moved to."""

    __tablename__ = "device_version_history"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    device_id: Mapped[str] = mapped_column(String(128), ForeignKey("devices.device_id"), nullable=False, index=True)
    version_code: Mapped[int] = mapped_column(Integer, nullable=False)
    version_name: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[VersionSource] = mapped_column(Enum(VersionSource), nullable=False)
    update_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    device: Mapped[Device] = relationship("Device", back_populates="version_history")
