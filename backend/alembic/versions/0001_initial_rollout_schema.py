"""initial rollout schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None

UPDATE_STAGES = (
    "scheduled",
    "notified",
    "download_started",
    "download_completed",
    "install_started",
    "install_completed",
    "failed",
    "rejected",
    "cancelled",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    update_stage = sa.Enum(*UPDATE_STAGES, name="updatestage")
    update_status = sa.Enum("pending", "in_progress", "completed", "failed", "cancelled", name="updatestatus")
    approval_status = sa.Enum("pending", "approved", "rejected", name="approvalstatus")
    campaign_status = sa.Enum("active", "cancelled", name="campaignstatus")
    version_source = sa.Enum("heartbeat", "manual", "update_install", name="versionsource")

    op.create_table(
        "versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("version_code", sa.Integer(), nullable=False),
        sa.Column("version_name", sa.String(length=32), nullable=False),
        sa.Column("checksum", sa.String(length=128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("app_id", "platform", "version_code", name="uq_versions_app_platform_code"),
    )
    op.create_index("ix_versions_app_id", "versions", ["app_id"])

    op.create_table(
        "version_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("from_code", sa.Integer(), nullable=False),
        sa.Column("to_code", sa.Integer(), nullable=False),
        sa.Column("is_allowed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("mandatory_intermediate_code", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(length=128), nullable=False, server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("app_id", "platform", "from_code", "to_code", name="uq_version_transitions_edge"),
    )
    op.create_index("ix_version_transitions_app_id", "version_transitions", ["app_id"])

    op.create_table(
        "devices",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("device_id", sa.String(length=128), nullable=False),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("current_version_code", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_version_name", sa.String(length=32), nullable=False, server_default="0.0.0"),
        sa.Column("reported_version_code", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reported_version_name", sa.String(length=32), nullable=False, server_default="0.0.0"),
        sa.Column("pending_update_code", sa.Integer(), nullable=True),
        sa.Column("pending_update_name", sa.String(length=32), nullable=True),
        sa.Column("pending_update_requested_by", sa.String(length=128), nullable=True),
        sa.Column("pending_update_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="active"),
        sa.Column("schedule_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("last_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_devices_device_id", "devices", ["device_id"], unique=True)
    op.create_index("ix_devices_platform", "devices", ["platform"])
    op.create_index("ix_devices_region", "devices", ["region"])

    op.create_table(
        "device_version_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("device_id", sa.String(length=128), sa.ForeignKey("devices.device_id"), nullable=False),
        sa.Column("version_code", sa.Integer(), nullable=False),
        sa.Column("version_name", sa.String(length=32), nullable=False),
        sa.Column("source", version_source, nullable=False),
        sa.Column("update_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_device_version_history_device_id", "device_version_history", ["device_id"])

    op.create_table(
        "rollout_campaigns",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("app_id", sa.String(length=64), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=True),
        sa.Column("target_version_code", sa.Integer(), nullable=False),
        sa.Column("target_version_name", sa.String(length=32), nullable=False),
        sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", campaign_status, nullable=False, server_default="active"),
        sa.Column("created_by", sa.String(length=128), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "update_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("device_id", sa.String(length=128), sa.ForeignKey("devices.device_id"), nullable=False),
        sa.Column(
            "campaign_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("rollout_campaigns.id"), nullable=True
        ),
        sa.Column("target_version_code", sa.Integer(), nullable=False),
        sa.Column("target_version_name", sa.String(length=32), nullable=False),
        sa.Column("current_stage", update_stage, nullable=False, server_default="scheduled"),
        sa.Column("status", update_status, nullable=False, server_default="pending"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_by", sa.String(length=128), nullable=False),
        sa.Column("approval_status", approval_status, nullable=False, server_default="approved"),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("forced", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_stage", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("last_stage_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_update_requests_device_id", "update_requests", ["device_id"])
    op.create_index("ix_update_requests_campaign_id", "update_requests", ["campaign_id"])
    op.create_index("ix_update_requests_status", "update_requests", ["status"])
    op.create_index("ix_update_requests_last_stage_at", "update_requests", ["last_stage_at"])

    op.create_table(
        "update_timeline_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("update_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("update_requests.id"), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("stage", update_stage, nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("failure_stage", sa.String(length=64), nullable=True),
        sa.Column("failure_reason", sa.String(length=500), nullable=True),
        sa.Column("retriable", sa.Boolean(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("update_id", "sequence", name="uq_update_timeline_sequence"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("hash_prev", sa.String(length=64), nullable=True),
        sa.Column("hash_current", sa.String(length=64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_events_entity_sequence"),
        sa.UniqueConstraint("entity_type", "entity_id", "hash_prev", name="uq_audit_events_entity_hash_prev"),
    )
    op.create_index("ix_audit_events_entity_occurred", "audit_events", ["entity_type", "entity_id", "occurred_at"])
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_index("ix_audit_events_entity_occurred", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("update_timeline_events")
    for index in ("last_stage_at", "status", "campaign_id", "device_id"):
        op.drop_index(f"ix_update_requests_{index}", table_name="update_requests")
    op.drop_table("update_requests")
    op.drop_table("rollout_campaigns")
    op.drop_index("ix_device_version_history_device_id", table_name="device_version_history")
    op.drop_table("device_version_history")
    for index in ("region", "platform", "device_id"):
        op.drop_index(f"ix_devices_{index}", table_name="devices")
    op.drop_table("devices")
    op.drop_index("ix_version_transitions_app_id", table_name="version_transitions")
    op.drop_table("version_transitions")
    op.drop_index("ix_versions_app_id", table_name="versions")
    op.drop_table("versions")
    for enum_name in ("versionsource", "campaignstatus", "approvalstatus", "updatestatus", "updatestage"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
