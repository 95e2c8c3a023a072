from rollout.db.base import Base  # noqa: F401
from rollout.models.version import Version, VersionTransition  # noqa: F401
from rollout.models.device import Device, DeviceVersionHistory, VersionSource  # noqa: F401
from rollout.models.update import (
    ApprovalStatus,
    CampaignStatus,
    RolloutCampaign,
    UpdateRequest,
    UpdateStage,
    UpdateStatus,
    UpdateTimelineEvent,
)  # noqa: F401
from rollout.models.audit import AuditEvent  # noqa: F401

__all__ = [
    "Base",
    "Version",
    "VersionTransition",
    "Device",
    "DeviceVersionHistory",
    "VersionSource",
    "ApprovalStatus",
    "CampaignStatus",
    "RolloutCampaign",
    "UpdateRequest",
    "UpdateStage",
    "UpdateStatus",
    "UpdateTimelineEvent",
    "AuditEvent",
]
