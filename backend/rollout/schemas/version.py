from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class VersionCreate(BaseModel):
    app_id: str = Field(min_length=1, max_length=64)
    platform: str = Field(min_length=1, max_length=32)
    version_name: str = Field(min_length=1, max_length=32)
    version_code: int | None = Field(default=None, gt=0)
    checksum: str | None = Field(default=None, max_length=128)


class VersionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    app_id: str
    platform: str
    version_code: int
    version_name: str
    checksum: str | None = None
    is_active: bool
    created_by: str
    created_at: datetime


class TransitionCreate(BaseModel):
    app_id: str = Field(min_length=1, max_length=64)
    platform: str = Field(min_length=1, max_length=32)
    from_code: int = Field(ge=0)
    to_code: int = Field(gt=0)
    mandatory_intermediate_code: int | None = Field(default=None, gt=0)
    is_allowed: bool = True

    @model_validator(mode="after")
    def _distinct_endpoints(self) -> "TransitionCreate":
        if self.from_code == self.to_code:
            raise ValueError("from_code and to_code must differ")
        return self


class TransitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    app_id: str
    platform: str
    from_code: int
    to_code: int
    is_allowed: bool
    mandatory_intermediate_code: int | None = None
    is_active: bool
    created_by: str
    created_at: datetime


class UpgradePathRead(BaseModel):
    app_id: str
    platform: str
    from_code: int
    to_code: int
    path: list[int]


class UpdateCheckRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    needs_update: bool
    current_code: int
    latest_code: int | None = None
    latest_name: str | None = None
    reason: str = ""
