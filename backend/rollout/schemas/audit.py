from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: str
    sequence: int
    action: str
    actor_id: str
    payload: dict[str, Any] | None = None
    hash_prev: str | None = None
    hash_current: str
    occurred_at: datetime


class ChainVerificationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: str
    entity_id: str
    length: int
    head_hash: str | None = None
    valid: bool
    hash_mismatches: list[int]
    broken_links: list[int]
    sequence_gaps: list[int]
    forks: list[str]
