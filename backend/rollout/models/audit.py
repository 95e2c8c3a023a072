import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from rollout.db.base import Base


class AuditEvent(Base):
    """
    One link of a per-(entity_type, entity_id) hash chain.

    Both unique constraints guard the chain: a writer that read a stale tail
    collides on `sequence` (and on `hash_prev`) instead of forking the chain.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", "sequence", name="uq_audit_events_entity_sequence"),
        UniqueConstraint("entity_type", "entity_id", "hash_prev", name="uq_audit_events_entity_hash_prev"),
        Index("ix_audit_events_entity_occurred", "entity_type", "entity_id", "occurred_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    hash_prev: Mapped[str | None] = mapped_column(String(64), nullable=True)
    hash_current: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
