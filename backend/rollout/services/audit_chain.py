from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.config import settings
from rollout.core.errors import ValidationError
from rollout.models.audit import AuditEvent
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _canonical_timestamp(value: datetime) -> str:
    # SQLite hands back naive datetimes; both sides of the hash treat them as UTC.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def compute_hash(
    *,
    entity_type: str,
    entity_id: str,
    sequence: int,
    action: str,
    actor_id: str,
    payload: Any,
    hash_prev: str | None,
    occurred_at: datetime,
) -> str:
    material = _canonical_json(
        {
            "entity_type": entity_type,
            "entity_id": entity_id,
            "sequence": sequence,
            "action": action,
            "actor_id": actor_id,
            "payload": payload,
            "hash_prev": hash_prev,
            "occurred_at": _canonical_timestamp(occurred_at),
        }
    )
    hasher = hashlib.sha256()
    hasher.update((settings.audit_hash_secret or "").encode("utf-8"))
    hasher.update(b"\n")
    hasher.update((hash_prev or "").encode("utf-8"))
    hasher.update(b"\n")
    hasher.update(material.encode("utf-8"))
    return hasher.hexdigest()[: max(16, min(64, int(settings.audit_hash_length)))]


def _event_hash(event: AuditEvent) -> str:
    return compute_hash(
        entity_type=event.entity_type,
        entity_id=event.entity_id,
        sequence=event.sequence,
        action=event.action,
        actor_id=event.actor_id,
        payload=event.payload,
        hash_prev=event.hash_prev,
        occurred_at=event.occurred_at,
    )


async def _chain_tail(session: AsyncSession, entity_type: str, entity_id: str) -> AuditEvent | None:
    result = await session.execute(
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def append(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str,
    payload: dict[str, Any] | None = None,
) -> AuditEvent:
    """
    Append one link to the entity's chain and flush it inside the caller's transaction.

    A concurrent writer that appended first makes the flush fail with
    IntegrityError; callers run inside `run_with_conflict_retry`, which replays
    the unit of work against the new tail.
    """
    if not entity_type or not entity_id:
        raise ValidationError("entity_type and entity_id are required")
    if not action or not actor_id:
        raise ValidationError("action and actor_id are required")

    tail = await _chain_tail(session, entity_type, entity_id)
    hash_prev = tail.hash_current if tail is not None else None
    sequence = (tail.sequence + 1) if tail is not None else 1
    occurred_at = datetime.now(timezone.utc)
    if tail is not None:
        previous = tail.occurred_at if tail.occurred_at.tzinfo else tail.occurred_at.replace(tzinfo=timezone.utc)
        occurred_at = max(occurred_at, previous)
    # Round-trip through canonical JSON so the stored payload is exactly what was hashed.
    normalized_payload = json.loads(_canonical_json(payload or {}))

    event = AuditEvent(
        entity_type=entity_type,
        entity_id=str(entity_id),
        sequence=sequence,
        action=action,
        actor_id=actor_id,
        payload=normalized_payload,
        hash_prev=hash_prev,
        occurred_at=occurred_at,
    )
    event.hash_current = _event_hash(event)
    session.add(event)
    await session.flush()
    logger.info(
        "audit_event_appended",
        extra={"entity_type": entity_type, "entity_id": entity_id, "action": action, "sequence": sequence},
    )
    return event


async def record_event(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor_id: str,
    payload: dict[str, Any] | None = None,
) -> AuditEvent:
    """Standalone append: commits on its own and retries on a lost race."""

    async def unit_of_work() -> AuditEvent:
        return await append(
            session,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            payload=payload,
        )

    return await run_with_conflict_retry(session, unit_of_work, label="audit_append")


async def query(
    session: AsyncSession,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    stmt = select(AuditEvent)
    if entity_type:
        stmt = stmt.where(AuditEvent.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditEvent.entity_id == entity_id)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.sequence.desc()).limit(max(1, min(limit, 1000)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


@dataclass
class ChainVerification:
    entity_type: str
    entity_id: str
    length: int = 0
    head_hash: str | None = None
    hash_mismatches: list[int] = field(default_factory=list)
    broken_links: list[int] = field(default_factory=list)
    sequence_gaps: list[int] = field(default_factory=list)
    forks: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not (self.hash_mismatches or self.broken_links or self.sequence_gaps or self.forks)


async def verify_chain(session: AsyncSession, *, entity_type: str, entity_id: str) -> ChainVerification:
    """Replay an entity's chain in order, recomputing every hash."""
    result = await session.execute(
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.sequence.asc())
    )
    events = list(result.scalars().all())
    report = ChainVerification(entity_type=entity_type, entity_id=entity_id, length=len(events))

    seen_prev: set[str | None] = set()
    previous: AuditEvent | None = None
    for expected_sequence, event in enumerate(events, start=1):
        if event.sequence != expected_sequence:
            report.sequence_gaps.append(event.sequence)
        if event.hash_prev in seen_prev:
            report.forks.append(event.hash_prev or "<genesis>")
        seen_prev.add(event.hash_prev)
        expected_prev = previous.hash_current if previous is not None else None
        if event.hash_prev != expected_prev:
            report.broken_links.append(event.sequence)
        if _event_hash(event) != event.hash_current:
            report.hash_mismatches.append(event.sequence)
        previous = event

    report.head_hash = previous.hash_current if previous is not None else None
    if not report.valid:
        logger.warning(
            "audit_chain_invalid",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "hash_mismatches": report.hash_mismatches,
                "broken_links": report.broken_links,
                "forks": report.forks,
            },
        )
    return report
