import asyncio

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rollout.core import metrics
from rollout.core.errors import ConflictError, ValidationError
from rollout.db.base import Base
from rollout.models.audit import AuditEvent
from rollout.services import audit_chain


@pytest.fixture
def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


async def _record(session, action: str, entity_id: str = "dev-1", **payload):
    return await audit_chain.record_event(
        session, entity_type="device", entity_id=entity_id, action=action, actor_id="admin-1", payload=payload
    )


def test_events_link_to_their_predecessor(session_factory):
    async def run_flow():
        async with session_factory() as session:
            first = await _record(session, "registered", region="eu")
            second = await _record(session, "forced_update_pushed", target=20000)
            other = await _record(session, "registered", entity_id="dev-2")

            assert first.sequence == 1 and first.hash_prev is None
            assert second.sequence == 2 and second.hash_prev == first.hash_current
            assert other.sequence == 1 and other.hash_prev is None
            assert len(first.hash_current) == 32

            events = await audit_chain.query(session, entity_type="device", entity_id="dev-1")
            assert [e.action for e in events] == ["forced_update_pushed", "registered"]

            report = await audit_chain.verify_chain(session, entity_type="device", entity_id="dev-1")
            assert report.valid
            assert report.length == 2
            assert report.head_hash == second.hash_current

    asyncio.run(run_flow())


def test_hash_is_reproducible_from_stored_fields(session_factory):
    async def run_flow():
        async with session_factory() as session:
            event = await _record(session, "registered", nested={"b": 1, "a": [1, 2]})
            stored = (await session.execute(select(AuditEvent).execution_options(populate_existing=True))).scalar_one()
            recomputed = audit_chain.compute_hash(
                entity_type=stored.entity_type,
                entity_id=stored.entity_id,
                sequence=stored.sequence,
                action=stored.action,
                actor_id=stored.actor_id,
                payload=stored.payload,
                hash_prev=stored.hash_prev,
                occurred_at=stored.occurred_at,
            )
            assert recomputed == event.hash_current

    asyncio.run(run_flow())


def test_tampering_is_detected_on_replay(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _record(session, "registered")
            tampered = await _record(session, "forced_update_pushed", target=20000)
            await _record(session, "forced_update_alert", target=20000)

            await session.execute(
                update(AuditEvent).where(AuditEvent.id == tampered.id).values(payload={"target": 99999})
            )
            await session.commit()

            report = await audit_chain.verify_chain(session, entity_type="device", entity_id="dev-1")
            assert not report.valid
            assert report.hash_mismatches == [2]
            assert report.broken_links == []

    asyncio.run(run_flow())


def test_stale_tail_read_is_retried_instead_of_forking(session_factory, monkeypatch):
    """Two writers observe the same tail; the loser must re-read and chain behind the winner."""

    async def run_flow():
        async with session_factory() as session:
            first = await _record(session, "registered")
            # A lost race rolls the session back, expiring loaded rows.
            first_hash = first.hash_current

            real_tail = audit_chain._chain_tail
            calls = {"count": 0}

            async def racing_tail(session_, entity_type, entity_id):
                calls["count"] += 1
                if calls["count"] == 1:
                    # Simulates a writer that read the chain before `first` was committed.
                    return None
                return await real_tail(session_, entity_type, entity_id)

            monkeypatch.setattr(audit_chain, "_chain_tail", racing_tail)
            second = await _record(session, "forced_update_pushed")

            assert calls["count"] == 2
            assert second.sequence == 2
            assert second.hash_prev == first_hash
            assert metrics.snapshot()["write_conflicts"] == 1

            rows = (
                await session.execute(select(AuditEvent).where(AuditEvent.entity_id == "dev-1"))
            ).scalars().all()
            prevs = [row.hash_prev for row in rows]
            assert len(prevs) == len(set(prevs)) == 2

            report = await audit_chain.verify_chain(session, entity_type="device", entity_id="dev-1")
            assert report.valid and report.forks == []

    asyncio.run(run_flow())


def test_persistent_conflict_surfaces_as_conflict_error(session_factory, monkeypatch):
    async def run_flow():
        async with session_factory() as session:
            await _record(session, "registered")

            async def always_stale(session_, entity_type, entity_id):
                return None

            monkeypatch.setattr(audit_chain, "_chain_tail", always_stale)
            with pytest.raises(ConflictError):
                await _record(session, "forced_update_pushed")

            monkeypatch.undo()
            report = await audit_chain.verify_chain(session, entity_type="device", entity_id="dev-1")
            assert report.length == 1 and report.valid

    asyncio.run(run_flow())


def test_append_validates_before_writing(session_factory):
    async def run_flow():
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await audit_chain.record_event(
                    session, entity_type="device", entity_id="", action="x", actor_id="admin-1"
                )
            with pytest.raises(ValidationError):
                await audit_chain.record_event(
                    session, entity_type="device", entity_id="dev-1", action="x", actor_id=""
                )
            assert await audit_chain.query(session) == []

    asyncio.run(run_flow())
