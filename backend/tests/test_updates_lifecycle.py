import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rollout.core import metrics
from rollout.core.errors import ConflictError, NotFoundError, ValidationError
from rollout.db.base import Base
from rollout.models.audit import AuditEvent
from rollout.models.device import VersionSource
from rollout.models.update import ApprovalStatus, UpdateStage, UpdateStatus
from rollout.services import audit_chain, devices
from rollout.services import updates as update_service


@pytest.fixture
def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


async def _register(session, device_id: str = "dev-1", code: int = 10000, name: str = "1.0.0") -> None:
    await devices.upsert_device(
        session, device_id, app_id="fleet-agent", platform="android", reported_code=code, reported_name=name
    )


async def _schedule(session, device_id: str = "dev-1", **kwargs):
    params = {"target_code": 20000, "target_name": "2.0.0", "scheduled_by": "admin-1"}
    params.update(kwargs)
    request = await update_service.schedule(session, device_id=device_id, **params)
    return request.id


def _utc(value):
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def test_schedule_creates_request_timeline_and_audit_event(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)

            request = await update_service.get_update(session, update_id)
            assert request.current_stage == UpdateStage.scheduled
            assert request.status == UpdateStatus.pending
            assert request.approval_status == ApprovalStatus.approved
            assert request.max_retries == 3 and request.retry_count == 0
            assert [event.stage for event in request.timeline] == [UpdateStage.scheduled]

            events = await audit_chain.query(session, entity_type="update", entity_id=str(update_id))
            assert [event.action for event in events] == ["schedule_update"]
            assert metrics.snapshot()["updates_scheduled"] == 1

    asyncio.run(run_flow())


def test_schedule_rejects_unknown_device_and_bad_input(session_factory):
    async def run_flow():
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await _schedule(session, device_id="ghost")
            await _register(session)
            with pytest.raises(ValidationError):
                await _schedule(session, target_name="")
            with pytest.raises(ValidationError):
                await _schedule(session, target_code=10000, target_name="1.0.0")
            assert await update_service.list_updates(session) == []

    asyncio.run(run_flow())


def test_full_lifecycle_installs_target_on_device(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)

            for stage in (
                UpdateStage.notified,
                UpdateStage.download_started,
                UpdateStage.download_completed,
                UpdateStage.install_started,
            ):
                request = await update_service.transition(session, update_id, stage, {"progress": stage.value})
                assert request.current_stage == stage
                assert request.status == UpdateStatus.in_progress

            request = await update_service.complete_install(session, update_id)
            assert request.current_stage == UpdateStage.install_completed
            assert request.status == UpdateStatus.completed

            timeline = await update_service.get_timeline(session, update_id)
            assert [event.sequence for event in timeline] == [1, 2, 3, 4, 5, 6]
            assert timeline[-1].stage == request.current_stage
            stamps = [_utc(event.occurred_at) for event in timeline]
            assert all(earlier < later for earlier, later in zip(stamps, stamps[1:]))

            device = await devices.require_device(session, "dev-1")
            assert device.current_version_code == 20000
            assert device.current_version_name == "2.0.0"
            history = await devices.get_version_history(session, "dev-1")
            assert [(h.version_code, h.source) for h in history] == [
                (10000, VersionSource.heartbeat),
                (20000, VersionSource.update_install),
            ]
            assert history[-1].update_id == update_id

            device_events = await audit_chain.query(session, entity_type="device", entity_id="dev-1")
            assert [event.action for event in device_events] == ["version_installed"]
            report = await audit_chain.verify_chain(session, entity_type="update", entity_id=str(update_id))
            assert report.valid and report.length == 6

    asyncio.run(run_flow())


def test_repeated_or_skipped_transitions_are_rejected(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)

            await update_service.transition(session, update_id, UpdateStage.notified, {"ack": True})
            with pytest.raises(ConflictError):
                await update_service.transition(session, update_id, UpdateStage.notified, {"ack": True})
            with pytest.raises(ConflictError):
                await update_service.transition(session, update_id, UpdateStage.install_started)
            with pytest.raises(ValidationError):
                await update_service.transition(session, update_id, UpdateStage.failed)

            timeline = await update_service.get_timeline(session, update_id)
            assert [event.stage for event in timeline] == [UpdateStage.scheduled, UpdateStage.notified]

    asyncio.run(run_flow())


def test_failure_reports_count_retries(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)
            await update_service.transition(session, update_id, UpdateStage.notified)
            await update_service.transition(session, update_id, UpdateStage.download_started)

            request = await update_service.record_failure(
                session, update_id, failure_stage="InstallationStarted", failure_reason="disk full"
            )
            assert request.status == UpdateStatus.failed
            assert request.retry_count == 1
            assert request.can_retry is True
            assert request.failure_reason == "disk full"
            assert request.last_retry_at is not None
            last = request.timeline[-1]
            assert last.details == {
                "failure_stage": "InstallationStarted",
                "failure_reason": "disk full",
                "retriable": True,
            }

            request = await update_service.record_failure(
                session, update_id, failure_stage="InstallationStarted", failure_reason="disk full"
            )
            assert request.retry_count == 2
            assert request.can_retry is True

            with pytest.raises(ValidationError):
                await update_service.record_failure(session, update_id, failure_stage="x", failure_reason=" ")

    asyncio.run(run_flow())


def test_retry_reenters_notified_until_budget_is_spent(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)

            for attempt in range(1, 4):
                await update_service.record_failure(session, update_id, failure_stage="download", failure_reason="timeout")
                if attempt < 3:
                    request = await update_service.retry(session, update_id, actor_id="admin-1")
                    assert request.current_stage == UpdateStage.notified
                    assert request.retry_count == attempt

            request = await update_service.get_update(session, update_id)
            assert request.retry_count == 3 and request.can_retry is False
            with pytest.raises(ConflictError):
                await update_service.retry(session, update_id, actor_id="admin-1")
            assert update_service.is_open(await update_service.get_update(session, update_id)) is False

    asyncio.run(run_flow())


def test_non_retriable_failure_blocks_retry(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)
            await update_service.record_failure(
                session, update_id, failure_stage="verify", failure_reason="bad signature", retriable=False
            )
            with pytest.raises(ConflictError):
                await update_service.retry(session, update_id, actor_id="admin-1")

    asyncio.run(run_flow())


def test_approval_gates_device_progress(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session, requires_approval=True)

            request = await update_service.get_update(session, update_id)
            assert request.approval_status == ApprovalStatus.pending
            with pytest.raises(ConflictError):
                await update_service.transition(session, update_id, UpdateStage.notified)

            request = await update_service.approve(session, update_id, approver_id="lead-1")
            assert request.approval_status == ApprovalStatus.approved
            assert request.approved_by == "lead-1"
            with pytest.raises(ConflictError):
                await update_service.approve(session, update_id, approver_id="lead-1")

            request = await update_service.transition(session, update_id, UpdateStage.notified)
            assert request.current_stage == UpdateStage.notified

    asyncio.run(run_flow())


def test_reject_and_cancel_are_terminal_and_skip_retry_accounting(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session, "dev-1")
            await _register(session, "dev-2")
            rejected_id = await _schedule(session, "dev-1", requires_approval=True)
            cancelled_id = await _schedule(session, "dev-2")

            request = await update_service.reject(session, rejected_id, approver_id="lead-1", reason="freeze")
            assert request.current_stage == UpdateStage.rejected
            assert request.status == UpdateStatus.cancelled
            assert request.approval_status == ApprovalStatus.rejected
            assert request.retry_count == 0

            await update_service.transition(session, cancelled_id, UpdateStage.notified)
            request = await update_service.cancel(session, cancelled_id, actor_id="admin-1", reason="wrong build")
            assert request.current_stage == UpdateStage.cancelled
            assert request.retry_count == 0

            for update_id in (rejected_id, cancelled_id):
                with pytest.raises(ConflictError):
                    await update_service.cancel(session, update_id, actor_id="admin-1")
                with pytest.raises(ConflictError):
                    await update_service.record_failure(session, update_id, failure_stage="x", failure_reason="late")

            actions = [e.action for e in await audit_chain.query(session, entity_type="update", entity_id=str(rejected_id))]
            assert actions == ["update_rejected", "schedule_update"]

    asyncio.run(run_flow())


def test_install_never_lowers_the_installed_version(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session, code=10000, name="1.0.0")
            low_id = await _schedule(session, target_code=15000, target_name="1.5.0")
            high_id = await _schedule(session, target_code=20000, target_name="2.0.0")

            for update_id in (high_id, low_id):
                for stage in (
                    UpdateStage.notified,
                    UpdateStage.download_started,
                    UpdateStage.download_completed,
                    UpdateStage.install_started,
                ):
                    await update_service.transition(session, update_id, stage)

            await update_service.complete_install(session, high_id)
            await update_service.complete_install(session, low_id)

            device = await devices.require_device(session, "dev-1")
            assert device.current_version_code == 20000
            history = await devices.get_version_history(session, "dev-1")
            assert [h.version_code for h in history if h.source == VersionSource.update_install] == [20000]

    asyncio.run(run_flow())


def test_install_clears_satisfied_forced_target(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            await _register(session, "dev-2")

            for device_id, target in (("dev-1", 20000), ("dev-2", 30000)):
                await devices.set_pending_update(
                    session,
                    device_id,
                    target_code=target,
                    target_name=f"{target // 10000}.0.0",
                    requested_by="admin-1",
                    requested_at=datetime.now(timezone.utc),
                )
            await session.commit()

            for device_id in ("dev-1", "dev-2"):
                update_id = await _schedule(session, device_id)
                for stage in (
                    UpdateStage.notified,
                    UpdateStage.download_started,
                    UpdateStage.download_completed,
                    UpdateStage.install_started,
                ):
                    await update_service.transition(session, update_id, stage)
                await update_service.complete_install(session, update_id)

            satisfied = await devices.require_device(session, "dev-1")
            assert satisfied.pending_update_code is None
            assert satisfied.pending_update_requested_by is None
            still_pending = await devices.require_device(session, "dev-2")
            assert still_pending.pending_update_code == 30000

    asyncio.run(run_flow())


def test_every_mutation_is_audited_on_the_update_chain(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _register(session)
            update_id = await _schedule(session)
            await update_service.transition(session, update_id, UpdateStage.notified)
            await update_service.record_failure(session, update_id, failure_stage="download", failure_reason="io")
            await update_service.retry(session, update_id, actor_id="admin-1")

            rows = (
                await session.execute(
                    select(AuditEvent.action, AuditEvent.actor_id)
                    .where(AuditEvent.entity_type == "update", AuditEvent.entity_id == str(update_id))
                    .order_by(AuditEvent.sequence)
                )
            ).all()
            assert rows == [
                ("schedule_update", "admin-1"),
                ("stage_notified", "device"),
                ("update_failed", "device"),
                ("update_retried", "admin-1"),
            ]

    asyncio.run(run_flow())


def test_concurrent_stage_reports_serialize_on_row_version(tmp_path, monkeypatch):
    """The loser of a compare-and-swap race replays against the winner's state."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    real_load = update_service._load_request
    rival_stages: list[UpdateStage] = []

    async def load_then_lose_race(session_, update_id_):
        request = await real_load(session_, update_id_)
        if rival_stages:
            stage = rival_stages.pop(0)
            async with SessionLocal() as rival:
                await update_service.transition(rival, update_id_, stage, {"winner": True})
        return request

    async def run_flow():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with SessionLocal() as session:
            await _register(session)
            update_id = await _schedule(session)

        monkeypatch.setattr(update_service, "_load_request", load_then_lose_race)

        rival_stages.append(UpdateStage.notified)
        async with SessionLocal() as session:
            # The replay sees the winner's `notified` and refuses a duplicate.
            with pytest.raises(ConflictError):
                await update_service.transition(session, update_id, UpdateStage.notified, {"winner": False})
        assert metrics.snapshot()["write_conflicts"] == 1

        rival_stages.append(UpdateStage.download_started)
        async with SessionLocal() as session:
            request = await update_service.record_failure(
                session, update_id, failure_stage="download", failure_reason="io"
            )
            assert [event.stage for event in request.timeline] == [
                UpdateStage.scheduled,
                UpdateStage.notified,
                UpdateStage.download_started,
                UpdateStage.failed,
            ]
            assert request.retry_count == 1
        assert metrics.snapshot()["write_conflicts"] == 2
        await engine.dispose()

    asyncio.run(run_flow())
