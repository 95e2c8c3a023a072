import asyncio
import uuid

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rollout.core import metrics
from rollout.core.errors import ConflictError, NotFoundError, ValidationError
from rollout.db.base import Base
from rollout.models.update import CampaignStatus, RolloutCampaign, UpdateRequest, UpdateStage, UpdateStatus
from rollout.services import audit_chain, devices, rollouts
from rollout.services import updates as update_service

APP = "fleet-agent"
PLATFORM = "android"


@pytest.fixture
def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    return SessionLocal


async def _fleet(session) -> None:
    fleet = [
        ("dev-eu-1", "eu-west", PLATFORM, 10000, "1.0.0"),
        ("dev-eu-2", "eu-west", PLATFORM, 10000, "1.0.0"),
        ("dev-us-1", "us-east", PLATFORM, 10000, "1.0.0"),
        ("dev-us-2", "us-east", PLATFORM, 20000, "2.0.0"),
        ("dev-nowhere", None, PLATFORM, 10000, "1.0.0"),
        ("dev-ios", "eu-west", "ios", 10000, "1.0.0"),
    ]
    for device_id, region, platform, code, name in fleet:
        await devices.upsert_device(
            session,
            device_id,
            app_id=APP,
            platform=platform,
            reported_code=code,
            reported_name=name,
            region=region,
        )


async def _advance_to_install(session, update_id) -> None:
    for stage in (
        UpdateStage.notified,
        UpdateStage.download_started,
        UpdateStage.download_completed,
        UpdateStage.install_started,
    ):
        await update_service.transition(session, update_id, stage)
    await update_service.complete_install(session, update_id)


async def _campaign(session, device_ids, **kwargs):
    params = {
        "name": "2.0 wave 1",
        "app_id": APP,
        "platform": PLATFORM,
        "device_ids": device_ids,
        "target_code": 20000,
        "target_name": "2.0.0",
        "created_by": "admin-1",
    }
    params.update(kwargs)
    return await rollouts.create_campaign(session, **params)


def test_create_campaign_schedules_one_request_per_device(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            campaign = await _campaign(session, ["dev-eu-1", "dev-eu-2", "dev-eu-1", " "], region="eu-west")
            campaign_id = campaign.id
            assert campaign.status == CampaignStatus.active

            requests = await update_service.list_updates(session, campaign_id=campaign_id)
            assert sorted(r.device_id for r in requests) == ["dev-eu-1", "dev-eu-2"]
            assert all(r.current_stage == UpdateStage.scheduled for r in requests)
            assert metrics.snapshot()["updates_scheduled"] == 2

            events = await audit_chain.query(session, entity_type="campaign", entity_id=str(campaign_id))
            assert [event.action for event in events] == ["campaign_created"]
            assert events[0].payload["device_ids"] == ["dev-eu-1", "dev-eu-2"]

    asyncio.run(run_flow())


@pytest.mark.parametrize(
    "device_ids",
    [
        ["dev-eu-1", "ghost"],
        ["dev-eu-1", "dev-ios"],
        ["dev-eu-1", "dev-us-2"],
    ],
)
def test_create_campaign_rejects_bad_devices_without_writing(session_factory, device_ids):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            with pytest.raises(ValidationError):
                await _campaign(session, device_ids)

            campaigns = (await session.execute(select(func.count()).select_from(RolloutCampaign))).scalar_one()
            requests = (await session.execute(select(func.count()).select_from(UpdateRequest))).scalar_one()
            assert (campaigns, requests) == (0, 0)

    asyncio.run(run_flow())


def test_progress_tallies_statuses_and_rates(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            campaign = await _campaign(session, ["dev-eu-1", "dev-eu-2", "dev-us-1", "dev-nowhere"])
            campaign_id = campaign.id
            by_device = {
                r.device_id: r.id for r in await update_service.list_updates(session, campaign_id=campaign_id)
            }

            await _advance_to_install(session, by_device["dev-eu-1"])
            await update_service.record_failure(
                session, by_device["dev-eu-2"], failure_stage="download", failure_reason="network"
            )
            await update_service.transition(session, by_device["dev-us-1"], UpdateStage.notified)

            tally = await rollouts.progress(session, campaign_id)
            assert (tally.total, tally.completed, tally.failed, tally.in_progress, tally.pending) == (4, 1, 1, 1, 1)
            assert tally.success_rate == 25.0
            assert tally.failure_rate == 25.0
            assert tally.is_finished is False

            await update_service.cancel(session, by_device["dev-us-1"], actor_id="admin-1")
            await update_service.cancel(session, by_device["dev-nowhere"], actor_id="admin-1")
            tally = await rollouts.progress(session, campaign_id)
            assert tally.cancelled == 2
            assert tally.is_finished is True
            assert tally.as_dict()["is_finished"] is True

            with pytest.raises(NotFoundError):
                await rollouts.progress(session, uuid.uuid4())

    asyncio.run(run_flow())


def test_empty_tally_reports_zero_rates():
    tally = rollouts.StatusTally()
    assert tally.success_rate == 0
    assert tally.failure_rate == 0
    assert tally.is_finished is False


def test_cancel_campaign_cancels_open_requests_only(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            campaign = await _campaign(session, ["dev-eu-1", "dev-eu-2", "dev-us-1"])
            campaign_id = campaign.id
            by_device = {
                r.device_id: r.id for r in await update_service.list_updates(session, campaign_id=campaign_id)
            }
            await _advance_to_install(session, by_device["dev-eu-1"])
            await update_service.transition(session, by_device["dev-eu-2"], UpdateStage.notified)

            campaign = await rollouts.cancel_campaign(session, campaign_id, actor_id="admin-1")
            assert campaign.status == CampaignStatus.cancelled

            installed = await update_service.get_update(session, by_device["dev-eu-1"])
            assert installed.current_stage == UpdateStage.install_completed
            for device_id in ("dev-eu-2", "dev-us-1"):
                request = await update_service.get_update(session, by_device[device_id])
                assert request.current_stage == UpdateStage.cancelled

            events = await audit_chain.query(session, entity_type="campaign", entity_id=str(campaign_id))
            assert events[0].action == "campaign_cancelled"
            assert events[0].payload == {"cancelled_updates": 2}

            with pytest.raises(ConflictError):
                await rollouts.cancel_campaign(session, campaign_id, actor_id="admin-1")

    asyncio.run(run_flow())


def test_dashboard_counts_latest_request_per_device(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            first = await update_service.schedule(
                session, device_id="dev-eu-1", target_code=15000, target_name="1.5.0", scheduled_by="admin-1"
            )
            first_id = first.id
            await update_service.cancel(session, first_id, actor_id="admin-1")
            second = await update_service.schedule(
                session, device_id="dev-eu-1", target_code=20000, target_name="2.0.0", scheduled_by="admin-1"
            )
            second_id = second.id
            await _advance_to_install(session, second_id)
            await update_service.schedule(
                session, device_id="dev-us-1", target_code=20000, target_name="2.0.0", scheduled_by="admin-1"
            )

            board = await rollouts.dashboard(session, platform=PLATFORM)
            assert board["stats"]["total"] == 2
            assert board["stats"]["completed"] == 1
            assert board["stats"]["pending"] == 1
            assert board["stats"]["cancelled"] == 0
            assert board["version_heatmap"] == {"1.0.0": 3, "2.0.0": 2}

            eu = await rollouts.dashboard(session, region="eu-west", platform=PLATFORM)
            assert eu["stats"]["total"] == 1
            assert eu["version_heatmap"] == {"1.0.0": 1, "2.0.0": 1}

    asyncio.run(run_flow())


def test_region_adoption_groups_unknown_regions(session_factory):
    async def run_flow():
        async with session_factory() as session:
            await _fleet(session)
            adoption = await rollouts.region_adoption(session, platform=PLATFORM)
            assert adoption == {
                "eu-west": {"1.0.0": 2},
                "us-east": {"1.0.0": 1, "2.0.0": 1},
                "Unknown": {"1.0.0": 1},
            }
            everyone = await rollouts.region_adoption(session)
            assert everyone["eu-west"] == {"1.0.0": 3}

    asyncio.run(run_flow())
