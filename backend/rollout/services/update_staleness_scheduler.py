"""Periodic sweep that fails update requests whose device went silent mid-rollout."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta, timezone

from fastapi import FastAPI

from rollout.core.config import settings
from rollout.db.session import SessionLocal
from rollout.services import leader_lock, updates

logger = logging.getLogger(__name__)

LOCK_NAME = "update_staleness_scheduler"


def _staleness_config() -> tuple[int, int] | None:
    if not settings.update_stale_timeout_enabled:
        return None
    timeout_minutes = int(settings.update_stale_timeout_minutes or 0)
    if timeout_minutes <= 0:
        return None
    return timeout_minutes, max(1, int(settings.update_stale_batch_limit or 200))


async def run_once(*, now: datetime | None = None) -> int:
    config = _staleness_config()
    if config is None:
        return 0
    timeout_minutes, limit = config
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(minutes=timeout_minutes)
    async with SessionLocal() as session:
        return await updates.expire_stale_updates(session, cutoff=cutoff, limit=limit)


async def _loop(stop: asyncio.Event) -> None:
    interval = max(30, int(settings.update_stale_poll_interval_seconds or 300))
    while not stop.is_set():
        try:
            expired = await run_once()
            if expired:
                logger.info("stale_updates_expired", extra={"count": expired})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("update_staleness_sweep_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if _staleness_config() is None:
        return
    if getattr(app.state, "staleness_scheduler_task", None) is not None:
        return
    stop_event = asyncio.Event()
    app.state.staleness_scheduler_stop = stop_event
    app.state.staleness_scheduler_task = asyncio.create_task(
        leader_lock.run_as_leader(name=LOCK_NAME, stop=stop_event, work=_loop)
    )


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "staleness_scheduler_stop", None)
    task = getattr(app.state, "staleness_scheduler_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.staleness_scheduler_stop = None
    app.state.staleness_scheduler_task = None
