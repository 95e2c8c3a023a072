"""One-way progress notifications to devices.

Lifecycle code calls `notify()` and moves on: delivery runs as a detached task,
so a slow or broken transport can never hold up a stage transition.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any

from rollout.core import metrics
from rollout.core.config import settings
from rollout.core.redis_client import get_redis, json_dumps

logger = logging.getLogger(__name__)

_PUBLISH_TIMEOUT_SECONDS = 5.0
_pending: set[asyncio.Task[None]] = set()


def channel_for(device_id: str) -> str:
    return f"{settings.device_push_channel_prefix}:{device_id}"


async def _publish(device_id: str, message: dict[str, Any]) -> None:
    client = get_redis()
    if client is None:
        logger.info("device_push_unconfigured", extra={"device_id": device_id, "event": message.get("event")})
        return
    await client.publish(channel_for(device_id), json_dumps(message))


async def _deliver(device_id: str, message: dict[str, Any]) -> None:
    try:
        await asyncio.wait_for(_publish(device_id, message), timeout=_PUBLISH_TIMEOUT_SECONDS)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        metrics.record_push_failure()
        logger.warning(
            "device_push_failed",
            extra={"device_id": device_id, "event": message.get("event"), "error": str(exc)},
        )


def notify(device_id: str, event: str, payload: dict[str, Any] | None = None) -> None:
    message = {"event": event, "device_id": device_id, "sent_at": datetime.now(timezone.utc).isoformat()}
    message.update(payload or {})
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("device_push_without_event_loop", extra={"device_id": device_id, "event": event})
        return
    task = loop.create_task(_deliver(device_id, message))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain(timeout: float = 5.0) -> None:
    """Wait for in-flight notifications (shutdown and tests)."""
    loop = asyncio.get_running_loop()
    tasks = [task for task in _pending if not task.done() and task.get_loop() is loop]
    if not tasks:
        return
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout)
