from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from rollout.core.config import settings
from rollout.db.session import engine

logger = logging.getLogger(__name__)

_RETRY_SECONDS = 15
_lock_engine: AsyncEngine | None = None


def _is_postgres() -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def lock_id_for(name: str) -> int:
    """Stable signed BIGINT key for pg advisory locks, scoped by application name."""
    digest = hashlib.blake2b(f"{settings.app_name}:{name}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=False) % (2**63 - 1)


def _engine_for_locks() -> AsyncEngine:
    # Advisory locks are session-scoped; the leader pins one connection for the whole loop.
    global _lock_engine
    if _lock_engine is None:
        _lock_engine = create_async_engine(
            settings.database_url,
            future=True,
            pool_size=1,
            max_overflow=0,
            pool_pre_ping=True,
        )
    return _lock_engine


async def dispose() -> None:
    global _lock_engine
    if _lock_engine is not None:
        await _lock_engine.dispose()
        _lock_engine = None


async def run_as_leader(
    *,
    name: str,
    stop: asyncio.Event,
    work: Callable[[asyncio.Event], Awaitable[None]],
    retry_seconds: int = _RETRY_SECONDS,
) -> None:
    """
    Run a background loop on exactly one orchestrator instance.

    On Postgres the instance holding `pg_try_advisory_lock` runs `work`; the
    others poll every `retry_seconds` until they win or `stop` is set. Other
    backends have no cross-process lock, so `work` runs directly.
    """
    if not _is_postgres():
        await work(stop)
        return

    lock_id = lock_id_for(name)
    retry = max(5, int(retry_seconds or _RETRY_SECONDS))

    while not stop.is_set():
        try:
            async with _engine_for_locks().connect() as conn:
                acquired = await conn.scalar(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id})
                if not acquired:
                    with suppress(asyncio.TimeoutError):
                        await asyncio.wait_for(stop.wait(), timeout=retry)
                    continue

                logger.info("leader_lock_acquired", extra={"lock_name": name, "lock_id": lock_id})
                try:
                    await work(stop)
                finally:
                    with suppress(Exception):
                        await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})
                    logger.info("leader_lock_released", extra={"lock_name": name})
                return
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "error": str(exc)})
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=retry)
