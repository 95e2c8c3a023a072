from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rollout.core import metrics
from rollout.core.config import settings
from rollout.core.errors import ConflictError, RolloutError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_with_conflict_retry(
    session: AsyncSession,
    unit_of_work: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int | None = None,
) -> T:
    """
    Run `unit_of_work` and commit it, replaying the whole unit when an optimistic check fails.

    `unit_of_work` must re-read every row it mutates: after a lost race the
    session is rolled back and the next attempt starts from fresh state.
    """
    limit = max(1, int(attempts or settings.conflict_retry_limit or 1))
    for attempt in range(1, limit + 1):
        try:
            result = await unit_of_work()
            await session.commit()
            return result
        except (IntegrityError, StaleDataError) as exc:
            await session.rollback()
            metrics.record_write_conflict()
            logger.warning(
                "write_conflict_retry",
                extra={"operation": label, "attempt": attempt, "error": type(exc).__name__},
            )
        except (OperationalError, InterfaceError) as exc:
            await session.rollback()
            raise TransientStoreError(f"Store unavailable during {label}") from exc
        except RolloutError:
            await session.rollback()
            raise
    raise ConflictError(f"{label} kept conflicting with concurrent writers; retry with fresh state")
