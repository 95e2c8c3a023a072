from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.core.config import settings
from rollout.core.errors import ConflictError, NotFoundError, ValidationError
from rollout.models.version import Version, VersionTransition
from rollout.services import audit_chain
from rollout.services.conflicts import run_with_conflict_retry

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"[^0-9]")


def version_code_from_name(version_name: str | int | None) -> int:
    """Map "major.minor.patch" onto the integer order used for codes ("4.3.1" -> 40301)."""
    if version_name is None or version_name == "":
        return 0
    if isinstance(version_name, int):
        return version_name
    parts = [int(_NON_DIGITS.sub("", part) or 0) for part in str(version_name).strip().split(".")]
    parts = (parts + [0, 0, 0])[:3]
    major, minor, patch = parts
    if minor > 99 or patch > 99:
        raise ValidationError(f"Version {version_name!r} does not fit the major.minor.patch code scheme")
    return major * 10000 + minor * 100 + patch


def version_name_from_code(version_code: int) -> str:
    if not version_code or version_code < 0:
        return "0.0.0"
    return f"{version_code // 10000}.{(version_code % 10000) // 100}.{version_code % 100}"


@dataclass(frozen=True)
class UpdateCheck:
    needs_update: bool
    current_code: int
    latest_code: int | None = None
    latest_name: str | None = None
    reason: str = ""


async def create_version(
    session: AsyncSession,
    *,
    app_id: str,
    platform: str,
    version_name: str,
    version_code: int | None = None,
    checksum: str | None = None,
    created_by: str,
) -> Version:
    code = version_code if version_code is not None else version_code_from_name(version_name)
    if code <= 0:
        raise ValidationError("version_code must be a positive integer")

    async def unit_of_work() -> Version:
        existing = await session.execute(
            select(Version.id).where(
                Version.app_id == app_id, Version.platform == platform, Version.version_code == code
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Version {code} already exists for {app_id}/{platform}")
        version = Version(
            app_id=app_id,
            platform=platform,
            version_code=code,
            version_name=version_name,
            checksum=checksum,
            created_by=created_by,
        )
        session.add(version)
        await session.flush()
        await audit_chain.append(
            session,
            entity_type="version",
            entity_id=f"{app_id}:{platform}:{code}",
            action="version_created",
            actor_id=created_by,
            payload={"version_name": version_name, "checksum": checksum},
        )
        return version

    version = await run_with_conflict_retry(session, unit_of_work, label="create_version")
    await session.refresh(version)
    logger.info("version_created", extra={"app_id": app_id, "platform": platform, "version_code": code})
    return version


async def deactivate_version(session: AsyncSession, version_id: UUID, *, actor_id: str) -> Version:
    async def unit_of_work() -> Version:
        version = await session.get(Version, version_id, populate_existing=True)
        if version is None:
            raise NotFoundError("Version not found")
        if version.is_active:
            version.is_active = False
            await audit_chain.append(
                session,
                entity_type="version",
                entity_id=f"{version.app_id}:{version.platform}:{version.version_code}",
                action="version_deactivated",
                actor_id=actor_id,
            )
        return version

    version = await run_with_conflict_retry(session, unit_of_work, label="deactivate_version")
    await session.refresh(version)
    return version


async def list_versions(
    session: AsyncSession,
    *,
    app_id: str | None = None,
    platform: str | None = None,
    include_inactive: bool = False,
) -> list[Version]:
    stmt = select(Version).order_by(Version.version_code.desc())
    if app_id:
        stmt = stmt.where(Version.app_id == app_id)
    if platform:
        stmt = stmt.where(Version.platform == platform)
    if not include_inactive:
        stmt = stmt.where(Version.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_latest_version(session: AsyncSession, app_id: str, platform: str) -> Version | None:
    result = await session.execute(
        select(Version)
        .where(Version.app_id == app_id, Version.platform == platform, Version.is_active.is_(True))
        .order_by(Version.version_code.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_version_by_code(session: AsyncSession, app_id: str, platform: str, version_code: int) -> Version | None:
    result = await session.execute(
        select(Version).where(
            Version.app_id == app_id, Version.platform == platform, Version.version_code == version_code
        )
    )
    return result.scalar_one_or_none()


async def device_needs_update(session: AsyncSession, app_id: str, platform: str, current_code: int) -> UpdateCheck:
    latest = await get_latest_version(session, app_id, platform)
    if latest is None:
        return UpdateCheck(needs_update=False, current_code=current_code, reason="No version found")
    if current_code < latest.version_code:
        return UpdateCheck(
            needs_update=True,
            current_code=current_code,
            latest_code=latest.version_code,
            latest_name=latest.version_name,
            reason=f"Update available: {latest.version_name}",
        )
    return UpdateCheck(
        needs_update=False,
        current_code=current_code,
        latest_code=latest.version_code,
        latest_name=latest.version_name,
        reason="Already on latest version",
    )


async def create_transition(
    session: AsyncSession,
    *,
    app_id: str,
    platform: str,
    from_code: int,
    to_code: int,
    mandatory_intermediate_code: int | None = None,
    is_allowed: bool = True,
    created_by: str,
) -> VersionTransition:
    if from_code == to_code:
        raise ValidationError("A transition needs two distinct version codes")
    if mandatory_intermediate_code is not None and mandatory_intermediate_code in {from_code, to_code}:
        raise ValidationError("The mandatory intermediate must differ from both endpoints")

    async def unit_of_work() -> VersionTransition:
        existing = await session.execute(
            select(VersionTransition.id).where(
                VersionTransition.app_id == app_id,
                VersionTransition.platform == platform,
                VersionTransition.from_code == from_code,
                VersionTransition.to_code == to_code,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(f"Transition {from_code} -> {to_code} already declared")
        transition = VersionTransition(
            app_id=app_id,
            platform=platform,
            from_code=from_code,
            to_code=to_code,
            mandatory_intermediate_code=mandatory_intermediate_code,
            is_allowed=is_allowed,
            created_by=created_by,
        )
        session.add(transition)
        await session.flush()
        await audit_chain.append(
            session,
            entity_type="version_transition",
            entity_id=f"{app_id}:{platform}:{from_code}->{to_code}",
            action="transition_declared",
            actor_id=created_by,
            payload={"mandatory_intermediate_code": mandatory_intermediate_code, "is_allowed": is_allowed},
        )
        return transition

    transition = await run_with_conflict_retry(session, unit_of_work, label="create_transition")
    await session.refresh(transition)
    return transition


async def deactivate_transition(session: AsyncSession, transition_id: UUID, *, actor_id: str) -> VersionTransition:
    async def unit_of_work() -> VersionTransition:
        transition = await session.get(VersionTransition, transition_id, populate_existing=True)
        if transition is None:
            raise NotFoundError("Transition not found")
        if transition.is_active:
            transition.is_active = False
            await audit_chain.append(
                session,
                entity_type="version_transition",
                entity_id=f"{transition.app_id}:{transition.platform}:{transition.from_code}->{transition.to_code}",
                action="transition_deactivated",
                actor_id=actor_id,
            )
        return transition

    transition = await run_with_conflict_retry(session, unit_of_work, label="deactivate_transition")
    await session.refresh(transition)
    return transition


async def list_transitions(
    session: AsyncSession,
    *,
    app_id: str | None = None,
    platform: str | None = None,
    include_inactive: bool = False,
) -> list[VersionTransition]:
    stmt = select(VersionTransition).order_by(VersionTransition.from_code, VersionTransition.to_code)
    if app_id:
        stmt = stmt.where(VersionTransition.app_id == app_id)
    if platform:
        stmt = stmt.where(VersionTransition.platform == platform)
    if not include_inactive:
        stmt = stmt.where(VersionTransition.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


def _edge_hops(edge: VersionTransition) -> list[int]:
    if edge.mandatory_intermediate_code is not None:
        return [edge.mandatory_intermediate_code, edge.to_code]
    return [edge.to_code]


def _build_adjacency(edges: list[VersionTransition]) -> dict[int, list[tuple[int, list[int]]]]:
    """
    Map each source code to its `(to_code, hops)` legs, ordered by `to_code`.

    An edge `X -> T` via `I` also yields the leg `I -> T`, so a device parked on
    the intermediate can still finish the upgrade the edge was declared for. A
    declared edge between the same pair takes precedence over a derived leg.
    """
    legs: dict[int, dict[int, list[int]]] = {}
    for edge in edges:
        legs.setdefault(edge.from_code, {})[edge.to_code] = _edge_hops(edge)
    for edge in edges:
        intermediate = edge.mandatory_intermediate_code
        if intermediate is not None:
            legs.setdefault(intermediate, {}).setdefault(edge.to_code, [edge.to_code])
    return {source: sorted(targets.items()) for source, targets in legs.items()}


async def resolve_path(session: AsyncSession, app_id: str, platform: str, from_code: int, to_code: int) -> list[int]:
    """
    Resolve the upgrade path from `from_code` to `to_code` over declared edges.

    A direct edge wins. Otherwise a breadth-first search finds the path with the
    fewest edges (ties broken by ascending `to_code`), bounded by
    `settings.resolver_max_hops`. Each edge contributes its mandatory
    intermediate, if any, and the intermediate itself may continue to the
    edge's target. Raises NotFoundError when no declared route exists.
    """
    if from_code == to_code:
        return [from_code]

    result = await session.execute(
        select(VersionTransition)
        .where(
            VersionTransition.app_id == app_id,
            VersionTransition.platform == platform,
            VersionTransition.is_active.is_(True),
            VersionTransition.is_allowed.is_(True),
        )
        .order_by(VersionTransition.from_code, VersionTransition.to_code)
    )
    adjacency = _build_adjacency(list(result.scalars().all()))

    direct = next((hops for target, hops in adjacency.get(from_code, []) if target == to_code), None)
    if direct is not None:
        return [from_code, *direct]

    max_hops = max(1, int(settings.resolver_max_hops))
    queue: deque[tuple[int, list[int], int]] = deque([(from_code, [from_code], 0)])
    visited = {from_code}
    while queue:
        node, path, depth = queue.popleft()
        if depth >= max_hops:
            continue
        for target, hops in adjacency.get(node, []):
            if target in visited:
                continue
            candidate = [*path, *hops]
            if target == to_code:
                return candidate
            visited.add(target)
            queue.append((target, candidate, depth + 1))

    raise NotFoundError(f"No declared upgrade path from {from_code} to {to_code} for {app_id}/{platform}")
