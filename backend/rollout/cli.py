import argparse
import asyncio
import json
from pathlib import Path
from typing import Any

from rollout.core.errors import ConflictError
from rollout.db.session import SessionLocal
from rollout.services import audit_chain, update_staleness_scheduler
from rollout.services import versions as version_service

CLI_ACTOR = "system:cli"


def _load_catalog(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise SystemExit(f"Input file not found: {path}")
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not data.get("app_id") or not data.get("platform"):
        raise SystemExit("Catalog file needs top-level app_id and platform")
    return data


async def seed_catalog(path: Path, *, actor_id: str = CLI_ACTOR) -> tuple[int, int]:
    """Load versions and transitions from a JSON file; entries that already exist are skipped."""
    data = _load_catalog(path)
    app_id, platform = data["app_id"], data["platform"]
    created_versions = created_transitions = 0
    async with SessionLocal() as session:
        for entry in data.get("versions", []):
            try:
                await version_service.create_version(
                    session,
                    app_id=app_id,
                    platform=platform,
                    version_name=entry["version_name"],
                    version_code=entry.get("version_code"),
                    checksum=entry.get("checksum"),
                    created_by=actor_id,
                )
            except ConflictError:
                continue
            created_versions += 1
        for entry in data.get("transitions", []):
            try:
                await version_service.create_transition(
                    session,
                    app_id=app_id,
                    platform=platform,
                    from_code=int(entry["from_code"]),
                    to_code=int(entry["to_code"]),
                    mandatory_intermediate_code=entry.get("mandatory_intermediate_code"),
                    is_allowed=bool(entry.get("is_allowed", True)),
                    created_by=actor_id,
                )
            except ConflictError:
                continue
            created_transitions += 1
    return created_versions, created_transitions


async def verify_audit(entity_type: str, entity_id: str) -> bool:
    async with SessionLocal() as session:
        result = await audit_chain.verify_chain(session, entity_type=entity_type, entity_id=entity_id)
    print(
        json.dumps(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "length": result.length,
                "head_hash": result.head_hash,
                "valid": result.valid,
                "hash_mismatches": result.hash_mismatches,
                "broken_links": result.broken_links,
                "sequence_gaps": result.sequence_gaps,
                "forks": result.forks,
            },
            indent=2,
        )
    )
    return result.valid


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fleet rollout maintenance commands")
    subparsers = parser.add_subparsers(dest="command")

    seed = subparsers.add_parser("seed-catalog", help="Load versions and transitions from a JSON file")
    seed.add_argument("path", help="Catalog JSON path")

    verify = subparsers.add_parser("verify-audit", help="Replay and verify one entity's audit chain")
    verify.add_argument("--entity-type", required=True)
    verify.add_argument("--entity-id", required=True)

    subparsers.add_parser("expire-stale", help="Fail in-progress updates that stopped reporting")
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "seed-catalog":
        versions_created, transitions_created = asyncio.run(seed_catalog(Path(args.path)))
        print(f"Seeded {versions_created} versions and {transitions_created} transitions")
        return True

    if args.command == "verify-audit":
        if not asyncio.run(verify_audit(args.entity_type, args.entity_id)):
            raise SystemExit(1)
        return True

    if args.command == "expire-stale":
        expired = asyncio.run(update_staleness_scheduler.run_once())
        print(f"Expired {expired} stale updates")
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
