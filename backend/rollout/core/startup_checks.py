from __future__ import annotations

from rollout.core.config import settings


def _is_production() -> bool:
    env = (settings.environment or "").strip().lower()
    return env in {"prod", "production"}


def _append_if(problems: list[str], *, condition: bool, message: str) -> None:
    if condition:
        problems.append(message)


def _validate_audit_settings(problems: list[str]) -> None:
    secret = (settings.audit_hash_secret or "").strip()
    _append_if(
        problems,
        condition=secret in {"", "dev-audit-secret"} or len(secret) < 32,
        message="AUDIT_HASH_SECRET must be set to a strong random value (not the dev default).",
    )
    _append_if(
        problems,
        condition=not 16 <= int(settings.audit_hash_length or 0) <= 64,
        message="AUDIT_HASH_LENGTH must be between 16 and 64 hex characters.",
    )


def _validate_admin_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=len((settings.admin_api_token or "").strip()) < 24,
        message="ADMIN_API_TOKEN must be configured in production.",
    )


def _validate_database_settings(problems: list[str]) -> None:
    _append_if(
        problems,
        condition=settings.database_url.startswith("sqlite"),
        message="DATABASE_URL must point at Postgres in production (SQLite has no advisory locks).",
    )


def validate_production_settings() -> None:
    """
    Fail fast on insecure defaults when running in production.

    The audit chain is only tamper-evident if its hash secret is private, so the
    dev secret is refused outright.
    """
    if not _is_production():
        return

    problems: list[str] = []
    _validate_audit_settings(problems)
    _validate_admin_settings(problems)
    _validate_database_settings(problems)

    if problems:
        raise RuntimeError("Production configuration checks failed:\n- " + "\n- ".join(problems))
