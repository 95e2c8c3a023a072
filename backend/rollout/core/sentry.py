from __future__ import annotations

from typing import Any

from rollout.core.config import settings

_SCRUBBED_HEADERS = {"x-admin-token", "authorization", "cookie"}


def _scrub_event(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any]:
    """Drop the shared admin token before an event leaves the process."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for key in list(headers):
            if key.lower() in _SCRUBBED_HEADERS:
                headers[key] = "[scrubbed]"
    return event


def init_sentry() -> None:
    if not settings.sentry_dsn:
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[FastApiIntegration(), SqlalchemyIntegration()],
        before_send=_scrub_event,
        attach_stacktrace=True,
        send_default_pii=False,
    )
