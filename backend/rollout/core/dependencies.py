import hmac

from fastapi import Depends, Header, HTTPException, status

from rollout.core.config import settings


async def require_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    expected = (settings.admin_api_token or "").strip()
    if not expected:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


async def require_actor(
    x_actor_id: str | None = Header(default=None),
    _: None = Depends(require_admin_token),
) -> str:
    actor = (x_actor_id or "").strip()
    if not actor:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header required")
    if len(actor) > 128:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Actor-Id is too long")
    return actor
