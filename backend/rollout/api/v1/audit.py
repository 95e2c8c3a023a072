from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rollout.db.session import get_session
from rollout.schemas.audit import AuditEventRead, ChainVerificationRead
from rollout.services import audit_chain

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/events", response_model=list[AuditEventRead])
async def list_audit_events(
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
):
    return await audit_chain.query(session, entity_type=entity_type, entity_id=entity_id, limit=limit)


@router.get("/verify", response_model=ChainVerificationRead)
async def verify_audit_chain(
    entity_type: str = Query(min_length=1),
    entity_id: str = Query(min_length=1),
    session: AsyncSession = Depends(get_session),
):
    result = await audit_chain.verify_chain(session, entity_type=entity_type, entity_id=entity_id)
    return ChainVerificationRead.model_validate(result)
