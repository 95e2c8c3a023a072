from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from rollout.core.config import settings

_is_sqlite = settings.database_url.startswith("sqlite")
engine_options = {"connect_args": {"check_same_thread": False}} if _is_sqlite else {"pool_pre_ping": True}

engine = create_async_engine(settings.database_url, future=True, echo=False, **engine_options)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def get_session() -> AsyncSession:
    """Request-scoped session; services commit their own units of work."""
    async with SessionLocal() as session:
        yield session
