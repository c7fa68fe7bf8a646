from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

Base = declarative_base()


def normalize_url(url: str) -> str:
    # Render: postgres://... yoki postgresql://...
    # Bizga kerak: postgresql+asyncpg://...
    url = (url or "").strip()
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine(url: str):
    url = normalize_url(url)
    if not url:
        raise RuntimeError("DATABASE_URL env topilmadi")
    kwargs = {"echo": False}
    if url.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_all(engine):
    # models must be imported so that their tables are registered
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
