from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from app.settings import settings

DATABASE_URL = settings.database_url


def _engine_kwargs(url: str) -> dict:
    # sqlite connections must not be shared between event loops
    if url.startswith("sqlite"):
        return {"poolclass": NullPool}
    return {}


data_engine = create_async_engine(DATABASE_URL, future=True, **_engine_kwargs(DATABASE_URL))
AsyncSessionMaker = async_sessionmaker(data_engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionMaker() as session:
        yield session


async def init_db() -> None:
    # register mapped tables before create_all
    import app.models  # noqa: F401

    async with data_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
