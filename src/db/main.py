from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config import Config

# Registers the race tables on SQLModel.metadata
import src.matchmaking.models.race  # noqa: F401

async_engine = create_async_engine(url=Config.DATABASE_URL)

async_session = async_sessionmaker(
    bind=async_engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """
    Initializes the database.
    """
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency to get an async session for the database.
    """
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """
    Dependency for handlers that open their own sessions, like websockets.
    """
    return async_session
