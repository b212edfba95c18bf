"""
This module contains the database setup and session management for the booking service.
"""
from typing import Any, AsyncGenerator

from alchemical.aio import Alchemical
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DATABASE_URL


def connect(url: str, timeout: float = 30) -> Alchemical:
    """
    Builds an `Alchemical` instance for `url`.

    SQLite waits up to `timeout` seconds for the write lock before giving up.
    """
    engine_options = {"connect_args": {"timeout": timeout}} if url.startswith("sqlite") else {}
    return Alchemical(url, engine_options=engine_options, session_options={"expire_on_commit": False})


db = connect(DATABASE_URL)


async def get_db_session() -> AsyncGenerator[AsyncSession | Any, Any]:
    """
    Dependency that provides a database session.
    """
    async with db.Session() as session:
        yield session


async def create_db_and_tables():
    """
    Creates the database and tables.
    """
    await db.create_all()
