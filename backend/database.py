import asyncio
import os
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from config import STORE_TIMEOUT_SECONDS

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+asyncpg://user:password@db:5432/main_db")

engine = create_async_engine(DATABASE_URL)
SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


class StoreTimeout(Exception):
    """A store operation exceeded STORE_TIMEOUT_SECONDS."""

    def __init__(self, op: str):
        super().__init__(f"store operation timed out: {op}")
        self.op = op


async def bounded(awaitable, op: str, timeout: float | None = None):
    """Await a store operation under the configured timeout.

    On timeout the operation counts as failed; it is not retried here.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout or STORE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        raise StoreTimeout(op) from None
