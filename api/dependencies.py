"""
FastAPI dependencies
"""

from typing import AsyncIterator
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import get_session


async def get_db() -> AsyncIterator[AsyncSession]:
    """Database session dependency"""
    async for session in get_session():
        yield session
