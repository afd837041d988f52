from typing import AsyncGenerator
from fastapi import Depends
from sqlalchemy.ext.asyncio import  AsyncSession, async_sessionmaker
from stockledger.db.connection import async_session


async def get_session_factory() -> AsyncGenerator[async_sessionmaker,None]:
    yield async_session


async def get_session(session_factory: async_sessionmaker = Depends(get_session_factory)) -> AsyncGenerator[AsyncSession,None]:
    async with session_factory() as session:  # closes the session at the end of the with block
        yield session
