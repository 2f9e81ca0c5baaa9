from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    async with request.app.state.database.session() as session:
        yield session

# Dependency for DB session
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
