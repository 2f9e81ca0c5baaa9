import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

class Database:
    """
    Owns the async engine and session factory.

    Constructed explicitly and passed to whatever needs a session, with an
    explicit open/close lifecycle.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs: Any):
        self.url = url
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    async def open(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(
            self.url,
            echo=self.echo,
            pool_pre_ping=True,
            **self.engine_kwargs,
        )
        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database engine opened (%s)", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("Database engine closed")

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        return self._sessionmaker()

    async def create_all(self) -> None:
        """Creates every table directly. Migrations are the normal path; this is for tests and local runs."""
        # models must be imported so their tables are registered on Base.metadata
        from canvascast.db import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
