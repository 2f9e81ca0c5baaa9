from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# Fixed 64-bit key for the scheduler leader lock.
LEADER_LOCK_KEY = 71942215

async def try_advisory_lock(session: AsyncSession, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired, False otherwise.

    Session-level locks are released automatically when the session ends.
    Other databases have no advisory locks; a single instance is assumed there.
    """
    if session.get_bind().dialect.name != "postgresql":
        return True

    result = await session.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    return result.scalar() is True
