from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.db.models import Asset

async def upsert_asset(
    session: AsyncSession,
    job_id: UUID,
    project_id: UUID,
    user_id: str,
    kind: str,
    path: str,
    meta: Optional[dict[str, Any]] = None
) -> Asset:
    """
    Records asset metadata for a stored file.
    (job_id, path) is unique, so replaying a step after a crash updates the existing row.
    """
    stmt = select(Asset).where(Asset.job_id == job_id, Asset.path == path)
    asset = (await session.execute(stmt)).scalar_one_or_none()

    if asset:
        asset.kind = kind
        asset.meta = meta or {}
    else:
        asset = Asset(
            job_id=job_id,
            project_id=project_id,
            user_id=user_id,
            kind=kind,
            path=path,
            meta=meta or {}
        )
        session.add(asset)

    await session.flush()
    return asset

async def list_job_assets(session: AsyncSession, job_id: UUID) -> list[Asset]:
    stmt = select(Asset).where(Asset.job_id == job_id).order_by(Asset.created_at.asc(), Asset.path.asc())
    return list((await session.execute(stmt)).scalars().all())
