from typing import Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.commands import checkpoint as checkpoint_commands
from canvascast.db.session import Database
from canvascast.domain.models import CheckpointState
from canvascast.domain.stages import progress_for
from canvascast.domain.states import JobStatus
from canvascast.pipeline.context import PipelineContext


class CheckpointStore:
    """
    Durable per-job checkpoints.

    `save_checkpoint` accepts an open session so the runner can write the
    checkpoint in the same transaction that advances the job.
    """

    def __init__(self, database: Database):
        self.database = database

    async def save_checkpoint(
        self,
        ctx: PipelineContext,
        completed_step: JobStatus,
        session: Optional[AsyncSession] = None
    ) -> CheckpointState:
        artifacts = ctx.artifacts.to_checkpoint()
        progress = progress_for(completed_step)
        if session is not None:
            return await checkpoint_commands.save_checkpoint(session, ctx.job_id, completed_step, artifacts, progress)

        async with self.database.session() as session, session.begin():
            return await checkpoint_commands.save_checkpoint(session, ctx.job_id, completed_step, artifacts, progress)

    async def load_checkpoint(self, job_id: UUID) -> Optional[CheckpointState]:
        async with self.database.session() as session:
            return await checkpoint_commands.load_checkpoint(session, job_id)

    async def clear_checkpoint(self, job_id: UUID, session: Optional[AsyncSession] = None) -> None:
        if session is not None:
            await checkpoint_commands.clear_checkpoint(session, job_id)
            return
        async with self.database.session() as session, session.begin():
            await checkpoint_commands.clear_checkpoint(session, job_id)
