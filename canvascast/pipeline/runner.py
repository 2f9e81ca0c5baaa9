import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum, auto
from typing import Optional
from uuid import UUID

from canvascast.api.v1.metrics import STEP_DURATION, STEP_FAILURES
from canvascast.commands.advance_job import advance_job
from canvascast.commands.assets import upsert_asset
from canvascast.commands.cancel_job import finalize_cancellation
from canvascast.commands.complete_job import complete_job
from canvascast.commands.create_job import list_project_inputs
from canvascast.commands.credits import reserve_credits
from canvascast.commands.fail_job import fail_job
from canvascast.commands.heartbeat import get_active_lease
from canvascast.db.models import Job, Project
from canvascast.db.session import Database
from canvascast.domain.errors import InsufficientCreditsError, InvalidJobStateError, JobNotFoundError, LeaseError
from canvascast.domain.recovery import can_retry_from_checkpoint, get_next_step_from_checkpoint
from canvascast.domain.refund import calculate_final_credits
from canvascast.domain.stages import first_stage
from canvascast.domain.states import CreditState, ErrorCode, JobEvent, JobStatus, TERMINAL_STATUSES
from canvascast.pipeline.checkpoint import CheckpointStore
from canvascast.pipeline.context import InputRecord, JobRecord, PipelineContext, ProjectRecord
from canvascast.pipeline.definitions import PipelineStep, steps_from
from canvascast.pipeline.services import ObjectStorage, PipelineServices
from canvascast.pipeline.types import ArtifactBag, AssetEffect, StepError, StepResult, UploadEffect
from canvascast.settings import settings

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    COMPLETED = auto()
    FAILED = auto()
    CANCELED = auto()
    LEASE_LOST = auto()


@dataclass(frozen=True)
class RunOutcome:
    state: RunState
    job_status: Optional[JobStatus] = None
    error: Optional[StepError] = None


class PipelineRunner:
    """
    Drives one claimed job through the pipeline stages.

    Each completed stage commits its side effects, then advances the job and
    saves the checkpoint in a single transaction. Failures go through
    `fail_job`, which applies the refund policy and retries or parks the job.
    """

    def __init__(
        self,
        database: Database,
        services: PipelineServices,
        storage: ObjectStorage,
        checkpoints: Optional[CheckpointStore] = None,
        *,
        step_timeout_seconds: Optional[float] = None,
        checkpoint_threshold: Optional[JobStatus] = None
    ):
        self.database = database
        self.services = services
        self.storage = storage
        self.checkpoints = checkpoints or CheckpointStore(database)
        self.step_timeout_seconds = step_timeout_seconds or settings.STEP_TIMEOUT_SECONDS
        self.checkpoint_threshold = checkpoint_threshold or JobStatus(settings.CHECKPOINT_THRESHOLD_STEP)

    async def run(self, job_id: UUID, lease_token: UUID, lease_lost: Optional[asyncio.Event] = None) -> RunOutcome:
        async with self.database.session() as session:
            job = await session.get(Job, job_id)
            if not job:
                raise JobNotFoundError(job_id)
            project = await session.get(Project, job.project_id)
            inputs = await list_project_inputs(session, job.project_id) if project else []
            job_record = JobRecord.model_validate(job)
            credit_state = job.credit_state
            reserved = job.cost_credits_reserved

        if project is None:
            return await self._fail(
                job_id, lease_token,
                StepError(ErrorCode.UNKNOWN, f"Project {job_record.project_id} not found", retryable=False),
                first_stage()
            )

        # An earlier failed attempt may have refunded the reservation
        if reserved > 0 and credit_state == CreditState.REFUNDED:
            outcome = await self._reserve_again(job_id, lease_token)
            if outcome is not None:
                return outcome

        checkpoint = await self.checkpoints.load_checkpoint(job_id)
        if can_retry_from_checkpoint(checkpoint, self.checkpoint_threshold):
            artifacts = ArtifactBag.model_validate(checkpoint.artifacts)
            start = get_next_step_from_checkpoint(checkpoint)
            logger.info(f"Resuming job {job_id} after {checkpoint.last_completed_step}, next step {start}")
            try:
                await self._restore_status(job_id, lease_token, checkpoint.last_completed_step, checkpoint.progress)
            except (LeaseError, InvalidJobStateError) as e:
                logger.warning(f"Could not resume job {job_id}: {e}")
                return RunOutcome(RunState.LEASE_LOST)
        else:
            artifacts = ArtifactBag()
            start = first_stage()

        ctx = PipelineContext(
            job=job_record,
            project=ProjectRecord.model_validate(project),
            services=self.services,
            storage=self.storage,
            inputs=[InputRecord.model_validate(i) for i in inputs],
            artifacts=artifacts,
        )

        for step in steps_from(start):
            if lease_lost is not None and lease_lost.is_set():
                logger.warning(f"Lease lost for job {job_id} before {step.name}; stopping without writes")
                return RunOutcome(RunState.LEASE_LOST)

            canceled = await self._cancel_if_requested(job_id, lease_token)
            if canceled is not None:
                return canceled

            result = await self._execute(step, ctx)
            if not result.ok:
                STEP_FAILURES.labels(step=step.name, code=result.error.code).inc()
                return await self._fail(job_id, lease_token, result.error, step.name)

            try:
                await self._upload(result.effects)
            except Exception as e:
                logger.exception(f"Persisting outputs of {step.name} failed for job {job_id}")
                return await self._fail(
                    job_id, lease_token,
                    StepError(step.error_code, f"Failed to store {step.name} outputs: {e}"),
                    step.name
                )

            ctx = ctx.with_artifacts(ctx.artifacts.merge(result.patch))
            try:
                await self._commit_step(ctx, step, lease_token, result)
            except (LeaseError, InvalidJobStateError) as e:
                logger.warning(f"Could not record {step.name} for job {job_id}: {e}")
                return RunOutcome(RunState.LEASE_LOST)

        return await self._complete(ctx, lease_token)

    async def _execute(self, step: PipelineStep, ctx: PipelineContext) -> StepResult:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(step.execute(ctx), timeout=self.step_timeout_seconds)
        except asyncio.TimeoutError:
            result = StepResult.failure(step.error_code, f"{step.name} timed out after {self.step_timeout_seconds}s")
        except Exception as e:
            logger.exception(f"Unexpected error in {step.name} for job {ctx.job_id}")
            result = StepResult.failure(ErrorCode.UNKNOWN, f"{type(e).__name__}: {e}")
        STEP_DURATION.labels(step=step.name).observe(time.monotonic() - started)
        return result

    async def _upload(self, effects: list) -> None:
        for effect in effects:
            if isinstance(effect, UploadEffect):
                await self.storage.upload(effect.path, effect.data, effect.content_type)

    async def _commit_step(self, ctx: PipelineContext, step: PipelineStep, lease_token: UUID, result: StepResult) -> None:
        async with self.database.session() as session, session.begin():
            for effect in result.effects:
                if isinstance(effect, AssetEffect):
                    await upsert_asset(session, ctx.job_id, ctx.project_id, ctx.user_id, effect.kind, effect.path, effect.meta)
            await advance_job(session, ctx.job_id, lease_token, step.name, step.progress_end)
            await self.checkpoints.save_checkpoint(ctx, step.name, session=session)
        logger.info(f"Job {ctx.job_id} completed {step.name} ({step.progress_end}%)")

    async def _complete(self, ctx: PipelineContext, lease_token: UUID) -> RunOutcome:
        final_credits = calculate_final_credits(ctx.artifacts.narration_duration_ms)
        try:
            async with self.database.session() as session, session.begin():
                job = await complete_job(
                    session, ctx.job_id, lease_token, final_credits,
                    timeline_path=ctx.artifacts.timeline_path
                )
                await self.checkpoints.clear_checkpoint(ctx.job_id, session=session)
                status = JobStatus(job.status)
        except (LeaseError, InvalidJobStateError) as e:
            logger.warning(f"Could not complete job {ctx.job_id}: {e}")
            return RunOutcome(RunState.LEASE_LOST)
        logger.info(f"Job {ctx.job_id} is READY ({final_credits} credits)")
        return RunOutcome(RunState.COMPLETED, status)

    async def _fail(self, job_id: UUID, lease_token: UUID, error: StepError, failed_step: JobStatus) -> RunOutcome:
        try:
            async with self.database.session() as session, session.begin():
                job = await fail_job(
                    session, job_id, error.code, error.message,
                    failed_step=failed_step, lease_token=lease_token, retryable=error.retryable
                )
                status = JobStatus(job.status)
        except LeaseError as e:
            logger.warning(f"Could not record failure of job {job_id}: {e}")
            return RunOutcome(RunState.LEASE_LOST, error=error)
        if status == JobStatus.CANCELED:
            return RunOutcome(RunState.CANCELED, status, error)
        return RunOutcome(RunState.FAILED, status, error)

    async def _reserve_again(self, job_id: UUID, lease_token: UUID) -> Optional[RunOutcome]:
        try:
            async with self.database.session() as session, session.begin():
                job = await session.get(Job, job_id)
                await reserve_credits(session, job)
        except InsufficientCreditsError as e:
            logger.warning(f"Job {job_id} cannot be retried: {e}")
            return await self._fail(
                job_id, lease_token,
                StepError(ErrorCode.CREDITS, str(e), retryable=False),
                first_stage()
            )
        return None

    async def _cancel_if_requested(self, job_id: UUID, lease_token: UUID) -> Optional[RunOutcome]:
        async with self.database.session() as session, session.begin():
            job = await session.get(Job, job_id)
            if job is None or JobStatus(job.status) in TERMINAL_STATUSES:
                return RunOutcome(RunState.LEASE_LOST, JobStatus(job.status) if job else None)
            if job.cancel_requested_at is None:
                return None
            try:
                await get_active_lease(session, job_id, lease_token)
            except LeaseError:
                return RunOutcome(RunState.LEASE_LOST)
            await finalize_cancellation(session, job)
            return RunOutcome(RunState.CANCELED, JobStatus.CANCELED)

    async def _restore_status(self, job_id: UUID, lease_token: UUID, step: JobStatus, progress: int) -> None:
        """A resumed job re-enters the checkpointed stage so status and progress agree again."""
        async with self.database.session() as session, session.begin():
            await advance_job(session, job_id, lease_token, step, progress, event=JobEvent.RESUMED)
