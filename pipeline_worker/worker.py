import asyncio
import logging
import signal
from typing import Optional
from uuid import UUID

from canvascast.commands.claim_job import claim_job
from canvascast.commands.heartbeat import heartbeat
from canvascast.db.session import Database
from canvascast.domain.errors import LeaseError
from canvascast.domain.models import JobLeaseDomain
from canvascast.pipeline.runner import PipelineRunner, RunOutcome
from canvascast.settings import settings

logger = logging.getLogger(__name__)

class PipelineWorker:
    """
    Claims QUEUED jobs from the database and drives them through the runner,
    renewing the lease in the background while a job runs.
    """

    def __init__(
        self,
        database: Database,
        runner: PipelineRunner,
        worker_id: str,
        poll_interval: Optional[float] = None,
        lease_duration: Optional[int] = None,
        heartbeat_interval: Optional[float] = None
    ):
        self.database = database
        self.runner = runner
        self.worker_id = worker_id
        self.poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL_SECONDS
        self.lease_duration = lease_duration or settings.DEFAULT_LEASE_TIMEOUT_SECONDS
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL_SECONDS
        self.running = False
        self._shutdown_event = asyncio.Event()

    async def run(self):
        self.running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Windows support
                pass

        logger.info(f"Worker {self.worker_id} started")

        try:
            while self.running:
                try:
                    lease = await self.poll_once()
                    if lease:
                        await self.process_job(lease)
                        continue
                    await self._idle(self.poll_interval)
                except Exception as e:
                    logger.exception("Error in worker loop for %s: %s", self.worker_id, e)
                    await self._idle(5.0)
        finally:
            logger.info(f"Worker {self.worker_id} stopped")

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self._shutdown_event.set()

    async def _idle(self, seconds: float):
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def poll_once(self) -> Optional[JobLeaseDomain]:
        async with self.database.session() as session, session.begin():
            claimed = await claim_job(session, self.worker_id, self.lease_duration)
            if claimed is None:
                return None
            job, lease = claimed
            return JobLeaseDomain(
                job_id=job.id,
                worker_id=lease.worker_id,
                token=lease.lease_token,
                expires_at=lease.expires_at
            )

    async def process_job(self, lease: JobLeaseDomain) -> RunOutcome:
        logger.info(f"Processing job {lease.job_id}")
        lease_lost = asyncio.Event()
        heartbeat_task = asyncio.create_task(self._heartbeat_loop(lease.job_id, lease.token, lease_lost))

        try:
            outcome = await self.runner.run(lease.job_id, lease.token, lease_lost=lease_lost)
            logger.info(f"Job {lease.job_id} finished: {outcome.state} ({outcome.job_status})")
            return outcome
        finally:
            heartbeat_task.cancel()
            try:
                await heartbeat_task
            except asyncio.CancelledError:
                pass

    async def _heartbeat_loop(self, job_id: UUID, lease_token: UUID, lease_lost: asyncio.Event):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                async with self.database.session() as session, session.begin():
                    await heartbeat(session, job_id, lease_token, extend_seconds=self.lease_duration)
                logger.debug(f"Heartbeat sent for {job_id}")
            except LeaseError as e:
                # The runner stops before its next stage; the reaper owns the job now
                logger.warning(f"Lease lost for job {job_id}: {e}")
                lease_lost.set()
                return
            except Exception as e:
                logger.warning(f"Heartbeat failed for {job_id}, retrying: {e}")
