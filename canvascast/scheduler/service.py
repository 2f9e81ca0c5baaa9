import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from canvascast.api.v1.metrics import LEADER_STATUS
from canvascast.db.session import Database
from canvascast.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from canvascast.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)

class SchedulerService:
    def __init__(self, database: Database, interval: int = 10):
        self.database = database
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler service stopped.")

    async def tick(self, session: AsyncSession) -> None:
        # Session-level lock: holding the session keeps leadership between ticks
        is_leader = await try_advisory_lock(session)

        if is_leader:
            if not self._is_leader:
                logger.info("Acquired leadership. Starting reaper.")
                self._is_leader = True
            recovered = await run_leader_tasks(session)
            if recovered:
                logger.info(f"Reaper recovered {recovered} jobs with expired leases")
        elif self._is_leader:
            logger.info("Lost leadership. Stopping reaper.")
            self._is_leader = False

        LEADER_STATUS.set(1 if self._is_leader else 0)

        # Gauges are refreshed on all instances
        await run_metrics_tasks(session)

    async def _loop(self):
        session: Optional[AsyncSession] = None
        while self._running:
            try:
                if not session:
                    session = self.database.session()
                await self.tick(session)
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._is_leader = False
                LEADER_STATUS.set(0)

                # If DB error, close session and retry to reconnect
                if session:
                    await session.close()
                    session = None

            await asyncio.sleep(self.interval)

        if session:
            await session.close()
