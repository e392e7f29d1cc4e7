import asyncio
import logging
from typing import Optional

from journeys.services.engine import JourneyEngine

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """
    Drives the engine's tick and maintenance from inside the API process.
    Used instead of Celery beat when EMBEDDED_SCHEDULER is enabled.
    """

    def __init__(self, engine: JourneyEngine, interval_seconds: float = 30, maintenance_every: int = 10):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.maintenance_every = max(1, maintenance_every)
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the scheduler loop"""
        if self.running:
            logger.warning("[SCHEDULER] Loop is already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info(f"=== SCHEDULER LOOP STARTED (every {self.interval_seconds}s) ===")

    async def stop(self):
        """Stop the scheduler loop"""
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("=== SCHEDULER LOOP STOPPED ===")

    async def run_once(self, iteration: int = 1):
        report = await self.engine.tick()
        if iteration % self.maintenance_every == 0:
            await self.engine.maintenance()
        return report

    async def _run(self):
        iteration = 0
        while self.running:
            iteration += 1
            try:
                await self.run_once(iteration)
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[SCHEDULER] Error in loop iteration {iteration}: {e}", exc_info=True)
                # Back off before retrying
                await asyncio.sleep(self.interval_seconds * 2)
