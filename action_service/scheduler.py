import asyncio
import logging
from typing import Optional

from .config import get_settings

logger = logging.getLogger(__name__)


class Ticker:
    """Drives the worker and the workflow engine on a fixed interval.

    Each iteration runs at most one execution and one workflow tick.
    """

    def __init__(self, worker, workflows, interval: Optional[float] = None, stop_event: Optional[asyncio.Event] = None):
        self._worker = worker
        self._workflows = workflows
        self._interval = interval if interval is not None else get_settings().TICK_INTERVAL_SECONDS
        self._stop_event = stop_event or asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.iterations = 0

    async def run_iteration(self):
        try:
            result = await self._worker.run_once()
            if result.ran:
                logger.debug("ticker ran execution %s ok=%s", result.execution_id, result.ok)
        except Exception:
            logger.exception("ticker worker iteration failed")
        try:
            await self._workflows.tick_next()
        except Exception:
            logger.exception("ticker workflow iteration failed")
        self.iterations += 1

    async def run(self):
        while not self._stop_event.is_set():
            await self.run_iteration()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
        logger.info("ticker stopped after %d iterations", self.iterations)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
