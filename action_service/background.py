"""Tracked background tasks.

Side effects that should not hold up a response are submitted here instead of
being dispatched with a bare ``create_task``, so their outcome stays visible.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Dict, List, Optional

logger = logging.getLogger(__name__)

PENDING = "pending"
RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass
class TrackedTask:
    id: str
    name: str
    status: str = PENDING
    error: Optional[str] = None


class TaskTracker:
    def __init__(self, max_history: int = 1000):
        self._tasks: Dict[str, TrackedTask] = {}
        self._handles: Dict[str, asyncio.Task] = {}
        self._max_history = max_history

    def submit(self, name: str, coro: Awaitable) -> TrackedTask:
        tracked = TrackedTask(id=str(uuid.uuid4()), name=name)
        self._tasks[tracked.id] = tracked
        self._handles[tracked.id] = asyncio.ensure_future(self._run(tracked, coro))
        self._prune()
        return tracked

    async def _run(self, tracked: TrackedTask, coro: Awaitable):
        tracked.status = RUNNING
        try:
            await coro
            tracked.status = SUCCEEDED
        except asyncio.CancelledError:
            tracked.status = FAILED
            tracked.error = "cancelled"
            raise
        except Exception as e:
            tracked.status = FAILED
            tracked.error = str(e) or type(e).__name__
            logger.exception("background task %s (%s) failed", tracked.name, tracked.id)
        finally:
            self._handles.pop(tracked.id, None)

    def _prune(self):
        # keep unfinished tasks, drop the oldest finished ones
        overflow = len(self._tasks) - self._max_history
        if overflow <= 0:
            return
        for task_id in list(self._tasks):
            if overflow <= 0:
                break
            if self._tasks[task_id].status in (SUCCEEDED, FAILED):
                del self._tasks[task_id]
                overflow -= 1

    def get(self, task_id: str) -> Optional[TrackedTask]:
        return self._tasks.get(task_id)

    def tasks(self, status: Optional[str] = None) -> List[TrackedTask]:
        return [t for t in self._tasks.values() if status is None or t.status == status]

    async def drain(self, timeout: Optional[float] = None):
        """Wait for every submitted task to finish."""
        handles = list(self._handles.values())
        if handles:
            await asyncio.wait(handles, timeout=timeout)
