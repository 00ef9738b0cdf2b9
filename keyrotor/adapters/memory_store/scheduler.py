"""Memory Scheduler Implementation.

Holds deferred cleanup tasks in process memory. Used in dev mode and tests;
tasks do not survive a restart, which the grace period reaper covers.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List

from keyrotor.domain.interfaces import CleanupTask, Scheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTask:
    task: CleanupTask
    run_at: datetime


class MemoryScheduler(Scheduler):
    def __init__(self):
        self._tasks: List[ScheduledTask] = []
        self._lock = threading.Lock()

    def schedule(self, task: CleanupTask, run_at: datetime) -> None:
        with self._lock:
            self._tasks.append(ScheduledTask(task, run_at))
        logger.debug(f"Scheduled grace period cleanup for {task.key} at {run_at.isoformat()}")

    @property
    def pending(self) -> List[ScheduledTask]:
        with self._lock:
            return list(self._tasks)

    def pop_due(self, now: datetime) -> List[CleanupTask]:
        with self._lock:
            due = [t for t in self._tasks if t.run_at <= now]
            self._tasks = [t for t in self._tasks if t.run_at > now]
        return [t.task for t in due]

    def run_due(self, now: datetime, handler: Callable[[CleanupTask], object]) -> int:
        """Hand every due task to ``handler``; returns how many ran."""
        tasks = self.pop_due(now)
        for task in tasks:
            handler(task)
        return len(tasks)
