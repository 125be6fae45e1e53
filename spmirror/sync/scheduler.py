"""Bounded-concurrency execution of sync tasks."""

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..exceptions import SyncAbortedError
from ..log import SyncLogger
from ..models import RemoteItem
from ..utils import DEFAULT_WORKERS

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    """Kinds of scheduled work."""

    DOWNLOAD = "download"
    """Download a file to a local path"""

    RECURSE = "recurse"
    """List a folder and schedule its children"""


@dataclass(frozen=True)
class SyncTask:
    """A unit of work, independent of every other task."""

    kind: TaskKind
    item: RemoteItem
    local_path: Path

    @property
    def label(self) -> str:
        return self.item.server_relative_url or self.item.name


TaskWorker = Callable[[SyncTask], Iterable[SyncTask]]


class DownloadScheduler:
    """Runs sync tasks on a thread pool with a hard cap on in-flight work.

    A single dispatcher loop (the caller's thread) owns the worklist. It
    submits tasks while fewer than ``limit`` are running and otherwise blocks
    until one completes. Workers return follow-up tasks (subfolders, files)
    instead of submitting them, so nested recursion is bounded by the same
    global cap and a worker never waits on a slot.

    A failing task is logged and dropped; siblings are unaffected and
    nothing is retried within the run.

    Examples:
        >>> scheduler = DownloadScheduler(limit=10, log=log)
        >>> scheduler.run(root_tasks, engine.execute_task)
    """

    def __init__(
        self, limit: int = DEFAULT_WORKERS, log: Optional[SyncLogger] = None
    ):
        """Initialize the scheduler.

        Args:
            limit: Maximum number of tasks executing at the same time
            log: Run log for task failures
        """
        if limit < 1:
            raise ValueError("Concurrency limit must be at least 1")
        self.limit = limit
        self.log = log

        self._lock = threading.Lock()
        self._in_flight = 0
        self.peak_in_flight = 0
        self.completed = 0
        self.failed = 0

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def _execute(self, worker: TaskWorker, task: SyncTask) -> list[SyncTask]:
        """Run one task in a worker thread and isolate its failures."""
        with self._lock:
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

        start = time.time()
        try:
            follow_ups = list(worker(task) or [])
            with self._lock:
                self.completed += 1
            logger.debug(
                "Completed %s %s in %.2fs",
                task.kind.value,
                task.label,
                time.time() - start,
            )
            return follow_ups
        except SyncAbortedError:
            raise
        except Exception as e:
            with self._lock:
                self.failed += 1
            if self.log is not None:
                self.log.error(f"Failed to {task.kind.value} {task.label}: {e}")
            else:
                logger.error(f"Failed to {task.kind.value} {task.label}: {e}")
            return []
        finally:
            with self._lock:
                self._in_flight -= 1

    def run(self, tasks: Iterable[SyncTask], worker: TaskWorker) -> None:
        """Execute tasks and everything they spawn until the worklist is empty.

        Args:
            tasks: Initial tasks
            worker: Callable executing one task and returning follow-up tasks

        Raises:
            SyncAbortedError: If a worker aborts the run; remaining queued
                tasks are dropped
        """
        pending: deque[SyncTask] = deque(tasks)
        if not pending:
            return

        running: set[Future] = set()

        with ThreadPoolExecutor(
            max_workers=self.limit, thread_name_prefix="spmirror"
        ) as executor:
            try:
                while pending or running:
                    while pending and len(running) < self.limit:
                        task = pending.popleft()
                        running.add(executor.submit(self._execute, worker, task))

                    done, running = wait(running, return_when=FIRST_COMPLETED)
                    for future in done:
                        pending.extend(future.result())
            except BaseException:
                pending.clear()
                for future in running:
                    future.cancel()
                raise
