"""Single dispatcher for periodic jobs and pushed events."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """A job run every `interval` seconds on the scheduler's event loop."""

    def __init__(self, scheduler: "Scheduler", name: str, interval: float, job: Callable[[], Any]) -> None:
        self.name = name
        self.interval = interval
        self._scheduler = scheduler
        self._job = job
        self._task: asyncio.Task | None = None
        self._cancelled = False
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._cancelled or self.is_running:
            return
        self._task = loop.create_task(self._run(), name=f"periodic:{self.name}")

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            try:
                result = self._job()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic job %s failed", self.name)
            self.runs += 1

    def cancel(self) -> None:
        """Stop the task. It will not run again."""
        self._cancelled = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._scheduler._forget(self)


class Scheduler:
    """
    Cooperative scheduler over one asyncio event loop.

    Periodic jobs and injected events all run on the loop thread, so they
    never mutate shared state in parallel. Tasks registered before start()
    begin running once start() is called from within the loop.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: list[PeriodicTask] = []

    @property
    def is_running(self) -> bool:
        return self._loop is not None

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Bind to the running (or given) loop and start pending tasks."""
        if self._loop is not None:
            return
        self._loop = loop or asyncio.get_running_loop()
        for task in self._tasks:
            task._start(self._loop)

    def stop(self) -> None:
        """Cancel every periodic task and unbind from the loop."""
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._loop = None

    def every(self, interval: float, job: Callable[[], Any], name: str | None = None) -> PeriodicTask:
        """Schedule job every interval seconds. Returns a cancellable task."""
        if interval <= 0:
            raise ValueError("interval must be positive")
        task = PeriodicTask(self, name or getattr(job, "__name__", "job"), interval, job)
        self._tasks.append(task)
        if self._loop is not None:
            task._start(self._loop)
        return task

    def inject(self, job: Callable[..., Any], *args: Any) -> None:
        """
        Run job(*args) on the loop thread as soon as possible.

        Safe to call from any thread. Before start(), the job runs inline.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            self._dispatch(job, args)
            return
        loop.call_soon_threadsafe(self._dispatch, job, args)

    def _dispatch(self, job: Callable[..., Any], args: tuple) -> None:
        try:
            job(*args)
        except Exception:
            logger.exception("Event handler %s failed", getattr(job, "__name__", job))

    def _forget(self, task: PeriodicTask) -> None:
        if task in self._tasks:
            self._tasks.remove(task)
