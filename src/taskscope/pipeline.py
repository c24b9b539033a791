"""Wires snapshot source, rolling log store and subscription bus together."""

import asyncio
import logging
from collections.abc import Callable

from taskscope.bus import Callback, Subscription, SubscriptionBus
from taskscope.errors import StorageFailure
from taskscope.models import ProcessSnapshot, RollingLog, parse_snapshot
from taskscope.monitor import SnapshotSource
from taskscope.scheduler import PeriodicTask, Scheduler
from taskscope.telemetry import RollingLogStore, format_snapshot

logger = logging.getLogger(__name__)


class TelemetryPipeline:
    """
    Periodic capture, compaction and push fan-out over shared persisted state.

    Capture and compaction run as independent periodic tasks and both
    read-modify-write the same stored log without coordination; the last
    writer wins. Pushed updates and exits are published immediately, while
    persistence still only happens through capture().
    """

    def __init__(
        self,
        source: SnapshotSource,
        store: RollingLogStore,
        scheduler: Scheduler,
        bus: SubscriptionBus | None = None,
        capture_interval: float = 2.0,
        compaction_interval: float = 120.0,
    ) -> None:
        self.source = source
        self.store = store
        self.scheduler = scheduler
        self.bus = bus or SubscriptionBus()
        self._capture_interval = capture_interval
        self._compaction_interval = compaction_interval
        self._latest: ProcessSnapshot = {}
        self._tasks: list[PeriodicTask] = []
        self._unlisten: list[Callable[[], None]] = []
        self._started = False

    @property
    def latest_snapshot(self) -> ProcessSnapshot:
        return dict(self._latest)

    @property
    def is_started(self) -> bool:
        return self._started

    def subscribe(self, callback: Callback) -> Subscription:
        return self.bus.subscribe(callback)

    def start(self) -> None:
        """Load the initial snapshot, register timers and push listeners."""
        if self._started:
            return
        self._started = True

        try:
            self._latest = parse_snapshot(self.source.get_snapshot())
        except Exception:
            logger.exception("Error getting initial process info")
            self._latest = {}

        self._tasks = [
            self.scheduler.every(self._capture_interval, self.capture, name="capture"),
            self.scheduler.every(self._compaction_interval, self.compact, name="compaction"),
        ]
        self._unlisten = [
            self.source.on_update(
                lambda snapshot: self.scheduler.inject(self.handle_update, snapshot)
            ),
            self.source.on_exit(lambda pid: self.scheduler.inject(self.handle_exit, pid)),
        ]
        self.capture()

    def stop(self) -> None:
        """Cancel timers and push listeners. The bus stays usable."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        for unlisten in self._unlisten:
            unlisten()
        self._unlisten = []
        self._started = False

    def capture(self) -> RollingLog | None:
        """Persist the latest snapshot and publish the stored log."""
        try:
            log = self.store.capture(self._latest)
        except StorageFailure:
            return None
        self.bus.publish(log)
        return log

    def compact(self) -> RollingLog:
        return self.store.compact()

    def handle_update(self, snapshot: ProcessSnapshot) -> None:
        """Replace the latest snapshot and publish it straight away."""
        self._latest = parse_snapshot(snapshot)
        self.bus.publish(RollingLog(rows=tuple(format_snapshot(self._latest))))

    def handle_exit(self, pid: int) -> None:
        """Drop an exited process and publish the remaining rows."""
        if pid not in self._latest:
            return
        # Replace rather than mutate: capture() may be iterating the old dict
        self._latest = {k: v for k, v in self._latest.items() if k != pid}
        self.bus.publish(RollingLog(rows=tuple(format_snapshot(self._latest))))

    def latest_log(self) -> RollingLog:
        """The log as currently persisted."""
        return self.store.read()

    def refresh(self) -> RollingLog:
        """
        Capture a fresh snapshot directly from the source.

        Falls back to the stored log when the source or the store fails.
        """
        try:
            snapshot = self.source.get_snapshot()
        except Exception:
            logger.exception("Error getting process info")
            return self.store.read()
        return self._store_fresh(snapshot)

    async def refresh_async(self) -> RollingLog:
        """refresh() with the source read moved to a worker thread."""
        try:
            snapshot = await asyncio.to_thread(self.source.get_snapshot)
        except Exception:
            logger.exception("Error getting process info")
            return self.store.read()
        return self._store_fresh(snapshot)

    def _store_fresh(self, snapshot: ProcessSnapshot) -> RollingLog:
        self._latest = parse_snapshot(snapshot)
        log = self.capture()
        return log if log is not None else self.store.read()
