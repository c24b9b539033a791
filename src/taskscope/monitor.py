"""Host process snapshot source for taskscope."""

import logging
import os
import threading
from collections.abc import Callable
from typing import Protocol

import psutil

from taskscope.models import ProcessRecord, ProcessSnapshot, ProcessTask, ProcessType

logger = logging.getLogger(__name__)

UpdateListener = Callable[[ProcessSnapshot], None]
ExitListener = Callable[[int], None]

BROWSER_NAMES = ("chrome", "chromium", "msedge", "brave", "opera", "vivaldi")

# Chromium child processes advertise their role with --type=<role>
CHILD_TYPES = {
    "renderer": ProcessType.RENDERER,
    "gpu-process": ProcessType.GPU,
    "utility": ProcessType.UTILITY,
    "ppapi": ProcessType.PLUGIN,
    "plugin": ProcessType.PLUGIN,
    "extension": ProcessType.EXTENSION,
    "service-worker": ProcessType.SERVICE_WORKER,
    "worker": ProcessType.WORKER,
    "notification": ProcessType.NOTIFICATION,
}


class SnapshotSource(Protocol):
    """Interface of a process snapshot provider."""

    def get_snapshot(self) -> ProcessSnapshot: ...

    def on_update(self, listener: UpdateListener) -> Callable[[], None]: ...

    def on_exit(self, listener: ExitListener) -> Callable[[], None]: ...

    def terminate(self, pid: int) -> bool: ...


def classify_process(name: str, cmdline: list[str]) -> ProcessType:
    """Guess the process type from its name and command line."""
    for arg in cmdline:
        if arg.startswith("--type="):
            role = arg.split("=", 1)[1]
            if role == "renderer" and "--extension-process" in cmdline:
                return ProcessType.EXTENSION
            return CHILD_TYPES.get(role, ProcessType.OTHER)

    lowered = (name or "").lower()
    if any(browser in lowered for browser in BROWSER_NAMES):
        return ProcessType.BROWSER
    return ProcessType.OTHER


class HostProcessSource:
    """
    Snapshot source that enumerates host processes with psutil.

    Runs in a separate daemon thread. Each poll pushes the full snapshot to
    update listeners and one exit event per pid that disappeared since the
    previous poll. Listeners run on the polling thread; hand them to a
    Scheduler.inject() to move the work onto the event loop.
    """

    def __init__(self, poll_rate: float = 2.0) -> None:
        """
        Initialize the HostProcessSource.

        Args:
            poll_rate: How often to poll the system (in seconds). Default 2.0s.
        """
        self._poll_rate = poll_rate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._update_listeners: list[UpdateListener] = []
        self._exit_listeners: list[ExitListener] = []
        self._known_pids: set[int] = set()
        self._lock = threading.Lock()

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the polling thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def on_update(self, listener: UpdateListener) -> Callable[[], None]:
        """Register a snapshot listener. Returns a function that removes it."""
        with self._lock:
            self._update_listeners.append(listener)
        return lambda: self._discard(self._update_listeners, listener)

    def on_exit(self, listener: ExitListener) -> Callable[[], None]:
        """Register a process-exit listener. Returns a function that removes it."""
        with self._lock:
            self._exit_listeners.append(listener)
        return lambda: self._discard(self._exit_listeners, listener)

    def _discard(self, listeners: list, listener: Callable) -> None:
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="HostProcessSource",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the polling thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _poll_loop(self) -> None:
        """Main polling loop running in the background thread."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Error updating process data")

            self._stop_event.wait(timeout=self._poll_rate)

    def poll_once(self) -> ProcessSnapshot:
        """Collect one snapshot and notify listeners of updates and exits."""
        snapshot = self.get_snapshot()
        current = set(snapshot)
        exited = self._known_pids - current
        self._known_pids = current

        with self._lock:
            update_listeners = list(self._update_listeners)
            exit_listeners = list(self._exit_listeners)

        for pid in sorted(exited):
            for listener in exit_listeners:
                listener(pid)
        for listener in update_listeners:
            listener(snapshot)
        return snapshot

    def get_snapshot(self) -> ProcessSnapshot:
        """
        Collect records for all running processes.

        Handles AccessDenied and ZombieProcess errors by skipping the process.
        """
        snapshot: ProcessSnapshot = {}
        attrs = ["pid", "name", "cmdline", "cpu_percent", "memory_info"]

        for proc in psutil.process_iter(attrs=attrs):
            try:
                with proc.oneshot():
                    info = proc.info
                    name = info.get("name") or ""
                    cmdline = info.get("cmdline") or []
                    mem_info = info.get("memory_info")

                    snapshot[proc.pid] = ProcessRecord(
                        pid=proc.pid,
                        cpu_percent=info.get("cpu_percent") or 0.0,
                        private_memory=mem_info.rss if mem_info else 0,
                        # psutil exposes no per-process network throughput
                        network_kbps=0.0,
                        type=classify_process(name, cmdline),
                        tasks=(ProcessTask(title=name),) if name else (),
                        os_process_id=proc.pid,
                    )
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue

        return snapshot

    def terminate(self, pid: int) -> bool:
        """Send SIGTERM to a process. Returns False if it cannot be signalled."""
        if pid == os.getpid():
            logger.warning("Refusing to terminate own process %d", pid)
            return False
        try:
            psutil.Process(pid).terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.warning("Cannot terminate process %d: %s", pid, e)
            return False
        logger.info("Terminated process %d", pid)
        return True
