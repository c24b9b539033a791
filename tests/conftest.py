"""Shared fakes for taskscope tests."""

import threading
import time

import pytest

from taskscope.errors import SessionInvalid, StorageFailure
from taskscope.models import ProcessSnapshot, parse_snapshot


class FakeHandle:
    """Session handle that records prompts and fails on demand."""

    def __init__(self, reply: str = "Renderer 101 uses CPU") -> None:
        self.reply = reply
        self.prompts: list[str] = []
        self.destroyed = False
        self.expired = False
        self.fail_with: Exception | None = None
        self.fail_times: int | None = None
        self.destroy_error: Exception | None = None

    @property
    def user_prompts(self) -> list[str]:
        """Prompts other than the validation probe."""
        return [p for p in self.prompts if p != "test"]

    def prompt(self, text: str) -> str:
        self.prompts.append(text)
        if self.destroyed or self.expired:
            raise SessionInvalid("session destroyed")
        if self.fail_with is not None and text != "test":
            if self.fail_times is None or self.fail_times > 0:
                if self.fail_times is not None:
                    self.fail_times -= 1
                raise self.fail_with
        return self.reply

    def destroy(self) -> None:
        self.destroyed = True
        if self.destroy_error is not None:
            raise self.destroy_error


class FakeBackend:
    """
    Local model backend with scripted capability results.

    Each capabilities() call consumes the next scripted value; the last one
    repeats. Exceptions in the script are raised. create() blocks on
    create_gate when one is given.
    """

    def __init__(
        self,
        capabilities: tuple = ("readily",),
        progress: tuple = (0, 100),
        create_error: Exception | None = None,
        create_delay: float = 0.0,
        create_gate: threading.Event | None = None,
        download_error: Exception | None = None,
        download_delay: float = 0.0,
    ) -> None:
        self.script = list(capabilities)
        self.progress = progress
        self.create_error = create_error
        self.create_delay = create_delay
        self.create_gate = create_gate
        self.create_entered = threading.Event()
        self.download_error = download_error
        self.download_delay = download_delay
        self.downloads = 0
        self.handles: list[FakeHandle] = []
        self.configs = []
        self.capability_calls = 0

    def capabilities(self):
        self.capability_calls += 1
        value = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(value, Exception):
            raise value
        return {"available": value}

    def download(self, on_progress):
        self.downloads += 1
        if self.download_delay:
            time.sleep(self.download_delay)
        if self.download_error is not None:
            raise self.download_error
        for percent in self.progress:
            on_progress(percent)

    def create(self, config):
        self.configs.append(config)
        self.create_entered.set()
        if self.create_gate is not None:
            self.create_gate.wait(10)
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    @property
    def handle(self) -> FakeHandle:
        return self.handles[-1]


class FakeSource:
    """Snapshot source driven by the test."""

    def __init__(self, snapshot: dict | None = None) -> None:
        self.snapshot: ProcessSnapshot = parse_snapshot(snapshot or {})
        self.update_listeners = []
        self.exit_listeners = []
        self.terminated: list[int] = []

    def get_snapshot(self) -> ProcessSnapshot:
        return dict(self.snapshot)

    def on_update(self, listener):
        self.update_listeners.append(listener)
        return lambda: self.update_listeners.remove(listener)

    def on_exit(self, listener):
        self.exit_listeners.append(listener)
        return lambda: self.exit_listeners.remove(listener)

    def push_update(self, snapshot: dict) -> None:
        self.snapshot = parse_snapshot(snapshot)
        for listener in list(self.update_listeners):
            listener(self.get_snapshot())

    def push_exit(self, pid: int) -> None:
        self.snapshot.pop(pid, None)
        for listener in list(self.exit_listeners):
            listener(pid)

    def terminate(self, pid: int) -> bool:
        if pid not in self.snapshot:
            return False
        self.terminated.append(pid)
        return True


class FailingStore:
    """Store whose reads and/or writes fail."""

    def __init__(self, fail_get: bool = False, fail_set: bool = True) -> None:
        self.data: dict = {}
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.writes = 0

    def get(self, key, default=None):
        if self.fail_get:
            raise StorageFailure("read failed")
        return self.data.get(key, default)

    def set(self, key, value):
        if self.fail_set:
            raise StorageFailure("disk full")
        self.writes += 1
        self.data[key] = value


def make_snapshot(count: int, start_pid: int = 1) -> dict:
    """Raw snapshot with `count` renderer processes."""
    return {
        pid: {
            "cpuPercent": float(pid),
            "privateMemoryBytes": pid * 1024 * 1024,
            "networkKBps": 0.5,
            "type": "renderer",
            "tasks": [{"title": f"Tab {pid}"}],
            "osProcessId": 5000 + pid,
        }
        for pid in range(start_pid, start_pid + count)
    }


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource(make_snapshot(3))
