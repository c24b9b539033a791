"""Tests for the HostProcessSource class."""

import multiprocessing
import os
import time
from queue import Queue

from taskscope.models import ProcessRecord, ProcessType
from taskscope.monitor import HostProcessSource, classify_process


def sleeper(duration: float = 30.0) -> None:
    time.sleep(duration)


class TestClassifyProcess:
    """Tests for process type detection."""

    def test_browser_main_process(self):
        assert classify_process("chrome", ["/opt/google/chrome/chrome"]) is ProcessType.BROWSER

    def test_child_roles(self):
        """Test --type= roles map onto process types."""
        assert classify_process("chrome", ["chrome", "--type=renderer"]) is ProcessType.RENDERER
        assert classify_process("chrome", ["chrome", "--type=gpu-process"]) is ProcessType.GPU
        assert classify_process("chrome", ["chrome", "--type=utility"]) is ProcessType.UTILITY

    def test_extension_renderer(self):
        cmdline = ["chrome", "--type=renderer", "--extension-process"]
        assert classify_process("chrome", cmdline) is ProcessType.EXTENSION

    def test_unknown_role(self):
        assert classify_process("chrome", ["chrome", "--type=broker"]) is ProcessType.OTHER

    def test_ordinary_process(self):
        assert classify_process("bash", ["/bin/bash"]) is ProcessType.OTHER


class TestHostProcessSource:
    """Tests for HostProcessSource class."""

    def test_source_creation(self):
        """Test HostProcessSource can be instantiated."""
        source = HostProcessSource()

        assert source.poll_rate == 2.0
        assert not source.is_running

    def test_poll_rate_minimum(self):
        """Test poll rate has a minimum value."""
        source = HostProcessSource()

        source.poll_rate = 0.01  # Very small value
        assert source.poll_rate >= 0.1  # Should be clamped to minimum

    def test_source_start_stop(self):
        """Test HostProcessSource can be started and stopped."""
        source = HostProcessSource(poll_rate=0.1)

        source.start()
        assert source.is_running

        source.stop()
        assert not source.is_running

    def test_source_start_idempotent(self):
        """Test starting an already running source is safe."""
        source = HostProcessSource(poll_rate=0.1)

        source.start()
        thread1 = source._thread

        source.start()  # Should not create a new thread
        thread2 = source._thread

        assert thread1 is thread2
        source.stop()

    def test_daemon_thread(self):
        """Test polling thread is a daemon thread."""
        source = HostProcessSource(poll_rate=0.1)
        source.start()

        try:
            assert source._thread is not None
            assert source._thread.daemon is True
            assert source._thread.name == "HostProcessSource"
        finally:
            source.stop()

    def test_get_snapshot(self):
        """Test a snapshot contains records for live processes, ourselves included."""
        snapshot = HostProcessSource().get_snapshot()

        assert os.getpid() in snapshot
        for pid, record in list(snapshot.items())[:5]:
            assert isinstance(record, ProcessRecord)
            assert record.pid == pid
            assert record.cpu_percent >= 0.0
            assert record.private_memory >= 0
            assert record.network_kbps == 0.0

    def test_listeners_receive_updates(self):
        """Test update listeners get snapshots from the polling thread."""
        queue: Queue = Queue()
        source = HostProcessSource(poll_rate=0.1)
        source.on_update(queue.put)

        source.start()
        try:
            snapshot = queue.get(timeout=2.0)
            assert len(snapshot) > 0
        finally:
            source.stop()

    def test_remove_listener(self):
        source = HostProcessSource()
        calls = []
        remove = source.on_update(calls.append)
        remove()

        source.poll_once()
        assert calls == []

    def test_exit_event_for_finished_process(self):
        """Test a process that ends between polls produces one exit event."""
        source = HostProcessSource()
        exits = []
        source.on_exit(exits.append)

        proc = multiprocessing.Process(target=sleeper, args=(30.0,))
        proc.start()
        try:
            time.sleep(0.1)
            assert proc.pid in source.poll_once()
        finally:
            proc.terminate()
            proc.join(timeout=2.0)

        source.poll_once()
        source.poll_once()
        assert exits.count(proc.pid) == 1

    def test_terminate_child(self):
        """Test terminate() signals a process we own."""
        proc = multiprocessing.Process(target=sleeper, args=(30.0,))
        proc.start()
        try:
            assert HostProcessSource().terminate(proc.pid)
            proc.join(timeout=2.0)
            assert not proc.is_alive()
        finally:
            if proc.is_alive():
                proc.kill()

    def test_terminate_refuses_self(self):
        assert not HostProcessSource().terminate(os.getpid())

    def test_terminate_missing_process(self):
        """Test terminating a reaped process reports failure instead of raising."""
        proc = multiprocessing.Process(target=sleeper, args=(0.0,))
        proc.start()
        proc.join(timeout=2.0)

        assert not HostProcessSource().terminate(proc.pid)
