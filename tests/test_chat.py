"""Tests for the ChatController."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeBackend, make_snapshot

from taskscope.bus import SubscriptionBus
from taskscope.chat import (
    FAILURE_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    SESSION_UNAVAILABLE_MESSAGE,
    ChatBackend,
    ChatController,
)
from taskscope.errors import ChatBusyError, PromptFailure, RemoteApiFailure
from taskscope.models import ChatRole, RollingLog
from taskscope.remote import RemoteModelClient
from taskscope.scheduler import Scheduler
from taskscope.session import AiSessionManager
from taskscope.telemetry import format_snapshot


def make_log(count: int = 3) -> RollingLog:
    return RollingLog(rows=tuple(format_snapshot(make_snapshot(count))))


def local_controller(backend: FakeBackend, **kwargs) -> ChatController:
    return ChatController(sessions=AiSessionManager(backend), **kwargs)


def remote_controller(remote: MagicMock, **kwargs) -> ChatController:
    return ChatController(
        remote=remote,
        backend=ChatBackend.REMOTE,
        credential=lambda: "secret-token",
        remote_model="gemini-1.5-flash",
        **kwargs,
    )


class TestLocalTurns:
    """Tests for chat turns against the local session."""

    def test_successful_turn(self, backend):
        """Test a turn appends the user message then the reply."""
        controller = local_controller(backend, telemetry_refresh=make_log)

        reply = controller.submit("Which tab is slow?")

        assert reply.content == "Renderer 101 uses CPU"
        assert [(m.role, m.content) for m in controller.history] == [
            (ChatRole.USER, "Which tab is slow?"),
            (ChatRole.ASSISTANT, "Renderer 101 uses CPU"),
        ]
        assert controller.error is None

    def test_blank_input_ignored(self, backend):
        controller = local_controller(backend)
        assert controller.submit("   ") is None
        assert controller.history == ()

    def test_local_prompt_carries_filtered_telemetry(self, backend):
        """Test the local prompt omits instructions and includes current rows."""
        controller = local_controller(backend, telemetry_refresh=lambda: make_log(3))
        controller.submit("What is busy?")

        sent = backend.handle.user_prompts[0]
        assert sent.startswith("Current Process Data:\n")
        assert "Tab 3" in sent
        assert "User Question: What is busy?" in sent

    def test_two_failures_give_one_retry_and_one_failure_message(self, backend):
        """Test a persistently failing backend gets exactly one retry."""
        controller = local_controller(backend)
        controller.sessions.check()
        backend.handle.fail_with = PromptFailure("overloaded")
        question = "Why is my machine so slow today, and which of these processes is to blame?"

        reply = controller.submit(question)

        assert reply.content == FAILURE_MESSAGE
        prompts = backend.handle.user_prompts
        assert len(prompts) == 2
        assert f"User Question: {question[:50]}\n" in prompts[1]
        assert [m.role for m in controller.history] == [ChatRole.USER, ChatRole.ASSISTANT]
        assert controller.error.startswith("Failed to get response")

    def test_retry_success(self, backend):
        """Test a single failure is recovered by the shortened retry."""
        controller = local_controller(backend)
        controller.sessions.check()
        backend.handle.fail_with = PromptFailure("context too long")
        backend.handle.fail_times = 1

        reply = controller.submit("q" * 120)

        assert reply.content == "Renderer 101 uses CPU"
        assert controller.error is None
        assert len(backend.handle.user_prompts) == 2

    def test_session_expiry_reacquires_without_second_call(self, backend):
        """Test an expired session triggers re-acquisition and an expiry reply."""
        controller = local_controller(backend)
        controller.sessions.check()
        expired = backend.handle
        expired.expired = True

        reply = controller.submit("hello")

        assert reply.content == SESSION_EXPIRED_MESSAGE
        assert len(expired.user_prompts) == 1
        assert backend.handle is not expired
        assert backend.handle.user_prompts == []
        assert controller.sessions.handle is backend.handle

    def test_session_unavailable(self):
        """Test a missing model yields the unavailable reply."""
        controller = local_controller(FakeBackend(capabilities=("no",)))

        reply = controller.submit("hello")

        assert reply.content == SESSION_UNAVAILABLE_MESSAGE
        assert len(controller.history) == 2

    def test_busy_submit_rejected(self, backend):
        """Test a second submit while one is in flight is rejected."""
        controller = local_controller(backend)
        controller._busy.acquire()
        try:
            assert controller.is_busy
            with pytest.raises(ChatBusyError):
                controller.submit("hello")
        finally:
            controller._busy.release()
        assert controller.history == ()

    def test_telemetry_refresh_failure_uses_last_known(self, backend):
        def broken():
            raise OSError("gone")

        controller = local_controller(backend, telemetry_refresh=broken)
        controller.update_telemetry(make_log(2))
        controller.submit("hi")

        assert "Tab 2" in backend.handle.user_prompts[0]

    def test_clear(self, backend):
        controller = local_controller(backend)
        controller.submit("hi")
        controller.clear()
        assert controller.history == ()


class TestRemoteTurns:
    """Tests for chat turns against the remote endpoint."""

    def test_remote_prompt_includes_instructions(self):
        remote = MagicMock(spec=RemoteModelClient)
        remote.generate.return_value = "GPU process is heavy"
        controller = remote_controller(remote, instructions="Be terse.")

        reply = controller.submit("What now?")

        assert reply.content == "GPU process is heavy"
        prompt, credential, model = remote.generate.call_args.args
        assert prompt.startswith("Be terse.\n\nCurrent Process Data:")
        assert credential == "secret-token"
        assert model == "gemini-1.5-flash"

    def test_remote_failure_retries_once(self):
        """Test remote failures are not session-related and get one retry."""
        remote = MagicMock(spec=RemoteModelClient)
        remote.generate.side_effect = RemoteApiFailure(500, "Internal error")
        controller = remote_controller(remote)

        reply = controller.submit("What now?")

        assert reply.content == FAILURE_MESSAGE
        assert remote.generate.call_count == 2

    def test_unexpected_exception_becomes_failure_message(self):
        remote = MagicMock(spec=RemoteModelClient)
        remote.generate.side_effect = RuntimeError("socket closed")
        controller = remote_controller(remote)

        assert controller.submit("x").content == FAILURE_MESSAGE


class TestControllerWiring:
    """Tests for backend switching, prompts and subscriptions."""

    def test_remote_without_client(self, backend):
        controller = local_controller(backend)
        with pytest.raises(ValueError):
            controller.set_backend(ChatBackend.REMOTE)

    def test_switch_backend(self, backend):
        remote = MagicMock(spec=RemoteModelClient)
        controller = ChatController(sessions=AiSessionManager(backend), remote=remote)
        controller.set_backend(ChatBackend.REMOTE)
        assert controller.backend is ChatBackend.REMOTE

    def test_attach_follows_bus(self, backend):
        """Test published telemetry becomes the controller's current data."""
        bus = SubscriptionBus()
        controller = local_controller(backend)
        controller.attach(bus)
        log = make_log(4)

        bus.publish(log)
        assert controller.telemetry is log

        controller.dispose()
        bus.publish(make_log(1))
        assert controller.telemetry is log

    def test_raw_prompt_and_token_estimate(self, backend):
        controller = local_controller(backend)
        controller.update_telemetry(make_log(2))

        raw = controller.raw_prompt("draft question")
        assert "User Question: draft question" in raw
        assert controller.token_estimate("draft question") == -(-len(raw) // 4)

    def test_dispose_destroys_session(self, backend):
        controller = local_controller(backend)
        controller.sessions.check()
        controller.dispose()
        assert backend.handle.destroyed


@pytest.mark.asyncio
async def test_schedule_refresh_validates_session(backend):
    """Test periodic refresh re-validates the session off the loop thread."""
    controller = local_controller(backend)
    controller.sessions.check()
    scheduler = Scheduler()
    scheduler.start()

    task = controller.schedule_refresh(scheduler, interval=0.01)
    await asyncio.sleep(0.1)
    controller.dispose()
    scheduler.stop()

    assert task.runs >= 1
    assert backend.handles[0].prompts.count("test") >= 2
