"""Conversation controller: one user turn from input to appended reply."""

import asyncio
import logging
import threading
from collections.abc import Callable
from enum import Enum

from taskscope.bus import Subscription, SubscriptionBus
from taskscope.errors import ChatBusyError, PromptFailure, TaskscopeError
from taskscope.models import ChatMessage, ChatRole, RollingLog
from taskscope.prompt import (
    DEFAULT_TRUNCATE_CHARS,
    AssembledPrompt,
    FilterPolicy,
    assemble,
    truncate_question,
)
from taskscope.remote import RemoteModelClient
from taskscope.scheduler import PeriodicTask, Scheduler
from taskscope.session import DEFAULT_SYSTEM_PROMPT, AiSessionManager

logger = logging.getLogger(__name__)

SESSION_UNAVAILABLE_MESSAGE = "Unable to create AI session. Please try again."
SESSION_EXPIRED_MESSAGE = "Session expired. Please try again."
FAILURE_MESSAGE = "Failed to analyze. Please try again."


class ChatBackend(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ChatController:
    """
    Drives chat turns against the local session or the remote client.

    The user message is appended before anything can fail. Session failures
    trigger re-acquisition and a "session expired" reply without a second
    model call; other failures get exactly one retry with the question cut
    down to a short prefix. Backend errors always end as an assistant
    message, never as an exception out of submit().
    """

    def __init__(
        self,
        sessions: AiSessionManager | None = None,
        remote: RemoteModelClient | None = None,
        backend: ChatBackend = ChatBackend.LOCAL,
        instructions: str = DEFAULT_SYSTEM_PROMPT,
        credential: Callable[[], str | None] | str | None = None,
        remote_model: str | None = None,
        telemetry_refresh: Callable[[], RollingLog] | None = None,
        local_policy: FilterPolicy | None = None,
        remote_policy: FilterPolicy | None = None,
        truncate_chars: int = DEFAULT_TRUNCATE_CHARS,
    ) -> None:
        self.sessions = sessions
        self.remote = remote
        self.instructions = instructions
        self.remote_model = remote_model
        self.local_policy = local_policy or FilterPolicy.top_by_cpu(10)
        self.remote_policy = remote_policy or FilterPolicy.full()
        self.truncate_chars = truncate_chars
        self.error: str | None = None
        self._credential = credential
        self._telemetry_refresh = telemetry_refresh
        self._telemetry: RollingLog | None = None
        self._history: list[ChatMessage] = []
        self._busy = threading.Lock()
        self._subscription: Subscription | None = None
        self._refresh_task: PeriodicTask | None = None
        self._backend = ChatBackend.LOCAL
        self.set_backend(backend)

    @property
    def history(self) -> tuple[ChatMessage, ...]:
        return tuple(self._history)

    @property
    def backend(self) -> ChatBackend:
        return self._backend

    @property
    def is_busy(self) -> bool:
        return self._busy.locked()

    @property
    def telemetry(self) -> RollingLog | None:
        return self._telemetry

    def set_backend(self, backend: ChatBackend) -> None:
        if backend is ChatBackend.REMOTE and self.remote is None:
            raise ValueError("Remote backend selected without a remote client")
        if backend is ChatBackend.LOCAL and self.sessions is None:
            raise ValueError("Local backend selected without a session manager")
        self._backend = backend

    def attach(self, bus: SubscriptionBus) -> Subscription:
        """Follow telemetry published on the bus."""
        if self._subscription is not None:
            self._subscription.cancel()
        self._subscription = bus.subscribe(self.update_telemetry)
        return self._subscription

    def update_telemetry(self, log: RollingLog) -> None:
        self._telemetry = log

    def schedule_refresh(self, scheduler: Scheduler, interval: float = 900.0) -> PeriodicTask:
        """Re-validate the local session every `interval` seconds, off the loop thread."""
        if self.sessions is None:
            raise ValueError("No session manager to refresh")
        sessions = self.sessions

        async def refresh_session() -> None:
            await asyncio.to_thread(sessions.refresh)

        if self._refresh_task is not None:
            self._refresh_task.cancel()
        self._refresh_task = scheduler.every(interval, refresh_session, name="session-refresh")
        return self._refresh_task

    def clear(self) -> None:
        """Start a new conversation."""
        self._history = []
        self.error = None

    def _append(self, role: ChatRole, content: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content)
        self._history.append(message)
        return message

    def _current_telemetry(self) -> RollingLog | None:
        if self._telemetry_refresh is not None:
            try:
                self._telemetry = self._telemetry_refresh()
            except Exception:
                logger.exception("Error refreshing process data; using last known data")
        return self._telemetry

    def build_prompt(
        self,
        question: str,
        telemetry: RollingLog | None = None,
        fallback: bool = False,
    ) -> AssembledPrompt:
        """
        Assemble the prompt for the active backend.

        The local session already carries the instructions as its system
        prompt and gets the CPU-filtered table; the remote backend gets both
        in full. The fallback prompt always uses the filtered table.
        """
        if self._backend is ChatBackend.LOCAL:
            instructions, policy = "", self.local_policy
        else:
            instructions, policy = self.instructions, self.remote_policy
        if fallback:
            policy = self.local_policy
        return assemble(instructions, telemetry, question, policy)

    def raw_prompt(self, draft: str) -> str:
        """Prompt text for the current draft, without refreshing telemetry."""
        return self.build_prompt(draft, self._telemetry).text

    def token_estimate(self, draft: str) -> int:
        return self.build_prompt(draft, self._telemetry).estimated_tokens

    def _resolve_credential(self) -> str | None:
        if callable(self._credential):
            return self._credential()
        return self._credential

    def _invoke(self, prompt: str) -> str:
        try:
            if self._backend is ChatBackend.LOCAL:
                return self.sessions.prompt(prompt)
            return self.remote.generate(prompt, self._resolve_credential(), self.remote_model)
        except TaskscopeError:
            raise
        except Exception as e:
            raise PromptFailure(str(e) or type(e).__name__) from e

    def submit(self, text: str) -> ChatMessage | None:
        """
        Run one chat turn and return the assistant message it appended.

        Blank input is ignored and returns None.

        Raises:
            ChatBusyError: another submit is still in flight.
        """
        if not text.strip():
            return None
        if not self._busy.acquire(blocking=False):
            raise ChatBusyError("A message is already being processed")
        try:
            return self._run_turn(text)
        finally:
            self._busy.release()

    def _run_turn(self, text: str) -> ChatMessage:
        self._append(ChatRole.USER, text)

        if self._backend is ChatBackend.LOCAL and not self.sessions.ensure_ready():
            self.error = SESSION_UNAVAILABLE_MESSAGE
            return self._append(ChatRole.ASSISTANT, SESSION_UNAVAILABLE_MESSAGE)

        telemetry = self._current_telemetry()
        prompt = self.build_prompt(text, telemetry)
        logger.debug("Prompt (%d tokens est.): %s", prompt.estimated_tokens, prompt.text)

        try:
            response = self._invoke(prompt.text)
        except TaskscopeError as e:
            return self._recover(e, text, telemetry)

        self.error = None
        return self._append(ChatRole.ASSISTANT, response)

    def _recover(self, error: TaskscopeError, text: str, telemetry: RollingLog | None) -> ChatMessage:
        if error.kind.is_session_related:
            logger.warning("Chat error (%s): %s", error.kind.value, error)
            if self.sessions is not None:
                self.sessions.check()
            self.error = SESSION_EXPIRED_MESSAGE
            return self._append(ChatRole.ASSISTANT, SESSION_EXPIRED_MESSAGE)

        logger.warning("Chat error (%s), retrying with shortened input: %s", error.kind.value, error)
        self.error = f"Failed to get response: {error}"
        fallback = self.build_prompt(
            truncate_question(text, self.truncate_chars), telemetry, fallback=True
        )
        try:
            response = self._invoke(fallback.text)
        except TaskscopeError as retry_error:
            logger.error("Retry failed (%s): %s", retry_error.kind.value, retry_error)
            if retry_error.kind.is_session_related and self.sessions is not None:
                self.sessions.check()
            self.error = f"Failed to get response: {retry_error}"
            return self._append(ChatRole.ASSISTANT, FAILURE_MESSAGE)

        self.error = None
        return self._append(ChatRole.ASSISTANT, response)

    def dispose(self) -> None:
        """Stop following telemetry, cancel session refresh and destroy the session."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        if self.sessions is not None:
            self.sessions.dispose()
