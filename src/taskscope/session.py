"""Local model session lifecycle."""

import dataclasses
import logging
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Protocol

from taskscope.errors import (
    CapabilityUnavailable,
    PromptFailure,
    SessionCreationFailure,
    SessionInvalid,
    TaskscopeError,
)
from taskscope.models import SessionStatus

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant analyzing browser and host process performance.\n"
    "Your role is to analyze process data and provide insights.\n"
    "Always answer in 5 words or less.\n"
    "Be direct and specific in your responses."
)

READILY = "readily"
AFTER_DOWNLOAD = "after-download"

STATUS_LABELS = {
    SessionStatus.CHECKING: "Checking Availability",
    SessionStatus.READY: "Model Ready",
    SessionStatus.DOWNLOADING: "Downloading Model",
    SessionStatus.UNAVAILABLE: "Model Unavailable",
    SessionStatus.ERROR: "Error",
}

# Legal status edges. Anything else is a bug in the manager.
TRANSITIONS = {
    SessionStatus.CHECKING: {
        SessionStatus.READY,
        SessionStatus.DOWNLOADING,
        SessionStatus.UNAVAILABLE,
        SessionStatus.ERROR,
    },
    SessionStatus.DOWNLOADING: {
        SessionStatus.READY,
        SessionStatus.ERROR,
        SessionStatus.CHECKING,
    },
    SessionStatus.READY: {SessionStatus.CHECKING},
    SessionStatus.UNAVAILABLE: {SessionStatus.CHECKING},
    SessionStatus.ERROR: {SessionStatus.CHECKING},
}

ProgressCallback = Callable[[float], None]


@dataclass(slots=True, frozen=True)
class SessionConfig:
    """
    Options used when creating a session.

    temperature: higher gives more varied output.
    top_k: narrows the sampling candidates.
    max_output_tokens: hard cap on response length.
    timeout_seconds: creation fails once it takes longer than this.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    temperature: float = 1.0
    top_k: int = 3
    max_output_tokens: int = 10
    timeout_seconds: int = 30

    def __post_init__(self) -> None:
        if not 0.0 <= self.temperature <= 1.0:
            raise ValueError(f"temperature must be within [0, 1], got {self.temperature}")
        if not 1 <= self.top_k <= 8:
            raise ValueError(f"top_k must be within [1, 8], got {self.top_k}")
        if self.max_output_tokens < 1:
            raise ValueError("max_output_tokens must be positive")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")


class SessionHandle(Protocol):
    def prompt(self, text: str) -> str: ...

    def destroy(self) -> None: ...


class LocalModelBackend(Protocol):
    def capabilities(self) -> Mapping[str, Any]: ...

    def download(self, on_progress: ProgressCallback) -> None: ...

    def create(self, config: SessionConfig) -> SessionHandle: ...


def availability_of(capabilities: Any) -> str | None:
    """Extract the 'available' value from a capability result."""
    if isinstance(capabilities, str):
        return capabilities
    if isinstance(capabilities, Mapping):
        return capabilities.get("available")
    return getattr(capabilities, "available", None)


class AiSessionManager:
    """
    Acquires, validates, refreshes and destroys one local model session.

    Status starts at CHECKING. check() probes the backend and moves to READY,
    DOWNLOADING, UNAVAILABLE or ERROR. ERROR and UNAVAILABLE stay put until
    restart() is called. refresh() re-validates a READY session and re-runs
    the acquisition when the handle stopped answering.

    status_listener is called on the acquiring thread while the manager
    lock is held, so it must hand work off rather than wait for it.
    """

    def __init__(
        self,
        backend: LocalModelBackend | None,
        config: SessionConfig | None = None,
        validation_prompt: str = "test",
        status_listener: Callable[[SessionStatus], None] | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or SessionConfig()
        self._validation_prompt = validation_prompt
        self._status = SessionStatus.CHECKING
        self._handle: SessionHandle | None = None
        self._notice: str | None = None
        self._lock = threading.RLock()
        self._disposed = False
        self.status_listener = status_listener
        self.transitions: list[tuple[SessionStatus, SessionStatus]] = []

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def label(self) -> str:
        return STATUS_LABELS[self._status]

    @property
    def notice(self) -> str | None:
        """Human-readable status detail, e.g. download progress or the last error."""
        return self._notice

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def handle(self) -> SessionHandle | None:
        return self._handle

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def update_config(self, **changes: Any) -> SessionConfig:
        """Change creation options. They apply from the next acquisition."""
        self._config = dataclasses.replace(self._config, **changes)
        return self._config

    def _transition(self, new: SessionStatus) -> None:
        old = self._status
        if new is old:
            return
        if new not in TRANSITIONS[old]:
            raise ValueError(f"Illegal session transition {old.value} -> {new.value}")
        self._status = new
        self.transitions.append((old, new))
        logger.info("AI session status: %s -> %s", old.value, new.value)
        self._notify()

    def _notify(self) -> None:
        if self.status_listener is None:
            return
        try:
            self.status_listener(self._status)
        except Exception:
            logger.exception("Session status listener failed")

    def _fail(self, status: SessionStatus, notice: str) -> SessionStatus:
        self._notice = notice
        self._transition(status)
        return self._status

    def check(self) -> SessionStatus:
        """Run the full acquisition sequence, destroying any stale handle first."""
        with self._lock:
            if self._disposed:
                return self._status
            try:
                return self._check()
            finally:
                # dispose() was called while this acquisition was running
                if self._disposed:
                    self._destroy_handle()

    def _check(self) -> SessionStatus:
        self._destroy_handle()
        self._transition(SessionStatus.CHECKING)
        self._notice = None

        if self._backend is None:
            return self._fail(SessionStatus.UNAVAILABLE, "AI Language Model API not available")
        try:
            capabilities = self._backend.capabilities()
        except Exception as e:
            logger.error("AI availability check error: %s", e)
            return self._fail(SessionStatus.UNAVAILABLE, "AI Language Model API not available")

        available = availability_of(capabilities)
        logger.info("AI capabilities: %s", available)

        if available == READILY:
            return self._acquire()
        if available == AFTER_DOWNLOAD:
            self._notice = "Model needs to be downloaded first. This may take a moment."
            self._transition(SessionStatus.DOWNLOADING)
            try:
                self._download()
            except SessionCreationFailure as e:
                logger.error("AI model download failed: %s", e)
                return self._fail(SessionStatus.ERROR, str(e))
            return self._acquire()
        return self._fail(SessionStatus.UNAVAILABLE, "AI model is not available")

    def restart(self) -> SessionStatus:
        """User-initiated re-check, the only way out of ERROR or UNAVAILABLE."""
        logger.info("Restarting AI session")
        return self.check()

    def _download(self) -> None:
        """Pull the model. Runs before, and outside, the creation timeout."""
        try:
            self._backend.download(self._on_download_progress)
        except SessionCreationFailure:
            raise
        except Exception as e:
            raise SessionCreationFailure(f"Failed to download model: {e}") from e

    def _acquire(self) -> SessionStatus:
        try:
            handle = self._create()
        except SessionCreationFailure as e:
            logger.error("AI session creation failed: %s", e)
            return self._fail(SessionStatus.ERROR, str(e))

        self._handle = handle
        if not self.is_valid(probe=True):
            self._destroy_handle()
            return self._fail(SessionStatus.ERROR, "Failed to create valid session")
        self._notice = None
        self._transition(SessionStatus.READY)
        return self._status

    def _create(self) -> SessionHandle:
        """Create a handle, giving up after config.timeout_seconds."""
        timeout = self._config.timeout_seconds
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-session-create")
        future = executor.submit(self._backend.create, self._config)
        try:
            handle = future.result(timeout=timeout)
        except FutureTimeout:
            future.add_done_callback(_destroy_late_handle)
            raise SessionCreationFailure(
                f"Session creation timed out after {timeout}s"
            ) from None
        except SessionCreationFailure:
            raise
        except Exception as e:
            raise SessionCreationFailure(f"Failed to create session: {e}") from e
        finally:
            executor.shutdown(wait=False)
        if handle is None:
            raise SessionCreationFailure("Backend returned no session")
        return handle

    def _on_download_progress(self, percent: float) -> None:
        self._notice = f"Downloading model: {round(percent)}%"
        self._notify()

    def is_valid(self, probe: bool = False) -> bool:
        """
        Whether the current handle looks usable.

        The structural check only looks for a callable prompt(); with probe
        set, a short test prompt must also succeed.
        """
        handle = self._handle
        if handle is None or not callable(getattr(handle, "prompt", None)):
            return False
        if not probe or not self._validation_prompt:
            return True
        try:
            handle.prompt(self._validation_prompt)
        except Exception as e:
            logger.info("Session validation failed: %s", e)
            return False
        return True

    def refresh(self) -> SessionStatus:
        """Periodic validation of a READY session."""
        with self._lock:
            if self._disposed or self._status is not SessionStatus.READY:
                return self._status
            logger.debug("Checking session validity...")
            if self.is_valid(probe=True):
                return self._status
            logger.info("Session expired, refreshing...")
            return self.check()

    def ensure_ready(self) -> bool:
        """Re-acquire when the session is unusable. True if READY afterwards."""
        with self._lock:
            if self._status is SessionStatus.READY and self.is_valid():
                return True
            logger.info("Session invalid, recreating...")
            self.check()
            return self._status is SessionStatus.READY and self._handle is not None

    def prompt(self, text: str) -> str:
        """
        Send text to the live session.

        Raises:
            CapabilityUnavailable: the backend reported no usable model.
            SessionInvalid: no READY session, or the handle reports expiry.
            PromptFailure: any other failure of the prompt call.
        """
        handle = self._handle
        if self._status is SessionStatus.UNAVAILABLE:
            raise CapabilityUnavailable(self._notice or "AI model is not available")
        if handle is None or self._status is not SessionStatus.READY:
            raise SessionInvalid("No active AI session")
        try:
            response = handle.prompt(text)
        except TaskscopeError:
            raise
        except Exception as e:
            raise PromptFailure(str(e) or type(e).__name__) from e
        return "" if response is None else str(response)

    def _destroy_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        destroy = getattr(handle, "destroy", None)
        if not callable(destroy):
            return
        try:
            destroy()
        except Exception as e:
            logger.error("Error destroying session: %s", e)

    def dispose(self) -> None:
        """
        Destroy the current handle. Destroy-time failures are only logged.

        Never waits for a running acquisition: that one sees the disposed
        flag and destroys its own handle when it finishes.
        """
        self._disposed = True
        if not self._lock.acquire(blocking=False):
            logger.info("AI session acquisition still running; it will clean up after itself")
            return
        try:
            self._destroy_handle()
        finally:
            self._lock.release()


def _destroy_late_handle(future: Future) -> None:
    if future.cancelled() or future.exception() is not None:
        return
    handle = future.result()
    try:
        if handle is not None:
            handle.destroy()
    except Exception as e:
        logger.error("Error destroying timed-out session: %s", e)
