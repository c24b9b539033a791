"""Error taxonomy for taskscope.

Every failing operation raises an exception carrying an explicit ErrorKind
tag. Callers dispatch on ``error.kind`` instead of inspecting message text.
"""

from enum import Enum


class ErrorKind(Enum):
    """Kinds of failure the chat and telemetry layers can report."""

    CAPABILITY_UNAVAILABLE = "capability_unavailable"
    SESSION_CREATION = "session_creation"
    SESSION_INVALID = "session_invalid"
    PROMPT = "prompt"
    REMOTE_API = "remote_api"
    STORAGE = "storage"
    BUSY = "busy"

    @property
    def is_session_related(self) -> bool:
        """Whether recovery means re-acquiring the model session."""
        return self in (
            ErrorKind.CAPABILITY_UNAVAILABLE,
            ErrorKind.SESSION_CREATION,
            ErrorKind.SESSION_INVALID,
        )


class TaskscopeError(Exception):
    """Base exception for all taskscope errors."""

    kind: ErrorKind = ErrorKind.PROMPT


class CapabilityUnavailable(TaskscopeError):
    """The local model backend is missing or reports no usable capability."""

    kind = ErrorKind.CAPABILITY_UNAVAILABLE


class SessionCreationFailure(TaskscopeError):
    """Creating a local model session failed or exceeded its timeout."""

    kind = ErrorKind.SESSION_CREATION


class SessionInvalid(TaskscopeError):
    """The session handle expired, was destroyed or no longer responds."""

    kind = ErrorKind.SESSION_INVALID


class PromptFailure(TaskscopeError):
    """A prompt call on a live session failed."""

    kind = ErrorKind.PROMPT


class RemoteApiFailure(TaskscopeError):
    """The remote generation endpoint returned an error or a malformed body."""

    kind = ErrorKind.REMOTE_API

    def __init__(self, status: int | None, message: str) -> None:
        self.status = status
        self.message = message
        if status is None:
            super().__init__(f"Remote API request failed: {message}")
        else:
            super().__init__(f"Remote API request failed ({status}): {message}")


class StorageFailure(TaskscopeError):
    """The key-value persistence collaborator failed to read or write."""

    kind = ErrorKind.STORAGE


class ChatBusyError(TaskscopeError):
    """A submit was attempted while another one is still in flight."""

    kind = ErrorKind.BUSY
